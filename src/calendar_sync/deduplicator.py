from typing import AbstractSet, Iterable, List

from study_planner.models import TaskDraft


def filter_new(
    drafts: Iterable[TaskDraft], existing_source_ids: AbstractSet[str]
) -> List[TaskDraft]:
    """
    Keep drafts whose ``source_id`` has not been imported yet.

    Order is preserved and a ``source_id`` repeated within ``drafts`` is kept
    once. This is a read-then-filter check: a concurrent sync may still insert
    the same task, which the task store reports as a conflict.
    """
    seen = set(existing_source_ids)
    fresh: List[TaskDraft] = []
    for draft in drafts:
        if draft.source_id in seen:
            continue
        seen.add(draft.source_id)
        fresh.append(draft)
    return fresh
