from __future__ import annotations

from dataclasses import dataclass, field
from typing import List, Union

from study_planner.models import Task


@dataclass(frozen=True)
class Success:
    tasks: List[Task] = field(default_factory=list)


@dataclass(frozen=True)
class PartialSuccess:
    tasks: List[Task]
    errors: List[str]


@dataclass(frozen=True)
class Failure:
    errors: List[str]


@dataclass(frozen=True)
class NoConnections:
    pass


@dataclass(frozen=True)
class Unauthenticated:
    pass


SyncOutcome = Union[Success, PartialSuccess, Failure, NoConnections, Unauthenticated]


def outcome_label(outcome: SyncOutcome) -> str:
    """Short name used for metrics and logs."""
    return {
        Success: "success",
        PartialSuccess: "partial_success",
        Failure: "failure",
        NoConnections: "no_connections",
        Unauthenticated: "unauthenticated",
    }[type(outcome)]
