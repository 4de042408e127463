from prometheus_client import Counter

from calendar_sync.metrics import (  # noqa: F401
    SYNC_DURATION_SECONDS,
    SYNC_RUNS_TOTAL,
    TASKS_IMPORTED_TOTAL,
    TOKEN_REFRESH_TOTAL,
    get_or_create_metric,
)

REQUESTS_TOTAL = get_or_create_metric(
    "study_planner_requests_total",
    "Total calendar API requests",
    Counter,
    labelnames=["endpoint", "status"],
)
