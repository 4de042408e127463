from prometheus_client import REGISTRY, Counter, Histogram


# we check if they are already registered to avoid errors during hot reloads or test runs
def get_or_create_metric(name, documentation, metric_type, **kwargs):
    try:
        return metric_type(name, documentation, **kwargs)
    except ValueError:
        return REGISTRY._names_to_collectors[name]


SYNC_RUNS_TOTAL = get_or_create_metric(
    "calendar_sync_runs_total",
    "Calendar sync invocations by outcome",
    Counter,
    labelnames=["outcome"],
)

SYNC_DURATION_SECONDS = get_or_create_metric(
    "calendar_sync_duration_seconds", "Duration of one calendar sync", Histogram
)

TASKS_IMPORTED_TOTAL = get_or_create_metric(
    "calendar_sync_tasks_imported_total", "Tasks created from calendar events", Counter
)

TOKEN_REFRESH_TOTAL = get_or_create_metric(
    "calendar_token_refresh_total",
    "OAuth access token refreshes by result",
    Counter,
    labelnames=["result"],
)
