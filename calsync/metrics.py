"""Prometheus metric definitions for CalSync.

Single source of truth for all custom metrics. Import from here in API and Celery code.
"""

from prometheus_client import Counter, Histogram

# --- Celery task metrics ---

celery_task_total = Counter(
    "calsync_celery_task_total",
    "Total Celery tasks executed",
    ["task_name", "status"],
)

celery_task_duration_seconds = Histogram(
    "calsync_celery_task_duration_seconds",
    "Celery task execution duration in seconds",
    ["task_name"],
    buckets=(0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0, 60.0, 120.0, 300.0),
)

# --- Provider metrics ---

provider_calls_total = Counter(
    "calsync_provider_calls_total",
    "Outbound calendar provider calls by outcome",
    ["provider", "outcome"],
)

token_refresh_total = Counter(
    "calsync_token_refresh_total",
    "OAuth token refresh attempts by outcome",
    ["provider", "outcome"],
)

# --- Sync metrics ---

sync_results_total = Counter(
    "calsync_sync_results_total",
    "Per-integration booking sync results",
    ["provider", "operation", "status"],
)

conflict_checks_total = Counter(
    "calsync_conflict_checks_total",
    "Conflict checks by whether a conflict was found",
    ["result"],
)

webhook_notifications_total = Counter(
    "calsync_webhook_notifications_total",
    "Incoming webhook notifications by outcome",
    ["provider", "outcome"],
)
