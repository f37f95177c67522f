import os

DB_FILE = os.environ.get("TASKCTL_DB", "taskctl.db")

DEFAULT_CONFIG = {
    "max_attempts_default": "3",
    "backoff_base": "2",
    "lease_timeout_seconds": "3600",
    "retention_days": "60",
    "batch_size": "10",
    "poll_interval_seconds": "1",
    "maintenance_interval_seconds": "60",
    "timeout_seconds": "20",
}

ALLOWED_CONFIG_KEYS = set(DEFAULT_CONFIG.keys())

# Upper bound on a single page of task summaries.
MAX_FILTERED_TASKS = 100
