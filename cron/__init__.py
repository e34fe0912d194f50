"""
Scheduled tasks for nanobot.

Jobs are stored as JSON and fire as synthetic user messages on the "cron"
channel. The model manages them through the scheduling tools.

Usage:
    # Run due jobs once (for system cron integration)
    python -m cron.scheduler tick

    # Or continuously
    python -m cron.scheduler daemon --interval 60
"""

from cron.jobs import (
    create_job,
    get_job,
    list_jobs,
    remove_job,
    update_job,
    JOBS_FILE,
)
from cron.scheduler import tick, run_daemon

__all__ = [
    "create_job",
    "get_job",
    "list_jobs",
    "remove_job",
    "update_job",
    "tick",
    "run_daemon",
    "JOBS_FILE",
]
