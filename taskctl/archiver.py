"""Moves terminal tasks past the retention period out of the live table."""
import logging
from typing import Dict, Optional

from . import repository as repo
from .config import DEFAULT_CONFIG
from .models import TaskStatus
from .service import store_errors
from .utils import iso_from_now

logger = logging.getLogger(__name__)

PAGE_SIZE = 10

_ARCHIVE_FLAGS = {
    TaskStatus.COMPLETED: "archive_completed",
    TaskStatus.FAILED: "archive_failed",
    TaskStatus.CANCELLED: "archive_cancelled",
}


def archive_and_delete_historical_tasks(conn, retention_days: Optional[int] = None,
                                        now: Optional[str] = None) -> Dict[str, int]:
    """
    Copy every terminal task executed more than `retention_days` ago into the
    archive, then delete it from the live table.

    The copy commits before the delete starts, so a crash in between leaves a
    duplicate (which the next run overwrites) rather than a lost task. Task
    types can opt out of archiving per terminal status; those tasks are only
    deleted. Returns {"archived": n, "deleted": m}.
    """
    with store_errors("archive the historical tasks"):
        if retention_days is None:
            cfg = repo.get_config(conn)
            retention_days = int(cfg.get("retention_days", DEFAULT_CONFIG["retention_days"]))
        cutoff = iso_from_now(-retention_days * 86400, now)

        task_types = {t.code: t for t in repo.list_task_types(conn)}
        archived = deleted = 0
        while True:
            tasks = repo.find_tasks_to_archive(conn, cutoff, PAGE_SIZE)
            if not tasks:
                break
            for task in tasks:
                task_type = task_types.get(task.type)
                # Tasks whose type was removed are archived.
                if task_type is None or getattr(task_type, _ARCHIVE_FLAGS[task.status]):
                    repo.archive_task(conn, task)
                    archived += 1
                repo.delete_task(conn, task.id)
                deleted += 1

    if deleted:
        logger.info(f"Archived {archived} and deleted {deleted} task(s) executed before {cutoff}")
    return {"archived": archived, "deleted": deleted}
