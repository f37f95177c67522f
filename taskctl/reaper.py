"""Returns tasks whose lock outlived its lease to the queue."""
import logging
from typing import Optional

from . import repository as repo
from .config import DEFAULT_CONFIG
from .service import store_errors
from .utils import iso_from_now

logger = logging.getLogger(__name__)


def reset_hung_tasks(conn, now: Optional[str] = None) -> int:
    """
    Reset EXECUTING tasks locked longer than their lease back to QUEUED.

    Task types with an `execution_timeout` use it as their lease; every other
    type uses the global `lease_timeout_seconds`. Execution attempts are left
    as they are. Returns the number of tasks reset.
    """
    with store_errors("reset the hung tasks"):
        cfg = repo.get_config(conn)
        lease = int(cfg.get("lease_timeout_seconds", DEFAULT_CONFIG["lease_timeout_seconds"]))

        total = 0
        own_lease = []
        for task_type in repo.list_task_types(conn):
            if task_type.execution_timeout is None:
                continue
            own_lease.append(task_type.code)
            count = repo.reset_hung_tasks(
                conn, iso_from_now(-task_type.execution_timeout, now), task_type=task_type.code
            )
            if count:
                logger.warning(f"Reset {count} hung task(s) of type {task_type.code}")
            total += count

        count = repo.reset_hung_tasks(conn, iso_from_now(-lease, now), exclude_types=own_lease)
        if count:
            logger.warning(f"Reset {count} hung task(s) locked for more than {lease}s")
        total += count
    return total
