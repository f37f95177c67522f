import logging
import signal
import threading
import time
from typing import Dict, List, Optional

from . import repository as repo
from . import service
from .archiver import archive_and_delete_historical_tasks
from .config import DEFAULT_CONFIG
from .db import connect_db
from .errors import StoreUnavailableError, TaskDelayedError, TaskFailedError
from .handlers import get_handler
from .models import ExecutionResult, Task, TaskStatus
from .reaper import reset_hung_tasks
from .scheduler import enqueue_due_jobs, schedule_unscheduled_jobs
from .utils import default_worker_name

logger = logging.getLogger(__name__)

_stop = threading.Event()


def setup_signal_handlers(stop: threading.Event = _stop):
    def _handler(signum, frame):
        logger.info(f"Received signal {signum}. Stopping workers")
        stop.set()

    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            signal.signal(sig, _handler)
        except ValueError:
            # Only the main thread may install signal handlers.
            logger.debug(f"Could not install a handler for signal {sig}")


def _setting(cfg: Dict[str, str], key: str) -> float:
    return float(cfg.get(key, DEFAULT_CONFIG[key]))


def execute_task(conn, task: Task, cfg: Dict[str, str]) -> Optional[TaskStatus]:
    """
    Run the handler for a claimed task and apply the lifecycle operation its
    outcome maps to. Returns the status the task moved to, or None when the
    store could not be updated (the task stays locked until the reaper frees it).
    """
    try:
        handler = get_handler(task.type, cfg)
    except KeyError:
        logger.error(f"No handler is registered for the task type {task.type} (task {task.id})")
        return _apply(task, service.fail_task, conn, task,
                      f"No handler is registered for the task type ({task.type})",
                      on_success=TaskStatus.FAILED)

    logger.debug(f"Executing task {task.id} (type: {task.type}, step: {task.step}, "
                 f"attempt: {task.execution_attempts})")
    started = time.monotonic()
    try:
        result = handler.execute(task) or ExecutionResult()
    except TaskDelayedError as e:
        elapsed = _elapsed_ms(started)
        logger.info(f"Task {task.id} delayed by {e.delay_seconds}s")
        return _apply(task, service.delay_task, conn, task, e.delay_seconds, elapsed,
                      on_success=TaskStatus.QUEUED)
    except TaskFailedError as e:
        elapsed = _elapsed_ms(started)
        logger.warning(f"Task {task.id} failed: {e}")
        return _apply(task, service.fail_task, conn, task, str(e), elapsed,
                      on_success=TaskStatus.FAILED)
    except Exception as e:
        elapsed = _elapsed_ms(started)
        logger.warning(f"Task {task.id} raised {type(e).__name__}: {e}")
        return _apply(task, service.requeue_task, conn, task, cfg, f"{type(e).__name__}: {e}",
                      elapsed)

    elapsed = _elapsed_ms(started)
    if result.next_step:
        status = TaskStatus.QUEUED
    else:
        status = TaskStatus.COMPLETED
        logger.info(f"Task {task.id} completed in {elapsed}ms")
    return _apply(task, service.complete_task, conn, task, result, elapsed, on_success=status)


def _elapsed_ms(started: float) -> int:
    return int((time.monotonic() - started) * 1000)


def _apply(task: Task, operation, *args, on_success: Optional[TaskStatus] = None):
    try:
        outcome = operation(*args)
    except StoreUnavailableError:
        logger.error(f"Could not record the outcome of task {task.id}; leaving it for the reaper",
                     exc_info=True)
        return None
    if isinstance(outcome, TaskStatus):
        return outcome
    return on_success if outcome else None


def process_batch(conn, lock_name: str, cfg: Dict[str, str]) -> int:
    """
    Claim up to `batch_size` tasks and execute them one after another. Returns the count.

    Each lease restarts just before its task runs. A task whose lock was taken
    away while it waited (reaped and claimed elsewhere) is skipped.
    """
    tasks = repo.claim_tasks(conn, lock_name, int(_setting(cfg, "batch_size")))
    for task in tasks:
        if not repo.renew_task_lock(conn, task.id, lock_name):
            logger.warning(f"[{lock_name}] Lost the lock on task {task.id} before it ran; skipping")
            continue
        execute_task(conn, task, cfg)
    return len(tasks)


def worker_loop(name: str, db_path: Optional[str] = None, stop: threading.Event = _stop,
                release_locks: bool = False):
    """
    Claim and execute tasks until `stop` is set. With `release_locks` the
    tasks still locked under `name` by an earlier run are queued again first;
    only do that when `name` is stable and not shared by a live worker.
    """
    conn = connect_db(db_path)
    try:
        if release_locks:
            released = repo.reset_task_locks(conn, name)
            if released:
                logger.warning(f"[{name}] Returned {released} task(s) left locked by a previous run")

        while not stop.is_set():
            try:
                cfg = repo.get_config(conn)
                if process_batch(conn, name, cfg) == 0:
                    stop.wait(_setting(cfg, "poll_interval_seconds"))
            except Exception:
                logger.exception(f"[{name}] Unexpected error")
                stop.wait(1)
    finally:
        conn.close()
        logger.info(f"[{name}] Worker stopped.")


def run_maintenance(conn) -> Dict[str, object]:
    """One pass of the reaper, the archiver and the job scheduler, each independent of the others."""
    steps = (
        ("reaped", reset_hung_tasks),
        ("archived", archive_and_delete_historical_tasks),
        ("scheduled", schedule_unscheduled_jobs),
        ("enqueued", enqueue_due_jobs),
    )
    results = {}
    for key, step in steps:
        try:
            results[key] = step(conn)
        except Exception:
            logger.exception(f"Maintenance step {step.__name__} failed")
    return results


def maintenance_loop(db_path: Optional[str] = None, stop: threading.Event = _stop):
    conn = connect_db(db_path)
    try:
        while not stop.is_set():
            run_maintenance(conn)
            try:
                interval = _setting(repo.get_config(conn), "maintenance_interval_seconds")
            except Exception:
                logger.exception("Could not read the maintenance interval")
                interval = float(DEFAULT_CONFIG["maintenance_interval_seconds"])
            stop.wait(interval)
    finally:
        conn.close()
        logger.info("Maintenance stopped.")


def start_workers(count: int, db_path: Optional[str] = None, stop: threading.Event = _stop,
                  name: Optional[str] = None):
    """
    Start `count` worker threads and the maintenance thread, and wait for them
    to stop. A `name` gives the workers stable lock names, so a restart
    releases the tasks its previous run left locked.
    """
    setup_signal_handlers(stop)
    threads: List[threading.Thread] = []

    for i in range(count):
        worker_name = default_worker_name(i + 1, name)
        t = threading.Thread(target=worker_loop, args=(worker_name, db_path, stop, bool(name)),
                             name=worker_name, daemon=True)
        t.start()
        threads.append(t)
        logger.info(f"Started {worker_name}")

    t = threading.Thread(target=maintenance_loop, args=(db_path, stop), name="maintenance",
                         daemon=True)
    t.start()
    threads.append(t)

    try:
        while any(t.is_alive() for t in threads):
            stop.wait(0.5)
            if stop.is_set():
                break
    finally:
        stop.set()
        for t in threads:
            t.join()
        logger.info("All workers stopped gracefully.")
