"""
Task lifecycle operations with argument validation and error mapping.

The repository functions report lost races as False / 0; this layer turns
them into TaskNotFoundError or InvalidTaskStatusError for callers, and
turns sqlite3 failures into StoreUnavailableError.
"""
import json
import logging
import sqlite3
import uuid
from contextlib import contextmanager
from datetime import datetime
from typing import Any, Dict, List, Optional, Union

from . import repository as repo
from .config import DEFAULT_CONFIG, MAX_FILTERED_TASKS
from .db import transaction
from .errors import (
    ArchivedTaskNotFoundError, BatchNotFoundError, DuplicateExternalReferenceError,
    DuplicateTaskTypeError, InvalidArgumentError, InvalidTaskStatusError,
    StoreUnavailableError, TaskNotFoundError, TaskTypeInUseError, TaskTypeNotFoundError,
)
from .handlers import get_handler_class
from .models import (
    ArchivedTask, ExecutionResult, Task, TaskEvent, TaskEventType, TaskSortBy,
    TaskStatus, TaskSummaries, TaskType,
)
from .utils import from_iso, iso_from_now, now_iso, to_iso

logger = logging.getLogger(__name__)


@contextmanager
def store_errors(action: str):
    try:
        yield
    except sqlite3.Error as e:
        raise StoreUnavailableError(f"Failed to {action}: {e}") from e


def _require(name: str, value):
    if value is None or (isinstance(value, str) and not value.strip()):
        raise InvalidArgumentError(name)


def _timestamp(name: str, value: Union[str, datetime, None]) -> Optional[str]:
    """Normalise to the stored fixed-width UTC form, which compares correctly as text."""
    if value is None:
        return None
    if isinstance(value, str):
        try:
            value = from_iso(value)
        except ValueError:
            raise InvalidArgumentError(name, f"not an ISO 8601 timestamp ({value})")
    return to_iso(value)


# ---------- Task types ----------
def create_task_type(conn, task_type: TaskType):
    _require("code", task_type.code)
    _require("name", task_type.name)
    with store_errors(f"create the task type ({task_type.code})"):
        if repo.get_task_type(conn, task_type.code):
            raise DuplicateTaskTypeError(task_type.code)
        repo.insert_task_type(conn, task_type)


def update_task_type(conn, task_type: TaskType):
    _require("code", task_type.code)
    with store_errors(f"update the task type ({task_type.code})"):
        if not repo.update_task_type(conn, task_type):
            raise TaskTypeNotFoundError(task_type.code)


def get_task_type(conn, code: str) -> TaskType:
    _require("code", code)
    with store_errors(f"retrieve the task type ({code})"):
        task_type = repo.get_task_type(conn, code)
    if task_type is None:
        raise TaskTypeNotFoundError(code)
    return task_type


def get_task_types(conn) -> List[TaskType]:
    with store_errors("retrieve the task types"):
        return repo.list_task_types(conn)


def set_task_type_enabled(conn, code: str, enabled: bool):
    """A disabled type keeps its tasks, but none of them can be claimed."""
    _require("code", code)
    with store_errors(f"update the task type ({code})"):
        if not repo.set_task_type_enabled(conn, code, enabled):
            raise TaskTypeNotFoundError(code)


def delete_task_type(conn, code: str):
    _require("code", code)
    with store_errors(f"delete the task type ({code})"):
        with transaction(conn):
            if repo.get_task_type(conn, code) is None:
                raise TaskTypeNotFoundError(code)
            if repo.count_tasks_queued_or_executing(conn, code):
                raise TaskTypeInUseError(code)
            repo.delete_task_type(conn, code)


def is_task_type_queued_or_executing(conn, code: str) -> bool:
    _require("code", code)
    with store_errors(f"check whether tasks of type ({code}) are queued or executing"):
        return repo.count_tasks_queued_or_executing(conn, code) > 0


# ---------- Submission ----------
def submit_task(
    conn,
    task_type: str,
    data: Any,
    *,
    priority: Optional[int] = None,
    batch_id: Optional[str] = None,
    external_reference: Optional[str] = None,
    next_execution: Union[str, datetime, None] = None,
    step: Optional[str] = None,
    suspended: bool = False,
) -> str:
    """
    Queue a task and return its id.

    `data` is stored as given when it is a string, otherwise as JSON. The
    initial step comes from `step`, or from the registered handler's
    `initial_step`.
    """
    _require("type", task_type)
    if data is None:
        raise InvalidArgumentError("data")
    if not isinstance(data, str):
        data = json.dumps(data)
    if priority is not None and not isinstance(priority, int):
        raise InvalidArgumentError("priority", "must be an integer")

    with store_errors(f"queue the task with type ({task_type}) for execution"):
        tt = repo.get_task_type(conn, task_type)
        if tt is None:
            raise InvalidArgumentError("type", f"unknown task type ({task_type})")

        if step is None:
            handler_cls = get_handler_class(task_type)
            step = handler_cls.initial_step if handler_cls else None

        task = Task(
            id=str(uuid.uuid4()),
            type=task_type,
            status=TaskStatus.SUSPENDED if suspended else TaskStatus.QUEUED,
            priority=int(priority if priority is not None else tt.priority),
            step=step,
            data=data,
            batch_id=batch_id or None,
            external_reference=external_reference or None,
            queued=now_iso(),
            next_execution=_timestamp("next_execution", next_execution),
        )

        if task.external_reference and repo.find_task_by_external_reference(conn, task.external_reference):
            raise DuplicateExternalReferenceError(task.external_reference)
        try:
            repo.insert_task(conn, task)
        except sqlite3.IntegrityError:
            # Lost a race with another submitter using the same reference.
            if task.external_reference:
                raise DuplicateExternalReferenceError(task.external_reference)
            raise

    logger.debug(f"Queued task {task.id} (type: {task_type}, priority: {task.priority})")
    return task.id


# ---------- Queries ----------
def get_task(conn, task_id: str) -> Task:
    _require("task_id", task_id)
    with store_errors(f"retrieve the task ({task_id})"):
        task = repo.get_task(conn, task_id)
    if task is None:
        raise TaskNotFoundError(task_id)
    return task


def get_task_status(conn, task_id: str) -> TaskStatus:
    _require("task_id", task_id)
    with store_errors(f"retrieve the status of the task ({task_id})"):
        status = repo.get_task_status(conn, task_id)
    if status is None:
        raise TaskNotFoundError(task_id)
    return status


def get_task_by_external_reference(conn, external_reference: str) -> Task:
    _require("external_reference", external_reference)
    with store_errors(f"retrieve the task with external reference ({external_reference})"):
        task = repo.find_task_by_external_reference(conn, external_reference)
    if task is None:
        raise TaskNotFoundError(external_reference)
    return task


def get_task_events(conn, task_id: str) -> List[TaskEvent]:
    _require("task_id", task_id)
    with store_errors(f"retrieve the events for the task ({task_id})"):
        if not repo.task_exists(conn, task_id):
            raise TaskNotFoundError(task_id)
        return repo.list_task_events(conn, task_id)


def get_archived_task(conn, task_id: str) -> ArchivedTask:
    _require("task_id", task_id)
    with store_errors(f"retrieve the archived task ({task_id})"):
        task = repo.get_archived_task(conn, task_id)
    if task is None:
        raise ArchivedTaskNotFoundError(task_id)
    return task


def get_task_summaries(
    conn,
    task_type: Optional[str] = None,
    status: Optional[TaskStatus] = None,
    filter: Optional[str] = None,
    sort_by: Optional[TaskSortBy] = None,
    descending: bool = True,
    page_index: Optional[int] = None,
    page_size: Optional[int] = None,
) -> TaskSummaries:
    if page_index is not None and page_index < 0:
        raise InvalidArgumentError("page_index")
    if page_size is not None and page_size <= 0:
        raise InvalidArgumentError("page_size")

    page_index = page_index or 0
    page_size = min(page_size or MAX_FILTERED_TASKS, MAX_FILTERED_TASKS)

    with store_errors("retrieve the filtered task summaries"):
        tasks, total = repo.list_tasks(
            conn,
            task_type=task_type,
            status=status,
            filter=filter,
            sort_by=sort_by or TaskSortBy.QUEUED,
            descending=descending,
            limit=page_size,
            offset=page_index * page_size,
        )
    return TaskSummaries(tasks=tasks, total=total, page_index=page_index, page_size=page_size)


def get_task_counts(conn) -> Dict[str, int]:
    with store_errors("count the tasks"):
        return repo.counts(conn)


def delete_task(conn, task_id: str):
    _require("task_id", task_id)
    with store_errors(f"delete the task ({task_id})"):
        if not repo.delete_task(conn, task_id):
            raise TaskNotFoundError(task_id)


# ---------- Caller lifecycle ----------
def _apply_to_task(conn, task_id: str, operation: str, done: str, fn, *args):
    _require("task_id", task_id)
    with store_errors(f"{operation} the task ({task_id})"):
        with transaction(conn):
            if not repo.task_exists(conn, task_id):
                raise TaskNotFoundError(task_id)
            if not fn(conn, task_id, *args):
                raise InvalidTaskStatusError(task_id, done)


def cancel_task(conn, task_id: str):
    """Cancel a queued or suspended task. Cancelling a cancelled task is a no-op."""
    _apply_to_task(conn, task_id, "cancel", "cancelled", repo.cancel_task)


def suspend_task(conn, task_id: str):
    _apply_to_task(conn, task_id, "suspend", "suspended", repo.suspend_task)


def unsuspend_task(conn, task_id: str):
    _apply_to_task(conn, task_id, "unsuspend", "unsuspended", repo.unsuspend_task, now_iso())


def _apply_to_batch(conn, batch_id: str, operation: str, fn, *args) -> int:
    _require("batch_id", batch_id)
    with store_errors(f"{operation} the batch ({batch_id})"):
        with transaction(conn):
            if repo.count_tasks_by_batch_id(conn, batch_id) == 0:
                raise BatchNotFoundError(batch_id)
            return fn(conn, batch_id, *args)


def cancel_batch(conn, batch_id: str) -> int:
    return _apply_to_batch(conn, batch_id, "cancel", repo.cancel_batch)


def suspend_batch(conn, batch_id: str) -> int:
    return _apply_to_batch(conn, batch_id, "suspend", repo.suspend_batch)


def unsuspend_batch(conn, batch_id: str) -> int:
    return _apply_to_batch(conn, batch_id, "unsuspend", repo.unsuspend_batch, now_iso())


def reset_task_locks(conn, lock_name: str, status: TaskStatus = TaskStatus.EXECUTING,
                     new_status: TaskStatus = TaskStatus.QUEUED) -> int:
    _require("lock_name", lock_name)
    with store_errors(f"reset the locks held by ({lock_name})"):
        return repo.reset_task_locks(conn, lock_name, status, new_status)


# ---------- Execution outcomes (called by the lock holder) ----------
def _record_event(conn, task_type: Optional[TaskType], task: Task, event_type: TaskEventType,
                  data: Optional[str] = None):
    if task_type is None or not task_type.is_event_type_enabled(event_type):
        return
    snapshot = data if task_type.is_event_type_enabled_with_data(event_type) else None
    repo.add_task_event(conn, task.id, event_type, step=task.step, data=snapshot)


def maximum_attempts(task_type: Optional[TaskType], cfg: Dict[str, str]) -> int:
    if task_type and task_type.maximum_execution_attempts is not None:
        return task_type.maximum_execution_attempts
    return int(cfg.get("max_attempts_default", DEFAULT_CONFIG["max_attempts_default"]))


def retry_delay(task_type: Optional[TaskType], attempts: int, cfg: Dict[str, str]) -> float:
    if task_type and task_type.retry_delay is not None:
        return task_type.retry_delay
    base = float(cfg.get("backoff_base", DEFAULT_CONFIG["backoff_base"]))
    return base ** attempts


def complete_task(conn, task: Task, result: ExecutionResult, execution_time: int) -> bool:
    """
    Apply a successful execution: advance a multi-step task when the result
    names a next step, complete it otherwise. False if the lock was lost.
    """
    lock_name = task.lock_name
    with store_errors(f"complete the task ({task.id})"):
        task_type = repo.get_task_type(conn, task.type)
        with transaction(conn):
            if result.next_step:
                next_execution = iso_from_now(result.next_step_delay or 0)
                ok = repo.advance_task_to_step(
                    conn, task.id, lock_name, result.next_step, execution_time,
                    data=result.data, next_execution=next_execution,
                )
                event_type = TaskEventType.STEP_COMPLETED
            else:
                ok = repo.complete_task(conn, task.id, lock_name, execution_time, data=result.data)
                event_type = TaskEventType.TASK_COMPLETED
            if ok:
                _record_event(conn, task_type, task, event_type, result.data or task.data)

    if not ok:
        logger.warning(f"Task {task.id} is no longer locked by {lock_name}; result discarded")
    elif result.next_step:
        logger.debug(f"Task {task.id} advanced from step {task.step} to step {result.next_step}")
    return ok


def fail_task(conn, task: Task, failure: Optional[str], execution_time: int = 0) -> bool:
    with store_errors(f"fail the task ({task.id})"):
        task_type = repo.get_task_type(conn, task.type)
        with transaction(conn):
            ok = repo.fail_task(conn, task.id, task.lock_name, failure, execution_time)
            if ok:
                _record_event(conn, task_type, task, TaskEventType.TASK_FAILED, task.data)
    return ok


def delay_task(conn, task: Task, delay_seconds: float, execution_time: int = 0) -> bool:
    with store_errors(f"delay the task ({task.id})"):
        return repo.delay_task(
            conn, task.id, task.lock_name, iso_from_now(delay_seconds), execution_time
        )


def requeue_task(conn, task: Task, cfg: Dict[str, str], failure: Optional[str] = None,
                 execution_time: int = 0) -> Optional[TaskStatus]:
    """
    Retry policy for a failed attempt: requeue with a backoff delay while the
    task is below its maximum attempts, fail it once the maximum is reached.
    Returns the status the task was moved to, or None if the lock was lost
    and nothing changed.
    """
    with store_errors(f"requeue the task ({task.id})"):
        task_type = repo.get_task_type(conn, task.type)
    limit = maximum_attempts(task_type, cfg)

    if task.execution_attempts >= limit:
        logger.warning(
            f"The task ({task.id}) has exceeded the maximum number of execution attempts "
            f"({limit}) and will be marked as failed"
        )
        if not fail_task(conn, task, failure or f"Exceeded {limit} execution attempts",
                         execution_time):
            return None
        return TaskStatus.FAILED

    delay = retry_delay(task_type, task.execution_attempts, cfg)
    if not delay_task(conn, task, delay, execution_time):
        logger.warning(f"Task {task.id} is no longer locked by {task.lock_name}; not requeued")
        return None
    logger.info(
        f"Task {task.id} failed attempt {task.execution_attempts}/{limit}, retrying in {delay}s"
    )
    return TaskStatus.QUEUED
