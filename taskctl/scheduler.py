"""
Recurring jobs: each job submits a task of its type whenever its scheduling
pattern fires.

A job is scheduled by storing the next time its pattern matches. When that
time has passed, the scheduler claims the firing with a compare-and-swap on
`next_execution`, so a firing is enqueued once even with several schedulers
running against the same database.
"""
import json
import logging
import uuid
from datetime import datetime, timezone
from typing import Any, List, Optional

from . import repository as repo
from . import service
from .errors import (
    DuplicateJobError, InvalidArgumentError, InvalidSchedulingPatternError, JobNotFoundError,
)
from .models import Job
from .pattern import Predictor, SchedulingPattern
from .service import store_errors
from .utils import from_iso, now_iso, to_iso

logger = logging.getLogger(__name__)


def next_execution(pattern: str, after: Optional[str] = None) -> str:
    start = from_iso(after) if after else datetime.now(timezone.utc)
    return to_iso(Predictor(pattern, start).next_matching_time())


def create_job(conn, name: str, scheduling_pattern: str, task_type: str, data: Any = None,
               job_id: Optional[str] = None, enabled: bool = True) -> Job:
    if not name or not name.strip():
        raise InvalidArgumentError("name")
    SchedulingPattern(scheduling_pattern)
    if data is not None and not isinstance(data, str):
        data = json.dumps(data)

    job = Job(
        id=job_id or str(uuid.uuid4()),
        name=name,
        scheduling_pattern=scheduling_pattern,
        task_type=task_type,
        data=data,
        enabled=enabled,
    )
    with store_errors(f"create the job ({job.name})"):
        if repo.get_task_type(conn, task_type) is None:
            raise InvalidArgumentError("task_type", f"unknown task type ({task_type})")
        if repo.get_job(conn, job.id):
            raise DuplicateJobError(job.id)
        repo.insert_job(conn, job)
    return job


def get_job(conn, job_id: str) -> Job:
    with store_errors(f"retrieve the job ({job_id})"):
        job = repo.get_job(conn, job_id)
    if job is None:
        raise JobNotFoundError(job_id)
    return job


def get_jobs(conn, filter: Optional[str] = None) -> List[Job]:
    with store_errors("retrieve the jobs"):
        return repo.list_jobs(conn, filter)


def delete_job(conn, job_id: str):
    with store_errors(f"delete the job ({job_id})"):
        if not repo.delete_job(conn, job_id):
            raise JobNotFoundError(job_id)


def set_job_enabled(conn, job_id: str, enabled: bool):
    with store_errors(f"update the job ({job_id})"):
        if not repo.set_job_enabled(conn, job_id, enabled):
            raise JobNotFoundError(job_id)
        if enabled:
            # Rescheduled from the time it is enabled, not from a stale firing.
            repo.schedule_job(conn, job_id, None)


def _disable_invalid(conn, job: Job, error: Exception):
    logger.error(f"Disabling the job {job.name} ({job.id}): {error}")
    repo.set_job_enabled(conn, job.id, False)


def schedule_unscheduled_jobs(conn, now: Optional[str] = None) -> int:
    """Store the next firing time of every enabled job that has none. Returns the count."""
    now = now or now_iso()
    scheduled = 0
    with store_errors("schedule the unscheduled jobs"):
        for job in repo.find_unscheduled_jobs(conn):
            try:
                when = next_execution(job.scheduling_pattern, now)
            except (InvalidSchedulingPatternError, ValueError) as e:
                _disable_invalid(conn, job, e)
                continue
            if repo.schedule_job(conn, job.id, when):
                logger.debug(f"Scheduled the job {job.name} ({job.id}) for {when}")
                scheduled += 1
    return scheduled


def enqueue_due_jobs(conn, now: Optional[str] = None) -> List[str]:
    """
    Submit a task for every enabled job whose next firing is at or before
    `now`, and move the job on to its following firing. Returns the ids of
    the submitted tasks.
    """
    now = now or now_iso()
    task_ids = []
    with store_errors("enqueue the due jobs"):
        for job in repo.find_due_jobs(conn, now):
            try:
                following = next_execution(job.scheduling_pattern, now)
            except (InvalidSchedulingPatternError, ValueError) as e:
                _disable_invalid(conn, job, e)
                continue

            if not repo.schedule_job(conn, job.id, following, expected=job.next_execution,
                                     executed=now):
                # Another scheduler took this firing.
                continue

            try:
                task_id = service.submit_task(conn, job.task_type, job.data or "{}")
            except InvalidArgumentError as e:
                _disable_invalid(conn, job, e)
                continue
            logger.info(f"Job {job.name} ({job.id}) queued task {task_id}; next run at {following}")
            task_ids.append(task_id)
    return task_ids
