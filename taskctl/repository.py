from typing import Dict, Iterable, List, Optional, Tuple

from .config import ALLOWED_CONFIG_KEYS
from .db import TASK_COLUMNS, transaction
from .models import (
    ArchivedTask, Job, Task, TaskEvent, TaskEventType, TaskSortBy, TaskStatus, TaskType,
    TERMINAL_STATUSES,
)
from .utils import now_iso

QUEUED = TaskStatus.QUEUED.value
EXECUTING = TaskStatus.EXECUTING.value
COMPLETED = TaskStatus.COMPLETED.value
FAILED = TaskStatus.FAILED.value
CANCELLED = TaskStatus.CANCELLED.value
SUSPENDED = TaskStatus.SUSPENDED.value

_INSERT_TASK_SQL = "INSERT INTO tasks ({}) VALUES ({})".format(
    ", ".join(TASK_COLUMNS), ", ".join("?" for _ in TASK_COLUMNS)
)
_ARCHIVE_TASK_SQL = "INSERT OR REPLACE INTO archived_tasks ({}) VALUES ({})".format(
    ", ".join(TASK_COLUMNS), ", ".join("?" for _ in TASK_COLUMNS)
)


def _task_values(task: Task) -> tuple:
    values = []
    for col in TASK_COLUMNS:
        v = getattr(task, col)
        values.append(v.value if isinstance(v, TaskStatus) else v)
    return tuple(values)


# ---------- Config ----------
def get_config(conn) -> Dict[str, str]:
    cur = conn.execute("SELECT key, value FROM config")
    return {r["key"]: r["value"] for r in cur.fetchall()}


def set_config(conn, key: str, value: str):
    if key not in ALLOWED_CONFIG_KEYS:
        raise ValueError(f"Allowed keys: {', '.join(sorted(ALLOWED_CONFIG_KEYS))}")
    with transaction(conn):
        conn.execute(
            "INSERT INTO config(key,value) VALUES(?,?) "
            "ON CONFLICT(key) DO UPDATE SET value=excluded.value",
            (key, str(value)),
        )


# ---------- Task types ----------
def _task_type_values(tt: TaskType) -> tuple:
    return (
        tt.name, int(tt.enabled), int(tt.priority), tt.maximum_execution_attempts,
        tt.retry_delay, tt.execution_timeout, int(tt.archive_completed), int(tt.archive_failed),
        int(tt.archive_cancelled),
        ",".join(e.value for e in tt.event_types),
        ",".join(e.value for e in tt.event_types_with_data),
        tt.code,
    )


def insert_task_type(conn, task_type: TaskType):
    with transaction(conn):
        conn.execute(
            """INSERT INTO task_types
               (name, enabled, priority, maximum_execution_attempts, retry_delay,
                execution_timeout, archive_completed, archive_failed, archive_cancelled,
                event_types, event_types_with_data, code)
               VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
            _task_type_values(task_type),
        )


def update_task_type(conn, task_type: TaskType) -> bool:
    with transaction(conn):
        cur = conn.execute(
            """UPDATE task_types
               SET name=?, enabled=?, priority=?, maximum_execution_attempts=?, retry_delay=?,
                   execution_timeout=?, archive_completed=?, archive_failed=?, archive_cancelled=?,
                   event_types=?, event_types_with_data=?
               WHERE code=?""",
            _task_type_values(task_type),
        )
    return cur.rowcount == 1


def get_task_type(conn, code: str) -> Optional[TaskType]:
    row = conn.execute("SELECT * FROM task_types WHERE code=?", (code,)).fetchone()
    return TaskType.from_row(row) if row else None


def list_task_types(conn) -> List[TaskType]:
    rows = conn.execute("SELECT * FROM task_types ORDER BY code").fetchall()
    return [TaskType.from_row(r) for r in rows]


def set_task_type_enabled(conn, code: str, enabled: bool) -> bool:
    with transaction(conn):
        cur = conn.execute("UPDATE task_types SET enabled=? WHERE code=?", (int(enabled), code))
    return cur.rowcount == 1


def delete_task_type(conn, code: str) -> bool:
    with transaction(conn):
        cur = conn.execute("DELETE FROM task_types WHERE code=?", (code,))
    return cur.rowcount == 1


# ---------- Tasks: insert / read ----------
def insert_task(conn, task: Task):
    with transaction(conn):
        conn.execute(_INSERT_TASK_SQL, _task_values(task))


def get_task(conn, task_id: str) -> Optional[Task]:
    row = conn.execute("SELECT * FROM tasks WHERE id=?", (task_id,)).fetchone()
    return Task.from_row(row) if row else None


def task_exists(conn, task_id: str) -> bool:
    return conn.execute("SELECT 1 FROM tasks WHERE id=?", (task_id,)).fetchone() is not None


def get_task_status(conn, task_id: str) -> Optional[TaskStatus]:
    row = conn.execute("SELECT status FROM tasks WHERE id=?", (task_id,)).fetchone()
    return TaskStatus(row["status"]) if row else None


def find_task_by_external_reference(conn, external_reference: str) -> Optional[Task]:
    row = conn.execute(
        "SELECT * FROM tasks WHERE external_reference=?", (external_reference,)
    ).fetchone()
    return Task.from_row(row) if row else None


def count_tasks_by_batch_id(conn, batch_id: str) -> int:
    return conn.execute(
        "SELECT COUNT(1) AS c FROM tasks WHERE batch_id=?", (batch_id,)
    ).fetchone()["c"]


def count_tasks_queued_or_executing(conn, task_type: str) -> int:
    return conn.execute(
        "SELECT COUNT(1) AS c FROM tasks WHERE type=? AND status IN (?, ?)",
        (task_type, QUEUED, EXECUTING),
    ).fetchone()["c"]


# ---------- Tasks: claim ----------
def claim_tasks(conn, lock_name: str, limit: int, now: Optional[str] = None) -> List[Task]:
    """
    Lock up to `limit` eligible tasks for `lock_name`, in (priority, queued) order.

    The select and the per-row compare-and-swap updates share one write
    transaction, so two workers can never both claim the same row.
    """
    now = now or now_iso()
    claimed = []
    with transaction(conn):
        rows = conn.execute(
            """SELECT t.id FROM tasks t
               WHERE t.status=?
                 AND EXISTS (SELECT 1 FROM task_types tt WHERE tt.code=t.type AND tt.enabled=1)
                 AND (t.next_execution IS NULL OR t.next_execution <= ?)
               ORDER BY t.priority ASC, t.queued ASC
               LIMIT ?""",
            (QUEUED, now, limit),
        ).fetchall()
        for row in rows:
            updated = conn.execute(
                """UPDATE tasks
                   SET status=?, locked=?, lock_name=?, execution_attempts=execution_attempts+1
                   WHERE id=? AND status=?""",
                (EXECUTING, now, lock_name, row["id"], QUEUED),
            )
            if updated.rowcount == 1:
                claimed.append(row["id"])
        tasks = [get_task(conn, task_id) for task_id in claimed]
    return [t for t in tasks if t is not None]


# ---------- Tasks: lifecycle (lock holder) ----------
def complete_task(conn, task_id: str, lock_name: str, execution_time: int,
                  data: Optional[str] = None, now: Optional[str] = None) -> bool:
    with transaction(conn):
        cur = conn.execute(
            """UPDATE tasks
               SET status=?, executed=?, data=COALESCE(?, data), next_execution=NULL,
                   execution_time=execution_time+?, locked=NULL, lock_name=NULL
               WHERE id=? AND status=? AND lock_name=?""",
            (COMPLETED, now or now_iso(), data, int(execution_time), task_id, EXECUTING, lock_name),
        )
    return cur.rowcount == 1


def fail_task(conn, task_id: str, lock_name: str, failure: Optional[str],
              execution_time: int = 0, now: Optional[str] = None) -> bool:
    with transaction(conn):
        cur = conn.execute(
            """UPDATE tasks
               SET status=?, executed=?, failure=?, next_execution=NULL,
                   execution_time=execution_time+?, locked=NULL, lock_name=NULL
               WHERE id=? AND status=? AND lock_name=?""",
            (FAILED, now or now_iso(), (failure or "")[:4000], int(execution_time),
             task_id, EXECUTING, lock_name),
        )
    return cur.rowcount == 1


def delay_task(conn, task_id: str, lock_name: str, next_execution: str,
               execution_time: int = 0) -> bool:
    with transaction(conn):
        cur = conn.execute(
            """UPDATE tasks
               SET status=?, next_execution=?, execution_time=execution_time+?,
                   locked=NULL, lock_name=NULL
               WHERE id=? AND status=? AND lock_name=?""",
            (QUEUED, next_execution, int(execution_time), task_id, EXECUTING, lock_name),
        )
    return cur.rowcount == 1


def advance_task_to_step(conn, task_id: str, lock_name: str, step: str, execution_time: int,
                         data: Optional[str] = None, next_execution: Optional[str] = None) -> bool:
    with transaction(conn):
        cur = conn.execute(
            """UPDATE tasks
               SET status=?, step=?, data=COALESCE(?, data), execution_attempts=0,
                   next_execution=?, execution_time=execution_time+?,
                   locked=NULL, lock_name=NULL
               WHERE id=? AND status=? AND lock_name=?""",
            (QUEUED, step, data, next_execution or now_iso(), int(execution_time),
             task_id, EXECUTING, lock_name),
        )
    return cur.rowcount == 1


# ---------- Tasks: lifecycle (callers) ----------
def cancel_task(conn, task_id: str) -> bool:
    with transaction(conn):
        cur = conn.execute(
            """UPDATE tasks
               SET status=?, next_execution=NULL, locked=NULL, lock_name=NULL
               WHERE id=? AND status IN (?, ?, ?)""",
            (CANCELLED, task_id, QUEUED, SUSPENDED, CANCELLED),
        )
    return cur.rowcount == 1


def suspend_task(conn, task_id: str) -> bool:
    with transaction(conn):
        cur = conn.execute(
            """UPDATE tasks
               SET status=?, next_execution=NULL, locked=NULL, lock_name=NULL
               WHERE id=? AND status IN (?, ?)""",
            (SUSPENDED, task_id, QUEUED, SUSPENDED),
        )
    return cur.rowcount == 1


def unsuspend_task(conn, task_id: str, now: Optional[str] = None) -> bool:
    with transaction(conn):
        cur = conn.execute(
            """UPDATE tasks
               SET status=?, next_execution=?, locked=NULL, lock_name=NULL
               WHERE id=? AND status=?""",
            (QUEUED, now or now_iso(), task_id, SUSPENDED),
        )
    return cur.rowcount == 1


def cancel_batch(conn, batch_id: str) -> int:
    with transaction(conn):
        cur = conn.execute(
            """UPDATE tasks
               SET status=?, next_execution=NULL, locked=NULL, lock_name=NULL
               WHERE batch_id=? AND status IN (?, ?, ?)""",
            (CANCELLED, batch_id, QUEUED, SUSPENDED, CANCELLED),
        )
    return cur.rowcount


def suspend_batch(conn, batch_id: str) -> int:
    with transaction(conn):
        cur = conn.execute(
            """UPDATE tasks
               SET status=?, next_execution=NULL, locked=NULL, lock_name=NULL
               WHERE batch_id=? AND status IN (?, ?)""",
            (SUSPENDED, batch_id, QUEUED, SUSPENDED),
        )
    return cur.rowcount


def unsuspend_batch(conn, batch_id: str, now: Optional[str] = None) -> int:
    with transaction(conn):
        cur = conn.execute(
            """UPDATE tasks
               SET status=?, next_execution=?, locked=NULL, lock_name=NULL
               WHERE batch_id=? AND status=?""",
            (QUEUED, now or now_iso(), batch_id, SUSPENDED),
        )
    return cur.rowcount


# ---------- Tasks: recovery ----------
def reset_hung_tasks(conn, locked_before: str, task_type: Optional[str] = None,
                     exclude_types: Iterable[str] = ()) -> int:
    """Return tasks locked at or before `locked_before` to the queue. Attempts are kept."""
    sql = """UPDATE tasks SET status=?, locked=NULL, lock_name=NULL
             WHERE status=? AND locked <= ?"""
    params = [QUEUED, EXECUTING, locked_before]
    if task_type is not None:
        sql += " AND type=?"
        params.append(task_type)
    exclude_types = list(exclude_types)
    if exclude_types:
        sql += " AND type NOT IN ({})".format(", ".join("?" for _ in exclude_types))
        params.extend(exclude_types)
    with transaction(conn):
        cur = conn.execute(sql, params)
    return cur.rowcount


def renew_task_lock(conn, task_id: str, lock_name: str, now: Optional[str] = None) -> bool:
    """Restart the lease of a task this worker still holds. False once the lock is gone."""
    with transaction(conn):
        cur = conn.execute(
            "UPDATE tasks SET locked=? WHERE id=? AND status=? AND lock_name=?",
            (now or now_iso(), task_id, EXECUTING, lock_name),
        )
    return cur.rowcount == 1


def reset_task_locks(conn, lock_name: str, status: TaskStatus = TaskStatus.EXECUTING,
                     new_status: TaskStatus = TaskStatus.QUEUED) -> int:
    with transaction(conn):
        cur = conn.execute(
            """UPDATE tasks SET status=?, locked=NULL, lock_name=NULL
               WHERE lock_name=? AND status=?""",
            (new_status.value, lock_name, status.value),
        )
    return cur.rowcount


def delete_task(conn, task_id: str) -> bool:
    with transaction(conn):
        cur = conn.execute("DELETE FROM tasks WHERE id=?", (task_id,))
    return cur.rowcount == 1


# ---------- Queries ----------
def list_tasks(
    conn,
    *,
    task_type: Optional[str] = None,
    status: Optional[TaskStatus] = None,
    filter: Optional[str] = None,
    sort_by: TaskSortBy = TaskSortBy.QUEUED,
    descending: bool = True,
    limit: int = 100,
    offset: int = 0,
) -> Tuple[List[Task], int]:
    where, params = [], []
    if task_type:
        where.append("type=?")
        params.append(task_type)
    if status:
        where.append("status=?")
        params.append(TaskStatus(status).value)
    if filter:
        where.append("(LOWER(batch_id) LIKE ? OR LOWER(external_reference) LIKE ?)")
        like = f"%{filter.lower()}%"
        params.extend([like, like])
    clause = f" WHERE {' AND '.join(where)}" if where else ""

    total = conn.execute(f"SELECT COUNT(1) AS c FROM tasks{clause}", params).fetchone()["c"]
    column = "type" if TaskSortBy(sort_by) == TaskSortBy.TYPE else "queued"
    direction = "DESC" if descending else "ASC"
    rows = conn.execute(
        f"SELECT * FROM tasks{clause} ORDER BY {column} {direction}, id LIMIT ? OFFSET ?",
        params + [limit, offset],
    ).fetchall()
    return [Task.from_row(r) for r in rows], total


def counts(conn) -> Dict[str, int]:
    out = {s.value: 0 for s in TaskStatus}
    for r in conn.execute("SELECT status, COUNT(1) AS c FROM tasks GROUP BY status"):
        out[r["status"]] = r["c"]
    return out


# ---------- Archive ----------
def find_tasks_to_archive(conn, executed_before: str, limit: int) -> List[Task]:
    # Cancelled tasks never executed; they age from when they were queued.
    rows = conn.execute(
        """SELECT * FROM tasks
           WHERE COALESCE(executed, queued) <= ? AND status IN (?, ?, ?)
           ORDER BY queued ASC
           LIMIT ?""",
        (executed_before, *(s.value for s in TERMINAL_STATUSES), limit),
    ).fetchall()
    return [Task.from_row(r) for r in rows]


def archive_task(conn, task: Task):
    """Write the archive copy. Repeating it for the same task is harmless."""
    with transaction(conn):
        conn.execute(_ARCHIVE_TASK_SQL, _task_values(task))


def get_archived_task(conn, task_id: str) -> Optional[ArchivedTask]:
    row = conn.execute("SELECT * FROM archived_tasks WHERE id=?", (task_id,)).fetchone()
    return ArchivedTask.from_row(row) if row else None


# ---------- Events ----------
def add_task_event(conn, task_id: str, event_type: TaskEventType, step: Optional[str] = None,
                   data: Optional[str] = None, now: Optional[str] = None):
    with transaction(conn):
        conn.execute(
            "INSERT INTO task_events (task_id, type, timestamp, step, data) VALUES (?, ?, ?, ?, ?)",
            (task_id, event_type.value, now or now_iso(), step, data),
        )


def list_task_events(conn, task_id: str) -> List[TaskEvent]:
    rows = conn.execute(
        "SELECT * FROM task_events WHERE task_id=? ORDER BY timestamp ASC, id ASC", (task_id,)
    ).fetchall()
    return [TaskEvent.from_row(r) for r in rows]


# ---------- Jobs ----------
def insert_job(conn, job: Job):
    with transaction(conn):
        conn.execute(
            """INSERT INTO jobs
               (id, name, scheduling_pattern, task_type, data, enabled, next_execution, last_executed)
               VALUES (?, ?, ?, ?, ?, ?, ?, ?)""",
            (job.id, job.name, job.scheduling_pattern, job.task_type, job.data,
             int(job.enabled), job.next_execution, job.last_executed),
        )


def get_job(conn, job_id: str) -> Optional[Job]:
    row = conn.execute("SELECT * FROM jobs WHERE id=?", (job_id,)).fetchone()
    return Job.from_row(row) if row else None


def list_jobs(conn, filter: Optional[str] = None) -> Iterable[Job]:
    if filter:
        rows = conn.execute(
            "SELECT * FROM jobs WHERE LOWER(name) LIKE ? ORDER BY name ASC",
            (f"%{filter.lower()}%",),
        ).fetchall()
    else:
        rows = conn.execute("SELECT * FROM jobs ORDER BY name ASC").fetchall()
    return [Job.from_row(r) for r in rows]


def delete_job(conn, job_id: str) -> bool:
    with transaction(conn):
        cur = conn.execute("DELETE FROM jobs WHERE id=?", (job_id,))
    return cur.rowcount == 1


def set_job_enabled(conn, job_id: str, enabled: bool) -> bool:
    with transaction(conn):
        cur = conn.execute("UPDATE jobs SET enabled=? WHERE id=?", (int(enabled), job_id))
    return cur.rowcount == 1


def find_unscheduled_jobs(conn) -> List[Job]:
    rows = conn.execute(
        "SELECT * FROM jobs WHERE enabled=1 AND next_execution IS NULL ORDER BY name"
    ).fetchall()
    return [Job.from_row(r) for r in rows]


def find_due_jobs(conn, now: str) -> List[Job]:
    rows = conn.execute(
        "SELECT * FROM jobs WHERE enabled=1 AND next_execution <= ? ORDER BY next_execution",
        (now,),
    ).fetchall()
    return [Job.from_row(r) for r in rows]


def schedule_job(conn, job_id: str, next_execution: str,
                 expected: Optional[str] = None, executed: Optional[str] = None) -> bool:
    """
    Set the next execution of a job. When `expected` is given the update only
    applies while the stored value still equals it, which is how a scheduler
    claims a due firing.
    """
    sql = "UPDATE jobs SET next_execution=?, last_executed=COALESCE(?, last_executed) WHERE id=?"
    params = [next_execution, executed, job_id]
    if expected is not None:
        sql += " AND next_execution=?"
        params.append(expected)
    with transaction(conn):
        cur = conn.execute(sql, params)
    return cur.rowcount == 1
