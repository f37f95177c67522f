import json
import os
import socket
import threading

from taskctl import repository as repo
from taskctl import service, worker
from taskctl.errors import (
    StoreUnavailableError, TaskDelayedError, TaskFailedError, TaskRetryableError,
)
from taskctl.handlers import TaskHandler, register_handler
from taskctl.models import ExecutionResult, TaskEventType, TaskStatus
from taskctl.utils import default_worker_name, iso_from_now


def run_once(conn, lock_name="w1"):
    return worker.process_batch(conn, lock_name, repo.get_config(conn))


def test_successful_task_completes(conn, make_type):
    make_type()

    @register_handler("demo")
    class DemoHandler(TaskHandler):
        def execute(self, task):
            n = json.loads(task.data)["n"]
            return ExecutionResult(data=json.dumps({"n": n, "square": n * n}))

    task_id = service.submit_task(conn, "demo", {"n": 4})
    assert run_once(conn) == 1
    task = service.get_task(conn, task_id)
    assert task.status == TaskStatus.COMPLETED
    assert json.loads(task.data) == {"n": 4, "square": 16}
    assert task.execution_time >= 0
    assert run_once(conn) == 0


def test_retry_boundary(conn, make_type):
    make_type(maximum_execution_attempts=3, retry_delay=0)
    calls = []

    @register_handler("demo")
    class Flaky(TaskHandler):
        def execute(self, task):
            calls.append(task.execution_attempts)
            raise RuntimeError("still broken")

    task_id = service.submit_task(conn, "demo", "{}")

    assert run_once(conn) == 1
    assert service.get_task_status(conn, task_id) == TaskStatus.QUEUED
    assert run_once(conn) == 1
    assert service.get_task_status(conn, task_id) == TaskStatus.QUEUED
    assert run_once(conn) == 1

    task = service.get_task(conn, task_id)
    assert task.status == TaskStatus.FAILED
    assert "still broken" in task.failure
    assert task.execution_attempts == 3
    assert run_once(conn) == 0
    assert calls == [1, 2, 3]


def test_retryable_error_uses_backoff(conn, make_type):
    make_type()

    @register_handler("demo")
    class Busy(TaskHandler):
        def execute(self, task):
            raise TaskRetryableError("busy")

    task_id = service.submit_task(conn, "demo", "{}")
    run_once(conn)
    task = service.get_task(conn, task_id)
    assert task.status == TaskStatus.QUEUED
    assert task.next_execution is not None
    # backoff_base ** 1 seconds in the future, so not claimable straight away.
    assert run_once(conn) == 0


def test_terminal_failure_is_not_retried(conn, make_type):
    make_type(maximum_execution_attempts=5, event_types=[TaskEventType.TASK_FAILED])

    @register_handler("demo")
    class Broken(TaskHandler):
        def execute(self, task):
            raise TaskFailedError("bad input")

    task_id = service.submit_task(conn, "demo", "{}")
    run_once(conn)
    task = service.get_task(conn, task_id)
    assert task.status == TaskStatus.FAILED
    assert task.failure == "bad input"
    assert task.execution_attempts == 1
    assert [e.type for e in service.get_task_events(conn, task_id)] == [TaskEventType.TASK_FAILED]


def test_delayed_task(conn, make_type):
    make_type()

    @register_handler("demo")
    class Later(TaskHandler):
        def execute(self, task):
            raise TaskDelayedError(3600)

    task_id = service.submit_task(conn, "demo", "{}")
    run_once(conn)
    task = service.get_task(conn, task_id)
    assert task.status == TaskStatus.QUEUED
    assert task.lock_name is None
    assert run_once(conn) == 0


def test_multi_step_task(conn, make_type):
    make_type("flow", event_types=[TaskEventType.STEP_COMPLETED, TaskEventType.TASK_COMPLETED])

    @register_handler("flow")
    class Flow(TaskHandler):
        initial_step = "fetch"

        def execute(self, task):
            if task.step == "fetch":
                return ExecutionResult(data='{"fetched": true}', next_step="store")
            return ExecutionResult()

    task_id = service.submit_task(conn, "flow", "{}")
    run_once(conn)
    task = service.get_task(conn, task_id)
    assert (task.status, task.step, task.execution_attempts) == (TaskStatus.QUEUED, "store", 0)
    assert task.data == '{"fetched": true}'

    run_once(conn)
    task = service.get_task(conn, task_id)
    assert task.status == TaskStatus.COMPLETED
    assert task.execution_attempts == 1
    assert [(e.type, e.step) for e in service.get_task_events(conn, task_id)] == [
        (TaskEventType.STEP_COMPLETED, "fetch"),
        (TaskEventType.TASK_COMPLETED, "store"),
    ]


def test_missing_handler_fails_task(conn, make_type):
    make_type("orphan")
    task_id = service.submit_task(conn, "orphan", "{}")
    run_once(conn)
    task = service.get_task(conn, task_id)
    assert task.status == TaskStatus.FAILED
    assert "orphan" in task.failure


def test_store_error_leaves_task_for_reaper(conn, make_type, monkeypatch):
    make_type()

    @register_handler("demo")
    class Ok(TaskHandler):
        def execute(self, task):
            return ExecutionResult()

    def unavailable(*args, **kwargs):
        raise StoreUnavailableError("database is locked")

    monkeypatch.setattr(service, "complete_task", unavailable)
    task_id = service.submit_task(conn, "demo", "{}")
    task = repo.claim_tasks(conn, "w1", 1)[0]
    assert worker.execute_task(conn, task, repo.get_config(conn)) is None
    assert service.get_task_status(conn, task_id) == TaskStatus.EXECUTING


def test_task_reclaimed_while_waiting_in_a_batch_is_not_run_twice(conn, make_type):
    make_type()
    ids = {service.submit_task(conn, "demo", "{}") for _ in range(2)}
    runs = []

    @register_handler("demo")
    class Slow(TaskHandler):
        def execute(self, task):
            runs.append(task.id)
            # The first task outlives every lease: the reaper frees the whole
            # batch and another worker picks it up.
            repo.reset_hung_tasks(conn, iso_from_now(10))
            repo.claim_tasks(conn, "w2", 10)
            return ExecutionResult()

    assert run_once(conn, "w1") == 2
    assert len(runs) == 1
    for task_id in ids:
        task = service.get_task(conn, task_id)
        assert (task.status, task.lock_name) == (TaskStatus.EXECUTING, "w2")


def test_lease_restarts_when_a_batched_task_starts(conn, make_type):
    make_type()
    service.submit_task(conn, "demo", "{}")
    task = repo.claim_tasks(conn, "w1", 1, now="2024-01-01T00:00:00.000000Z")[0]
    assert repo.renew_task_lock(conn, task.id, "w1")
    assert service.get_task(conn, task.id).locked > "2024-01-01T00:00:00.000000Z"
    assert not repo.renew_task_lock(conn, task.id, "w2")


# ---------- Shell handler ----------
def test_shell_handler(conn, make_type):
    make_type("shell", maximum_execution_attempts=1)
    ok = service.submit_task(conn, "shell", {"command": "true"})
    missing = service.submit_task(conn, "shell", {"command": "no-such-command-taskctl"})
    bad = service.submit_task(conn, "shell", "not json")
    run_once(conn)

    assert service.get_task_status(conn, ok) == TaskStatus.COMPLETED
    assert service.get_task(conn, missing).failure == "exit_code=127"
    assert service.get_task_status(conn, bad) == TaskStatus.FAILED


def test_shell_handler_nonzero_exit_is_retried(conn, make_type):
    make_type("shell", maximum_execution_attempts=2, retry_delay=3600)
    task_id = service.submit_task(conn, "shell", {"command": "false"})
    run_once(conn)
    task = service.get_task(conn, task_id)
    assert task.status == TaskStatus.QUEUED
    assert task.execution_attempts == 1


# ---------- Loops ----------
def test_worker_loop_releases_its_old_locks(db_path, conn, make_type):
    make_type()
    task_id = service.submit_task(conn, "demo", "{}")
    repo.claim_tasks(conn, "node-a-worker-1", 1)

    stop = threading.Event()
    stop.set()
    worker.worker_loop("node-a-worker-1", db_path, stop, release_locks=True)

    task = service.get_task(conn, task_id)
    assert task.status == TaskStatus.QUEUED
    assert task.lock_name is None


def test_worker_loop_keeps_locks_it_was_not_told_to_release(db_path, conn, make_type):
    make_type()
    task_id = service.submit_task(conn, "demo", "{}")
    repo.claim_tasks(conn, "node-a-worker-1", 1)

    stop = threading.Event()
    stop.set()
    worker.worker_loop("node-a-worker-1", db_path, stop)

    task = service.get_task(conn, task_id)
    assert (task.status, task.lock_name) == (TaskStatus.EXECUTING, "node-a-worker-1")


def test_worker_names():
    assert default_worker_name(2, "node-a") == "node-a-worker-2"
    # Without a prefix two processes on one host never share a name.
    assert default_worker_name(1) == f"{socket.gethostname()}-{os.getpid()}-worker-1"


def test_run_maintenance_runs_every_step(conn):
    results = worker.run_maintenance(conn)
    assert results == {"reaped": 0, "archived": {"archived": 0, "deleted": 0},
                       "scheduled": 0, "enqueued": []}
