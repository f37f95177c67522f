import sqlite3

import pytest

from taskctl import repository as repo
from taskctl import service
from taskctl.errors import (
    ArchivedTaskNotFoundError, DuplicateTaskTypeError, InvalidArgumentError,
    StoreUnavailableError, TaskTypeInUseError, TaskTypeNotFoundError,
)
from taskctl.handlers import TaskHandler, register_handler
from taskctl.models import ExecutionResult, TaskEventType, TaskSortBy, TaskStatus, TaskType


# ---------- Task types ----------
def test_task_type_crud(conn, make_type):
    make_type("report", priority=1, maximum_execution_attempts=5)
    with pytest.raises(DuplicateTaskTypeError):
        make_type("report")

    tt = service.get_task_type(conn, "report")
    assert tt.name == "Report"
    assert tt.priority == 1
    assert tt.archive_completed and tt.archive_failed and tt.archive_cancelled

    tt.execution_timeout = 30
    tt.event_types = [TaskEventType.TASK_COMPLETED]
    service.update_task_type(conn, tt)
    assert service.get_task_type(conn, "report") == tt
    assert [t.code for t in service.get_task_types(conn)] == ["report"]

    service.delete_task_type(conn, "report")
    with pytest.raises(TaskTypeNotFoundError):
        service.get_task_type(conn, "report")
    with pytest.raises(TaskTypeNotFoundError):
        service.update_task_type(conn, TaskType(code="report", name="Report"))


def test_task_type_in_use_cannot_be_deleted(conn, make_type):
    make_type()
    task_id = service.submit_task(conn, "demo", "{}")
    assert service.is_task_type_queued_or_executing(conn, "demo")
    with pytest.raises(TaskTypeInUseError):
        service.delete_task_type(conn, "demo")

    service.cancel_task(conn, task_id)
    assert not service.is_task_type_queued_or_executing(conn, "demo")
    service.delete_task_type(conn, "demo")


def test_task_type_priority_is_the_default(conn, make_type):
    make_type(priority=4)
    assert service.get_task(conn, service.submit_task(conn, "demo", "{}")).priority == 4
    assert service.get_task(conn, service.submit_task(conn, "demo", "{}", priority=1)).priority == 1


def test_handler_initial_step(conn, make_type):
    make_type("flow")

    @register_handler("flow")
    class FlowHandler(TaskHandler):
        initial_step = "prepare"

    task_id = service.submit_task(conn, "flow", "{}")
    assert service.get_task(conn, task_id).step == "prepare"


# ---------- Summaries ----------
def test_task_summaries_filter_and_page(conn, make_type):
    make_type("alpha")
    make_type("beta")
    for i in range(5):
        service.submit_task(conn, "alpha", "{}", batch_id=f"Batch-{i}")
    service.submit_task(conn, "beta", "{}", external_reference="ORDER-42")

    assert service.get_task_summaries(conn).total == 6
    assert service.get_task_summaries(conn, task_type="beta").total == 1
    assert service.get_task_summaries(conn, filter="order").tasks[0].external_reference == "ORDER-42"
    assert service.get_task_summaries(conn, filter="batch-").total == 5

    page = service.get_task_summaries(conn, page_index=1, page_size=4)
    assert page.total == 6
    assert len(page.tasks) == 2
    assert page.page_size == 4

    by_type = service.get_task_summaries(conn, sort_by=TaskSortBy.TYPE, descending=False)
    assert [t.type for t in by_type.tasks] == ["alpha"] * 5 + ["beta"]

    assert service.get_task_summaries(conn, status=TaskStatus.CANCELLED).total == 0


def test_task_summaries_page_size_is_capped(conn, make_type):
    make_type()
    assert service.get_task_summaries(conn, page_size=1000).page_size == 100
    with pytest.raises(InvalidArgumentError):
        service.get_task_summaries(conn, page_index=-1)
    with pytest.raises(InvalidArgumentError):
        service.get_task_summaries(conn, page_size=0)


def test_task_counts(conn, make_type):
    make_type()
    service.submit_task(conn, "demo", "{}")
    service.cancel_task(conn, service.submit_task(conn, "demo", "{}"))
    counts = service.get_task_counts(conn)
    assert counts["queued"] == 1
    assert counts["cancelled"] == 1
    assert counts["failed"] == 0


# ---------- Events ----------
def test_events_are_recorded_when_enabled(conn, make_type):
    make_type(
        event_types=[TaskEventType.STEP_COMPLETED],
        event_types_with_data=[TaskEventType.TASK_COMPLETED],
    )
    task_id = service.submit_task(conn, "demo", '{"v": 0}', step="one")
    task = repo.claim_tasks(conn, "w1", 1)[0]
    service.complete_task(conn, task, ExecutionResult(data='{"v": 1}', next_step="two"), 1)
    task = repo.claim_tasks(conn, "w1", 1)[0]
    service.complete_task(conn, task, ExecutionResult(data='{"v": 2}'), 1)

    events = service.get_task_events(conn, task_id)
    assert [e.type for e in events] == [TaskEventType.STEP_COMPLETED, TaskEventType.TASK_COMPLETED]
    assert [e.step for e in events] == ["one", "two"]
    assert events[0].data is None
    assert events[1].data == '{"v": 2}'
    assert events[0].timestamp <= events[1].timestamp


def test_no_events_by_default(conn, make_type):
    make_type()
    task_id = service.submit_task(conn, "demo", "{}")
    task = repo.claim_tasks(conn, "w1", 1)[0]
    service.fail_task(conn, task, "boom")
    assert service.get_task_events(conn, task_id) == []


def test_archived_task_not_found(conn):
    with pytest.raises(ArchivedTaskNotFoundError):
        service.get_archived_task(conn, "missing")


# ---------- Store errors ----------
def test_store_errors_are_wrapped(conn, make_type):
    make_type()
    conn.execute("DROP TABLE tasks")
    with pytest.raises(StoreUnavailableError) as e:
        service.get_task(conn, "anything")
    assert isinstance(e.value.__cause__, sqlite3.Error)
