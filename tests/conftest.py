import pytest

from taskctl import service
from taskctl.db import connect_db, init_db
from taskctl.handlers import HANDLER_REGISTRY
from taskctl.models import TaskType


@pytest.fixture
def db_path(tmp_path):
    path = str(tmp_path / "taskctl-test.db")
    init_db(path)
    return path


@pytest.fixture
def conn(db_path):
    c = connect_db(db_path)
    yield c
    c.close()


@pytest.fixture(autouse=True)
def _restore_handlers():
    saved = dict(HANDLER_REGISTRY)
    yield
    HANDLER_REGISTRY.clear()
    HANDLER_REGISTRY.update(saved)


@pytest.fixture
def make_type(conn):
    """Create a task type; keyword arguments override TaskType fields."""
    def _make(code="demo", **kw):
        kw.setdefault("name", code.capitalize())
        task_type = TaskType(code=code, **kw)
        service.create_task_type(conn, task_type)
        return task_type
    return _make
