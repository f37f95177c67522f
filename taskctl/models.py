from dataclasses import dataclass, field, fields
from enum import Enum, IntEnum
from typing import List, Optional


class TaskStatus(str, Enum):
    QUEUED = "queued"
    EXECUTING = "executing"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"
    SUSPENDED = "suspended"


TERMINAL_STATUSES = (TaskStatus.COMPLETED, TaskStatus.FAILED, TaskStatus.CANCELLED)


class TaskPriority(IntEnum):
    """Lower number = claimed first."""
    CRITICAL = 1
    HIGH = 2
    NORMAL = 3
    LOW = 4


class TaskEventType(str, Enum):
    STEP_COMPLETED = "step_completed"
    TASK_COMPLETED = "task_completed"
    TASK_FAILED = "task_failed"


class TaskSortBy(str, Enum):
    QUEUED = "queued"
    TYPE = "type"


def _event_types(value: Optional[str]) -> List[TaskEventType]:
    if not value:
        return []
    return [TaskEventType(v.strip()) for v in value.split(",") if v.strip()]


def _row_kwargs(cls, row) -> dict:
    keys = row.keys()
    return {f.name: row[f.name] for f in fields(cls) if f.name in keys}


@dataclass
class Task:
    id: str
    type: str
    status: TaskStatus = TaskStatus.QUEUED
    priority: int = TaskPriority.NORMAL
    step: Optional[str] = None
    data: Optional[str] = None
    batch_id: Optional[str] = None
    external_reference: Optional[str] = None
    queued: str = ""
    executed: Optional[str] = None
    next_execution: Optional[str] = None
    execution_attempts: int = 0
    execution_time: int = 0
    locked: Optional[str] = None
    lock_name: Optional[str] = None
    failure: Optional[str] = None

    @classmethod
    def from_row(cls, row) -> "Task":
        kwargs = _row_kwargs(cls, row)
        kwargs["status"] = TaskStatus(kwargs["status"])
        return cls(**kwargs)


@dataclass
class ArchivedTask(Task):
    """Write-once copy of a terminal task."""


@dataclass
class TaskEvent:
    task_id: str
    type: TaskEventType
    timestamp: str
    step: Optional[str] = None
    data: Optional[str] = None

    @classmethod
    def from_row(cls, row) -> "TaskEvent":
        kwargs = _row_kwargs(cls, row)
        kwargs["type"] = TaskEventType(kwargs["type"])
        return cls(**kwargs)


@dataclass
class TaskType:
    code: str
    name: str
    enabled: bool = True
    priority: int = TaskPriority.NORMAL
    maximum_execution_attempts: Optional[int] = None
    retry_delay: Optional[int] = None          # seconds
    execution_timeout: Optional[int] = None    # seconds
    archive_completed: bool = True
    archive_failed: bool = True
    archive_cancelled: bool = True
    event_types: List[TaskEventType] = field(default_factory=list)
    event_types_with_data: List[TaskEventType] = field(default_factory=list)

    def is_event_type_enabled(self, event_type: TaskEventType) -> bool:
        return event_type in self.event_types or event_type in self.event_types_with_data

    def is_event_type_enabled_with_data(self, event_type: TaskEventType) -> bool:
        return event_type in self.event_types_with_data

    @classmethod
    def from_row(cls, row) -> "TaskType":
        kwargs = _row_kwargs(cls, row)
        for flag in ("enabled", "archive_completed", "archive_failed", "archive_cancelled"):
            kwargs[flag] = bool(kwargs[flag])
        kwargs["event_types"] = _event_types(kwargs["event_types"])
        kwargs["event_types_with_data"] = _event_types(kwargs["event_types_with_data"])
        return cls(**kwargs)


@dataclass
class ExecutionResult:
    """What a handler returns on success."""
    data: Optional[str] = None
    next_step: Optional[str] = None
    next_step_delay: Optional[float] = None   # seconds


@dataclass
class TaskSummaries:
    tasks: List[Task]
    total: int
    page_index: int
    page_size: int


@dataclass
class Job:
    id: str
    name: str
    scheduling_pattern: str
    task_type: str
    data: Optional[str] = None
    enabled: bool = True
    next_execution: Optional[str] = None
    last_executed: Optional[str] = None

    @classmethod
    def from_row(cls, row) -> "Job":
        kwargs = _row_kwargs(cls, row)
        kwargs["enabled"] = bool(kwargs["enabled"])
        return cls(**kwargs)
