class TaskCtlError(Exception):
    """Base class for errors raised to callers of the engine."""


class InvalidArgumentError(TaskCtlError, ValueError):
    def __init__(self, name: str, reason: str = ""):
        self.name = name
        self.reason = reason
        msg = f"Invalid argument ({name})"
        super().__init__(f"{msg}: {reason}" if reason else msg)


class DuplicateExternalReferenceError(InvalidArgumentError):
    def __init__(self, external_reference: str):
        self.external_reference = external_reference
        super().__init__(
            "external_reference",
            f"a task with the external reference ({external_reference}) already exists",
        )


class DuplicateTaskTypeError(InvalidArgumentError):
    def __init__(self, code: str):
        super().__init__("code", f"the task type ({code}) already exists")


class DuplicateJobError(InvalidArgumentError):
    def __init__(self, job_id: str):
        super().__init__("id", f"the job ({job_id}) already exists")


class InvalidSchedulingPatternError(InvalidArgumentError):
    def __init__(self, pattern: str, reason: str, field: str = ""):
        self.pattern = pattern
        self.field = field
        where = f" Error parsing {field} field" if field else ""
        super().__init__("scheduling_pattern", f'"{pattern}".{where}: {reason}')


class NotFoundError(TaskCtlError, LookupError):
    kind = "object"

    def __init__(self, key):
        self.key = key
        super().__init__(f"The {self.kind} ({key}) could not be found")


class TaskNotFoundError(NotFoundError):
    kind = "task"


class ArchivedTaskNotFoundError(NotFoundError):
    kind = "archived task"


class BatchNotFoundError(NotFoundError):
    kind = "batch"


class TaskTypeNotFoundError(NotFoundError):
    kind = "task type"


class JobNotFoundError(NotFoundError):
    kind = "job"


class InvalidTaskStatusError(TaskCtlError):
    """The task exists but its status does not allow the operation."""

    def __init__(self, task_id: str, operation: str):
        self.task_id = task_id
        self.operation = operation
        super().__init__(f"The status of the task ({task_id}) does not allow it to be {operation}")


class TaskTypeInUseError(TaskCtlError):
    def __init__(self, code: str):
        super().__init__(f"The task type ({code}) has tasks that are queued or executing")


class StoreUnavailableError(TaskCtlError, RuntimeError):
    pass


# ---------- Raised by handlers ----------
class TaskExecutionError(Exception):
    """Base for the outcome signals a handler may raise."""


class TaskRetryableError(TaskExecutionError):
    pass


class TaskDelayedError(TaskExecutionError):
    def __init__(self, delay_seconds: float, message: str = ""):
        self.delay_seconds = delay_seconds
        super().__init__(message or f"delayed by {delay_seconds}s")


class TaskFailedError(TaskExecutionError):
    pass
