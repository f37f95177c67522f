"""Task handler registry and the built-in shell handler."""
import json
import logging
import shlex
import subprocess
from typing import Dict, Optional, Type

from .errors import TaskFailedError, TaskRetryableError
from .models import ExecutionResult, Task

logger = logging.getLogger(__name__)

HANDLER_REGISTRY: Dict[str, Type["TaskHandler"]] = {}


class TaskHandler:
    """
    Executes tasks of one type.

    Return an ExecutionResult to succeed; set `next_step` on it to move a
    multi-step task on instead of completing it. Raise TaskRetryableError,
    TaskDelayedError or TaskFailedError to steer the retry policy. Any other
    exception counts as a retryable failure.
    """

    # First step of a multi-step task type; None for single-step types.
    initial_step: Optional[str] = None

    def __init__(self, config: Optional[Dict[str, str]] = None):
        self.config = config or {}

    def execute(self, task: Task) -> ExecutionResult:
        raise NotImplementedError


def register_handler(task_type: str):
    """
    Class decorator registering a handler for `task_type`.

        @register_handler("report")
        class ReportHandler(TaskHandler):
            def execute(self, task):
                ...
    """
    def decorator(cls: Type[TaskHandler]) -> Type[TaskHandler]:
        HANDLER_REGISTRY[task_type] = cls
        return cls
    return decorator


def get_handler(task_type: str, config: Optional[Dict[str, str]] = None) -> TaskHandler:
    """Raises KeyError if nothing is registered for `task_type`."""
    if task_type not in HANDLER_REGISTRY:
        raise KeyError(f"Unknown task type: {task_type}")
    return HANDLER_REGISTRY[task_type](config)


def get_handler_class(task_type: str) -> Optional[Type[TaskHandler]]:
    return HANDLER_REGISTRY.get(task_type)


def run_command(cmd: str, timeout: int = 10) -> int:
    try:
        args = shlex.split(cmd)
        result = subprocess.run(
            args,
            capture_output=True,
            text=True,
            timeout=timeout,
        )

        if result.stdout:
            logger.info(result.stdout.strip())
        if result.stderr:
            logger.warning(result.stderr.strip())
        return result.returncode

    except subprocess.TimeoutExpired:
        logger.error(f"Command timed out after {timeout}s: {cmd}")
        return 124  # Common exit code for timeout
    except FileNotFoundError:
        logger.error(f"Command not found: {cmd}")
        return 127


@register_handler("shell")
class ShellCommandHandler(TaskHandler):
    """Runs `{"command": "..."}` from the task data."""

    def execute(self, task: Task) -> ExecutionResult:
        try:
            command = json.loads(task.data or "{}")["command"]
        except (ValueError, KeyError, TypeError):
            raise TaskFailedError("The task data must be a JSON object with a 'command' string")

        timeout = int(self.config.get("timeout_seconds", "20"))
        rc = run_command(command, timeout=timeout)
        if rc == 0:
            return ExecutionResult()
        if rc == 127:
            raise TaskFailedError(f"exit_code={rc}")
        raise TaskRetryableError(f"exit_code={rc}")
