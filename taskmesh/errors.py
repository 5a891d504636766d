"""Exception taxonomy for task scheduling and data movement."""

from __future__ import annotations

from typing import Any, Dict, Optional

from taskmesh.common import ErrorCode


class TaskmeshError(Exception):
    """Base class for every error surfaced by the scheduler."""

    error_code: ErrorCode = ErrorCode.UNKNOWN_ERROR

    def __init__(self, message: str = "", task_id: Optional[int] = None):
        super().__init__(message)
        self.message = message
        self.task_id = task_id

    def to_dict(self) -> Dict[str, Any]:
        return {
            "type": type(self).__name__,
            "error_code": self.error_code.value,
            "message": self.message,
            "task_id": self.task_id,
        }


class SchedulingError(TaskmeshError):
    """No known processor admits the task's effective scope."""

    error_code = ErrorCode.SCHEDULING_ERROR


class DependencyFailure(TaskmeshError):
    """An upstream dependency failed; this task was never executed."""

    error_code = ErrorCode.DEPENDENCY_FAILURE

    def __init__(
        self,
        task_id: Optional[int],
        origin_task_id: Optional[int],
        upstream: Optional[BaseException] = None,
    ):
        super().__init__(
            f"Task {task_id} not executed: upstream task {origin_task_id} failed",
            task_id=task_id,
        )
        self.origin_task_id = origin_task_id
        self.upstream = upstream
        self.__cause__ = upstream

    @property
    def root_error(self) -> Optional[BaseException]:
        err: Optional[BaseException] = self.upstream
        while isinstance(err, DependencyFailure):
            err = err.upstream
        return err

    def to_dict(self) -> Dict[str, Any]:
        data = super().to_dict()
        data["origin_task_id"] = self.origin_task_id
        return data


class ExecutionError(TaskmeshError):
    """The task's callable raised while running on a worker."""

    error_code = ErrorCode.EXECUTION_ERROR

    def __init__(
        self,
        task_id: Optional[int],
        exc_type: str,
        exc_message: str,
        traceback_text: str = "",
        original: Optional[BaseException] = None,
        cause: Optional[ErrorCode] = None,
    ):
        super().__init__(f"Task {task_id} raised {exc_type}: {exc_message}", task_id=task_id)
        self.exc_type = exc_type
        self.exc_message = exc_message
        self.traceback_text = traceback_text
        self.original = original
        # best guess at what the user exception was about; error_code stays EXECUTION_ERROR
        self.cause = cause
        if original is not None:
            self.__cause__ = original

    def to_dict(self) -> Dict[str, Any]:
        data = super().to_dict()
        data.update({"exc_type": self.exc_type, "exc_message": self.exc_message})
        if self.cause is not None:
            data["cause"] = self.cause.value
        return data


class DataTransferError(TaskmeshError):
    """Moving or replicating a chunk between workers failed."""

    error_code = ErrorCode.DATA_TRANSFER_ERROR


class TaskTimeoutError(TaskmeshError, TimeoutError):
    """No report arrived before the task's deadline."""

    error_code = ErrorCode.TIMEOUT_ERROR


class LostDataError(TaskmeshError):
    """Every resident copy of a chunk was on a worker that became unreachable."""

    error_code = ErrorCode.LOST_DATA_ERROR


class CheckpointError(TaskmeshError):
    """Persisting or restoring a checkpoint failed."""

    error_code = ErrorCode.CHECKPOINT_ERROR


class CycleError(TaskmeshError):
    """Adding an edge would create a dependency cycle."""

    error_code = ErrorCode.CYCLE_ERROR


class TaskCancelledError(TaskmeshError):
    """The task was cancelled before it produced a result."""

    error_code = ErrorCode.CANCELLED


class WorkerLostError(TaskmeshError):
    """The worker running the task became unreachable."""

    error_code = ErrorCode.WORKER_LOST


class PartitionError(TaskmeshError, ValueError):
    """A block partition does not tile the requested shape."""

    error_code = ErrorCode.PARTITION_ERROR


__all__ = [
    "TaskmeshError",
    "SchedulingError",
    "DependencyFailure",
    "ExecutionError",
    "DataTransferError",
    "TaskTimeoutError",
    "LostDataError",
    "CheckpointError",
    "CycleError",
    "TaskCancelledError",
    "WorkerLostError",
    "PartitionError",
]
