"""Common types and enums shared across modules."""

from enum import Enum


class TaskStatus(str, Enum):
    """Task lifecycle states. Transitions only move forward."""

    WAITING = "waiting"
    READY = "ready"
    DISPATCHED = "dispatched"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (TaskStatus.COMPLETED, TaskStatus.FAILED)


class ArgKind(str, Enum):
    """How a spawn argument is handed to the executing worker."""

    LITERAL = "literal"
    DATA = "data"
    TASK = "task"
    SHARD = "shard"
    FILE = "file"


class WorkerType(str, Enum):
    """Supported worker executor kinds."""

    THREAD = "thread"
    PROCESS = "process"


class ErrorCode(str, Enum):
    """Error code enumeration for different error types."""

    SCHEDULING_ERROR = "SCHEDULING_ERROR"
    DEPENDENCY_FAILURE = "DEPENDENCY_FAILURE"
    EXECUTION_ERROR = "EXECUTION_ERROR"
    DATA_TRANSFER_ERROR = "DATA_TRANSFER_ERROR"
    TIMEOUT_ERROR = "TIMEOUT_ERROR"
    LOST_DATA_ERROR = "LOST_DATA_ERROR"
    CHECKPOINT_ERROR = "CHECKPOINT_ERROR"
    CYCLE_ERROR = "CYCLE_ERROR"
    CANCELLED = "CANCELLED"
    WORKER_LOST = "WORKER_LOST"
    RESOURCE_ERROR = "RESOURCE_ERROR"
    PARTITION_ERROR = "PARTITION_ERROR"
    UNKNOWN_ERROR = "UNKNOWN_ERROR"
