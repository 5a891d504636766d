"""Taskmesh: a dynamic task-graph scheduler with data placement."""

from taskmesh.common import ErrorCode, TaskStatus
from taskmesh.core.files import FileRef
from taskmesh.core.handles import DataHandle, Shard, SyncGroup, TaskHandle, sync
from taskmesh.core.options import TaskOptions, with_options
from taskmesh.core.scope import ANY, NULL, Scope, intersect, is_empty, scope, union
from taskmesh.core.types import Processor
from taskmesh.errors import (
    CheckpointError,
    CycleError,
    DataTransferError,
    DependencyFailure,
    ExecutionError,
    LostDataError,
    PartitionError,
    SchedulingError,
    TaskCancelledError,
    TaskmeshError,
    TaskTimeoutError,
    WorkerLostError,
)
from taskmesh.runtime import (
    Context,
    add_dependency,
    cancel,
    fetch,
    from_file,
    get_context,
    mutable,
    processors,
    reprioritize,
    set_default_context,
    shard,
    shutdown,
    snapshot,
    spawn,
    status,
    to_file,
    wait,
)
from taskmesh.worker.base import cancelled, check_cancelled, current_task, current_worker, in_task

__version__ = "0.1.0"

__all__ = [
    "ANY",
    "NULL",
    "CheckpointError",
    "Context",
    "CycleError",
    "DataHandle",
    "DataTransferError",
    "DependencyFailure",
    "ErrorCode",
    "ExecutionError",
    "FileRef",
    "LostDataError",
    "PartitionError",
    "Processor",
    "SchedulingError",
    "Scope",
    "Shard",
    "SyncGroup",
    "TaskCancelledError",
    "TaskHandle",
    "TaskOptions",
    "TaskStatus",
    "TaskTimeoutError",
    "TaskmeshError",
    "WorkerLostError",
    "add_dependency",
    "cancel",
    "cancelled",
    "check_cancelled",
    "current_task",
    "current_worker",
    "fetch",
    "from_file",
    "get_context",
    "in_task",
    "intersect",
    "is_empty",
    "mutable",
    "processors",
    "reprioritize",
    "scope",
    "set_default_context",
    "shard",
    "shutdown",
    "snapshot",
    "spawn",
    "status",
    "sync",
    "to_file",
    "union",
    "wait",
    "with_options",
]
