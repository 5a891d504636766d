"""Task graph, scopes, handles and data placement."""

from .files import FileRef
from .handles import DataHandle, Shard, SyncGroup, TaskHandle, sync
from .options import TaskOptions, current_options, with_options
from .scope import ANY, NULL, Scope, admitted, intersect, is_empty, scope, union
from .types import Processor

__all__ = [
    "ANY",
    "NULL",
    "DataHandle",
    "FileRef",
    "Processor",
    "Scope",
    "Shard",
    "SyncGroup",
    "TaskHandle",
    "TaskOptions",
    "admitted",
    "current_options",
    "intersect",
    "is_empty",
    "scope",
    "sync",
    "union",
    "with_options",
]
