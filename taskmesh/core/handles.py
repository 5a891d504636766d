"""User-facing handles and the synchronization scope.

Handles are thin: they carry an id and the controller that owns it, and
every query is forwarded to that controller. Dropping the last Python
reference to a handle releases its reference in the graph.
"""

from __future__ import annotations

import contextvars
import weakref
from typing import Any, Dict, List, Optional, Tuple

from taskmesh.common import TaskStatus


class TaskHandle:
    """Reference to one spawned task and its eventual result."""

    def __init__(self, controller: Any, task_id: int):
        self._controller = controller
        self.id = task_id
        self._finalizer = weakref.finalize(self, controller.release_task, task_id)
        self._finalizer.atexit = False
        _collect(self)

    def fetch(self, timeout: Optional[float] = None) -> Any:
        """Block until the task settles; return its value or raise its error."""
        return self._controller.fetch(self.id, timeout=timeout)

    def wait(self, timeout: Optional[float] = None) -> None:
        self._controller.wait(self.id, timeout=timeout)

    def status(self) -> TaskStatus:
        return self._controller.status(self.id)

    def done(self) -> bool:
        return self.status().is_terminal

    def cancel(self) -> bool:
        return self._controller.cancel(self.id)

    def reprioritize(self, priority: int) -> bool:
        return self._controller.reprioritize(self.id, priority)

    def __repr__(self) -> str:
        return f"TaskHandle(id={self.id})"


class DataHandle:
    """A mutable chunk pinned to one worker.

    ``fetch`` waits for every mutation spawned so far and returns a copy of
    the value as of that point.
    """

    def __init__(self, controller: Any, chunk_id: int):
        self._controller = controller
        self.id = chunk_id
        self._finalizer = weakref.finalize(self, controller.release_chunk, chunk_id)
        self._finalizer.atexit = False

    def fetch(self, timeout: Optional[float] = None) -> Any:
        return self._controller.fetch_chunk(self.id, timeout=timeout)

    @property
    def owner(self) -> Optional[int]:
        return self._controller.chunk_owner(self.id)

    def __repr__(self) -> str:
        return f"DataHandle(id={self.id})"


class Shard:
    """One independently initialized member per worker."""

    def __init__(self, controller: Any, shard_id: int, workers: List[int]):
        self._controller = controller
        self.id = shard_id
        self.workers = list(workers)
        self._finalizer = weakref.finalize(self, controller.release_shard, shard_id)
        self._finalizer.atexit = False

    def fetch(self, timeout: Optional[float] = None) -> Dict[int, Any]:
        """Member values keyed by worker id."""
        return self._controller.fetch_shard(self.id, timeout=timeout)

    def __repr__(self) -> str:
        return f"Shard(id={self.id}, workers={self.workers})"


_sync_stack: contextvars.ContextVar[Tuple["SyncGroup", ...]] = contextvars.ContextVar(
    "taskmesh_sync", default=()
)


def _collect(handle: TaskHandle) -> None:
    stack = _sync_stack.get()
    if stack:
        stack[-1].handles.append(handle)


class SyncGroup:
    """Collects every task spawned in its dynamic extent and waits at exit.

    All collected tasks are waited for even after one fails. The failure
    that was recorded first by the controller is then raised. An exception
    raised by the block itself takes precedence.
    """

    def __init__(self, timeout: Optional[float] = None):
        self.timeout = timeout
        self.handles: List[TaskHandle] = []
        self._token: Optional[contextvars.Token] = None

    def __enter__(self) -> "SyncGroup":
        self._token = _sync_stack.set(_sync_stack.get() + (self,))
        return self

    def __exit__(self, exc_type, exc, tb) -> bool:
        _sync_stack.reset(self._token)
        self._token = None
        first: Optional[Tuple[int, BaseException]] = None
        for handle in self.handles:
            seq, error = handle._controller.settle(handle.id, timeout=self.timeout)
            if error is not None and (first is None or seq < first[0]):
                first = (seq, error)
        if exc_type is None and first is not None:
            raise first[1]
        return False


def sync(timeout: Optional[float] = None) -> SyncGroup:
    return SyncGroup(timeout=timeout)


__all__ = ["TaskHandle", "DataHandle", "Shard", "SyncGroup", "sync"]
