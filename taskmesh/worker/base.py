"""Worker executor protocol and the task-side execution context."""

from __future__ import annotations

import contextvars
import pickle
import threading
import traceback
from abc import ABC, abstractmethod
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Iterable, Iterator, List, Optional, Tuple

from taskmesh.core.types import DispatchRequest, Processor
from taskmesh.errors import TaskCancelledError


@dataclass
class TaskContext:
    """What a running task can learn about itself."""

    task_id: int
    worker_id: int
    processor: Optional[Processor] = None
    cancel_event: threading.Event = field(default_factory=threading.Event)
    runtime: Any = None


_current_task: contextvars.ContextVar[Optional[TaskContext]] = contextvars.ContextVar(
    "taskmesh_task", default=None
)


def current_task() -> Optional[TaskContext]:
    return _current_task.get()


def in_task() -> bool:
    return _current_task.get() is not None


def current_worker() -> Optional[int]:
    tc = _current_task.get()
    return tc.worker_id if tc is not None else None


def cancelled() -> bool:
    """Cooperative cancellation check for long-running task bodies."""
    tc = _current_task.get()
    return tc is not None and tc.cancel_event.is_set()


def check_cancelled() -> None:
    tc = _current_task.get()
    if tc is not None and tc.cancel_event.is_set():
        raise TaskCancelledError(f"Task {tc.task_id} cancelled", task_id=tc.task_id)


@contextmanager
def task_scope(tc: TaskContext) -> Iterator[TaskContext]:
    token = _current_task.set(tc)
    try:
        yield tc
    finally:
        _current_task.reset(token)


class ArgumentResolutionError(Exception):
    """A worker could not produce a local value for an argument."""


def resolve_arguments(
    request: DispatchRequest, lookup: Callable[[int], Any]
) -> Tuple[List[Any], Dict[str, Any]]:
    def _one(tagged: Tuple[str, Any]) -> Any:
        tag, payload = tagged
        if tag == "literal":
            return payload
        if tag == "local":
            try:
                return lookup(payload)
            except KeyError:
                raise ArgumentResolutionError(f"Chunk {payload} is not resident on this worker") from None
        if tag == "file":
            try:
                return payload.materialize()
            except Exception as e:
                raise ArgumentResolutionError(f"Failed to materialize {payload!r}: {e}") from e
        raise ArgumentResolutionError(f"Unknown argument tag {tag!r}")

    args = [_one(a) for a in request.args]
    kwargs = {k: _one(v) for k, v in request.kwargs.items()}
    return args, kwargs


def error_payload(exc: BaseException, stage: str) -> Dict[str, Any]:
    """Describe an exception so it can cross a process boundary.

    The exception object is carried only when it survives pickling.
    """
    payload: Dict[str, Any] = {
        "type": type(exc).__name__,
        "message": str(exc),
        "traceback": "".join(traceback.format_exception(type(exc), exc, exc.__traceback__)),
        "stage": stage,
        "exc": None,
    }
    try:
        pickle.loads(pickle.dumps(exc))
        payload["exc"] = exc
    except Exception:
        pass
    return payload


class Worker(ABC):
    """One independent execution context.

    Every coroutine here is awaited from the controller's event loop. Task
    reports and heartbeats flow back through the ``report`` callback passed
    to ``start``, which may be called from any thread.
    """

    kind: str = "abstract"

    def __init__(self, worker_id: int, tags: Iterable[str] = ()):
        self.worker_id = worker_id
        self.tags = frozenset(tags)
        self.runtime: Any = None
        self.heartbeat_interval: Optional[float] = None
        self._report: Optional[Callable[[Any], None]] = None

    @property
    @abstractmethod
    def capacity(self) -> int:
        """Tasks the controller may keep in flight on this worker."""

    @abstractmethod
    def processors(self) -> List[Processor]:
        ...

    @abstractmethod
    async def start(self, report: Callable[[Any], None], runtime: Any = None) -> None:
        ...

    @abstractmethod
    async def run(self, request: DispatchRequest) -> None:
        """Queue a task. Returns once the worker has accepted it."""

    @abstractmethod
    async def get(self, chunk_id: int) -> Any:
        ...

    @abstractmethod
    async def put(self, chunk_id: int, value: Any) -> None:
        ...

    @abstractmethod
    async def drop(self, chunk_id: int) -> None:
        ...

    @abstractmethod
    async def cancel(self, task_id: int) -> None:
        """Best-effort: skip if not started, else set the cooperative flag."""

    @abstractmethod
    def is_alive(self) -> bool:
        ...

    @abstractmethod
    async def shutdown(self, timeout: float = 10.0) -> None:
        ...

    def info(self) -> Dict[str, Any]:
        return {
            "worker_id": self.worker_id,
            "kind": self.kind,
            "alive": self.is_alive(),
            "capacity": self.capacity,
            "tags": sorted(self.tags),
            "processors": [p.to_dict() for p in self.processors()],
        }

    def __repr__(self) -> str:
        return f"{type(self).__name__}(worker_id={self.worker_id})"
