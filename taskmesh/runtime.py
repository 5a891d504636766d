"""Runtime context and the module-level API.

A ``Context`` owns one controller and its workers. Module-level functions
act on the current context: the one a running task was dispatched from, the
innermost ``with Context(...)`` block, or a lazily created default built
from ``taskmesh.config.settings``.
"""

from __future__ import annotations

import contextvars
import functools
import logging
import threading
from typing import Any, Callable, Dict, List, Mapping, Optional, Sequence, Union

from taskmesh.common import TaskStatus
from taskmesh.config.settings import Settings, settings as default_settings
from taskmesh.core.files import FileRef, passthrough, persist_file
from taskmesh.core.handles import DataHandle, Shard, TaskHandle
from taskmesh.core.options import TaskOptions, current_options
from taskmesh.core.scope import ExactScope, intersect
from taskmesh.core.types import Processor
from taskmesh.scheduler.checkpoint import CheckpointStore, create_checkpoint_store
from taskmesh.scheduler.controller import Controller
from taskmesh.worker.base import Worker, current_task
from taskmesh.worker.registry import create_worker

logger = logging.getLogger("taskmesh.scheduler")

OptionsLike = Union[TaskOptions, Mapping[str, Any], None]


class Context:
    """A worker pool plus the controller that schedules onto it.

    Args:
        num_workers: Workers to start; defaults to ``settings.num_workers``.
        worker_type: Registered worker kind (``thread`` or ``process``).
        workers: Pre-built ``Worker`` instances, used instead of creating any.
        checkpoint_store: Store consulted before running checkpointed tasks;
            defaults to the backend named by ``settings.checkpoint_backend``.
        sinks: Telemetry sinks receiving lifecycle events.
        settings: Overrides the process-wide ``Settings``.
    """

    def __init__(
        self,
        num_workers: Optional[int] = None,
        worker_type: Optional[str] = None,
        *,
        workers: Optional[Sequence[Worker]] = None,
        checkpoint_store: Optional[CheckpointStore] = None,
        sinks: Sequence[Any] = (),
        settings: Optional[Settings] = None,
    ):
        self.settings = settings or default_settings
        if workers is None:
            kind = worker_type or self.settings.worker_type
            count = num_workers if num_workers is not None else self.settings.num_workers
            if count <= 0:
                raise ValueError(f"num_workers must be positive, got {count}")
            workers = [create_worker(kind, worker_id, self.settings) for worker_id in range(1, count + 1)]
        if checkpoint_store is None:
            checkpoint_store = create_checkpoint_store(self.settings)
        self.workers: Dict[int, Worker] = {w.worker_id: w for w in workers}
        self.controller = Controller(
            list(workers),
            config=self.settings,
            checkpoint_store=checkpoint_store,
            sinks=sinks,
            runtime=self,
        )
        self.controller.start()
        self._tokens: List[contextvars.Token] = []

    def __enter__(self) -> "Context":
        self._tokens.append(_current_context.set(self))
        return self

    def __exit__(self, exc_type, exc, tb) -> bool:
        if self._tokens:
            _current_context.reset(self._tokens.pop())
        self.shutdown()
        return False

    @property
    def closed(self) -> bool:
        return self.controller.closed

    @property
    def telemetry(self):
        return self.controller.telemetry

    # ------------------------------------------------------------------
    # spawning
    # ------------------------------------------------------------------

    def _options(self, options: OptionsLike) -> TaskOptions:
        return current_options().merged(TaskOptions.coerce(options))

    def spawn(self, func: Callable[..., Any], *args: Any, options: OptionsLike = None, **kwargs: Any) -> TaskHandle:
        task_id = self.controller.spawn(func, args, kwargs, self._options(options))
        return TaskHandle(self.controller, task_id)

    def mutable(
        self,
        init: Callable[..., Any],
        *args: Any,
        worker: Optional[int] = None,
        options: OptionsLike = None,
        **kwargs: Any,
    ) -> DataHandle:
        """Run ``init`` on one worker and pin its result there as a mutable chunk."""
        opts = self._options(options)
        if worker is not None:
            opts = TaskOptions(
                scope=intersect(opts.scope, ExactScope(worker=worker)),
                priority=opts.priority,
                timeout=opts.timeout,
                name=opts.name,
            )
        chunk_id = self.controller.new_mutable(init, args, kwargs, opts)
        return DataHandle(self.controller, chunk_id)

    def shard(self, init: Callable[..., Any], *args: Any, options: OptionsLike = None, **kwargs: Any) -> Shard:
        """Run ``init`` independently on every live worker."""
        shard_id, worker_ids = self.controller.new_shard(init, args, kwargs, self._options(options))
        return Shard(self.controller, shard_id, worker_ids)

    def from_file(self, ref: FileRef, options: OptionsLike = None) -> TaskHandle:
        return self.spawn(passthrough, ref, options=options)

    def to_file(self, value: Any, ref: FileRef, options: OptionsLike = None) -> TaskHandle:
        return self.spawn(functools.partial(persist_file, ref=ref), value, options=options)

    # ------------------------------------------------------------------
    # queries and control
    # ------------------------------------------------------------------

    def fetch(self, handle: Any, timeout: Optional[float] = None) -> Any:
        return handle.fetch(timeout=timeout)

    def wait(self, handle: TaskHandle, timeout: Optional[float] = None) -> None:
        handle.wait(timeout=timeout)

    def status(self, handle: TaskHandle) -> TaskStatus:
        return self.controller.status(handle.id)

    def cancel(self, handle: TaskHandle) -> bool:
        return self.controller.cancel(handle.id)

    def reprioritize(self, handle: TaskHandle, priority: int) -> bool:
        return self.controller.reprioritize(handle.id, priority)

    def add_dependency(self, task: TaskHandle, dep: TaskHandle) -> None:
        self.controller.add_dependency(task.id, dep.id)

    def snapshot(self) -> Dict[str, Any]:
        return self.controller.snapshot()

    def processors(self) -> List[Processor]:
        return [p for wid in self.controller.alive_workers() for p in self.workers[wid].processors()]

    def alive_workers(self) -> List[int]:
        return self.controller.alive_workers()

    def shutdown(self) -> None:
        self.controller.shutdown()

    def __repr__(self) -> str:
        return f"Context(workers={sorted(self.workers)}, closed={self.closed})"


_current_context: contextvars.ContextVar[Optional[Context]] = contextvars.ContextVar(
    "taskmesh_context", default=None
)
_default_context: Optional[Context] = None
_default_lock = threading.Lock()


def get_context() -> Context:
    tc = current_task()
    if tc is not None:
        if tc.runtime is None:
            raise RuntimeError("Spawning from inside a task is only supported on thread workers")
        return tc.runtime
    ctx = _current_context.get()
    if ctx is not None and not ctx.closed:
        return ctx
    global _default_context
    with _default_lock:
        if _default_context is None or _default_context.closed:
            logger.info("Starting default context")
            _default_context = Context()
        return _default_context


def set_default_context(ctx: Optional[Context]) -> None:
    global _default_context
    with _default_lock:
        _default_context = ctx


def shutdown() -> None:
    """Shut down the default context, if one was started."""
    global _default_context
    with _default_lock:
        ctx, _default_context = _default_context, None
    if ctx is not None:
        ctx.shutdown()


def spawn(func: Callable[..., Any], *args: Any, options: OptionsLike = None, **kwargs: Any) -> TaskHandle:
    return get_context().spawn(func, *args, options=options, **kwargs)


def mutable(init: Callable[..., Any], *args: Any, worker: Optional[int] = None, **kwargs: Any) -> DataHandle:
    return get_context().mutable(init, *args, worker=worker, **kwargs)


def shard(init: Callable[..., Any], *args: Any, **kwargs: Any) -> Shard:
    return get_context().shard(init, *args, **kwargs)


def from_file(ref: FileRef, options: OptionsLike = None) -> TaskHandle:
    return get_context().from_file(ref, options=options)


def to_file(value: Any, ref: FileRef, options: OptionsLike = None) -> TaskHandle:
    return get_context().to_file(value, ref, options=options)


def fetch(handle: Any, timeout: Optional[float] = None) -> Any:
    return handle.fetch(timeout=timeout)


def wait(handle: TaskHandle, timeout: Optional[float] = None) -> None:
    handle.wait(timeout=timeout)


def status(handle: TaskHandle) -> TaskStatus:
    return handle.status()


def cancel(handle: TaskHandle) -> bool:
    return handle.cancel()


def reprioritize(handle: TaskHandle, priority: int) -> bool:
    return handle.reprioritize(priority)


def add_dependency(task: TaskHandle, dep: TaskHandle) -> None:
    task._controller.add_dependency(task.id, dep.id)


def snapshot() -> Dict[str, Any]:
    return get_context().snapshot()


def processors() -> List[Processor]:
    return get_context().processors()
