"""
Scheduler controller.

One controller owns the dependency graph, the ready queue, the worker load
table and the chunk location table. All of that state is mutated only by
callbacks running on the controller's private event loop, which lives in a
daemon thread. Other threads talk to it through ``call`` (run a function on
the loop and wait for its result) and ``run`` (run a coroutine on the loop).
Workers post their reports with ``loop.call_soon_threadsafe``.

Task lifecycle:
    WAITING -> READY -> DISPATCHED -> COMPLETED | FAILED

A waiting task becomes ready once every dependency has completed and every
ordering dependency has settled. A failed dependency fails it immediately
with DependencyFailure. Ready tasks are popped by priority, then spawn
order, placed on the best admissible worker with free capacity, and their
arguments are made local by the data manager before the task is sent.
"""

from __future__ import annotations

import asyncio
import concurrent.futures
import heapq
import logging
import threading
import time
from collections import defaultdict
from typing import Any, Callable, Dict, List, Mapping, Optional, Sequence, Set, Tuple

from taskmesh.common import ErrorCode, TaskStatus
from taskmesh.config.settings import Settings, settings as default_settings
from taskmesh.core.datamanager import DataManager
from taskmesh.core.graph import TaskGraph
from taskmesh.core.options import TaskOptions
from taskmesh.core.scope import ExactScope, admitted, intersect
from taskmesh.core.types import ChunkRecord, Heartbeat, Task, TaskReport
from taskmesh.errors import (
    CheckpointError,
    DataTransferError,
    DependencyFailure,
    ExecutionError,
    SchedulingError,
    TaskCancelledError,
    TaskmeshError,
    TaskTimeoutError,
    WorkerLostError,
)
from taskmesh.scheduler.checkpoint import CheckpointStore
from taskmesh.scheduler.telemetry import Telemetry
from taskmesh.utils.error_classifier import classify_error
from taskmesh.utils.serialization import make_json_safe
from taskmesh.utils.sizing import describe_value, estimate_nbytes
from taskmesh.worker.base import Worker
from taskmesh.worker.monitor import WorkerMonitor

logger = logging.getLogger("taskmesh.scheduler")


def _origin(error: BaseException, fallback: int) -> int:
    if isinstance(error, DependencyFailure) and error.origin_task_id is not None:
        return error.origin_task_id
    task_id = getattr(error, "task_id", None)
    return task_id if task_id is not None else fallback


class Controller:
    def __init__(
        self,
        workers: Sequence[Worker],
        config: Optional[Settings] = None,
        checkpoint_store: Optional[CheckpointStore] = None,
        sinks: Sequence[Any] = (),
        runtime: Any = None,
    ):
        if not workers:
            raise ValueError("A controller needs at least one worker")
        self.config = config or default_settings
        self.workers: Dict[int, Worker] = {}
        for worker in workers:
            if worker.worker_id in self.workers:
                raise ValueError(f"Duplicate worker id {worker.worker_id}")
            self.workers[worker.worker_id] = worker
        self.runtime = runtime
        self.checkpoints = checkpoint_store
        self.telemetry = Telemetry(sinks)
        self.data = DataManager(
            self.workers,
            transfer_timeout=self.config.transfer_timeout,
            checkpoints=checkpoint_store,
            emit=self.telemetry.emit,
        )
        self.graph = TaskGraph(self.data, owner=self, default_timeout=self.config.default_task_timeout)
        self.monitor = WorkerMonitor(
            self.workers,
            self._on_worker_lost,
            monitor_interval=self.config.monitor_interval,
            heartbeat_timeout=self.config.heartbeat_timeout,
        )

        self.load: Dict[int, int] = {wid: 0 for wid in self.workers}
        self.inflight: Dict[int, Set[int]] = defaultdict(set)
        self._ready: List[Tuple[int, int, int]] = []
        self._timers: Dict[int, asyncio.TimerHandle] = {}
        self._finish_seq = 0
        self._dispatch_scheduled = False
        self._background: Set[asyncio.Task] = set()
        self._monitor_task: Optional[asyncio.Task] = None

        self.loop: Optional[asyncio.AbstractEventLoop] = None
        self._thread: Optional[threading.Thread] = None
        self._closed = False
        self.started_at: Optional[float] = None

    # ------------------------------------------------------------------
    # lifecycle
    # ------------------------------------------------------------------

    def start(self) -> "Controller":
        self.loop = asyncio.new_event_loop()
        ready = threading.Event()

        def _run_loop() -> None:
            asyncio.set_event_loop(self.loop)
            self.loop.call_soon(ready.set)
            self.loop.run_forever()

        self._thread = threading.Thread(target=_run_loop, name="taskmesh-controller", daemon=True)
        self._thread.start()
        ready.wait()
        try:
            self.run(self._start_workers())
        except Exception:
            self._stop_loop()
            raise
        self.started_at = time.time()
        logger.info(f"Controller started with {len(self.workers)} workers")
        return self

    async def _start_workers(self) -> None:
        for worker in self.workers.values():
            await worker.start(self._post, runtime=self.runtime)
            self.monitor.register(worker.worker_id)
        self._monitor_task = self.loop.create_task(self.monitor.run())

    def shutdown(self) -> None:
        if self._closed or self.loop is None:
            return
        try:
            self.run(self._shutdown())
            self.run(self._drain())
        finally:
            self._closed = True
            self._stop_loop()
        logger.info("Controller shut down")

    async def _shutdown(self) -> None:
        self.monitor.stop()
        if self._monitor_task is not None:
            self._monitor_task.cancel()
        for task in list(self.graph.tasks.values()):
            if not task.status.is_terminal:
                self._fail(task, TaskCancelledError("Context shut down", task_id=task.id))
        for timer in self._timers.values():
            timer.cancel()
        self._timers.clear()
        for worker in self.workers.values():
            try:
                await worker.shutdown(timeout=self.config.worker_shutdown_timeout)
            except Exception as e:
                logger.error(f"Error shutting down worker {worker.worker_id}: {e}")
        if self.checkpoints is not None:
            try:
                await self.checkpoints.close()
            except Exception as e:
                logger.warning(f"Error closing checkpoint store: {e}")

    async def _drain(self) -> None:
        current = asyncio.current_task()
        pending = [t for t in asyncio.all_tasks() if t is not current]
        for t in pending:
            t.cancel()
        await asyncio.gather(*pending, return_exceptions=True)

    def _stop_loop(self) -> None:
        if self.loop is None:
            return
        self.loop.call_soon_threadsafe(self.loop.stop)
        if self._thread is not None and self._thread is not threading.current_thread():
            self._thread.join(timeout=self.config.worker_shutdown_timeout)
        if not self.loop.is_running():
            self.loop.close()

    @property
    def closed(self) -> bool:
        return self._closed

    # ------------------------------------------------------------------
    # thread-safe entry points
    # ------------------------------------------------------------------

    def on_loop(self) -> bool:
        return self._thread is not None and threading.current_thread() is self._thread

    def call(self, fn: Callable[..., Any], *args: Any, **kwargs: Any) -> Any:
        """Run ``fn`` on the controller loop and return its result."""
        if self._closed or self.loop is None:
            raise RuntimeError("Context is shut down")
        if self.on_loop():
            return fn(*args, **kwargs)
        future: concurrent.futures.Future = concurrent.futures.Future()

        def _invoke() -> None:
            try:
                future.set_result(fn(*args, **kwargs))
            except Exception as e:
                future.set_exception(e)

        self.loop.call_soon_threadsafe(_invoke)
        return future.result()

    def run(self, coro, timeout: Optional[float] = None) -> Any:
        if self.loop is None or self.loop.is_closed():
            coro.close()
            raise RuntimeError("Context is shut down")
        if self.on_loop():
            coro.close()
            raise RuntimeError("Cannot block on the controller loop from inside it")
        return asyncio.run_coroutine_threadsafe(coro, self.loop).result(timeout)

    def _post_to_loop(self, fn: Callable[..., Any], *args: Any) -> None:
        if self.loop is None or self.loop.is_closed():
            return
        try:
            self.loop.call_soon_threadsafe(fn, *args)
        except RuntimeError:
            # loop closed between the check and the call
            pass

    def _post(self, message: Any) -> None:
        """Report callback handed to workers; safe from any thread."""
        self._post_to_loop(self._on_message, message)

    def _background_task(self, coro) -> asyncio.Task:
        task = self.loop.create_task(coro)
        self._background.add(task)
        task.add_done_callback(self._background_done)
        return task

    def _background_done(self, task: asyncio.Task) -> None:
        self._background.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.error(f"Background operation failed: {task.exception()!r}")

    # ------------------------------------------------------------------
    # spawning
    # ------------------------------------------------------------------

    def spawn(
        self,
        func: Callable[..., Any],
        args: Sequence[Any] = (),
        kwargs: Optional[Mapping[str, Any]] = None,
        options: Optional[TaskOptions] = None,
    ) -> int:
        return self.call(self._spawn, func, tuple(args), dict(kwargs or {}), options or TaskOptions())

    def _spawn(
        self,
        func: Callable[..., Any],
        args: Sequence[Any],
        kwargs: Mapping[str, Any],
        options: TaskOptions,
        output: Optional[ChunkRecord] = None,
        shard_id: Optional[int] = None,
        handle: bool = True,
    ) -> int:
        task = self.graph.build(func, args, kwargs, options, output=output, shard_id=shard_id)
        if handle:
            task.refs += 1
        self._emit("created", task, priority=task.priority, deps=sorted(task.deps))
        logger.debug(f"Spawned task {task.id} ({task.name}) deps={sorted(task.deps)}")

        if task.preset_error is not None:
            self._fail(
                task,
                DependencyFailure(task.id, _origin(task.preset_error, task.id), task.preset_error),
            )
        elif task.checkpoint and self.checkpoints is not None and not (task.consumes or task.shard_writes):
            task.held = True
            self._background_task(self._try_restore(task))
        else:
            self._evaluate(task)
        return task.id

    def new_mutable(
        self,
        init: Callable[..., Any],
        args: Sequence[Any] = (),
        kwargs: Optional[Mapping[str, Any]] = None,
        options: Optional[TaskOptions] = None,
    ) -> int:
        return self.call(self._new_mutable, init, tuple(args), dict(kwargs or {}), options or TaskOptions())

    def _new_mutable(self, init, args, kwargs, options: TaskOptions) -> int:
        rec = self.data.new_mutable()
        rec.refs = 1
        try:
            self._spawn(init, args, kwargs, options, output=rec, handle=False)
        except Exception:
            self.data.chunks.pop(rec.id, None)
            raise
        return rec.id

    def new_shard(
        self,
        init: Callable[..., Any],
        args: Sequence[Any] = (),
        kwargs: Optional[Mapping[str, Any]] = None,
        options: Optional[TaskOptions] = None,
    ) -> Tuple[int, List[int]]:
        return self.call(self._new_shard, init, tuple(args), dict(kwargs or {}), options or TaskOptions())

    def _new_shard(self, init, args, kwargs, options: TaskOptions) -> Tuple[int, List[int]]:
        worker_ids = self.alive_workers()
        if not worker_ids:
            raise SchedulingError("No live worker to hold a shard")
        shard = self.data.new_shard(worker_ids)
        shard.refs = 1
        for worker_id, chunk_id in sorted(shard.members.items()):
            self.data.chunks[chunk_id].refs = 1
            pinned = TaskOptions(
                scope=intersect(options.scope, ExactScope(worker=worker_id)),
                priority=options.priority,
                timeout=options.timeout,
                name=options.name,
            )
            task_id = self._spawn(
                init, args, kwargs, pinned, output=self.data.chunks[chunk_id], shard_id=shard.id, handle=False
            )
            shard.initializers.append(task_id)
        return shard.id, sorted(shard.members)

    # ------------------------------------------------------------------
    # state transitions
    # ------------------------------------------------------------------

    def _emit(self, kind: str, task: Task, error_code: Optional[str] = None, **detail: Any) -> None:
        self.telemetry.emit(
            kind,
            task_id=task.id,
            worker_id=task.worker,
            name=task.name,
            error_code=error_code,
            **detail,
        )

    def _evaluate(self, task: Task) -> None:
        if task.status != TaskStatus.WAITING or task.held:
            return
        satisfied, failed = self.graph.pending_deps(task)
        if failed is not None:
            self._fail(task, DependencyFailure(task.id, _origin(failed.error, failed.id), failed.error))
            return
        if not satisfied:
            return
        task.status = TaskStatus.READY
        self._emit("ready", task)
        heapq.heappush(self._ready, (-task.priority, task.id, task.priority_version))
        self._schedule_dispatch()

    def _schedule_dispatch(self) -> None:
        if not self._dispatch_scheduled and self.loop is not None:
            self._dispatch_scheduled = True
            self.loop.call_soon(self._dispatch)

    def _dispatch(self) -> None:
        self._dispatch_scheduled = False
        deferred: List[Tuple[int, int, int]] = []
        while self._ready:
            entry = heapq.heappop(self._ready)
            _, task_id, version = entry
            task = self.graph.get(task_id)
            if task is None or task.status != TaskStatus.READY or version != task.priority_version:
                continue
            try:
                worker_id = self._place(task)
            except TaskmeshError as e:
                if e.task_id is None:
                    e.task_id = task.id
                self._fail(task, e)
                continue
            if worker_id is None:
                deferred.append(entry)
                continue
            self._start(task, worker_id)
        for entry in deferred:
            heapq.heappush(self._ready, entry)

    def alive_workers(self) -> List[int]:
        return sorted(wid for wid in self.workers if self.data.is_alive(wid))

    def _place(self, task: Task) -> Optional[int]:
        """Pick a worker for ``task``; None when every candidate is busy."""
        effective = intersect(task.scope, *self.data.implied_scopes(task))
        processors = [p for wid in self.alive_workers() for p in self.workers[wid].processors()]
        candidates = sorted({p.worker_id for p in admitted(effective, processors)})
        if not candidates:
            raise SchedulingError(
                f"No live processor admits scope {effective!r} for task {task.id} ({task.name})",
                task_id=task.id,
            )
        free = [wid for wid in candidates if self.load[wid] < self.workers[wid].capacity]
        if not free:
            return None
        return min(free, key=lambda wid: (-self.data.local_bytes(task, wid), self.load[wid], wid))

    def _start(self, task: Task, worker_id: int) -> None:
        task.status = TaskStatus.DISPATCHED
        task.worker = worker_id
        task.dispatched_at = time.time()
        self.load[worker_id] += 1
        self.inflight[worker_id].add(task.id)
        self._emit("dispatched", task)
        logger.debug(f"Dispatching task {task.id} ({task.name}) to worker {worker_id}")
        if task.timeout is not None:
            self._timers[task.id] = self.loop.call_later(task.timeout, self._on_timeout, task.id)
        self._background_task(self._send(task, worker_id))

    async def _send(self, task: Task, worker_id: int) -> None:
        try:
            request = await self.data.prepare(task, worker_id)
        except TaskmeshError as e:
            if e.task_id is None:
                e.task_id = task.id
            self._fail_if_dispatched(task, worker_id, e)
            return
        except Exception as e:
            self._fail_if_dispatched(
                task, worker_id, DataTransferError(f"Preparing arguments failed: {e}", task_id=task.id)
            )
            return

        if task.status != TaskStatus.DISPATCHED or task.worker != worker_id:
            return
        if task.cancel_requested:
            self._fail(task, TaskCancelledError(f"Task {task.id} cancelled", task_id=task.id))
            return
        try:
            await self.workers[worker_id].run(request)
        except Exception as e:
            self._fail_if_dispatched(
                task,
                worker_id,
                DataTransferError(f"Sending task {task.id} to worker {worker_id} failed: {e}", task_id=task.id),
            )

    def _fail_if_dispatched(self, task: Task, worker_id: int, error: BaseException) -> None:
        if task.status == TaskStatus.DISPATCHED and task.worker == worker_id:
            self._fail(task, error)

    def _release_slot(self, task: Task) -> None:
        timer = self._timers.pop(task.id, None)
        if timer is not None:
            timer.cancel()
        if task.worker is not None and task.id in self.inflight.get(task.worker, ()):
            self.inflight[task.worker].discard(task.id)
            self.load[task.worker] = max(0, self.load[task.worker] - 1)

    def _finish(self, task: Task) -> None:
        self._finish_seq += 1
        task.finished_seq = self._finish_seq
        task.finished_at = time.time()
        self._release_slot(task)

    def _complete(self, task: Task, chunk_id: int) -> None:
        task.status = TaskStatus.COMPLETED
        task.result_chunk = chunk_id
        self._finish(task)
        self.data.advance_generation(task)
        self._emit("completed", task, restored=task.restored)
        logger.debug(f"Task {task.id} ({task.name}) completed on worker {task.worker}")
        task.done.set()

        if task.checkpoint and self.checkpoints is not None and not task.restored:
            self._background_task(self._persist(task.id, task.checkpoint, chunk_id))

        for dep_id in sorted(task.dependents):
            dependent = self.graph.get(dep_id)
            if dependent is not None:
                self._evaluate(dependent)
        self._settled(task)

    def _fail(self, task: Task, error: BaseException) -> None:
        """Fail ``task`` and, transitively, every dependent that needs it."""
        pending: List[Tuple[Task, BaseException]] = [(task, error)]
        settled: List[Task] = []
        while pending:
            current, err = pending.pop()
            if current.status.is_terminal:
                continue
            current.status = TaskStatus.FAILED
            current.error = err
            self._finish(current)
            self.data.poison(current, err)
            code = getattr(err, "error_code", ErrorCode.UNKNOWN_ERROR)
            detail: Dict[str, Any] = {"error": str(err)}
            if isinstance(err, ExecutionError) and err.cause is not None:
                detail["cause"] = err.cause.value
            self._emit("failed", current, error_code=getattr(code, "value", str(code)), **detail)
            if isinstance(err, TaskCancelledError):
                self._emit("cancelled", current)
            logger.debug(f"Task {current.id} ({current.name}) failed: {err!r}")
            current.done.set()
            settled.append(current)

            origin = _origin(err, current.id)
            for dep_id in sorted(current.dependents, reverse=True):
                dependent = self.graph.get(dep_id)
                if dependent is None or dependent.status.is_terminal:
                    continue
                if current.id in dependent.deps:
                    pending.append((dependent, DependencyFailure(dependent.id, origin, err)))

        for current in settled:
            for dep_id in sorted(current.dependents):
                dependent = self.graph.get(dep_id)
                if dependent is not None:
                    self._evaluate(dependent)
        for current in settled:
            self._settled(current)

    def _settled(self, task: Task) -> None:
        """Drop the references a terminal task held and reclaim what is unused."""
        if not task.inputs_released:
            task.inputs_released = True
            for upstream in self.graph.upstream_tasks(task):
                upstream.refs -= 1
                self._maybe_remove(upstream)
            for chunk_id in task.chunk_refs:
                self._decref_chunk(chunk_id)
            for shard_id in task.shard_refs:
                self._decref_shard(shard_id)
        self._maybe_remove(task)
        self._schedule_dispatch()

    def _maybe_remove(self, task: Task) -> None:
        if task.id not in self.graph or not self.graph.removable(task):
            return
        self.graph.remove(task)
        if task.result_chunk is not None and task.output_chunk is None:
            self.data.release_chunk(task.result_chunk)

    def _decref_chunk(self, chunk_id: int) -> None:
        rec = self.data.chunks.get(chunk_id)
        if rec is None:
            return
        rec.refs -= 1
        if rec.refs <= 0:
            self.data.release_chunk(chunk_id)

    def _decref_shard(self, shard_id: int) -> None:
        shard = self.data.shards.get(shard_id)
        if shard is None:
            return
        shard.refs -= 1
        if shard.refs <= 0:
            self.data.release_shard(shard_id)

    # ------------------------------------------------------------------
    # worker events
    # ------------------------------------------------------------------

    def _on_message(self, message: Any) -> None:
        if isinstance(message, Heartbeat):
            self.monitor.beat(message.worker_id, message.timestamp)
        elif isinstance(message, TaskReport):
            self._on_report(message)
        else:
            logger.warning(f"Ignoring unknown worker message {type(message).__name__}")

    def _on_report(self, report: TaskReport) -> None:
        if report.worker_id in self.data.lost_workers:
            return
        task = self.graph.get(report.task_id)
        if task is None or task.status != TaskStatus.DISPATCHED or task.worker != report.worker_id:
            # late report after timeout or cancellation; discard what it produced
            if report.ok and report.result_id is not None and (task is None or task.output_chunk != report.result_id):
                self._background_task(self._drop_quietly(report.worker_id, report.result_id))
            logger.debug(f"Ignoring late report for task {report.task_id} from worker {report.worker_id}")
            return

        if report.ok:
            rec = self.data.register_result(task, report)
            self._complete(task, rec.id)
        elif report.cancelled:
            self._fail(task, TaskCancelledError(f"Task {task.id} cancelled", task_id=task.id))
        else:
            self._fail(task, self._error_from_report(task, report.error or {}))

    def _error_from_report(self, task: Task, payload: Dict[str, Any]) -> TaskmeshError:
        message = payload.get("message", "")
        if payload.get("stage") == "resolve":
            return DataTransferError(f"Worker {task.worker} could not resolve arguments: {message}", task_id=task.id)
        original = payload.get("exc")
        return ExecutionError(
            task.id,
            payload.get("type", "Exception"),
            message,
            traceback_text=payload.get("traceback", ""),
            original=original,
            cause=classify_error(original if original is not None else message, "execution"),
        )

    async def _drop_quietly(self, worker_id: int, chunk_id: int) -> None:
        try:
            await self.workers[worker_id].drop(chunk_id)
        except Exception as e:
            logger.debug(f"Dropping chunk {chunk_id} on worker {worker_id} failed: {e}")

    def _on_timeout(self, task_id: int) -> None:
        self._timers.pop(task_id, None)
        task = self.graph.get(task_id)
        if task is None or task.status != TaskStatus.DISPATCHED:
            return
        logger.warning(f"Task {task.id} ({task.name}) exceeded its {task.timeout}s deadline")
        self._background_task(self._cancel_on_worker(task.worker, task.id))
        self._fail(
            task,
            TaskTimeoutError(f"Task {task.id} produced no report within {task.timeout}s", task_id=task.id),
        )

    def _on_worker_lost(self, worker_id: int, reason: str) -> None:
        if worker_id in self.data.lost_workers:
            return
        lost_chunks = self.data.mark_worker_lost(worker_id)
        self.telemetry.emit("worker_lost", worker_id=worker_id, reason=reason, lost_chunks=lost_chunks)
        logger.warning(f"Worker {worker_id} lost ({reason}); {len(self.inflight.get(worker_id, ()))} tasks in flight")
        for task_id in sorted(self.inflight.pop(worker_id, set())):
            task = self.graph.get(task_id)
            if task is not None and task.status == TaskStatus.DISPATCHED:
                self._fail(task, WorkerLostError(f"Worker {worker_id} became unreachable: {reason}", task_id=task.id))
        self.load[worker_id] = 0
        self._schedule_dispatch()

    def mark_worker_lost(self, worker_id: int, reason: str = "marked lost") -> None:
        self.call(self._on_worker_lost, worker_id, reason)

    # ------------------------------------------------------------------
    # checkpoints
    # ------------------------------------------------------------------

    async def _try_restore(self, task: Task) -> None:
        try:
            record = await self.checkpoints.restore(task.checkpoint)
        except Exception as e:
            logger.warning(f"{CheckpointError.__name__}: restoring {task.checkpoint!r} for task {task.id} failed: {e}")
            record = None

        if task.status == TaskStatus.WAITING and record is not None and record.valid:
            worker_id = self._restore_target(task)
            if worker_id is not None:
                try:
                    chunk_id = await self.data.put_value(worker_id, record.value, task)
                except Exception as e:
                    logger.warning(f"Placing restored checkpoint {task.checkpoint!r} failed: {e}")
                else:
                    if task.status == TaskStatus.WAITING:
                        task.worker = worker_id
                        task.restored = True
                        report = TaskReport(
                            task.id,
                            worker_id,
                            ok=True,
                            result_id=chunk_id,
                            nbytes=estimate_nbytes(record.value),
                            meta=describe_value(record.value),
                        )
                        rec = self.data.register_result(task, report)
                        logger.info(f"Task {task.id} ({task.name}) restored from checkpoint {task.checkpoint!r}")
                        self._complete(task, rec.id)
                        return
                    await self._drop_quietly(worker_id, chunk_id)

        task.held = False
        self._evaluate(task)

    def _restore_target(self, task: Task) -> Optional[int]:
        processors = [p for wid in self.alive_workers() for p in self.workers[wid].processors()]
        candidates = sorted({p.worker_id for p in admitted(task.scope, processors)})
        if not candidates:
            return None
        return min(candidates, key=lambda wid: (self.load[wid], wid))

    async def _persist(self, task_id: int, key: str, chunk_id: int) -> None:
        try:
            value = await self.data.fetch_value(chunk_id)
            token = await self.checkpoints.persist(key, value)
        except Exception as e:
            logger.warning(f"{CheckpointError.__name__}: persisting task {task_id} as {key!r} failed: {e}")
            return
        logger.debug(f"Checkpointed task {task_id} as {key!r} (token {token})")

    # ------------------------------------------------------------------
    # queries (called from user threads)
    # ------------------------------------------------------------------

    def _task(self, task_id: int) -> Task:
        task = self.graph.get(task_id)
        if task is None:
            raise KeyError(f"Task {task_id} is not tracked")
        return task

    def _await_done(self, task: Task, timeout: Optional[float]) -> None:
        if self.on_loop():
            if not task.status.is_terminal:
                raise RuntimeError("Cannot wait for a task from the controller loop")
            return
        if not task.done.wait(timeout):
            raise TimeoutError(f"Task {task.id} did not settle within {timeout}s")

    def fetch(self, task_id: int, timeout: Optional[float] = None) -> Any:
        task = self.call(self._task, task_id)
        self._await_done(task, timeout)
        if task.status == TaskStatus.FAILED:
            raise task.error
        return self.run(self.data.fetch_value(task.result_chunk))

    def wait(self, task_id: int, timeout: Optional[float] = None) -> None:
        task = self.call(self._task, task_id)
        self._await_done(task, timeout)
        if task.status == TaskStatus.FAILED:
            raise task.error

    def settle(self, task_id: int, timeout: Optional[float] = None) -> Tuple[int, Optional[BaseException]]:
        """Wait without raising; return (finish order, error or None)."""
        task = self.call(self._task, task_id)
        self._await_done(task, timeout)
        return task.finished_seq or 0, task.error

    def status(self, task_id: int) -> TaskStatus:
        return self.call(lambda: self._task(task_id).status)

    def _writers(self, rec: Any) -> List[Task]:
        ids = list(getattr(rec, "initializers", []))
        if rec.last_writer is not None:
            ids.append(rec.last_writer)
        return [self.graph.tasks[i] for i in ids if i in self.graph.tasks]

    def fetch_chunk(self, chunk_id: int, timeout: Optional[float] = None) -> Any:
        def _writers() -> List[Task]:
            rec = self.data.chunks.get(chunk_id)
            if rec is None:
                raise KeyError(f"Chunk {chunk_id} is not tracked")
            return self._writers(rec)

        for writer in self.call(_writers):
            self._await_done(writer, timeout)
        return self.run(self.data.fetch_value(chunk_id))

    def fetch_shard(self, shard_id: int, timeout: Optional[float] = None) -> Dict[int, Any]:
        def _writers() -> Tuple[List[Task], Dict[int, int]]:
            shard = self.data.shards.get(shard_id)
            if shard is None:
                raise KeyError(f"Shard {shard_id} is not tracked")
            writers = self._writers(shard)
            for chunk_id in shard.members.values():
                rec = self.data.chunks.get(chunk_id)
                if rec is not None:
                    writers.extend(self._writers(rec))
            return writers, dict(shard.members)

        writers, members = self.call(_writers)
        for writer in writers:
            self._await_done(writer, timeout)
        shard = self.call(self.data.shards.get, shard_id)
        if shard is not None and shard.error is not None:
            raise shard.error
        return {wid: self.run(self.data.fetch_value(cid)) for wid, cid in sorted(members.items())}

    def chunk_owner(self, chunk_id: int) -> Optional[int]:
        rec = self.call(self.data.chunks.get, chunk_id)
        return rec.owner if rec is not None else None

    # ------------------------------------------------------------------
    # dynamic control
    # ------------------------------------------------------------------

    def cancel(self, task_id: int) -> bool:
        return self.call(self._cancel, task_id)

    def _cancel(self, task_id: int) -> bool:
        task = self.graph.get(task_id)
        if task is None or task.status.is_terminal:
            return False
        task.cancel_requested = True
        if task.status in (TaskStatus.WAITING, TaskStatus.READY):
            self._fail(task, TaskCancelledError(f"Task {task.id} cancelled", task_id=task.id))
            return True
        # dispatched: the worker decides whether it still can
        self._background_task(self._cancel_on_worker(task.worker, task.id))
        return True

    async def _cancel_on_worker(self, worker_id: Optional[int], task_id: int) -> None:
        if worker_id is None or not self.data.is_alive(worker_id):
            return
        try:
            await self.workers[worker_id].cancel(task_id)
        except Exception as e:
            logger.debug(f"Cancelling task {task_id} on worker {worker_id} failed: {e}")

    def reprioritize(self, task_id: int, priority: int) -> bool:
        return self.call(self._reprioritize, task_id, int(priority))

    def _reprioritize(self, task_id: int, priority: int) -> bool:
        task = self.graph.get(task_id)
        if task is None or task.status not in (TaskStatus.WAITING, TaskStatus.READY):
            return False
        task.priority = priority
        task.priority_version += 1
        if task.status == TaskStatus.READY:
            heapq.heappush(self._ready, (-task.priority, task.id, task.priority_version))
            self._schedule_dispatch()
        return True

    def add_dependency(self, task_id: int, dep_id: int) -> None:
        self.call(self._add_dependency, task_id, dep_id)

    def _add_dependency(self, task_id: int, dep_id: int) -> None:
        task = self._task(task_id)
        dep = self._task(dep_id)
        self.graph.add_dependency(task, dep)
        self._evaluate(task)

    def release_task(self, task_id: int) -> None:
        self._post_to_loop(self._release_task, task_id)

    def _release_task(self, task_id: int) -> None:
        task = self.graph.get(task_id)
        if task is not None:
            task.refs -= 1
            self._maybe_remove(task)

    def release_chunk(self, chunk_id: int) -> None:
        self._post_to_loop(self._decref_chunk, chunk_id)

    def release_shard(self, shard_id: int) -> None:
        self._post_to_loop(self._decref_shard, shard_id)

    # ------------------------------------------------------------------
    # introspection
    # ------------------------------------------------------------------

    def snapshot(self) -> Dict[str, Any]:
        return self.call(self._snapshot)

    def _snapshot(self) -> Dict[str, Any]:
        workers = []
        for wid, worker in sorted(self.workers.items()):
            info = worker.info()
            info.update(
                {
                    "alive": self.data.is_alive(wid),
                    "load": self.load.get(wid, 0),
                    "inflight": sorted(self.inflight.get(wid, ())),
                }
            )
            workers.append(info)
        graph = self.graph.snapshot()
        return make_json_safe(
            {
                "tasks": graph["tasks"],
                "counts": graph["counts"],
                "ready_queue": len(self._ready),
                "workers": workers,
                "data": self.data.snapshot(),
                "started_at": self.started_at,
            }
        )

    def task_info(self, task_id: int) -> Optional[Dict[str, Any]]:
        def _info() -> Optional[Dict[str, Any]]:
            task = self.graph.get(task_id)
            return make_json_safe(task.to_dict()) if task is not None else None

        return self.call(_info)


__all__ = ["Controller"]
