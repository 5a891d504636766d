"""In-process worker backed by a thread pool."""

from __future__ import annotations

import copy
import logging
import threading
from concurrent.futures import ThreadPoolExecutor
from typing import Any, Callable, Dict, Iterable, List, Optional, Set

from taskmesh.core.types import DispatchRequest, Processor, TaskReport
from taskmesh.errors import TaskCancelledError
from taskmesh.utils.sizing import describe_value, estimate_nbytes
from taskmesh.worker.base import (
    ArgumentResolutionError,
    TaskContext,
    Worker,
    error_payload,
    resolve_arguments,
    task_scope,
)

logger = logging.getLogger("taskmesh.worker")


class ThreadWorker(Worker):
    """Runs tasks on ``threads`` OS threads sharing one local chunk store.

    Values placed with ``put`` are deep-copied so replicas never alias the
    source worker's objects. ``kill`` simulates the worker becoming
    unreachable: its store is discarded and it stops reporting.
    """

    kind = "thread"

    def __init__(self, worker_id: int, threads: int = 4, tags: Iterable[str] = ()):
        super().__init__(worker_id, tags)
        self.threads = max(1, int(threads))
        self._store: Dict[int, Any] = {}
        self._lock = threading.Lock()
        self._executor: Optional[ThreadPoolExecutor] = None
        self._cancelled: Set[int] = set()
        self._running: Dict[int, TaskContext] = {}
        self._alive = False
        self._slots = threading.local()
        self._slot_ids = iter(range(1 << 30))
        self.tasks_processed = 0

    @property
    def capacity(self) -> int:
        return self.threads

    def processors(self) -> List[Processor]:
        return [Processor(self.worker_id, self.kind, i, self.tags) for i in range(self.threads)]

    async def start(self, report: Callable[[Any], None], runtime: Any = None) -> None:
        self._report = report
        self.runtime = runtime
        self._executor = ThreadPoolExecutor(
            max_workers=self.threads,
            thread_name_prefix=f"taskmesh-worker-{self.worker_id}",
        )
        self._alive = True
        logger.info(f"Started thread worker {self.worker_id} with {self.threads} threads")

    async def run(self, request: DispatchRequest) -> None:
        if not self._alive or self._executor is None:
            raise RuntimeError(f"Worker {self.worker_id} is not running")
        self._executor.submit(self._execute, request)

    def _processor(self) -> Processor:
        index = getattr(self._slots, "index", None)
        if index is None:
            with self._lock:
                index = next(self._slot_ids) % self.threads
            self._slots.index = index
        return Processor(self.worker_id, self.kind, index, self.tags)

    def _lookup(self, chunk_id: int) -> Any:
        with self._lock:
            return self._store[chunk_id]

    def _emit(self, report: TaskReport) -> None:
        if self._alive and self._report is not None:
            self._report(report)

    def _execute(self, request: DispatchRequest) -> None:
        if not self._alive:
            return
        tc = TaskContext(
            task_id=request.task_id,
            worker_id=self.worker_id,
            processor=self._processor(),
            runtime=self.runtime,
        )
        with self._lock:
            if request.task_id in self._cancelled:
                self._cancelled.discard(request.task_id)
                skip = True
            else:
                self._running[request.task_id] = tc
                skip = False
        if skip:
            logger.debug(f"Worker {self.worker_id} skipping cancelled task {request.task_id}")
            self._emit(TaskReport(request.task_id, self.worker_id, ok=False, cancelled=True))
            return

        try:
            try:
                args, kwargs = resolve_arguments(request, self._lookup)
            except ArgumentResolutionError as e:
                self._emit(
                    TaskReport(request.task_id, self.worker_id, ok=False, error=error_payload(e, "resolve"))
                )
                return

            try:
                with task_scope(tc):
                    value = request.func(*args, **kwargs)
            except TaskCancelledError:
                self._emit(TaskReport(request.task_id, self.worker_id, ok=False, cancelled=True))
                return
            except Exception as e:
                logger.debug(f"Worker {self.worker_id} task {request.task_id} raised {type(e).__name__}: {e}")
                self._emit(
                    TaskReport(request.task_id, self.worker_id, ok=False, error=error_payload(e, "execute"))
                )
                return

            with self._lock:
                self._store[request.result_id] = value
            self._emit(
                TaskReport(
                    request.task_id,
                    self.worker_id,
                    ok=True,
                    result_id=request.result_id,
                    nbytes=estimate_nbytes(value),
                    meta=describe_value(value),
                )
            )
        finally:
            with self._lock:
                self._running.pop(request.task_id, None)
                self.tasks_processed += 1

    async def get(self, chunk_id: int) -> Any:
        if not self._alive:
            raise ConnectionError(f"Worker {self.worker_id} is unreachable")
        with self._lock:
            if chunk_id not in self._store:
                raise KeyError(f"Chunk {chunk_id} not resident on worker {self.worker_id}")
            return self._store[chunk_id]

    async def put(self, chunk_id: int, value: Any) -> None:
        if not self._alive:
            raise ConnectionError(f"Worker {self.worker_id} is unreachable")
        value = copy.deepcopy(value)
        with self._lock:
            self._store[chunk_id] = value

    async def drop(self, chunk_id: int) -> None:
        with self._lock:
            self._store.pop(chunk_id, None)

    async def cancel(self, task_id: int) -> None:
        with self._lock:
            tc = self._running.get(task_id)
            if tc is None:
                self._cancelled.add(task_id)
            else:
                tc.cancel_event.set()

    def resident(self) -> List[int]:
        with self._lock:
            return sorted(self._store)

    def is_alive(self) -> bool:
        return self._alive

    def kill(self) -> None:
        """Make the worker unreachable without a clean shutdown."""
        logger.warning(f"Thread worker {self.worker_id} killed")
        self._alive = False
        with self._lock:
            self._store.clear()
            for tc in self._running.values():
                tc.cancel_event.set()

    async def shutdown(self, timeout: float = 10.0) -> None:
        self._alive = False
        if self._executor is not None:
            self._executor.shutdown(wait=False, cancel_futures=True)
            self._executor = None
        with self._lock:
            for tc in self._running.values():
                tc.cancel_event.set()
            self._store.clear()
        logger.info(f"Thread worker {self.worker_id} shut down after {self.tasks_processed} tasks")
