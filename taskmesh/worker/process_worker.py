"""
Persistent subprocess worker.

Each ``ProcessWorker`` owns one spawned Python process that keeps a local
chunk store for the lifetime of the worker:
1. Messages are pickled in the parent before they are queued, so an
   unpicklable callable or argument fails the dispatch immediately.
2. The child serves its inbox on the main thread and runs tasks on a
   second one, so chunk reads and writes are answered while a task runs
   and a cancel reaches a task that is queued or already running.
3. A heartbeat thread in the child lets the monitor notice a hung process.
"""

from __future__ import annotations

import asyncio
import itertools
import logging
import multiprocessing as mp
import pickle
import queue
import sys
import threading
import time
from typing import Any, Callable, Dict, Iterable, List, Optional, Set

from taskmesh.core.types import DispatchRequest, Heartbeat, Processor, TaskReport
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

SHUTDOWN = "SHUTDOWN"


class ProcessWorker(Worker):
    kind = "process"

    def __init__(
        self,
        worker_id: int,
        tags: Iterable[str] = (),
        queue_depth: int = 2,
        heartbeat_interval: float = 1.0,
        start_timeout: float = 120.0,
        request_timeout: float = 60.0,
    ):
        super().__init__(worker_id, tags)
        self.queue_depth = max(1, int(queue_depth))
        self.heartbeat_interval = heartbeat_interval
        self.start_timeout = start_timeout
        self.request_timeout = request_timeout
        self.process: Optional[mp.process.BaseProcess] = None
        self.start_time = time.time()

        # spawn context keeps the child free of the parent's threads and locks
        self.ctx = mp.get_context("spawn")
        self.inbox = self.ctx.Queue()
        self.outbox = self.ctx.Queue()

        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._pending: Dict[int, asyncio.Future] = {}
        self._request_ids = itertools.count(1)
        self._reader: Optional[threading.Thread] = None
        self._alive_flag = False
        self.tasks_sent = 0

    @property
    def capacity(self) -> int:
        return self.queue_depth

    def processors(self) -> List[Processor]:
        return [Processor(self.worker_id, self.kind, 0, self.tags)]

    async def start(self, report: Callable[[Any], None], runtime: Any = None) -> None:
        self._report = report
        self.runtime = runtime
        self._loop = asyncio.get_running_loop()
        logger.info(f"[worker {self.worker_id}] Starting persistent process worker")

        self.process = self.ctx.Process(
            target=_process_worker_loop,
            args=(self.worker_id, self.inbox, self.outbox, self.heartbeat_interval),
            daemon=True,
            name=f"taskmesh-worker-{self.worker_id}",
        )
        self.process.start()

        try:
            raw = await self._loop.run_in_executor(None, self.outbox.get, True, self.start_timeout)
        except queue.Empty:
            self.process.terminate()
            self.process.join(timeout=5)
            raise RuntimeError(
                f"[worker {self.worker_id}] Worker initialization timeout (>{self.start_timeout}s)"
            )
        init_msg = pickle.loads(raw)
        if init_msg.get("status") != "READY":
            raise RuntimeError(f"Worker failed to initialize: {init_msg}")

        self._alive_flag = True
        self._reader = threading.Thread(
            target=self._read_outbox, name=f"taskmesh-reader-{self.worker_id}", daemon=True
        )
        self._reader.start()
        logger.info(
            f"[worker {self.worker_id}] Worker initialized successfully (pid={self.process.pid})"
        )

    def _send(self, message: Dict[str, Any]) -> None:
        if not self.is_alive():
            raise ConnectionError(f"Worker {self.worker_id} is not alive")
        self.inbox.put(pickle.dumps(message))

    def _read_outbox(self) -> None:
        while self._alive_flag:
            try:
                raw = self.outbox.get(timeout=0.5)
            except queue.Empty:
                if self.process is not None and not self.process.is_alive():
                    break
                continue
            except (EOFError, OSError):
                break
            try:
                message = pickle.loads(raw)
            except Exception as e:
                logger.error(f"[worker {self.worker_id}] Undecodable message from worker: {e}")
                continue
            self._route(message)
        self._fail_pending(ConnectionError(f"Worker {self.worker_id} connection closed"))

    def _route(self, message: Dict[str, Any]) -> None:
        op = message.get("op")
        if op == "report":
            if self._report is not None:
                self._report(message["report"])
        elif op == "heartbeat":
            if self._report is not None:
                self._report(Heartbeat(self.worker_id))
        elif op == "reply":
            fut = self._pending.pop(message["req"], None)
            if fut is None or self._loop is None:
                return
            if message.get("ok"):
                self._loop.call_soon_threadsafe(_settle, fut, message.get("value"), None)
            else:
                error = message.get("error") or {}
                exc = KeyError(error.get("message")) if error.get("type") == "KeyError" else RuntimeError(
                    f"{error.get('type')}: {error.get('message')}"
                )
                self._loop.call_soon_threadsafe(_settle, fut, None, exc)

    def _fail_pending(self, exc: BaseException) -> None:
        pending, self._pending = self._pending, {}
        if self._loop is None or self._loop.is_closed():
            return
        for fut in pending.values():
            try:
                self._loop.call_soon_threadsafe(_settle, fut, None, exc)
            except RuntimeError:
                pass

    async def _request(self, op: str, **payload: Any) -> Any:
        if self._loop is None:
            raise RuntimeError(f"Worker {self.worker_id} is not running")
        req = next(self._request_ids)
        fut = self._loop.create_future()
        self._pending[req] = fut
        try:
            self._send({"op": op, "req": req, **payload})
        except Exception:
            self._pending.pop(req, None)
            raise
        try:
            return await asyncio.wait_for(fut, self.request_timeout)
        finally:
            self._pending.pop(req, None)

    async def run(self, request: DispatchRequest) -> None:
        self._send({"op": "run", "request": request})
        self.tasks_sent += 1

    async def get(self, chunk_id: int) -> Any:
        return await self._request("get", chunk=chunk_id)

    async def put(self, chunk_id: int, value: Any) -> None:
        await self._request("put", chunk=chunk_id, value=value)

    async def drop(self, chunk_id: int) -> None:
        if self.is_alive():
            self._send({"op": "drop", "chunk": chunk_id})

    async def cancel(self, task_id: int) -> None:
        if self.is_alive():
            self._send({"op": "cancel", "task_id": task_id})

    def is_alive(self) -> bool:
        return self._alive_flag and self.process is not None and self.process.is_alive()

    async def shutdown(self, timeout: float = 10.0) -> None:
        logger.info(f"[worker {self.worker_id}] Shutting down worker...")
        loop = asyncio.get_running_loop()
        try:
            if self.process is not None and self.process.is_alive():
                self.inbox.put(pickle.dumps({"command": SHUTDOWN}))
                await loop.run_in_executor(None, self.process.join, timeout)

                if self.process.is_alive():
                    logger.warning(f"[worker {self.worker_id}] Force terminating worker")
                    self.process.terminate()
                    await loop.run_in_executor(None, self.process.join, 3)

                    if self.process.is_alive():
                        logger.error(f"[worker {self.worker_id}] Force killing worker")
                        self.process.kill()
                        await loop.run_in_executor(None, self.process.join)
        except Exception as e:
            logger.error(f"[worker {self.worker_id}] Error during shutdown: {e}")
            if self.process is not None and self.process.is_alive():
                self.process.kill()

        self._alive_flag = False
        self._fail_pending(ConnectionError(f"Worker {self.worker_id} shut down"))
        logger.info(
            f"[worker {self.worker_id}] Worker shut down "
            f"(sent {self.tasks_sent} tasks in {time.time() - self.start_time:.1f}s)"
        )

    def info(self) -> Dict[str, Any]:
        data = super().info()
        data["pid"] = self.process.pid if self.process else None
        return data


def _settle(fut: asyncio.Future, value: Any, exc: Optional[BaseException]) -> None:
    if fut.done():
        return
    if exc is not None:
        fut.set_exception(exc)
    else:
        fut.set_result(value)


def _process_worker_loop(worker_id: int, inbox, outbox, heartbeat_interval: Optional[float]) -> None:
    """Child-process main loop.

    The main thread owns the inbox and answers data requests as they arrive.
    Tasks run one at a time on a separate thread, so a long task never holds
    up a ``get`` for a chunk that is already resident.
    """
    store: Dict[int, Any] = {}
    lock = threading.Lock()
    cancelled_ids: Set[int] = set()
    running: Dict[int, TaskContext] = {}
    tasks: "queue.Queue[Optional[DispatchRequest]]" = queue.Queue()
    stop = threading.Event()
    processor = Processor(worker_id, ProcessWorker.kind, 0)

    def _put(message: Dict[str, Any]) -> None:
        outbox.put(pickle.dumps(message))

    def _heartbeat() -> None:
        while not stop.wait(heartbeat_interval):
            try:
                _put({"op": "heartbeat", "ts": time.time()})
            except Exception:
                return

    def _reply(req: int, ok: bool, value: Any = None, error: Optional[Dict[str, Any]] = None) -> None:
        try:
            _put({"op": "reply", "req": req, "ok": ok, "value": value, "error": error})
        except Exception as e:
            _put({"op": "reply", "req": req, "ok": False, "error": error_payload(e, "transfer")})

    def _lookup(chunk_id: int) -> Any:
        with lock:
            return store[chunk_id]

    def _execute(request: DispatchRequest) -> TaskReport:
        tc = TaskContext(task_id=request.task_id, worker_id=worker_id, processor=processor)
        with lock:
            if request.task_id in cancelled_ids:
                cancelled_ids.discard(request.task_id)
                return TaskReport(request.task_id, worker_id, ok=False, cancelled=True)
            running[request.task_id] = tc
        try:
            try:
                args, kwargs = resolve_arguments(request, _lookup)
            except ArgumentResolutionError as e:
                return TaskReport(request.task_id, worker_id, ok=False, error=error_payload(e, "resolve"))
            try:
                with task_scope(tc):
                    value = request.func(*args, **kwargs)
            except TaskCancelledError:
                return TaskReport(request.task_id, worker_id, ok=False, cancelled=True)
            except Exception as e:
                return TaskReport(request.task_id, worker_id, ok=False, error=error_payload(e, "execute"))
            with lock:
                store[request.result_id] = value
            return TaskReport(
                request.task_id,
                worker_id,
                ok=True,
                result_id=request.result_id,
                nbytes=estimate_nbytes(value),
                meta=describe_value(value),
            )
        finally:
            with lock:
                running.pop(request.task_id, None)

    def _run_tasks() -> None:
        while True:
            request = tasks.get()
            if request is None:
                return
            report = _execute(request)
            try:
                _put({"op": "report", "report": report})
            except Exception as e:
                _put(
                    {
                        "op": "report",
                        "report": TaskReport(
                            request.task_id, worker_id, ok=False, error=error_payload(e, "report")
                        ),
                    }
                )

    def _cancel(task_id: int) -> None:
        with lock:
            tc = running.get(task_id)
            if tc is None:
                cancelled_ids.add(task_id)
            else:
                tc.cancel_event.set()

    try:
        if heartbeat_interval:
            threading.Thread(target=_heartbeat, daemon=True).start()
        threading.Thread(target=_run_tasks, name=f"taskmesh-tasks-{worker_id}", daemon=True).start()
        _put({"status": "READY", "pid": mp.current_process().pid})

        while True:
            batch: List[Dict[str, Any]] = [pickle.loads(inbox.get())]
            while True:
                try:
                    batch.append(pickle.loads(inbox.get_nowait()))
                except queue.Empty:
                    break
            # cancels first, so a cancel queued behind its task still skips it
            for message in batch:
                if message.get("op") == "cancel":
                    _cancel(message["task_id"])

            if any(message.get("command") == SHUTDOWN for message in batch):
                with lock:
                    for tc in running.values():
                        tc.cancel_event.set()
                tasks.put(None)
                break

            for message in batch:
                op = message.get("op")
                if op == "run":
                    tasks.put(message["request"])
                elif op == "get":
                    with lock:
                        found = message["chunk"] in store
                        value = store.get(message["chunk"])
                    if found:
                        _reply(message["req"], True, value)
                    else:
                        _reply(
                            message["req"],
                            False,
                            error={"type": "KeyError", "message": f"Chunk {message['chunk']} not resident"},
                        )
                elif op == "put":
                    with lock:
                        store[message["chunk"]] = message["value"]
                    _reply(message["req"], True)
                elif op == "drop":
                    with lock:
                        store.pop(message["chunk"], None)
    except Exception as e:
        print(f"[worker {worker_id}] Worker loop failed: {e}", file=sys.stderr)
        try:
            _put({"status": "INIT_FAILED", "error": str(e)})
        except Exception:
            pass
    finally:
        stop.set()
