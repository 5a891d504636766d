"""Worker kind registry: maps a ``worker_type`` name to a worker factory."""

from __future__ import annotations

from typing import Callable, Dict, Iterable

from taskmesh.common import WorkerType
from taskmesh.config.settings import Settings
from taskmesh.worker.base import Worker
from taskmesh.worker.process_worker import ProcessWorker
from taskmesh.worker.thread_worker import ThreadWorker

WorkerFactory = Callable[[int, Settings], Worker]

_FACTORIES: Dict[str, WorkerFactory] = {}


def register_worker_type(name: str, factory: WorkerFactory, replace: bool = False) -> None:
    if name in _FACTORIES and not replace:
        raise KeyError(f"Worker type '{name}' is already registered")
    _FACTORIES[name] = factory


def list_worker_types() -> Iterable[str]:
    return tuple(sorted(_FACTORIES))


def create_worker(kind: str, worker_id: int, config: Settings) -> Worker:
    """Build worker ``worker_id`` of the given kind from ``config``."""
    factory = _FACTORIES.get(kind)
    if factory is None:
        raise KeyError(f"Unknown worker type '{kind}'; registered: {', '.join(list_worker_types())}")
    return factory(worker_id, config)


def _thread_worker(worker_id: int, config: Settings) -> Worker:
    return ThreadWorker(worker_id, threads=config.threads_per_worker, tags=config.tags)


def _process_worker(worker_id: int, config: Settings) -> Worker:
    return ProcessWorker(
        worker_id,
        tags=config.tags,
        queue_depth=config.process_queue_depth,
        heartbeat_interval=config.heartbeat_interval,
        start_timeout=config.worker_start_timeout,
        request_timeout=config.transfer_timeout,
    )


register_worker_type(WorkerType.THREAD.value, _thread_worker)
register_worker_type(WorkerType.PROCESS.value, _process_worker)
