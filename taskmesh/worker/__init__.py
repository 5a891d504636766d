"""Worker executors for Taskmesh."""

from .base import TaskContext, Worker, cancelled, check_cancelled, current_task, current_worker, in_task
from .monitor import WorkerMonitor
from .process_worker import ProcessWorker
from .registry import create_worker, list_worker_types, register_worker_type
from .thread_worker import ThreadWorker

__all__ = [
    "TaskContext",
    "Worker",
    "ThreadWorker",
    "ProcessWorker",
    "WorkerMonitor",
    "create_worker",
    "list_worker_types",
    "register_worker_type",
    "cancelled",
    "check_cancelled",
    "current_task",
    "current_worker",
    "in_task",
]
