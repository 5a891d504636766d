"""Core data models for the task graph and data placement."""

from __future__ import annotations

import threading
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, FrozenSet, List, Optional, Set, Tuple

from taskmesh.common import ArgKind, TaskStatus


@dataclass(frozen=True)
class Processor:
    """One execution slot on a worker."""

    worker_id: int
    kind: str
    index: int = 0
    tags: FrozenSet[str] = frozenset()

    def to_dict(self) -> Dict[str, Any]:
        return {
            "worker_id": self.worker_id,
            "kind": self.kind,
            "index": self.index,
            "tags": sorted(self.tags),
        }


@dataclass
class ArgSpec:
    """A classified spawn argument.

    ``value`` holds the literal for LITERAL/FILE, the upstream ``Task`` for
    TASK, a chunk id for DATA and a shard id for SHARD.
    """

    kind: ArgKind
    value: Any


@dataclass
class Task:
    id: int
    func: Callable[..., Any]
    name: str
    args: List[ArgSpec] = field(default_factory=list)
    kwargs: Dict[str, ArgSpec] = field(default_factory=dict)
    scope: Any = None
    priority: int = 0
    timeout: Optional[float] = None
    checkpoint: Optional[str] = None
    status: TaskStatus = TaskStatus.WAITING
    # deps must complete (failure propagates); order_deps only need to settle
    deps: Set[int] = field(default_factory=set)
    order_deps: Set[int] = field(default_factory=set)
    dependents: Set[int] = field(default_factory=set)
    consumes: Dict[int, int] = field(default_factory=dict)
    shard_writes: Set[int] = field(default_factory=set)
    chunk_refs: List[int] = field(default_factory=list)
    shard_refs: List[int] = field(default_factory=list)
    output_chunk: Optional[int] = None
    output_mutable: bool = False
    result_chunk: Optional[int] = None
    error: Optional[BaseException] = None
    preset_error: Optional[BaseException] = None
    worker: Optional[int] = None
    held: bool = False
    restored: bool = False
    inputs_released: bool = False
    cancel_requested: bool = False
    refs: int = 0
    priority_version: int = 0
    finished_seq: Optional[int] = None
    created_at: float = field(default_factory=time.time)
    dispatched_at: Optional[float] = None
    finished_at: Optional[float] = None
    done: threading.Event = field(default_factory=threading.Event, repr=False)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "task_id": self.id,
            "name": self.name,
            "status": self.status.value,
            "priority": self.priority,
            "worker": self.worker,
            "deps": sorted(self.deps),
            "order_deps": sorted(self.order_deps),
            "dependents": sorted(self.dependents),
            "result_chunk": self.result_chunk,
            "error": repr(self.error) if self.error is not None else None,
            "created_at": self.created_at,
            "dispatched_at": self.dispatched_at,
            "finished_at": self.finished_at,
        }


@dataclass
class ChunkRecord:
    """Location-table entry for one piece of data resident on workers."""

    id: int
    mutable: bool = False
    owner: Optional[int] = None
    replicas: Set[int] = field(default_factory=set)
    nbytes: int = 0
    meta: Dict[str, Any] = field(default_factory=dict)
    generation: int = 0
    pending_generation: int = 0
    materialized: bool = False
    lost: bool = False
    producer: Optional[int] = None
    checkpoint: Optional[str] = None
    last_writer: Optional[int] = None
    readers: List[int] = field(default_factory=list)
    error: Optional[BaseException] = None
    refs: int = 0
    shard: Optional[int] = None

    def resident_on(self, worker_id: int) -> bool:
        return worker_id == self.owner or worker_id in self.replicas

    def to_dict(self) -> Dict[str, Any]:
        return {
            "chunk_id": self.id,
            "mutable": self.mutable,
            "owner": self.owner,
            "replicas": sorted(self.replicas),
            "nbytes": self.nbytes,
            "meta": self.meta,
            "generation": self.generation,
            "lost": self.lost,
            "producer": self.producer,
            "last_writer": self.last_writer,
        }


@dataclass
class ShardRecord:
    id: int
    members: Dict[int, int] = field(default_factory=dict)
    initializers: List[int] = field(default_factory=list)
    last_writer: Optional[int] = None
    readers: List[int] = field(default_factory=list)
    generation: int = 0
    pending_generation: int = 0
    error: Optional[BaseException] = None
    refs: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "shard_id": self.id,
            "members": {str(w): c for w, c in sorted(self.members.items())},
            "last_writer": self.last_writer,
            "generation": self.generation,
        }


@dataclass
class DispatchRequest:
    """Task plus worker-local arguments, as sent to a worker.

    Each argument is a ``(tag, payload)`` pair: ``("literal", value)``,
    ``("local", chunk_id)`` or ``("file", ref)``.
    """

    task_id: int
    func: Callable[..., Any]
    args: List[Tuple[str, Any]]
    kwargs: Dict[str, Tuple[str, Any]]
    result_id: int
    name: str = ""


@dataclass
class TaskReport:
    task_id: int
    worker_id: int
    ok: bool
    result_id: Optional[int] = None
    nbytes: int = 0
    meta: Dict[str, Any] = field(default_factory=dict)
    error: Optional[Dict[str, Any]] = None
    cancelled: bool = False


@dataclass
class Heartbeat:
    worker_id: int
    timestamp: float = field(default_factory=time.monotonic)
