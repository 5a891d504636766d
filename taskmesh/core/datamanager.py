"""Data placement: the chunk location table and the movement protocol.

All methods run on the controller's event loop; only the coroutines touch
workers. Read-only chunks may be replicated to any worker and replicas are
kept until the chunk is released. Mutable chunks (and shard members) live
on exactly one worker and are never copied to another one.
"""

from __future__ import annotations

import asyncio
import copy
import itertools
import logging
from typing import Any, Callable, Dict, Iterable, List, Optional, Set, Tuple, Union

from taskmesh.common import ArgKind
from taskmesh.core.scope import ExactScope, Scope, union
from taskmesh.core.types import (
    ArgSpec,
    ChunkRecord,
    DispatchRequest,
    ShardRecord,
    Task,
    TaskReport,
)
from taskmesh.errors import (
    CheckpointError,
    DataTransferError,
    LostDataError,
    SchedulingError,
)

logger = logging.getLogger("taskmesh.data")

Chained = Union[ChunkRecord, ShardRecord]


class DataManager:
    def __init__(
        self,
        workers: Dict[int, Any],
        transfer_timeout: float = 60.0,
        checkpoints: Any = None,
        emit: Optional[Callable[..., None]] = None,
    ):
        self.workers = workers
        self.transfer_timeout = transfer_timeout
        self.checkpoints = checkpoints
        self.emit = emit or (lambda *args, **kwargs: None)
        self.lost_workers: Set[int] = set()
        self.chunks: Dict[int, ChunkRecord] = {}
        self.shards: Dict[int, ShardRecord] = {}
        self._chunk_ids = itertools.count(1)
        self._shard_ids = itertools.count(1)
        self._moves: Dict[Tuple[int, int], asyncio.Future] = {}
        self._drops: Set[asyncio.Task] = set()

    def new_chunk_id(self) -> int:
        return next(self._chunk_ids)

    def is_alive(self, worker_id: int) -> bool:
        worker = self.workers.get(worker_id)
        return worker is not None and worker_id not in self.lost_workers and worker.is_alive()

    # ------------------------------------------------------------------
    # allocation
    # ------------------------------------------------------------------

    def new_mutable(self) -> ChunkRecord:
        rec = ChunkRecord(id=self.new_chunk_id(), mutable=True)
        self.chunks[rec.id] = rec
        return rec

    def new_shard(self, worker_ids: Iterable[int]) -> ShardRecord:
        shard = ShardRecord(id=next(self._shard_ids))
        for worker_id in sorted(worker_ids):
            member = self.new_mutable()
            member.shard = shard.id
            shard.members[worker_id] = member.id
        self.shards[shard.id] = shard
        return shard

    # ------------------------------------------------------------------
    # spawn-time ordering (called while building the graph)
    # ------------------------------------------------------------------

    def record_write(self, rec: Chained, task: Task) -> None:
        """Make ``task`` the sole consumer of the record's next generation."""
        self._depend_on_initializers(rec, task)
        if rec.last_writer is not None:
            task.deps.add(rec.last_writer)
        task.order_deps.update(r for r in rec.readers if r != task.id)
        if rec.error is not None and task.preset_error is None:
            task.preset_error = rec.error
        if isinstance(rec, ChunkRecord):
            task.consumes[rec.id] = rec.pending_generation
        else:
            task.shard_writes.add(rec.id)
        rec.pending_generation += 1
        rec.last_writer = task.id
        rec.readers = []

    def record_read(self, rec: Chained, task: Task) -> None:
        self._depend_on_initializers(rec, task)
        if rec.last_writer is not None:
            task.deps.add(rec.last_writer)
        if rec.error is not None and task.preset_error is None:
            task.preset_error = rec.error
        rec.readers.append(task.id)

    def _depend_on_initializers(self, rec: Chained, task: Task) -> None:
        if isinstance(rec, ShardRecord):
            task.deps.update(i for i in rec.initializers if i != task.id)

    def forget_task(self, task: Task) -> None:
        """Drop a settled task from the reader lists and writer slots it touched."""
        touched: List[Chained] = []
        for chunk_id in itertools.chain(task.consumes, task.chunk_refs):
            if chunk_id in self.chunks:
                touched.append(self.chunks[chunk_id])
        for shard_id in itertools.chain(task.shard_writes, task.shard_refs):
            if shard_id in self.shards:
                touched.append(self.shards[shard_id])
        for rec in touched:
            if rec.last_writer == task.id:
                rec.last_writer = None
            if isinstance(rec, ShardRecord) and task.id in rec.initializers:
                rec.initializers.remove(task.id)
            while task.id in rec.readers:
                rec.readers.remove(task.id)

    # ------------------------------------------------------------------
    # completion
    # ------------------------------------------------------------------

    def register_result(self, task: Task, report: TaskReport) -> ChunkRecord:
        if task.output_chunk is not None:
            # the initializer holds a reference, so the record is still present
            rec = self.chunks[task.output_chunk]
        else:
            rec = ChunkRecord(id=report.result_id, mutable=False, producer=task.id)
            rec.checkpoint = task.checkpoint
            self.chunks[rec.id] = rec
        rec.owner = report.worker_id
        rec.replicas = {report.worker_id}
        rec.nbytes = report.nbytes
        rec.meta = dict(report.meta)
        rec.materialized = True
        rec.lost = False
        return rec

    def advance_generation(self, task: Task) -> None:
        for chunk_id, consumed in task.consumes.items():
            rec = self.chunks.get(chunk_id)
            if rec is None:
                continue
            if rec.generation != consumed:
                logger.error(
                    f"Chunk {chunk_id}: task {task.id} consumed generation {consumed} "
                    f"but chunk is at generation {rec.generation}"
                )
            rec.generation = consumed + 1
        for shard_id in task.shard_writes:
            shard = self.shards.get(shard_id)
            if shard is not None:
                shard.generation += 1

    def poison(self, task: Task, error: BaseException) -> None:
        """A mutator failed: later consumers of its handles must fail too."""
        for chunk_id in task.consumes:
            rec = self.chunks.get(chunk_id)
            if rec is not None and rec.error is None:
                rec.error = error
        for shard_id in task.shard_writes:
            shard = self.shards.get(shard_id)
            if shard is not None and shard.error is None:
                shard.error = error
        if task.output_chunk is not None:
            rec = self.chunks.get(task.output_chunk)
            if rec is not None and rec.error is None:
                rec.error = error
            if rec is not None and rec.shard in self.shards and self.shards[rec.shard].error is None:
                self.shards[rec.shard].error = error

    # ------------------------------------------------------------------
    # placement helpers
    # ------------------------------------------------------------------

    def _specs(self, task: Task) -> Iterable[ArgSpec]:
        return itertools.chain(task.args, task.kwargs.values())

    def implied_scopes(self, task: Task) -> List[Scope]:
        """Scopes forced by pinned arguments. Raises LostDataError for lost pins."""
        scopes: List[Scope] = []
        for spec in self._specs(task):
            if spec.kind == ArgKind.DATA:
                rec = self.chunks.get(spec.value)
                if rec is None or rec.lost:
                    raise LostDataError(f"Mutable chunk {spec.value} was lost", task_id=task.id)
                if rec.mutable:
                    scopes.append(ExactScope(worker=rec.owner))
            elif spec.kind == ArgKind.SHARD:
                shard = self.shards.get(spec.value)
                if shard is None:
                    raise LostDataError(f"Shard {spec.value} was released", task_id=task.id)
                available = [
                    ExactScope(worker=w)
                    for w, cid in shard.members.items()
                    if cid in self.chunks and not self.chunks[cid].lost
                ]
                if not available:
                    raise LostDataError(f"Every member of shard {spec.value} was lost", task_id=task.id)
                scopes.append(union(*available))
        return scopes

    def local_bytes(self, task: Task, worker_id: int) -> int:
        total = 0
        for spec in self._specs(task):
            if spec.kind == ArgKind.TASK:
                rec = self.chunks.get(spec.value.result_chunk)
            elif spec.kind == ArgKind.DATA:
                rec = self.chunks.get(spec.value)
            else:
                continue
            if rec is not None and rec.resident_on(worker_id):
                total += rec.nbytes
        return total

    # ------------------------------------------------------------------
    # movement
    # ------------------------------------------------------------------

    async def prepare(self, task: Task, worker_id: int) -> DispatchRequest:
        """Make every argument local to ``worker_id`` and build the request."""
        args = [await self._resolve(task, spec, worker_id) for spec in task.args]
        kwargs = {key: await self._resolve(task, spec, worker_id) for key, spec in task.kwargs.items()}
        result_id = task.output_chunk if task.output_chunk is not None else self.new_chunk_id()
        return DispatchRequest(
            task_id=task.id,
            func=task.func,
            args=args,
            kwargs=kwargs,
            result_id=result_id,
            name=task.name,
        )

    async def _resolve(self, task: Task, spec: ArgSpec, worker_id: int) -> Tuple[str, Any]:
        if spec.kind == ArgKind.LITERAL:
            return ("literal", spec.value)
        if spec.kind == ArgKind.FILE:
            return ("file", spec.value)
        if spec.kind == ArgKind.TASK:
            chunk_id = spec.value.result_chunk
            if chunk_id is None:
                raise DataTransferError(f"Upstream task {spec.value.id} has no result", task_id=task.id)
            await self.materialize(chunk_id, worker_id, task_id=task.id)
            return ("local", chunk_id)
        if spec.kind == ArgKind.DATA:
            await self.materialize(spec.value, worker_id, task_id=task.id)
            return ("local", spec.value)
        if spec.kind == ArgKind.SHARD:
            shard = self.shards.get(spec.value)
            member = shard.members.get(worker_id) if shard is not None else None
            if member is None:
                raise SchedulingError(
                    f"Shard {spec.value} has no member on worker {worker_id}", task_id=task.id
                )
            rec = self.chunks.get(member)
            if rec is None or rec.lost or not rec.resident_on(worker_id):
                raise LostDataError(f"Shard {spec.value} member on worker {worker_id} lost", task_id=task.id)
            return ("local", member)
        raise DataTransferError(f"Unknown argument kind {spec.kind}", task_id=task.id)

    async def materialize(self, chunk_id: int, worker_id: int, task_id: Optional[int] = None) -> None:
        """Ensure a copy of the chunk is resident on ``worker_id``."""
        rec = self.chunks.get(chunk_id)
        if rec is None:
            raise LostDataError(f"Chunk {chunk_id} was released", task_id=task_id)
        if rec.lost:
            await self._restore_lost(rec, worker_id, task_id)
            return
        if rec.resident_on(worker_id):
            return
        if rec.mutable:
            raise DataTransferError(
                f"Mutable chunk {chunk_id} lives on worker {rec.owner} and cannot be replicated "
                f"to worker {worker_id}",
                task_id=task_id,
            )

        key = (chunk_id, worker_id)
        inflight = self._moves.get(key)
        if inflight is not None:
            await asyncio.shield(inflight)
            return

        fut = asyncio.get_running_loop().create_future()
        self._moves[key] = fut
        try:
            await self._copy(rec, worker_id, task_id)
        except BaseException as e:
            fut.set_exception(e)
            # keep the exception retrieved even if nobody else awaits it
            fut.exception()
            raise
        else:
            fut.set_result(None)
        finally:
            self._moves.pop(key, None)

    async def _copy(self, rec: ChunkRecord, worker_id: int, task_id: Optional[int]) -> None:
        sources = sorted(w for w in rec.replicas if self.is_alive(w))
        if rec.owner in sources:
            sources.remove(rec.owner)
            sources.insert(0, rec.owner)
        if not sources:
            rec.lost = True
            await self._restore_lost(rec, worker_id, task_id)
            return

        source = sources[0]
        target = self.workers.get(worker_id)
        if target is None or not self.is_alive(worker_id):
            raise DataTransferError(f"Worker {worker_id} is unreachable", task_id=task_id)
        try:
            value = await asyncio.wait_for(self.workers[source].get(rec.id), self.transfer_timeout)
            await asyncio.wait_for(target.put(rec.id, value), self.transfer_timeout)
        except asyncio.TimeoutError:
            raise DataTransferError(
                f"Moving chunk {rec.id} from worker {source} to {worker_id} timed out after {self.transfer_timeout}s",
                task_id=task_id,
            ) from None
        except Exception as e:
            raise DataTransferError(
                f"Moving chunk {rec.id} from worker {source} to {worker_id} failed: {e}", task_id=task_id
            ) from e

        if rec.id in self.chunks:
            rec.replicas.add(worker_id)
        self.emit("transfer", worker_id=worker_id, chunk_id=rec.id, source=source, nbytes=rec.nbytes)
        logger.debug(f"Replicated chunk {rec.id} ({rec.nbytes} bytes) from worker {source} to {worker_id}")

    async def _restore_lost(self, rec: ChunkRecord, worker_id: int, task_id: Optional[int]) -> None:
        if rec.mutable or not rec.checkpoint or self.checkpoints is None:
            raise LostDataError(f"Chunk {rec.id} was lost with its worker", task_id=task_id)
        try:
            record = await self.checkpoints.restore(rec.checkpoint)
        except Exception as e:
            logger.warning(f"{CheckpointError.__name__}: restoring chunk {rec.id} failed: {e}")
            record = None
        if record is None or not record.valid:
            raise LostDataError(f"Chunk {rec.id} was lost and has no valid checkpoint", task_id=task_id)
        try:
            await asyncio.wait_for(self.workers[worker_id].put(rec.id, record.value), self.transfer_timeout)
        except Exception as e:
            raise DataTransferError(f"Restoring chunk {rec.id} on worker {worker_id} failed: {e}", task_id=task_id) from e
        rec.lost = False
        rec.owner = worker_id
        rec.replicas = {worker_id}
        logger.info(f"Restored lost chunk {rec.id} from checkpoint {rec.checkpoint!r} onto worker {worker_id}")

    async def fetch_value(self, chunk_id: int) -> Any:
        """Read a chunk's value into the caller. Mutable values are copied out."""
        rec = self.chunks.get(chunk_id)
        if rec is None:
            raise LostDataError(f"Chunk {chunk_id} was released")
        if rec.lost:
            if rec.mutable or not rec.checkpoint or self.checkpoints is None:
                raise LostDataError(f"Chunk {chunk_id} was lost with its worker")
            record = await self.checkpoints.restore(rec.checkpoint)
            if record is None or not record.valid:
                raise LostDataError(f"Chunk {chunk_id} was lost and has no valid checkpoint")
            return record.value
        if rec.error is not None:
            raise rec.error

        sources = sorted(w for w in rec.replicas if self.is_alive(w))
        if rec.owner in sources:
            sources.remove(rec.owner)
            sources.insert(0, rec.owner)
        last_error: Optional[BaseException] = None
        for source in sources:
            try:
                value = await asyncio.wait_for(self.workers[source].get(chunk_id), self.transfer_timeout)
            except asyncio.TimeoutError as e:
                last_error = e
                logger.warning(
                    f"Fetching chunk {chunk_id} from worker {source} timed out after {self.transfer_timeout}s"
                )
                continue
            except Exception as e:
                last_error = e
                logger.warning(f"Fetching chunk {chunk_id} from worker {source} failed: {e}")
                continue
            return copy.deepcopy(value) if rec.mutable else value
        if isinstance(last_error, asyncio.TimeoutError):
            raise DataTransferError(
                f"Fetching chunk {chunk_id} timed out after {self.transfer_timeout}s"
            ) from last_error
        if last_error is not None:
            raise DataTransferError(f"Fetching chunk {chunk_id} failed: {last_error}") from last_error
        raise LostDataError(f"Chunk {chunk_id} has no reachable replica")

    async def put_value(self, worker_id: int, value: Any, task: Task) -> int:
        """Place a value produced outside the workers (checkpoint restore)."""
        chunk_id = task.output_chunk if task.output_chunk is not None else self.new_chunk_id()
        await asyncio.wait_for(self.workers[worker_id].put(chunk_id, value), self.transfer_timeout)
        return chunk_id

    # ------------------------------------------------------------------
    # loss and release
    # ------------------------------------------------------------------

    def mark_worker_lost(self, worker_id: int) -> List[int]:
        self.lost_workers.add(worker_id)
        lost: List[int] = []
        for rec in self.chunks.values():
            if not rec.resident_on(worker_id):
                continue
            rec.replicas.discard(worker_id)
            if rec.mutable:
                rec.lost = True
                rec.replicas.clear()
            elif rec.owner == worker_id:
                rec.owner = min(rec.replicas) if rec.replicas else None
            if not rec.replicas:
                rec.lost = True
            if rec.lost:
                lost.append(rec.id)
        if lost:
            logger.warning(f"Worker {worker_id} lost; chunks {lost} have no remaining copy")
        return lost

    def release_chunk(self, chunk_id: int) -> None:
        rec = self.chunks.pop(chunk_id, None)
        if rec is None:
            return
        holders = set(rec.replicas)
        if rec.owner is not None:
            holders.add(rec.owner)
        for worker_id in holders:
            if self.is_alive(worker_id):
                task = asyncio.get_running_loop().create_task(self._drop(worker_id, chunk_id))
                self._drops.add(task)
                task.add_done_callback(self._drops.discard)

    def release_shard(self, shard_id: int) -> None:
        shard = self.shards.pop(shard_id, None)
        if shard is None:
            return
        for chunk_id in shard.members.values():
            self.release_chunk(chunk_id)

    async def _drop(self, worker_id: int, chunk_id: int) -> None:
        try:
            await self.workers[worker_id].drop(chunk_id)
        except Exception as e:
            logger.debug(f"Dropping chunk {chunk_id} on worker {worker_id} failed: {e}")

    def snapshot(self) -> Dict[str, Any]:
        return {
            "chunks": {str(cid): rec.to_dict() for cid, rec in sorted(self.chunks.items())},
            "shards": {str(sid): s.to_dict() for sid, s in sorted(self.shards.items())},
            "lost_workers": sorted(self.lost_workers),
        }


__all__ = ["DataManager"]
