"""Chunk movement between live thread workers."""

import asyncio

import pytest

from taskmesh.common import ArgKind
from taskmesh.core.datamanager import DataManager
from taskmesh.core.types import ArgSpec, Task, TaskReport
from taskmesh.errors import DataTransferError, LostDataError
from taskmesh.scheduler.checkpoint import MemoryCheckpointStore
from taskmesh.worker.thread_worker import ThreadWorker


class CountingWorker(ThreadWorker):
    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self.gets = 0

    async def get(self, chunk_id):
        self.gets += 1
        await asyncio.sleep(0.01)
        return await super().get(chunk_id)


async def _cluster(count=2, checkpoints=None):
    workers = {wid: CountingWorker(wid, threads=1) for wid in range(1, count + 1)}
    for worker in workers.values():
        await worker.start(lambda message: None)
    return workers, DataManager(workers, transfer_timeout=5.0, checkpoints=checkpoints)


async def _shutdown(workers):
    for worker in workers.values():
        await worker.shutdown()


# ============================================================================
# Replication of read-only chunks
# ============================================================================


def test_materialize_replicates_and_dedupes():
    async def scenario():
        workers, data = await _cluster()
        try:
            task = Task(id=1, func=list, name="produce")
            chunk_id = data.new_chunk_id()
            await workers[1].put(chunk_id, [1, 2, 3])
            rec = data.register_result(task, TaskReport(1, 1, True, result_id=chunk_id, nbytes=24))
            await asyncio.gather(*(data.materialize(rec.id, 2) for _ in range(5)))
            assert rec.replicas == {1, 2}
            assert workers[1].gets == 1
            assert await workers[2].get(rec.id) == [1, 2, 3]
            # already resident: no further transfer
            await data.materialize(rec.id, 2)
            assert workers[1].gets == 1
        finally:
            await _shutdown(workers)

    asyncio.run(scenario())


def test_local_bytes_prefers_holders():
    async def scenario():
        workers, data = await _cluster()
        try:
            producer = Task(id=1, func=list, name="produce")
            chunk_id = data.new_chunk_id()
            await workers[2].put(chunk_id, b"x" * 100)
            data.register_result(producer, TaskReport(1, 2, True, result_id=chunk_id, nbytes=100))
            producer.result_chunk = chunk_id
            consumer = Task(id=2, func=len, name="consume", args=[ArgSpec(ArgKind.TASK, producer)])
            assert data.local_bytes(consumer, 2) == 100
            assert data.local_bytes(consumer, 1) == 0
        finally:
            await _shutdown(workers)

    asyncio.run(scenario())


# ============================================================================
# Mutable chunks
# ============================================================================


def test_mutable_chunks_are_never_replicated():
    async def scenario():
        workers, data = await _cluster()
        try:
            rec = data.new_mutable()
            init = Task(id=1, func=list, name="init", output_chunk=rec.id, output_mutable=True)
            await workers[1].put(rec.id, [0, 0, 0])
            data.register_result(init, TaskReport(1, 1, True, result_id=rec.id))
            with pytest.raises(DataTransferError):
                await data.materialize(rec.id, 2)
            assert rec.replicas == {1}

            reader = Task(id=2, func=len, name="read", args=[ArgSpec(ArgKind.DATA, rec.id)])
            scopes = data.implied_scopes(reader)
            assert len(scopes) == 1 and scopes[0].worker == 1
        finally:
            await _shutdown(workers)

    asyncio.run(scenario())


def test_fetch_value_copies_mutable_data():
    async def scenario():
        workers, data = await _cluster()
        try:
            rec = data.new_mutable()
            init = Task(id=1, func=list, name="init", output_chunk=rec.id, output_mutable=True)
            await workers[1].put(rec.id, [0, 0, 0])
            data.register_result(init, TaskReport(1, 1, True, result_id=rec.id))
            value = await data.fetch_value(rec.id)
            value[0] = 99
            assert await workers[1].get(rec.id) == [0, 0, 0]
        finally:
            await _shutdown(workers)

    asyncio.run(scenario())


# ============================================================================
# Worker loss
# ============================================================================


def test_worker_loss_marks_sole_copies_lost():
    async def scenario():
        workers, data = await _cluster()
        try:
            shared = data.new_chunk_id()
            only = data.new_chunk_id()
            await workers[1].put(shared, "a")
            await workers[1].put(only, "b")
            rec_shared = data.register_result(Task(id=1, func=str, name="a"), TaskReport(1, 1, True, result_id=shared))
            rec_only = data.register_result(Task(id=2, func=str, name="b"), TaskReport(2, 1, True, result_id=only))
            await data.materialize(shared, 2)

            lost = data.mark_worker_lost(1)
            assert lost == [only]
            assert rec_only.lost
            assert not rec_shared.lost
            assert rec_shared.owner == 2
            assert await data.fetch_value(shared) == "a"
            with pytest.raises(LostDataError):
                await data.fetch_value(only)
        finally:
            await _shutdown(workers)

    asyncio.run(scenario())


def test_lost_chunk_restored_from_checkpoint():
    async def scenario():
        store = MemoryCheckpointStore()
        await store.persist("answer", 42)
        workers, data = await _cluster(checkpoints=store)
        try:
            chunk_id = data.new_chunk_id()
            await workers[1].put(chunk_id, 42)
            task = Task(id=1, func=int, name="answer", checkpoint="answer")
            rec = data.register_result(task, TaskReport(1, 1, True, result_id=chunk_id))
            data.mark_worker_lost(1)
            assert rec.lost
            await data.materialize(chunk_id, 2)
            assert not rec.lost
            assert rec.owner == 2
            assert await workers[2].get(chunk_id) == 42
        finally:
            await _shutdown(workers)

    asyncio.run(scenario())


# ============================================================================
# Transfer failures
# ============================================================================


class RefusingWorker(ThreadWorker):
    async def get(self, chunk_id):
        raise ConnectionError(f"chunk {chunk_id} refused")


class StalledWorker(ThreadWorker):
    async def get(self, chunk_id):
        await asyncio.sleep(10)


def test_failed_replication_raises_data_transfer_error():
    async def scenario():
        workers = {1: RefusingWorker(1, threads=1), 2: ThreadWorker(2, threads=1)}
        for worker in workers.values():
            await worker.start(lambda message: None)
        data = DataManager(workers, transfer_timeout=5.0)
        try:
            chunk_id = data.new_chunk_id()
            await workers[1].put(chunk_id, [1, 2])
            rec = data.register_result(Task(id=1, func=list, name="produce"), TaskReport(1, 1, True, result_id=chunk_id))
            with pytest.raises(DataTransferError, match="refused") as exc_info:
                await data.materialize(chunk_id, 2, task_id=7)
            assert exc_info.value.task_id == 7
            assert rec.replicas == {1}
            assert not rec.lost
            assert data._moves == {}
        finally:
            await _shutdown(workers)

    asyncio.run(scenario())


def test_stalled_source_times_out_with_a_clear_message():
    async def scenario():
        workers = {1: StalledWorker(1, threads=1), 2: ThreadWorker(2, threads=1)}
        for worker in workers.values():
            await worker.start(lambda message: None)
        data = DataManager(workers, transfer_timeout=0.2)
        try:
            chunk_id = data.new_chunk_id()
            await workers[1].put(chunk_id, "value")
            data.register_result(Task(id=1, func=str, name="produce"), TaskReport(1, 1, True, result_id=chunk_id))
            with pytest.raises(DataTransferError, match=r"timed out after 0\.2s"):
                await data.fetch_value(chunk_id)
            with pytest.raises(DataTransferError, match=r"timed out after 0\.2s"):
                await data.materialize(chunk_id, 2)
        finally:
            await _shutdown(workers)

    asyncio.run(scenario())


def test_release_keeps_drop_tasks_until_they_finish():
    async def scenario():
        workers, data = await _cluster()
        try:
            chunk_id = data.new_chunk_id()
            await workers[1].put(chunk_id, "gone")
            data.register_result(Task(id=1, func=str, name="produce"), TaskReport(1, 1, True, result_id=chunk_id))
            data.release_chunk(chunk_id)
            assert len(data._drops) == 1
            await asyncio.gather(*list(data._drops))
            await asyncio.sleep(0)
            assert data._drops == set()
            assert workers[1].resident() == []
        finally:
            await _shutdown(workers)

    asyncio.run(scenario())
