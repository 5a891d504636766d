"""End-to-end scheduling on thread-worker clusters."""

import gc
import json
import time

import pytest

import taskmesh
from taskmesh import (
    Context,
    DataTransferError,
    DependencyFailure,
    ExecutionError,
    LostDataError,
    SchedulingError,
    TaskCancelledError,
    TaskStatus,
    TaskTimeoutError,
    WorkerLostError,
    scope,
    sync,
    with_options,
)
from taskmesh.common import ErrorCode
from taskmesh.errors import CycleError
from taskmesh.scheduler.checkpoint import MemoryCheckpointStore
from taskmesh.scheduler.telemetry import ListSink
from taskmesh.worker.thread_worker import ThreadWorker


def add(a, b):
    return a + b


def div(a, b):
    return a / b


def zeros(n):
    return [0] * n


def increment(values, index):
    values[index] += 1


def append(values, item):
    values.append(item)


def sleep_return(seconds, value):
    time.sleep(seconds)
    return value


def sleep_then_fail(seconds, message):
    time.sleep(seconds)
    raise ValueError(message)


def boom():
    raise RuntimeError("boom")


def whoami():
    return taskmesh.current_worker()


def worker_label():
    return {"worker": taskmesh.current_worker()}


def read_member(member):
    return member["worker"], taskmesh.current_worker()


def nested_add(n):
    return taskmesh.spawn(add, n, 1).fetch(timeout=10)


def refuse_connection():
    raise OSError("connection refused by upstream service")


class SealedWorker(ThreadWorker):
    """Runs tasks normally but never hands a chunk to anyone else."""

    async def get(self, chunk_id):
        raise ConnectionError(f"worker {self.worker_id} refused to send chunk {chunk_id}")


def never_called():
    raise AssertionError("should have been restored from a checkpoint")


def seqs(events, kind, task_id):
    return [e.seq for e in events.events if e.kind == kind and e.task_id == task_id]


# ============================================================================
# Basic scenarios
# ============================================================================


def test_add(ctx):
    assert ctx.spawn(add, 1, 2).fetch(timeout=10) == 3


def test_division_by_zero_raises_execution_error(ctx):
    handle = ctx.spawn(div, 1, 0)
    with pytest.raises(ExecutionError) as exc_info:
        handle.fetch(timeout=10)
    assert exc_info.value.exc_type == "ZeroDivisionError"
    assert isinstance(exc_info.value.original, ZeroDivisionError)
    assert exc_info.value.task_id == handle.id
    assert handle.status() == TaskStatus.FAILED


def test_user_exception_keeps_execution_error_code(ctx, events):
    handle = ctx.spawn(refuse_connection)
    with pytest.raises(ExecutionError) as exc_info:
        handle.fetch(timeout=10)
    assert exc_info.value.error_code == ErrorCode.EXECUTION_ERROR
    assert exc_info.value.to_dict()["cause"] == "DATA_TRANSFER_ERROR"
    (failed,) = [e for e in events.of_kind("failed") if e.task_id == handle.id]
    assert failed.error_code == "EXECUTION_ERROR"
    assert failed.detail["cause"] == "DATA_TRANSFER_ERROR"


def test_wait_and_status(ctx):
    handle = ctx.spawn(sleep_return, 0.05, "x")
    assert handle.status() in (TaskStatus.WAITING, TaskStatus.READY, TaskStatus.DISPATCHED, TaskStatus.COMPLETED)
    handle.wait(timeout=10)
    assert handle.status() == TaskStatus.COMPLETED
    assert handle.done()


def test_fetch_timeout_does_not_fail_the_task(ctx):
    handle = ctx.spawn(sleep_return, 0.3, "late")
    with pytest.raises(TimeoutError):
        handle.fetch(timeout=0.01)
    assert handle.fetch(timeout=10) == "late"


def test_chained_results(ctx):
    a = ctx.spawn(add, 1, 2)
    b = ctx.spawn(add, a, 10)
    c = ctx.spawn(add, a, b)
    assert c.fetch(timeout=10) == 16


def test_mutable_sequential_increments(ctx):
    data = ctx.mutable(zeros, 3)
    ctx.spawn(increment, data, 0, options={"mutates": [data]})
    ctx.spawn(increment, data, 0, options={"mutates": [data]})
    assert data.fetch(timeout=10)[0] == 2


def test_mutations_apply_in_spawn_order(ctx):
    data = ctx.mutable(list)
    for i in range(25):
        ctx.spawn(append, data, i, options={"mutates": [data]})
    assert data.fetch(timeout=10) == list(range(25))


def test_mutable_pinned_worker(ctx):
    data = ctx.mutable(zeros, 2, worker=2)
    reader = ctx.spawn(read_len_and_worker, data)
    assert reader.fetch(timeout=10) == (2, 2)
    assert data.owner == 2


def read_len_and_worker(values):
    return len(values), taskmesh.current_worker()


def test_absent_worker_scope_raises_scheduling_error(settings_factory):
    with Context(settings=settings_factory(num_workers=1)) as single:
        handle = single.spawn(add, 1, 2, options={"scope": scope(worker=99)})
        with pytest.raises(SchedulingError):
            handle.fetch(timeout=10)
        assert single.spawn(add, 2, 2).fetch(timeout=10) == 4


# ============================================================================
# Ordering and placement properties
# ============================================================================


def test_dispatch_follows_dependency_completion(ctx, events):
    a = ctx.spawn(sleep_return, 0.05, 1)
    b = ctx.spawn(add, a, 1)
    assert b.fetch(timeout=10) == 2
    (completed_a,) = seqs(events, "completed", a.id)
    (dispatched_b,) = seqs(events, "dispatched", b.id)
    assert dispatched_b > completed_a


def test_scope_pins_tasks_to_one_worker(ctx, events):
    handles = [ctx.spawn(whoami, options={"scope": scope(worker=2)}) for _ in range(6)]
    assert [h.fetch(timeout=10) for h in handles] == [2] * 6
    dispatched = [e for e in events.of_kind("dispatched") if e.task_id in {h.id for h in handles}]
    assert {e.worker_id for e in dispatched} == {2}


def test_shard_members_are_isolated(ctx):
    shard = ctx.shard(worker_label)
    assert shard.workers == [1, 2]
    for worker_id in shard.workers:
        observed = ctx.spawn(read_member, shard, options={"scope": scope(worker=worker_id)}).fetch(timeout=10)
        assert observed == (worker_id, worker_id)
    assert shard.fetch(timeout=10) == {1: {"worker": 1}, 2: {"worker": 2}}


def test_failure_propagates_to_transitive_dependents(ctx, events):
    a = ctx.spawn(boom)
    b = ctx.spawn(add, a, 1)
    c = ctx.spawn(add, b, 1)
    unrelated = ctx.spawn(add, 2, 2)

    with pytest.raises(DependencyFailure) as exc_info:
        c.fetch(timeout=10)
    assert exc_info.value.origin_task_id == a.id
    assert isinstance(exc_info.value.root_error, ExecutionError)
    assert isinstance(exc_info.value.__cause__, DependencyFailure)
    with pytest.raises(DependencyFailure):
        b.wait(timeout=10)

    dispatched = {e.task_id for e in events.of_kind("dispatched")}
    assert b.id not in dispatched
    assert c.id not in dispatched
    assert unrelated.fetch(timeout=10) == 4


def test_spawn_after_failure_fails_immediately(ctx):
    a = ctx.spawn(boom)
    with pytest.raises(ExecutionError):
        a.wait(timeout=10)
    b = ctx.spawn(add, a, 1)
    with pytest.raises(DependencyFailure):
        b.fetch(timeout=10)


def test_failed_mutation_poisons_later_mutations(ctx):
    data = ctx.mutable(zeros, 2)
    bad = ctx.spawn(increment, data, 7, options={"mutates": [data]})
    later = ctx.spawn(increment, data, 0, options={"mutates": [data]})
    with pytest.raises(ExecutionError):
        bad.fetch(timeout=10)
    with pytest.raises(DependencyFailure) as exc_info:
        later.fetch(timeout=10)
    assert exc_info.value.origin_task_id == bad.id
    with pytest.raises(ExecutionError):
        data.fetch(timeout=10)


# ============================================================================
# Synchronization scope
# ============================================================================


def test_sync_waits_for_all_and_raises_first_failure(ctx):
    with pytest.raises(ExecutionError) as exc_info:
        with sync():
            slow = ctx.spawn(sleep_return, 0.3, "done")
            ctx.spawn(sleep_then_fail, 0.2, "late")
            ctx.spawn(sleep_then_fail, 0.0, "early")
    assert "early" in str(exc_info.value)
    assert slow.status() == TaskStatus.COMPLETED


def test_sync_without_failures(ctx):
    with sync() as group:
        handles = [ctx.spawn(add, i, i) for i in range(5)]
    assert len(group.handles) == 5
    assert all(h.status() == TaskStatus.COMPLETED for h in handles)


def test_sync_body_exception_takes_precedence(ctx):
    with pytest.raises(KeyError):
        with sync():
            ctx.spawn(boom)
            raise KeyError("body")


# ============================================================================
# Dynamic control
# ============================================================================


def test_cancel_waiting_task(ctx):
    gate = ctx.spawn(sleep_return, 0.3, 1)
    dependent = ctx.spawn(add, gate, 1)
    downstream = ctx.spawn(add, dependent, 1)
    assert dependent.cancel()
    with pytest.raises(TaskCancelledError):
        dependent.fetch(timeout=10)
    with pytest.raises(DependencyFailure):
        downstream.fetch(timeout=10)
    assert gate.fetch(timeout=10) == 1
    assert not dependent.cancel()


def test_cancel_running_task_is_cooperative(ctx):
    def spin():
        deadline = time.monotonic() + 5
        while time.monotonic() < deadline:
            taskmesh.check_cancelled()
            time.sleep(0.01)
        return "finished"

    handle = ctx.spawn(spin)
    time.sleep(0.1)
    assert handle.cancel()
    with pytest.raises(TaskCancelledError):
        handle.fetch(timeout=10)


def test_priority_and_reprioritize(settings_factory):
    events = ListSink()
    with Context(settings=settings_factory(num_workers=1, threads_per_worker=1), sinks=[events]) as single:
        gate = single.spawn(sleep_return, 0.3, 0)
        low = single.spawn(add, 1, 1)
        mid = single.spawn(add, 2, 2, options={"priority": 5})
        high = single.spawn(add, 3, 3)
        assert high.reprioritize(10)
        for handle in (gate, low, mid, high):
            handle.wait(timeout=10)
        order = [e.task_id for e in events.of_kind("dispatched")]
        assert order == [gate.id, high.id, mid.id, low.id]
        assert not gate.reprioritize(1)


def test_deadline_fails_task_with_timeout(ctx):
    handle = ctx.spawn(sleep_return, 1.0, "slow", options={"timeout": 0.1})
    with pytest.raises(TaskTimeoutError) as exc_info:
        handle.fetch(timeout=10)
    assert isinstance(exc_info.value, TimeoutError)
    assert ctx.spawn(add, 1, 1).fetch(timeout=10) == 2


def test_add_dependency(ctx, events):
    gate = ctx.spawn(sleep_return, 0.3, 0)
    x = ctx.spawn(add, gate, 1)
    y = ctx.spawn(add, x, 1)
    with pytest.raises(CycleError):
        ctx.add_dependency(x, y)
    z = ctx.spawn(sleep_return, 0.1, 5)
    ctx.add_dependency(x, z)
    assert y.fetch(timeout=10) == 2
    (completed_z,) = seqs(events, "completed", z.id)
    (dispatched_x,) = seqs(events, "dispatched", x.id)
    assert dispatched_x > completed_z


def test_after_orders_side_effects(ctx, events):
    first = ctx.spawn(sleep_return, 0.1, "first")
    second = ctx.spawn(add, 1, 1, options={"after": [first]})
    assert second.fetch(timeout=10) == 2
    assert seqs(events, "dispatched", second.id)[0] > seqs(events, "completed", first.id)[0]


def test_with_options_applies_to_nested_spawns(ctx):
    with with_options(scope=scope(worker=1)):
        handles = [ctx.spawn(whoami) for _ in range(3)]
    assert [h.fetch(timeout=10) for h in handles] == [1, 1, 1]
    with with_options(scope=scope(worker=1)):
        with pytest.raises(SchedulingError):
            ctx.spawn(whoami, options={"scope": scope(worker=2)}).fetch(timeout=10)


def test_nested_spawn_from_thread_worker(ctx):
    assert ctx.spawn(nested_add, 1).fetch(timeout=10) == 2


def test_snapshot_is_json_safe(ctx):
    handle = ctx.spawn(add, 1, 2)
    handle.wait(timeout=10)
    snap = ctx.snapshot()
    json.dumps(snap)
    assert snap["tasks"][str(handle.id)]["status"] == "completed"
    assert [w["worker_id"] for w in snap["workers"]] == [1, 2]


def test_released_handles_are_removed(ctx, until):
    handle = ctx.spawn(add, 1, 2)
    handle.wait(timeout=10)
    task_id = handle.id
    del handle
    gc.collect()
    assert until(lambda: str(task_id) not in ctx.snapshot()["tasks"])


def test_file_references(ctx, tmp_path):
    source = tmp_path / "in.json"
    source.write_text(json.dumps({"a": 1}))
    ref = taskmesh.FileRef(str(source), loader=_load_json, saver=_dump_json)
    loaded = ctx.from_file(ref)
    assert loaded.fetch(timeout=10) == {"a": 1}

    target = taskmesh.FileRef(str(tmp_path / "out.json"), loader=_load_json, saver=_dump_json)
    doubled = ctx.spawn(_double_values, loaded)
    written = ctx.to_file(doubled, target)
    assert written.fetch(timeout=10).path == target.path
    assert json.loads((tmp_path / "out.json").read_text()) == {"a": 2}


def _load_json(path):
    with open(path) as f:
        return json.load(f)


def _dump_json(value, path):
    with open(path, "w") as f:
        json.dump(value, f)


def _double_values(d):
    return {k: v * 2 for k, v in d.items()}


# ============================================================================
# Worker loss and checkpoints
# ============================================================================


def test_worker_loss_fails_inflight_and_loses_pinned_data(settings_factory, until):
    w1, w2 = ThreadWorker(1, threads=2), ThreadWorker(2, threads=2)
    events = ListSink()
    with Context(workers=[w1, w2], settings=settings_factory(), sinks=[events]) as ctx:
        data = ctx.mutable(zeros, 3, worker=2)
        assert data.fetch(timeout=10) == [0, 0, 0]
        result = ctx.spawn(add, 1, 2, options={"scope": scope(worker=2)})
        assert result.fetch(timeout=10) == 3

        running = ctx.spawn(sleep_return, 2.0, "never", options={"scope": scope(worker=2)})
        assert until(lambda: running.status() == TaskStatus.DISPATCHED)
        w2.kill()

        with pytest.raises(WorkerLostError):
            running.fetch(timeout=10)
        assert ctx.alive_workers() == [1]
        assert events.of_kind("worker_lost")[0].worker_id == 2

        with pytest.raises(LostDataError):
            data.fetch(timeout=10)
        with pytest.raises(LostDataError):
            ctx.spawn(increment, data, 0, options={"mutates": [data]}).fetch(timeout=10)
        with pytest.raises(LostDataError):
            ctx.spawn(add, result, 1).fetch(timeout=10)
        assert ctx.spawn(add, 1, 1).fetch(timeout=10) == 2


def test_transfer_failure_fails_only_the_consumer(settings_factory):
    w1, w2 = SealedWorker(1, threads=2), ThreadWorker(2, threads=2)
    events = ListSink()
    with Context(workers=[w1, w2], settings=settings_factory(), sinks=[events]) as ctx:
        produced = ctx.spawn(add, 1, 2, options={"scope": scope(worker=1)})
        produced.wait(timeout=10)

        remote = ctx.spawn(add, produced, 1, options={"scope": scope(worker=2)})
        local = ctx.spawn(add, produced, 10, options={"scope": scope(worker=1)})
        unrelated = ctx.spawn(add, 5, 5, options={"scope": scope(worker=2)})

        with pytest.raises(DataTransferError, match="refused to send"):
            remote.fetch(timeout=10)
        local.wait(timeout=10)
        assert local.status() == TaskStatus.COMPLETED
        assert produced.status() == TaskStatus.COMPLETED
        assert unrelated.fetch(timeout=10) == 10
        (failed,) = [e for e in events.of_kind("failed") if e.task_id == remote.id]
        assert failed.error_code == "DATA_TRANSFER_ERROR"
        assert ctx.alive_workers() == [1, 2]


def test_lost_result_restored_from_checkpoint(settings_factory, until):
    store = MemoryCheckpointStore()
    w1, w2 = ThreadWorker(1, threads=2), ThreadWorker(2, threads=2)
    with Context(workers=[w1, w2], settings=settings_factory(), checkpoint_store=store) as ctx:
        result = ctx.spawn(add, 1, 2, options={"scope": scope(worker=2), "checkpoint": "three"})
        assert result.fetch(timeout=10) == 3
        assert until(lambda: "three" in store.keys())
        w2.kill()
        assert until(lambda: ctx.alive_workers() == [1])
        assert ctx.spawn(add, result, 1).fetch(timeout=10) == 4


def test_checkpoint_skips_recomputation(settings_factory, until):
    store = MemoryCheckpointStore()
    with Context(settings=settings_factory(), checkpoint_store=store) as first:
        assert first.spawn(add, 20, 22, options={"checkpoint": "answer"}).fetch(timeout=10) == 42
        assert until(lambda: "answer" in store.keys())

    events = ListSink()
    with Context(settings=settings_factory(), checkpoint_store=store, sinks=[events]) as second:
        handle = second.spawn(never_called, options={"checkpoint": "answer"})
        assert handle.fetch(timeout=10) == 42
        assert seqs(events, "dispatched", handle.id) == []
        (completed,) = [e for e in events.of_kind("completed") if e.task_id == handle.id]
        assert completed.detail["restored"] is True
        assert second.spawn(add, handle, 1).fetch(timeout=10) == 43


def test_invalid_checkpoint_is_recomputed(settings_factory, until):
    store = MemoryCheckpointStore()
    with Context(settings=settings_factory(), checkpoint_store=store) as ctx:
        assert ctx.spawn(add, 1, 1, options={"checkpoint": "two"}).fetch(timeout=10) == 2
        assert until(lambda: "two" in store.keys())
        ctx.controller.run(store.invalidate("two"))
        assert ctx.spawn(add, 1, 2, options={"checkpoint": "two"}).fetch(timeout=10) == 3
