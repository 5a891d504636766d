import asyncio
import operator

import pytest

from taskmesh.core.types import DispatchRequest, TaskReport
from taskmesh.worker.base import current_worker
from taskmesh.worker.thread_worker import ThreadWorker


class Reports:
    def __init__(self):
        self.items = []

    def __call__(self, message):
        if isinstance(message, TaskReport):
            self.items.append(message)

    def for_task(self, task_id):
        return [r for r in self.items if r.task_id == task_id]


@pytest.fixture
def worker():
    w = ThreadWorker(3, threads=2, tags=["cpu"])
    reports = Reports()
    asyncio.run(w.start(reports))
    w.reports = reports
    yield w
    asyncio.run(w.shutdown())


def literal(value):
    return ("literal", value)


def report_for(worker, until, task_id):
    assert until(lambda: worker.reports.for_task(task_id))
    (report,) = worker.reports.for_task(task_id)
    return report


def test_processors_follow_thread_count(worker):
    processors = worker.processors()
    assert [p.index for p in processors] == [0, 1]
    assert {p.worker_id for p in processors} == {3}
    assert all(p.tags == frozenset({"cpu"}) for p in processors)
    assert worker.capacity == 2


def test_runs_request_and_keeps_result(worker, until):
    request = DispatchRequest(1, operator.add, [literal(1), literal(2)], {}, result_id=100)
    asyncio.run(worker.run(request))
    report = report_for(worker, until, 1)
    assert report.ok and report.result_id == 100
    assert asyncio.run(worker.get(100)) == 3
    assert worker.resident() == [100]


def test_local_arguments_resolve_from_store(worker, until):
    asyncio.run(worker.put(7, [1, 2, 3]))
    request = DispatchRequest(2, len, [("local", 7)], {}, result_id=8)
    asyncio.run(worker.run(request))
    assert report_for(worker, until, 2).ok
    assert asyncio.run(worker.get(8)) == 3


def test_missing_chunk_is_a_resolve_error(worker, until):
    request = DispatchRequest(3, len, [("local", 999)], {}, result_id=9)
    asyncio.run(worker.run(request))
    report = report_for(worker, until, 3)
    assert not report.ok
    assert report.error["stage"] == "resolve"


def test_exception_payload_carries_original(worker, until):
    request = DispatchRequest(4, operator.truediv, [literal(1), literal(0)], {}, result_id=10)
    asyncio.run(worker.run(request))
    report = report_for(worker, until, 4)
    assert report.error["type"] == "ZeroDivisionError"
    assert report.error["stage"] == "execute"
    assert isinstance(report.error["exc"], ZeroDivisionError)
    assert "Traceback" in report.error["traceback"]


def test_cancel_before_start_skips_the_task(worker, until):
    asyncio.run(worker.cancel(5))
    asyncio.run(worker.run(DispatchRequest(5, operator.add, [literal(1), literal(1)], {}, result_id=11)))
    report = report_for(worker, until, 5)
    assert report.cancelled and not report.ok


def test_task_sees_its_worker(worker, until):
    asyncio.run(worker.run(DispatchRequest(6, current_worker, [], {}, result_id=12)))
    assert report_for(worker, until, 6).ok
    assert asyncio.run(worker.get(12)) == 3


def test_put_copies_values(worker):
    value = {"a": [1]}
    asyncio.run(worker.put(1, value))
    value["a"].append(2)
    assert asyncio.run(worker.get(1)) == {"a": [1]}


def test_kill_makes_worker_unreachable(worker):
    asyncio.run(worker.put(1, "x"))
    worker.kill()
    assert not worker.is_alive()
    with pytest.raises(ConnectionError):
        asyncio.run(worker.get(1))
    with pytest.raises(RuntimeError):
        asyncio.run(worker.run(DispatchRequest(7, len, [literal("ab")], {}, result_id=2)))


def test_info_describes_worker(worker):
    info = worker.info()
    assert info["worker_id"] == 3
    assert info["kind"] == "thread"
    assert info["capacity"] == 2
    assert info["tags"] == ["cpu"]
