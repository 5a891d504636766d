import time

from taskmesh.worker.monitor import WorkerMonitor


class FakeWorker:
    def __init__(self, alive=True, heartbeat_interval=None):
        self.alive = alive
        self.heartbeat_interval = heartbeat_interval

    def is_alive(self):
        return self.alive


def test_dead_worker_is_reported_once():
    lost = []
    workers = {1: FakeWorker(), 2: FakeWorker()}
    monitor = WorkerMonitor(workers, lambda wid, reason: lost.append((wid, reason)))
    monitor.check()
    assert lost == []

    workers[2].alive = False
    monitor.check()
    monitor.check()
    assert lost == [(2, "worker not alive")]
    assert monitor.lost == {2}


def test_missed_heartbeats_mark_worker_lost():
    lost = []
    workers = {1: FakeWorker(heartbeat_interval=0.1), 2: FakeWorker()}
    monitor = WorkerMonitor(workers, lambda wid, reason: lost.append(wid), heartbeat_timeout=1.0)
    monitor.register(1)
    monitor.register(2)
    monitor.last_heartbeat[2] = time.monotonic() - 100
    monitor.check()
    assert lost == []

    monitor.last_heartbeat[1] = time.monotonic() - 5
    monitor.check()
    assert lost == [1]


def test_heartbeat_keeps_worker_alive():
    lost = []
    workers = {1: FakeWorker(heartbeat_interval=0.1)}
    monitor = WorkerMonitor(workers, lambda wid, reason: lost.append(wid), heartbeat_timeout=1.0)
    monitor.last_heartbeat[1] = time.monotonic() - 5
    monitor.beat(1)
    monitor.check()
    assert lost == []
