"""
Worker health monitor.

Runs inside the controller's event loop. A worker is declared unreachable
when:
    - its executor reports it is no longer alive (process exited, worker
      killed), or
    - it is expected to heartbeat and no heartbeat arrived within
      ``heartbeat_timeout`` seconds.
Declaring a worker unreachable is final; the controller fails its
in-flight tasks and marks the data it exclusively held as lost.
"""

from __future__ import annotations

import asyncio
import logging
import time
from typing import Callable, Dict, Optional, Set

from taskmesh.worker.base import Worker

logger = logging.getLogger("taskmesh.worker_monitor")


class WorkerMonitor:
    """Monitors worker liveness and reports lost workers."""

    def __init__(
        self,
        workers: Dict[int, Worker],
        on_lost: Callable[[int, str], None],
        monitor_interval: float = 0.5,
        heartbeat_timeout: float = 10.0,
    ):
        self.workers = workers
        self.on_lost = on_lost
        self.monitor_interval = monitor_interval
        self.heartbeat_timeout = heartbeat_timeout
        self.last_heartbeat: Dict[int, float] = {}
        self.lost: Set[int] = set()
        self.running = False
        logger.info(
            "Worker monitor configured with heartbeat_timeout=%ss, monitor_interval=%ss",
            self.heartbeat_timeout,
            self.monitor_interval,
        )

    def beat(self, worker_id: int, timestamp: Optional[float] = None) -> None:
        self.last_heartbeat[worker_id] = timestamp if timestamp is not None else time.monotonic()

    def register(self, worker_id: int) -> None:
        self.last_heartbeat[worker_id] = time.monotonic()

    async def run(self) -> None:
        self.running = True
        logger.info("Starting worker monitor")
        while self.running:
            try:
                self.check()
            except Exception as e:
                logger.error(f"Error in monitor loop: {e}")
            await asyncio.sleep(self.monitor_interval)

    def stop(self) -> None:
        self.running = False

    def check(self) -> None:
        now = time.monotonic()
        for worker_id, worker in list(self.workers.items()):
            if worker_id in self.lost:
                continue

            reason = ""
            if not worker.is_alive():
                reason = "worker not alive"
            elif worker.heartbeat_interval:
                last = self.last_heartbeat.get(worker_id)
                if last is not None and now - last > self.heartbeat_timeout:
                    reason = f"heartbeat timeout ({now - last:.1f}s)"

            if reason:
                self.lost.add(worker_id)
                logger.warning(f"Worker {worker_id} unreachable: {reason}")
                self.on_lost(worker_id, reason)
