"""Structured lifecycle events emitted by the controller."""

from __future__ import annotations

import itertools
import logging
import queue
import threading
import time
from dataclasses import asdict, dataclass, field
from typing import Any, Dict, List, Optional, Protocol

from taskmesh.utils.serialization import make_json_safe

logger = logging.getLogger("taskmesh.telemetry")

EVENT_KINDS = (
    "created",
    "ready",
    "dispatched",
    "completed",
    "failed",
    "cancelled",
    "worker_lost",
    "transfer",
)


@dataclass
class TelemetryEvent:
    seq: int
    kind: str
    timestamp: float
    task_id: Optional[int] = None
    worker_id: Optional[int] = None
    name: Optional[str] = None
    error_code: Optional[str] = None
    detail: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return make_json_safe(asdict(self))


class TelemetrySink(Protocol):
    def handle(self, event: TelemetryEvent) -> None:
        ...


class ListSink:
    """Keeps every event in memory."""

    def __init__(self):
        self._events: List[TelemetryEvent] = []
        self._lock = threading.Lock()

    def handle(self, event: TelemetryEvent) -> None:
        with self._lock:
            self._events.append(event)

    @property
    def events(self) -> List[TelemetryEvent]:
        with self._lock:
            return list(self._events)

    def of_kind(self, kind: str) -> List[TelemetryEvent]:
        return [e for e in self.events if e.kind == kind]

    def for_task(self, task_id: int) -> List[TelemetryEvent]:
        return [e for e in self.events if e.task_id == task_id]

    def clear(self) -> None:
        with self._lock:
            self._events.clear()


class QueueSink:
    """Outbound channel for an external consumer."""

    def __init__(self, maxsize: int = 0):
        self.queue: "queue.Queue[TelemetryEvent]" = queue.Queue(maxsize=maxsize)
        self.dropped = 0

    def handle(self, event: TelemetryEvent) -> None:
        try:
            self.queue.put_nowait(event)
        except queue.Full:
            self.dropped += 1


class LoggingSink:
    def __init__(self, level: int = logging.DEBUG, logger_name: str = "taskmesh.telemetry"):
        self.level = level
        self.log = logging.getLogger(logger_name)

    def handle(self, event: TelemetryEvent) -> None:
        self.log.log(
            self.level,
            f"[{event.seq}] {event.kind} task={event.task_id} worker={event.worker_id} "
            f"name={event.name} error={event.error_code}",
        )


class Telemetry:
    """Numbers events and fans them out. Sink failures are logged, never raised."""

    def __init__(self, sinks=()):
        self.sinks = list(sinks)
        self._seq = itertools.count(1)

    def add_sink(self, sink: TelemetrySink) -> None:
        self.sinks.append(sink)

    def remove_sink(self, sink: TelemetrySink) -> None:
        if sink in self.sinks:
            self.sinks.remove(sink)

    def emit(
        self,
        kind: str,
        task_id: Optional[int] = None,
        worker_id: Optional[int] = None,
        name: Optional[str] = None,
        error_code: Optional[str] = None,
        **detail: Any,
    ) -> TelemetryEvent:
        event = TelemetryEvent(
            seq=next(self._seq),
            kind=kind,
            timestamp=time.time(),
            task_id=task_id,
            worker_id=worker_id,
            name=name,
            error_code=error_code,
            detail=detail,
        )
        for sink in list(self.sinks):
            try:
                sink.handle(event)
            except Exception as e:
                logger.error(f"Telemetry sink {type(sink).__name__} failed on {kind} event: {e}")
        return event


__all__ = ["TelemetryEvent", "Telemetry", "TelemetrySink", "ListSink", "QueueSink", "LoggingSink", "EVENT_KINDS"]
