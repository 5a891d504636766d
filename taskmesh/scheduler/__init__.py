"""Scheduler controller and its collaborators."""

from .checkpoint import (
    CheckpointRecord,
    CheckpointStore,
    MemoryCheckpointStore,
    RedisCheckpointStore,
    create_checkpoint_store,
)
from .controller import Controller
from .telemetry import ListSink, LoggingSink, QueueSink, Telemetry, TelemetryEvent

__all__ = [
    "CheckpointRecord",
    "CheckpointStore",
    "Controller",
    "ListSink",
    "LoggingSink",
    "MemoryCheckpointStore",
    "QueueSink",
    "RedisCheckpointStore",
    "Telemetry",
    "TelemetryEvent",
    "create_checkpoint_store",
]
