"""Spawn options and their propagation through dynamic extents."""

from __future__ import annotations

import contextvars
from contextlib import contextmanager
from dataclasses import dataclass, field, fields, replace
from typing import Any, Iterator, Mapping, Optional, Sequence, Union

from taskmesh.core.scope import Scope, intersect


@dataclass(frozen=True)
class TaskOptions:
    scope: Optional[Scope] = None
    mutates: Sequence[Any] = field(default_factory=tuple)
    priority: Optional[int] = None
    timeout: Optional[float] = None
    checkpoint: Optional[str] = None
    name: Optional[str] = None
    after: Sequence[Any] = field(default_factory=tuple)

    @classmethod
    def coerce(cls, value: Union["TaskOptions", Mapping[str, Any], None]) -> "TaskOptions":
        if value is None:
            return cls()
        if isinstance(value, TaskOptions):
            return value
        if isinstance(value, Mapping):
            valid = {f.name for f in fields(cls)}
            unknown = set(value) - valid
            if unknown:
                raise TypeError(f"Unknown task options: {sorted(unknown)}")
            data = dict(value)
            for key in ("mutates", "after"):
                if key in data and data[key] is not None:
                    data[key] = tuple(data[key])
            return cls(**data)
        raise TypeError(f"options must be TaskOptions or a mapping, got {type(value).__name__}")

    def merged(self, override: "TaskOptions") -> "TaskOptions":
        """Options of ``override`` win; scopes are intersected, sequences concatenated."""
        return TaskOptions(
            scope=intersect(self.scope, override.scope)
            if self.scope is not None and override.scope is not None
            else (override.scope if override.scope is not None else self.scope),
            mutates=tuple(self.mutates) + tuple(override.mutates),
            priority=override.priority if override.priority is not None else self.priority,
            timeout=override.timeout if override.timeout is not None else self.timeout,
            checkpoint=override.checkpoint if override.checkpoint is not None else self.checkpoint,
            name=override.name if override.name is not None else self.name,
            after=tuple(self.after) + tuple(override.after),
        )


_propagated: contextvars.ContextVar[TaskOptions] = contextvars.ContextVar(
    "taskmesh_options", default=TaskOptions()
)


def current_options() -> TaskOptions:
    return _propagated.get()


@contextmanager
def with_options(**opts: Any) -> Iterator[TaskOptions]:
    """Apply default options to every spawn in the dynamic extent.

    Only scope, priority and timeout propagate; per-task fields such as
    ``mutates`` or ``checkpoint`` are rejected.
    """
    allowed = {"scope", "priority", "timeout"}
    bad = set(opts) - allowed
    if bad:
        raise TypeError(f"Options {sorted(bad)} cannot be propagated")
    merged = _propagated.get().merged(TaskOptions(**opts))
    token = _propagated.set(replace(merged, mutates=(), after=()))
    try:
        yield merged
    finally:
        _propagated.reset(token)
