"""Placement scopes: predicates over the processors a task may run on."""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import FrozenSet, Iterable, List, Optional, Sequence

from taskmesh.core.types import Processor


class Scope(ABC):
    """Immutable predicate over processors, composable with ``&`` and ``|``."""

    @abstractmethod
    def admits(self, proc: Processor) -> bool:
        ...

    def __and__(self, other: "Scope") -> "Scope":
        return intersect(self, other)

    def __or__(self, other: "Scope") -> "Scope":
        return union(self, other)


class AnyScope(Scope):
    """Admits every processor. The default scope."""

    def admits(self, proc: Processor) -> bool:
        return True

    def __eq__(self, other: object) -> bool:
        return isinstance(other, AnyScope)

    def __hash__(self) -> int:
        return hash("AnyScope")

    def __repr__(self) -> str:
        return "AnyScope()"


class NullScope(Scope):
    """Admits nothing. Result of intersecting disjoint scopes."""

    def admits(self, proc: Processor) -> bool:
        return False

    def __eq__(self, other: object) -> bool:
        return isinstance(other, NullScope)

    def __hash__(self) -> int:
        return hash("NullScope")

    def __repr__(self) -> str:
        return "NullScope()"


class ExactScope(Scope):
    """Matches on worker id, processor kind and required tags (all optional)."""

    def __init__(
        self,
        worker: Optional[int] = None,
        kind: Optional[str] = None,
        tags: Iterable[str] = (),
        index: Optional[int] = None,
    ):
        self.worker = worker
        self.kind = kind
        self.tags: FrozenSet[str] = frozenset(tags)
        self.index = index

    def admits(self, proc: Processor) -> bool:
        if self.worker is not None and proc.worker_id != self.worker:
            return False
        if self.kind is not None and proc.kind != self.kind:
            return False
        if self.index is not None and proc.index != self.index:
            return False
        return self.tags <= proc.tags

    def _key(self):
        return (self.worker, self.kind, self.tags, self.index)

    def __eq__(self, other: object) -> bool:
        return isinstance(other, ExactScope) and self._key() == other._key()

    def __hash__(self) -> int:
        return hash(self._key())

    def __repr__(self) -> str:
        parts = []
        if self.worker is not None:
            parts.append(f"worker={self.worker}")
        if self.kind is not None:
            parts.append(f"kind={self.kind!r}")
        if self.index is not None:
            parts.append(f"index={self.index}")
        if self.tags:
            parts.append(f"tags={sorted(self.tags)}")
        return f"ExactScope({', '.join(parts)})"


class IntersectScope(Scope):
    def __init__(self, scopes: Sequence[Scope]):
        self.scopes = tuple(scopes)

    def admits(self, proc: Processor) -> bool:
        return all(s.admits(proc) for s in self.scopes)

    def __eq__(self, other: object) -> bool:
        return isinstance(other, IntersectScope) and set(self.scopes) == set(other.scopes)

    def __hash__(self) -> int:
        return hash(("intersect", frozenset(self.scopes)))

    def __repr__(self) -> str:
        return " & ".join(repr(s) for s in self.scopes)


class UnionScope(Scope):
    def __init__(self, scopes: Sequence[Scope]):
        self.scopes = tuple(scopes)

    def admits(self, proc: Processor) -> bool:
        return any(s.admits(proc) for s in self.scopes)

    def __eq__(self, other: object) -> bool:
        return isinstance(other, UnionScope) and set(self.scopes) == set(other.scopes)

    def __hash__(self) -> int:
        return hash(("union", frozenset(self.scopes)))

    def __repr__(self) -> str:
        return "(" + " | ".join(repr(s) for s in self.scopes) + ")"


ANY = AnyScope()
NULL = NullScope()


def scope(
    worker: Optional[int] = None,
    kind: Optional[str] = None,
    tags: Iterable[str] = (),
    workers: Optional[Iterable[int]] = None,
    index: Optional[int] = None,
) -> Scope:
    """Build a scope. ``workers`` is shorthand for a union of single-worker scopes."""
    if isinstance(tags, str):
        tags = (tags,)
    base: Scope
    if worker is None and kind is None and index is None and not tags:
        base = ANY
    else:
        base = ExactScope(worker=worker, kind=kind, tags=tags, index=index)
    if workers is None:
        return base
    return intersect(base, union(*[ExactScope(worker=w) for w in workers]))


def _merge_exact(a: ExactScope, b: ExactScope) -> Scope:
    merged = {}
    for attr in ("worker", "kind", "index"):
        va, vb = getattr(a, attr), getattr(b, attr)
        if va is not None and vb is not None and va != vb:
            return NULL
        merged[attr] = va if va is not None else vb
    return ExactScope(tags=a.tags | b.tags, **merged)


def intersect(*scopes: Scope) -> Scope:
    """Tightest scope admitting only processors every argument admits."""
    flat: List[Scope] = []
    for s in scopes:
        if s is None or isinstance(s, AnyScope):
            continue
        if isinstance(s, NullScope):
            return NULL
        if isinstance(s, IntersectScope):
            flat.extend(s.scopes)
        else:
            flat.append(s)

    exact: Optional[Scope] = None
    rest: List[Scope] = []
    for s in flat:
        if isinstance(s, ExactScope):
            exact = s if exact is None else _merge_exact(exact, s)
            if isinstance(exact, NullScope):
                return NULL
        elif s not in rest:
            rest.append(s)

    parts = ([exact] if exact is not None else []) + rest
    if not parts:
        return ANY
    if len(parts) == 1:
        return parts[0]
    return IntersectScope(parts)


def union(*scopes: Scope) -> Scope:
    """Loosest scope admitting any processor some argument admits."""
    flat: List[Scope] = []
    for s in scopes:
        if s is None or isinstance(s, NullScope):
            continue
        if isinstance(s, AnyScope):
            return ANY
        items = s.scopes if isinstance(s, UnionScope) else (s,)
        for item in items:
            if item not in flat:
                flat.append(item)
    if not flat:
        return NULL
    if len(flat) == 1:
        return flat[0]
    return UnionScope(flat)


def admitted(s: Scope, processors: Iterable[Processor]) -> List[Processor]:
    return [p for p in processors if s.admits(p)]


def is_empty(s: Scope, processors: Iterable[Processor]) -> bool:
    """True when no processor in the known set is admitted by ``s``."""
    if isinstance(s, NullScope):
        return True
    return not any(s.admits(p) for p in processors)


__all__ = [
    "Scope",
    "AnyScope",
    "NullScope",
    "ExactScope",
    "IntersectScope",
    "UnionScope",
    "ANY",
    "NULL",
    "scope",
    "intersect",
    "union",
    "admitted",
    "is_empty",
]
