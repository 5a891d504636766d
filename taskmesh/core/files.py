"""File-backed references.

A ``FileRef`` names external data without holding it. When passed as a task
argument the executing worker calls ``materialize()`` in place of a chunk
lookup, so the value is loaded where it is used.
"""

from __future__ import annotations

import os
from typing import Any, Callable, Optional


class FileRef:
    def __init__(
        self,
        path: str,
        loader: Optional[Callable[[str], Any]] = None,
        saver: Optional[Callable[[Any, str], Any]] = None,
    ):
        self.path = os.fspath(path)
        self.loader = loader
        self.saver = saver

    def materialize(self) -> Any:
        if self.loader is None:
            raise ValueError(f"FileRef({self.path!r}) has no loader")
        return self.loader(self.path)

    def persist(self, value: Any) -> "FileRef":
        if self.saver is None:
            raise ValueError(f"FileRef({self.path!r}) has no saver")
        self.saver(value, self.path)
        return self

    def __repr__(self) -> str:
        return f"FileRef({self.path!r})"


def passthrough(value: Any) -> Any:
    return value


def persist_file(value: Any, ref: FileRef) -> FileRef:
    return ref.persist(value)
