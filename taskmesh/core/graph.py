"""Dependency graph construction.

``TaskGraph.build`` turns a spawn call into a ``Task``: every argument is
classified by tag and the read, write and ordering edges it implies are
recorded. The graph is only touched from the controller's event loop.
"""

from __future__ import annotations

import itertools
import logging
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional, Sequence, Set, Tuple

from taskmesh.common import ArgKind, TaskStatus
from taskmesh.core.datamanager import DataManager
from taskmesh.core.files import FileRef
from taskmesh.core.handles import DataHandle, Shard, TaskHandle
from taskmesh.core.options import TaskOptions
from taskmesh.core.scope import ANY
from taskmesh.core.types import ArgSpec, ChunkRecord, Task
from taskmesh.errors import CycleError

logger = logging.getLogger("taskmesh.scheduler")


def task_name(func: Callable[..., Any]) -> str:
    name = getattr(func, "__name__", None)
    if name is None and hasattr(func, "func"):
        name = getattr(func.func, "__name__", None)
    return name or type(func).__name__


class TaskGraph:
    def __init__(self, data: DataManager, owner: Any = None, default_timeout: Optional[float] = None):
        self.data = data
        self.owner = owner
        self.default_timeout = default_timeout
        self.tasks: Dict[int, Task] = {}
        self._ids = itertools.count(1)

    def __contains__(self, task_id: int) -> bool:
        return task_id in self.tasks

    def __len__(self) -> int:
        return len(self.tasks)

    def get(self, task_id: int) -> Optional[Task]:
        return self.tasks.get(task_id)

    # ------------------------------------------------------------------
    # construction
    # ------------------------------------------------------------------

    def build(
        self,
        func: Callable[..., Any],
        args: Sequence[Any],
        kwargs: Mapping[str, Any],
        options: TaskOptions,
        output: Optional[ChunkRecord] = None,
        shard_id: Optional[int] = None,
    ) -> Task:
        if not callable(func):
            raise TypeError(f"Task function must be callable, got {type(func).__name__}")

        mutated = self._mutated(options.mutates)
        self._validate(itertools.chain(args, kwargs.values(), options.mutates, options.after))
        task = Task(
            id=next(self._ids),
            func=func,
            name=options.name or task_name(func),
            scope=options.scope if options.scope is not None else ANY,
            priority=options.priority or 0,
            timeout=options.timeout if options.timeout is not None else self.default_timeout,
            checkpoint=options.checkpoint,
        )

        seen: Set[Tuple[ArgKind, int]] = set()
        task.args = [self._classify(task, value, mutated, seen) for value in args]
        task.kwargs = {key: self._classify(task, value, mutated, seen) for key, value in kwargs.items()}

        missing = set(mutated) - seen
        if missing:
            raise ValueError(
                f"mutates lists handles that are not arguments of {task.name}: "
                f"{sorted(f'{kind.value}:{ident}' for kind, ident in missing)}"
            )

        for handle in options.after:
            if not isinstance(handle, TaskHandle):
                raise TypeError(f"after= expects task handles, got {type(handle).__name__}")
            self._check_owner(handle)
            if handle.id in self.tasks:
                task.deps.add(handle.id)

        if output is not None:
            task.output_chunk = output.id
            task.output_mutable = True
            output.refs += 1
            task.chunk_refs.append(output.id)
            self.data.record_write(output, task)
        if shard_id is not None:
            self.data.shards[shard_id].refs += 1
            task.shard_refs.append(shard_id)

        task.deps.discard(task.id)
        task.order_deps.discard(task.id)
        task.order_deps -= task.deps
        for dep in itertools.chain(task.deps, task.order_deps):
            upstream = self.tasks.get(dep)
            if upstream is not None:
                upstream.dependents.add(task.id)

        self.tasks[task.id] = task
        return task

    def _validate(self, values: Iterable[Any]) -> None:
        """Reject foreign or released handles before any edge is recorded."""
        for value in values:
            if isinstance(value, (TaskHandle, DataHandle, Shard)):
                self._check_owner(value)
            if isinstance(value, TaskHandle) and value.id not in self.tasks:
                raise ValueError(f"{value!r} is no longer tracked by its context")
            if isinstance(value, DataHandle) and value.id not in self.data.chunks:
                raise ValueError(f"{value!r} was released")
            if isinstance(value, Shard) and value.id not in self.data.shards:
                raise ValueError(f"{value!r} was released")

    def _check_owner(self, handle: Any) -> None:
        if self.owner is not None and handle._controller is not self.owner:
            raise ValueError(f"{handle!r} belongs to a different context")

    def _mutated(self, mutates: Iterable[Any]) -> Set[Tuple[ArgKind, int]]:
        keys: Set[Tuple[ArgKind, int]] = set()
        for handle in mutates:
            if isinstance(handle, DataHandle):
                keys.add((ArgKind.DATA, handle.id))
            elif isinstance(handle, Shard):
                keys.add((ArgKind.SHARD, handle.id))
            else:
                raise TypeError(f"Only DataHandle and Shard can be mutated, got {type(handle).__name__}")
        return keys

    def _classify(self, task: Task, value: Any, mutated: Set[Tuple[ArgKind, int]], seen: Set) -> ArgSpec:
        if isinstance(value, TaskHandle):
            self._check_owner(value)
            upstream = self.tasks.get(value.id)
            if upstream is None:
                raise ValueError(f"{value!r} is no longer tracked by its context")
            upstream.refs += 1
            task.deps.add(upstream.id)
            return ArgSpec(ArgKind.TASK, upstream)

        if isinstance(value, DataHandle):
            self._check_owner(value)
            rec = self.data.chunks.get(value.id)
            if rec is None:
                raise ValueError(f"{value!r} was released")
            key = (ArgKind.DATA, rec.id)
            if key not in seen:
                if key in mutated:
                    self.data.record_write(rec, task)
                else:
                    self.data.record_read(rec, task)
            seen.add(key)
            rec.refs += 1
            task.chunk_refs.append(rec.id)
            return ArgSpec(ArgKind.DATA, rec.id)

        if isinstance(value, Shard):
            self._check_owner(value)
            shard = self.data.shards.get(value.id)
            if shard is None:
                raise ValueError(f"{value!r} was released")
            key = (ArgKind.SHARD, shard.id)
            if key not in seen:
                if key in mutated:
                    self.data.record_write(shard, task)
                else:
                    self.data.record_read(shard, task)
            seen.add(key)
            shard.refs += 1
            task.shard_refs.append(shard.id)
            return ArgSpec(ArgKind.SHARD, shard.id)

        if isinstance(value, FileRef):
            return ArgSpec(ArgKind.FILE, value)

        return ArgSpec(ArgKind.LITERAL, value)

    # ------------------------------------------------------------------
    # edges
    # ------------------------------------------------------------------

    def reaches(self, start: int, target: int) -> bool:
        """True when ``target`` is reachable from ``start`` along dependency edges."""
        stack = [start]
        visited: Set[int] = set()
        while stack:
            node = stack.pop()
            if node == target:
                return True
            if node in visited:
                continue
            visited.add(node)
            task = self.tasks.get(node)
            if task is not None:
                stack.extend(task.deps)
                stack.extend(task.order_deps)
        return False

    def add_dependency(self, task: Task, dep: Task) -> None:
        if task.status != TaskStatus.WAITING:
            raise ValueError(f"Task {task.id} is {task.status.value}; dependencies can only be added while waiting")
        if self.reaches(dep.id, task.id):
            raise CycleError(f"Adding {dep.id} -> {task.id} would create a cycle", task_id=task.id)
        task.order_deps.discard(dep.id)
        task.deps.add(dep.id)
        dep.dependents.add(task.id)

    def pending_deps(self, task: Task) -> Tuple[bool, Optional[Task]]:
        """Return (satisfied, failed_dependency) for a waiting task.

        Dependencies no longer in the graph settled earlier; a failed one
        would have poisoned this task before it was forgotten.
        """
        satisfied = True
        for dep_id in task.deps:
            dep = self.tasks.get(dep_id)
            if dep is None:
                continue
            if dep.status == TaskStatus.FAILED:
                return False, dep
            if dep.status != TaskStatus.COMPLETED:
                satisfied = False
        for dep_id in task.order_deps:
            dep = self.tasks.get(dep_id)
            if dep is not None and not dep.status.is_terminal:
                satisfied = False
        return satisfied, None

    # ------------------------------------------------------------------
    # reference counting
    # ------------------------------------------------------------------

    def upstream_tasks(self, task: Task) -> List[Task]:
        return [
            spec.value
            for spec in itertools.chain(task.args, task.kwargs.values())
            if spec.kind == ArgKind.TASK
        ]

    def removable(self, task: Task) -> bool:
        return task.refs <= 0 and task.status.is_terminal

    def remove(self, task: Task) -> None:
        self.tasks.pop(task.id, None)
        self.data.forget_task(task)
        for dep_id in itertools.chain(task.deps, task.order_deps):
            upstream = self.tasks.get(dep_id)
            if upstream is not None:
                upstream.dependents.discard(task.id)
        logger.debug(f"Removed task {task.id} ({task.name}) from graph")

    def snapshot(self) -> Dict[str, Any]:
        counts: Dict[str, int] = {status.value: 0 for status in TaskStatus}
        for task in self.tasks.values():
            counts[task.status.value] += 1
        return {
            "tasks": {str(tid): task.to_dict() for tid, task in sorted(self.tasks.items())},
            "counts": counts,
        }


__all__ = ["TaskGraph", "task_name"]
