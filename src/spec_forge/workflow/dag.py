"""Task dependency graph and execution-wave computation."""

from __future__ import annotations

from collections import deque
from collections.abc import Iterable, Iterator

from spec_forge.workflow.errors import DependencyGraphError, GraphCycleError
from spec_forge.workflow.models import ExecutionWave, Task, TaskStatus, WaveStats

_STATUS_SYMBOLS = {
    TaskStatus.PENDING: "o",
    TaskStatus.RUNNING: "*",
    TaskStatus.COMPLETED: "+",
    TaskStatus.FAILED: "x",
    TaskStatus.SKIPPED: "-",
}


class DependencyGraph:
    """Acyclic task graph with precomputed, immutable execution waves.

    Use :meth:`build`; a graph with a cycle or dangling dependency is never
    constructed.
    """

    def __init__(self, tasks: dict[str, Task], dependents: dict[str, tuple[str, ...]]) -> None:
        self._tasks = tasks
        self._dependents = dependents
        self._waves = self._level()
        self._wave_of = {
            task_id: wave.number for wave in self._waves for task_id in wave.task_ids
        }

    @classmethod
    def build(cls, tasks: Iterable[Task]) -> DependencyGraph:
        by_id: dict[str, Task] = {}
        for task in tasks:
            if task.id in by_id:
                raise DependencyGraphError(f"duplicate task ID {task.id}")
            by_id[task.id] = task

        dependents: dict[str, list[str]] = {task_id: [] for task_id in by_id}
        for task_id in sorted(by_id):
            for dependency in sorted(by_id[task_id].dependencies):
                if dependency not in by_id:
                    raise DependencyGraphError(
                        f"task {task_id} depends on non-existent task {dependency}",
                    )
                dependents[dependency].append(task_id)

        cycle = _find_cycle(by_id)
        if cycle is not None:
            raise GraphCycleError(cycle)
        return cls(by_id, {key: tuple(value) for key, value in dependents.items()})

    def __len__(self) -> int:
        return len(self._tasks)

    def __contains__(self, task_id: object) -> bool:
        return task_id in self._tasks

    @property
    def tasks(self) -> dict[str, Task]:
        return self._tasks

    def task(self, task_id: str) -> Task:
        return self._tasks[task_id]

    def roots(self) -> list[str]:
        return sorted(task_id for task_id, task in self._tasks.items() if not task.dependencies)

    def dependents(self, task_id: str) -> tuple[str, ...]:
        return self._dependents[task_id]

    def compute_waves(self) -> tuple[ExecutionWave, ...]:
        return self._waves

    def wave_number(self, task_id: str) -> int:
        """1-based wave number of ``task_id``; 0 for unknown tasks."""

        return self._wave_of.get(task_id, 0)

    def wave_index(self, task_id: str) -> int:
        """Zero-based wave index; root tasks are always 0."""

        number = self.wave_number(task_id)
        if number == 0:
            raise KeyError(task_id)
        return number - 1

    def waves_from(self, task_id: str) -> list[ExecutionWave]:
        start = self.wave_number(task_id)
        if start == 0:
            return []
        return [wave for wave in self._waves if wave.number >= start]

    def wave_stats(self) -> WaveStats:
        if not self._waves:
            return WaveStats()
        sizes = [len(wave) for wave in self._waves]
        return WaveStats(
            total_waves=len(self._waves),
            total_tasks=sum(sizes),
            max_wave_size=max(sizes),
            min_wave_size=min(sizes),
        )

    def render_ascii(self) -> str:
        if not self._waves:
            return "No waves computed."

        parts = ["Task Execution Waves\n", "====================\n\n"]
        for position, wave in enumerate(self._waves):
            plural = "" if len(wave) == 1 else "s"
            parts.append(f"Wave {wave.number} ({len(wave)} task{plural})\n")
            for item_index, task_id in enumerate(wave.task_ids):
                prefix = "  +-" if item_index == len(wave) - 1 else "  |-"
                parts.append(f"{prefix} [{task_id}]\n")
            if position < len(self._waves) - 1:
                parts.append("    |\n    v\n")

        stats = self.wave_stats()
        parts.append("\nSummary:\n")
        parts.append(f"  Total Waves: {stats.total_waves}\n")
        parts.append(f"  Total Tasks: {stats.total_tasks}\n")
        parts.append(f"  Max Parallel: {stats.max_wave_size}\n")
        return "".join(parts)

    def render_compact(self) -> str:
        if not self._waves:
            return "No waves computed"
        return " -> ".join(
            f"Wave {wave.number}: [{', '.join(wave.task_ids)}]" for wave in self._waves
        )

    def render_progress(self, wave_number: int) -> str:
        """One-line status of a wave, e.g. ``Wave 2: T002 + T003 x``."""

        if wave_number < 1 or wave_number > len(self._waves):
            return ""
        wave = self._waves[wave_number - 1]
        marks = " ".join(
            f"{task_id} {_STATUS_SYMBOLS[self._tasks[task_id].status]}" for task_id in wave.task_ids
        )
        return f"Wave {wave_number}: {marks}"

    def _level(self) -> tuple[ExecutionWave, ...]:
        # Kahn leveling: depth = longest path from any root.
        in_degree = {task_id: len(task.dependencies) for task_id, task in self._tasks.items()}
        depth = dict.fromkeys(self._tasks, 0)
        queue = deque(self.roots())
        while queue:
            task_id = queue.popleft()
            for dependent in self._dependents[task_id]:
                depth[dependent] = max(depth[dependent], depth[task_id] + 1)
                in_degree[dependent] -= 1
                if in_degree[dependent] == 0:
                    queue.append(dependent)

        groups: dict[int, list[str]] = {}
        for task_id, level in depth.items():
            groups.setdefault(level, []).append(task_id)
        return tuple(
            ExecutionWave(number=number, task_ids=tuple(sorted(groups[level])))
            for number, level in enumerate(sorted(groups), start=1)
        )


def _find_cycle(tasks: dict[str, Task]) -> list[str] | None:
    """Depth-first search along dependency edges; return ``[a, b, ..., a]`` or None."""

    visiting, done = 1, 2
    marks: dict[str, int] = {}
    for root in sorted(tasks):
        if root in marks:
            continue
        marks[root] = visiting
        path = [root]
        stack: list[tuple[str, Iterator[str]]] = [(root, iter(sorted(tasks[root].dependencies)))]
        while stack:
            task_id, pending = stack[-1]
            for dependency in pending:
                mark = marks.get(dependency)
                if mark is None:
                    marks[dependency] = visiting
                    path.append(dependency)
                    stack.append((dependency, iter(sorted(tasks[dependency].dependencies))))
                    break
                if mark == visiting:
                    return [*path[path.index(dependency) :], dependency]
            else:
                marks[task_id] = done
                path.pop()
                stack.pop()
    return None
