"""Read implementation tasks from ``tasks.yaml``."""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Any

import yaml

from spec_forge.workflow.errors import TasksFileError
from spec_forge.workflow.models import Task, TaskStatus

TASKS_FILE_NAME = "tasks.yaml"

_COMPLETED_MARKERS = frozenset({"completed", "complete", "done"})


@dataclass(slots=True, frozen=True)
class TaskCounts:
    """Progress summary of a tasks file."""

    total: int
    completed: int

    @property
    def percent(self) -> float:
        if self.total == 0:
            return 100.0
        return self.completed / self.total * 100.0


def load_tasks(path: Path) -> list[Task]:
    """Parse ``phases[].tasks[]`` entries in file order.

    Dependencies may be a list of ids or a comma-separated string.
    """

    raw = _read_yaml(path)
    phases = raw.get("phases") or []
    if not isinstance(phases, list):
        raise TasksFileError(f"{path}: 'phases' must be a list")

    tasks: list[Task] = []
    for phase_index, phase in enumerate(phases):
        if not isinstance(phase, dict):
            raise TasksFileError(f"{path}: phases[{phase_index}] must be a mapping")
        items = phase.get("tasks") or []
        if not isinstance(items, list):
            raise TasksFileError(f"{path}: phases[{phase_index}].tasks must be a list")
        for item_index, item in enumerate(items):
            tasks.append(_parse_task(path, f"phases[{phase_index}].tasks[{item_index}]", item))
    return tasks


def count_tasks(tasks: list[Task]) -> TaskCounts:
    return TaskCounts(
        total=len(tasks),
        completed=sum(1 for task in tasks if task.status is TaskStatus.COMPLETED),
    )


def _read_yaml(path: Path) -> dict[str, Any]:
    try:
        text = path.read_text("utf-8")
    except FileNotFoundError as error:
        raise TasksFileError(f"tasks file not found: {path}") from error
    except OSError as error:
        raise TasksFileError(f"failed to read tasks file {path}: {error}") from error
    except UnicodeDecodeError as error:
        raise TasksFileError(f"invalid UTF-8 in tasks file {path}: {error}") from error
    try:
        raw = yaml.safe_load(text)
    except yaml.YAMLError as error:
        raise TasksFileError(f"failed to parse tasks YAML {path}: {error}") from error
    if raw is None:
        return {}
    if not isinstance(raw, dict):
        raise TasksFileError(f"{path}: expected a YAML mapping at top level")
    return raw


def _parse_task(path: Path, location: str, item: object) -> Task:
    if not isinstance(item, dict):
        raise TasksFileError(f"{path}: {location} must be a mapping")
    task_id = item.get("id")
    if not isinstance(task_id, str) or not task_id.strip():
        raise TasksFileError(f"{path}: {location}.id must be a non-empty string")

    dependencies = item.get("dependencies") or []
    if isinstance(dependencies, str):
        dependencies = dependencies.split(",")
    if not isinstance(dependencies, list):
        raise TasksFileError(f"{path}: {location}.dependencies must be a list")

    status_raw = str(item.get("status") or "").strip().lower()
    return Task(
        id=task_id.strip(),
        title=str(item.get("title") or ""),
        dependencies=frozenset(str(dep).strip() for dep in dependencies if str(dep).strip()),
        status=TaskStatus.COMPLETED if status_raw in _COMPLETED_MARKERS else TaskStatus.PENDING,
    )
