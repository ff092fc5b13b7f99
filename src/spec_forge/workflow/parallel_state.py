"""Persisted, resumable record of an in-progress parallel run."""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any

from spec_forge.workflow.models import TaskStatus, WaveStatus
from spec_forge.workflow.storage import (
    format_timestamp,
    load_json,
    parse_timestamp,
    utc_now,
    write_json,
)

logger = logging.getLogger(__name__)

STATE_FILE_NAME = "parallel-state.json"

_FINAL_TASK_STATUSES = frozenset(
    {TaskStatus.COMPLETED.value, TaskStatus.FAILED.value, TaskStatus.SKIPPED.value},
)
_KNOWN_FIELDS = frozenset(
    {
        "spec_name",
        "started_at",
        "last_updated",
        "current_wave",
        "total_waves",
        "task_statuses",
        "failed_tasks",
        "skipped_tasks",
        "wave_results",
        "worktree_paths",
        "interrupted",
        "completed_at",
        "max_parallel",
        "use_worktrees",
    },
)


@dataclass(slots=True)
class WaveStateInfo:
    """Per-wave bookkeeping stored inside :class:`ParallelExecutionState`."""

    number: int
    status: str = WaveStatus.PENDING.value
    task_ids: list[str] = field(default_factory=list)
    task_count: int = 0
    completed: int = 0
    failed: int = 0
    skipped: int = 0
    started_at: datetime | None = None
    completed_at: datetime | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "number": self.number,
            "status": self.status,
            "task_ids": list(self.task_ids),
            "task_count": self.task_count,
            "completed": self.completed,
            "failed": self.failed,
            "skipped": self.skipped,
            "started_at": format_timestamp(self.started_at),
            "completed_at": format_timestamp(self.completed_at),
        }

    @classmethod
    def from_dict(cls, number: int, raw: dict[str, Any]) -> WaveStateInfo:
        return cls(
            number=int(raw.get("number", number)),
            status=str(raw.get("status", WaveStatus.PENDING.value)),
            task_ids=[str(item) for item in raw.get("task_ids") or []],
            task_count=int(raw.get("task_count", 0)),
            completed=int(raw.get("completed", 0)),
            failed=int(raw.get("failed", 0)),
            skipped=int(raw.get("skipped", 0)),
            started_at=parse_timestamp(raw.get("started_at")),
            completed_at=parse_timestamp(raw.get("completed_at")),
        )


@dataclass(slots=True)
class ParallelExecutionState:
    """Checkpoint of a parallel run; the scheduler mutates it under its lock."""

    spec_name: str
    total_waves: int
    max_parallel: int = 4
    use_worktrees: bool = False
    started_at: datetime = field(default_factory=utc_now)
    last_updated: datetime = field(default_factory=utc_now)
    current_wave: int = 0
    task_statuses: dict[str, str] = field(default_factory=dict)
    failed_tasks: dict[str, str] = field(default_factory=dict)
    skipped_tasks: dict[str, str] = field(default_factory=dict)
    wave_results: dict[int, WaveStateInfo] = field(default_factory=dict)
    worktree_paths: dict[str, str] = field(default_factory=dict)
    interrupted: bool = False
    completed_at: datetime | None = None
    extra: dict[str, Any] = field(default_factory=dict)

    def touch(self) -> None:
        self.last_updated = utc_now()

    def update_task_status(self, task_id: str, status: TaskStatus) -> None:
        self.task_statuses[task_id] = status.value
        if status is TaskStatus.COMPLETED:
            self.failed_tasks.pop(task_id, None)
            self.skipped_tasks.pop(task_id, None)
        self.touch()

    def record_task_failure(self, task_id: str, message: str) -> None:
        self.failed_tasks[task_id] = message
        self.skipped_tasks.pop(task_id, None)
        self.task_statuses[task_id] = TaskStatus.FAILED.value
        self.touch()

    def record_task_skipped(self, task_id: str, reason: str) -> None:
        self.skipped_tasks[task_id] = reason
        self.failed_tasks.pop(task_id, None)
        self.task_statuses[task_id] = TaskStatus.SKIPPED.value
        self.touch()

    def start_wave(self, number: int, task_ids: list[str]) -> None:
        self.current_wave = number
        self.wave_results[number] = WaveStateInfo(
            number=number,
            status=WaveStatus.RUNNING.value,
            task_ids=list(task_ids),
            task_count=len(task_ids),
            started_at=utc_now(),
        )
        for task_id in task_ids:
            self.task_statuses.setdefault(task_id, TaskStatus.PENDING.value)
        self.touch()

    def complete_wave(self, number: int, *, completed: int, failed: int, skipped: int) -> None:
        info = self.wave_results.get(number)
        if info is None:
            info = WaveStateInfo(number=number)
            self.wave_results[number] = info
        info.completed = completed
        info.failed = failed
        info.skipped = skipped
        info.completed_at = utc_now()
        info.status = (
            WaveStatus.PARTIAL_FAILED.value if failed > 0 else WaveStatus.COMPLETED.value
        )
        self.touch()

    def mark_interrupted(self) -> None:
        self.interrupted = True
        self.touch()

    def mark_completed(self) -> None:
        self.completed_at = utc_now()
        self.interrupted = False
        self.last_updated = self.completed_at

    def is_complete(self) -> bool:
        return self.completed_at is not None

    def resume_wave(self) -> int:
        """First wave that never started, is still running, or partially failed."""

        for number in range(1, self.total_waves + 1):
            info = self.wave_results.get(number)
            if info is None:
                return number
            if info.status in {WaveStatus.RUNNING.value, WaveStatus.PARTIAL_FAILED.value}:
                return number
        return self.total_waves + 1

    def pending_tasks(self) -> list[str]:
        return sorted(
            task_id
            for task_id, status in self.task_statuses.items()
            if status not in _FINAL_TASK_STATUSES
        )

    def completed_tasks(self) -> list[str]:
        return sorted(
            task_id
            for task_id, status in self.task_statuses.items()
            if status == TaskStatus.COMPLETED.value
        )

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = dict(self.extra)
        payload.update(
            {
                "spec_name": self.spec_name,
                "started_at": format_timestamp(self.started_at),
                "last_updated": format_timestamp(self.last_updated),
                "current_wave": self.current_wave,
                "total_waves": self.total_waves,
                "task_statuses": dict(self.task_statuses),
                "failed_tasks": dict(self.failed_tasks),
                "skipped_tasks": dict(self.skipped_tasks),
                "wave_results": {
                    str(number): info.to_dict()
                    for number, info in sorted(self.wave_results.items())
                },
                "worktree_paths": dict(self.worktree_paths),
                "interrupted": self.interrupted,
                "completed_at": format_timestamp(self.completed_at),
                "max_parallel": self.max_parallel,
                "use_worktrees": self.use_worktrees,
            },
        )
        return payload

    @classmethod
    def from_dict(cls, raw: dict[str, Any]) -> ParallelExecutionState:
        spec_name = raw.get("spec_name")
        if not isinstance(spec_name, str) or not spec_name:
            raise ValueError("parallel state spec_name must be a non-empty string")
        raw_waves = raw.get("wave_results") or {}
        if not isinstance(raw_waves, dict):
            raise TypeError("parallel state wave_results must be an object")

        wave_results: dict[int, WaveStateInfo] = {}
        for key, value in raw_waves.items():
            if not isinstance(value, dict):
                raise TypeError(f"parallel state wave_results[{key}] must be an object")
            number = int(key)
            wave_results[number] = WaveStateInfo.from_dict(number, value)

        now = utc_now()
        return cls(
            spec_name=spec_name,
            total_waves=int(raw.get("total_waves", 0)),
            max_parallel=int(raw.get("max_parallel", 4)),
            use_worktrees=bool(raw.get("use_worktrees", False)),
            started_at=parse_timestamp(raw.get("started_at")) or now,
            last_updated=parse_timestamp(raw.get("last_updated")) or now,
            current_wave=int(raw.get("current_wave", 0)),
            task_statuses=_string_map(raw, "task_statuses"),
            failed_tasks=_string_map(raw, "failed_tasks"),
            skipped_tasks=_string_map(raw, "skipped_tasks"),
            wave_results=wave_results,
            worktree_paths=_string_map(raw, "worktree_paths"),
            interrupted=bool(raw.get("interrupted", False)),
            completed_at=parse_timestamp(raw.get("completed_at")),
            extra={key: value for key, value in raw.items() if key not in _KNOWN_FIELDS},
        )


def _string_map(raw: dict[str, Any], key: str) -> dict[str, str]:
    value = raw.get(key) or {}
    if not isinstance(value, dict):
        raise TypeError(f"parallel state {key} must be an object")
    return {str(item_key): str(item_value) for item_key, item_value in value.items()}


class ParallelStateStore:
    """One ``parallel-state.json`` per spec under ``<state_dir>/parallel``."""

    def __init__(self, state_dir: Path) -> None:
        self.root_dir = state_dir / "parallel"

    def path_for(self, spec_name: str) -> Path:
        return self.root_dir / spec_name / STATE_FILE_NAME

    def load(self, spec_name: str) -> ParallelExecutionState | None:
        path = self.path_for(spec_name)
        if not path.exists():
            return None
        try:
            return ParallelExecutionState.from_dict(load_json(path))
        except (OSError, TypeError, ValueError, json.JSONDecodeError) as error:
            logger.warning("Ignoring unreadable parallel state %s: %s", path, error)
            return None

    def save(self, state: ParallelExecutionState) -> None:
        state.touch()
        write_json(self.path_for(state.spec_name), state.to_dict())

    def delete(self, spec_name: str) -> bool:
        path = self.path_for(spec_name)
        if not path.exists():
            return False
        path.unlink()
        logger.info("Deleted parallel state %s", path)
        return True
