"""Wave-by-wave parallel execution of implementation tasks."""

from __future__ import annotations

import logging
import threading
import time
from collections.abc import Callable
from concurrent.futures import ThreadPoolExecutor, as_completed
from pathlib import Path

from spec_forge.backend.base import TaskRunner, WorktreeManager
from spec_forge.workflow.dag import DependencyGraph
from spec_forge.workflow.errors import (
    ExecutionCancelledError,
    RunCancelledError,
    SchedulerConfigError,
)
from spec_forge.workflow.models import (
    ExecutionWave,
    TaskResult,
    TaskStatus,
    WaveResult,
    WaveStats,
    WaveStatus,
)
from spec_forge.workflow.parallel_state import ParallelExecutionState, ParallelStateStore

logger = logging.getLogger(__name__)

DEFAULT_MAX_PARALLEL = 4

ProgressCallback = Callable[[int, str, TaskStatus, str], None]


class ParallelTaskScheduler:
    """Execute a :class:`DependencyGraph` wave by wave.

    Waves run strictly in order. Inside a wave at most ``max_parallel`` tasks run
    at once on a thread pool. A failed task never stops its siblings; every
    transitive dependent is skipped instead of invoked.
    """

    def __init__(  # noqa: PLR0913
        self,
        graph: DependencyGraph,
        task_runner: TaskRunner | None = None,
        max_parallel: int = DEFAULT_MAX_PARALLEL,
        state_store: ParallelStateStore | None = None,
        worktree_manager: WorktreeManager | None = None,
        progress_callback: ProgressCallback | None = None,
    ) -> None:
        if max_parallel < 1:
            raise ValueError("max_parallel must be >= 1")
        self.graph = graph
        self.task_runner = task_runner
        self.max_parallel = max_parallel
        self.state_store = state_store
        self.worktree_manager = worktree_manager
        self.progress_callback = progress_callback
        self._lock = threading.Lock()
        self._failed: dict[str, str] = {}
        self._skipped: dict[str, str] = {}
        self._skip_origin: dict[str, str] = {}
        self._worktree_paths: dict[str, str] = {}
        self._state: ParallelExecutionState | None = None

    @property
    def use_worktrees(self) -> bool:
        return self.worktree_manager is not None

    def dry_run(self) -> tuple[ExecutionWave, ...]:
        """Return the wave plan without executing anything."""

        return self.graph.compute_waves()

    def wave_stats(self) -> WaveStats:
        return self.graph.wave_stats()

    def failed_tasks(self) -> dict[str, str]:
        with self._lock:
            return dict(self._failed)

    def skipped_tasks(self) -> dict[str, str]:
        with self._lock:
            return dict(self._skipped)

    def worktree_paths(self) -> dict[str, str]:
        with self._lock:
            return dict(self._worktree_paths)

    def execute_waves(
        self,
        cancel: threading.Event,
        spec_name: str,
        tasks_path: Path,
        *,
        state: ParallelExecutionState | None = None,
        start_wave: int = 1,
    ) -> list[WaveResult]:
        """Run every wave from ``start_wave`` on.

        Raises :class:`RunCancelledError` carrying the finished wave results when
        ``cancel`` is set before a wave starts or during the last one.
        """

        waves = self.graph.compute_waves()
        if not waves:
            return []

        self._failed.clear()
        self._skipped.clear()
        self._skip_origin.clear()
        self._worktree_paths.clear()
        for task in self.graph.tasks.values():
            task.status = TaskStatus.PENDING
        self._state = self._prepare_state(spec_name, len(waves), state)
        if state is not None:
            self._seed_from_state(state, waves, start_wave)

        logger.info(
            "Executing %d task(s) in %d wave(s) for %s starting at wave %d (max parallel %d)",
            len(self.graph),
            len(waves),
            spec_name,
            start_wave,
            self.max_parallel,
        )
        results: list[WaveResult] = []
        for wave in waves:
            if wave.number < start_wave:
                continue
            if cancel.is_set():
                self._interrupt(results)
            results.append(self._execute_wave(cancel, wave, spec_name, tasks_path))

        if cancel.is_set():
            self._interrupt(results)
        if self._state is not None:
            with self._lock:
                self._state.mark_completed()
                self._save_state()
        return results

    def _prepare_state(
        self,
        spec_name: str,
        total_waves: int,
        state: ParallelExecutionState | None,
    ) -> ParallelExecutionState | None:
        if state is None:
            if self.state_store is None:
                return None
            state = ParallelExecutionState(
                spec_name=spec_name,
                total_waves=total_waves,
                max_parallel=self.max_parallel,
                use_worktrees=self.use_worktrees,
            )
        state.total_waves = total_waves
        state.max_parallel = self.max_parallel
        state.use_worktrees = self.use_worktrees
        state.interrupted = False
        state.completed_at = None
        return state

    def _seed_from_state(
        self,
        state: ParallelExecutionState,
        waves: tuple[ExecutionWave, ...],
        start_wave: int,
    ) -> None:
        for wave in waves:
            for task_id in wave.task_ids:
                status = state.task_statuses.get(task_id)
                if status == TaskStatus.COMPLETED.value:
                    self.graph.task(task_id).status = TaskStatus.COMPLETED
                elif wave.number >= start_wave:
                    continue
                elif status == TaskStatus.FAILED.value:
                    self._failed[task_id] = state.failed_tasks.get(task_id, "failed earlier")
                    self.graph.task(task_id).status = TaskStatus.FAILED
                elif status == TaskStatus.SKIPPED.value:
                    self._skipped[task_id] = state.skipped_tasks.get(task_id, "skipped earlier")
                    self.graph.task(task_id).status = TaskStatus.SKIPPED
        self._worktree_paths.update(state.worktree_paths)

    def _interrupt(self, results: list[WaveResult]) -> None:
        logger.warning("Parallel execution cancelled after %d wave(s)", len(results))
        if self._state is not None:
            with self._lock:
                self._state.mark_interrupted()
                self._save_state()
        raise RunCancelledError(results)

    def _execute_wave(
        self,
        cancel: threading.Event,
        wave: ExecutionWave,
        spec_name: str,
        tasks_path: Path,
    ) -> WaveResult:
        started = time.monotonic()
        logger.info("Wave %d: %s", wave.number, ", ".join(wave.task_ids))
        results: dict[str, TaskResult] = {}

        with self._lock:
            to_run, skipped = self._partition(wave)
            if self._state is not None:
                self._state.start_wave(wave.number, list(wave.task_ids))
                for task_id, reason in skipped.items():
                    self._state.record_task_skipped(task_id, reason)
                self._save_state()
        for task_id, reason in skipped.items():
            logger.info("Task %s %s", task_id, reason.lower())
            results[task_id] = TaskResult(
                task_id=task_id,
                success=False,
                skipped=True,
                skip_reason=reason,
            )
            self._report(wave.number, task_id, TaskStatus.SKIPPED)

        if to_run:
            with ThreadPoolExecutor(
                max_workers=min(self.max_parallel, len(to_run)),
                thread_name_prefix=f"wave-{wave.number}",
            ) as pool:
                futures = [
                    pool.submit(
                        self._execute_task,
                        cancel,
                        wave.number,
                        task_id,
                        spec_name,
                        tasks_path,
                    )
                    for task_id in to_run
                ]
                for future in as_completed(futures):
                    result = future.result()
                    results[result.task_id] = result

        ordered = {task_id: results[task_id] for task_id in wave.task_ids}
        status = (
            WaveStatus.PARTIAL_FAILED
            if any(result.failed for result in ordered.values())
            else WaveStatus.COMPLETED
        )
        wave_result = WaveResult(
            wave_number=wave.number,
            status=status,
            results=ordered,
            duration_seconds=time.monotonic() - started,
        )
        completed, failed, skipped_count = wave_result.count()
        with self._lock:
            if self._state is not None:
                self._state.complete_wave(
                    wave.number,
                    completed=completed,
                    failed=failed,
                    skipped=skipped_count,
                )
                self._save_state()
        logger.info(
            "Wave %d %s: %d completed, %d failed, %d skipped",
            wave.number,
            status.value,
            completed,
            failed,
            skipped_count,
        )
        return wave_result

    def _partition(self, wave: ExecutionWave) -> tuple[list[str], dict[str, str]]:
        """Split a wave into runnable tasks and cascading skips. Caller holds the lock."""

        to_run: list[str] = []
        skipped: dict[str, str] = {}
        for task_id in wave.task_ids:
            task = self.graph.task(task_id)
            blocker = next(
                (
                    dependency
                    for dependency in sorted(task.dependencies)
                    if dependency in self._failed or dependency in self._skipped
                ),
                None,
            )
            if blocker is None:
                to_run.append(task_id)
                continue
            origin = self._skip_origin.get(blocker, blocker)
            outcome = "failed" if origin in self._failed else "was skipped"
            reason = f"Skipped: dependency {origin} {outcome}"
            self._skipped[task_id] = reason
            self._skip_origin[task_id] = origin
            task.status = TaskStatus.SKIPPED
            skipped[task_id] = reason
        return to_run, skipped

    def _execute_task(
        self,
        cancel: threading.Event,
        wave_number: int,
        task_id: str,
        spec_name: str,
        tasks_path: Path,
    ) -> TaskResult:
        started = time.monotonic()
        result = TaskResult(task_id=task_id, success=False)
        task = self.graph.task(task_id)

        if task.status is TaskStatus.COMPLETED:
            # Finished in an earlier run of this wave.
            result.success = True
            result.worktree_path = self._worktree_paths.get(task_id)
            self._report(wave_number, task_id, TaskStatus.COMPLETED)
            return result

        if cancel.is_set():
            return self._finish_task(
                wave_number,
                result,
                started,
                ExecutionCancelledError("task not started: cancelled"),
            )

        with self._lock:
            task.status = TaskStatus.RUNNING
            if self._state is not None:
                self._state.update_task_status(task_id, TaskStatus.RUNNING)
                self._save_state()
        self._report(wave_number, task_id, TaskStatus.RUNNING)

        if self.task_runner is None:
            return self._finish_task(
                wave_number,
                result,
                started,
                SchedulerConfigError("no task runner configured"),
            )

        try:
            result.worktree_path = self._create_worktree(task_id)
            self.task_runner.run_task(cancel, task_id, spec_name, tasks_path)
        except Exception as error:  # noqa: BLE001
            return self._finish_task(wave_number, result, started, error)
        return self._finish_task(wave_number, result, started, None)

    def _finish_task(
        self,
        wave_number: int,
        result: TaskResult,
        started: float,
        error: Exception | None,
    ) -> TaskResult:
        result.duration_seconds = time.monotonic() - started
        task = self.graph.task(result.task_id)
        with self._lock:
            if error is None:
                result.success = True
                task.status = TaskStatus.COMPLETED
                if self._state is not None:
                    self._state.update_task_status(result.task_id, TaskStatus.COMPLETED)
            else:
                result.error = error
                task.status = TaskStatus.FAILED
                self._failed[result.task_id] = str(error)
                if self._state is not None:
                    self._state.record_task_failure(result.task_id, str(error))
            self._save_state()

        if error is None:
            logger.info("Task %s completed in %.1fs", result.task_id, result.duration_seconds)
        else:
            logger.warning("Task %s failed: %s", result.task_id, error)
        self._report(wave_number, result.task_id, task.status)
        return result

    def _create_worktree(self, task_id: str) -> str | None:
        if self.worktree_manager is None:
            return None
        path = str(self.worktree_manager.create(task_id))
        with self._lock:
            self._worktree_paths[task_id] = path
            if self._state is not None:
                self._state.worktree_paths[task_id] = path
                self._save_state()
        return path

    def _save_state(self) -> None:
        # Caller holds the lock.
        if self._state is not None and self.state_store is not None:
            self.state_store.save(self._state)

    def _report(self, wave_number: int, task_id: str, status: TaskStatus) -> None:
        if self.progress_callback is None:
            return
        with self._lock:
            line = self.graph.render_progress(wave_number)
        self.progress_callback(wave_number, task_id, status, line)
