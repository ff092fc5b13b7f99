"""In-memory doubles for the agent, validator, task-runner and worktree seams."""

from __future__ import annotations

import threading
from collections.abc import Callable, Iterable, Mapping
from pathlib import Path

from spec_forge.workflow.errors import ArtifactValidationError, ExecutionCancelledError

Outcome = Exception | Callable[[str], None] | None


class ScriptedAgentInvoker:
    """Replay a fixed list of outcomes, one per ``execute`` call.

    An exception outcome is raised, a callable is called with the prompt and
    ``None`` means success. Once the script runs out every call succeeds.
    """

    def __init__(self, outcomes: Iterable[Outcome] = ()) -> None:
        self._outcomes = list(outcomes)
        self.prompts: list[str] = []

    @property
    def calls(self) -> int:
        return len(self.prompts)

    def format_command(self, prompt: str) -> str:
        return f"scripted-agent {prompt}"

    def execute(self, prompt: str) -> None:
        self.prompts.append(prompt)
        if not self._outcomes:
            return
        outcome = self._outcomes.pop(0)
        if isinstance(outcome, Exception):
            raise outcome
        if outcome is not None:
            outcome(prompt)


class SequenceValidator:
    """Validator failing with the given bullet lists in order, then passing.

    ``None`` in ``failures`` is a passing call. With ``repeat_last`` the final
    entry is reused forever.
    """

    def __init__(
        self,
        failures: Iterable[list[str] | None],
        *,
        repeat_last: bool = False,
    ) -> None:
        self._failures = list(failures)
        self._repeat_last = repeat_last
        self.calls: list[Path] = []

    def __call__(self, artifact_dir: Path) -> None:
        self.calls.append(artifact_dir)
        if not self._failures:
            return
        if self._repeat_last and len(self._failures) == 1:
            errors = self._failures[0]
        else:
            errors = self._failures.pop(0)
        if errors is not None:
            raise ArtifactValidationError("Schema validation failed:", errors=errors)


class ScriptedTaskRunner:
    """Thread-safe task runner recording invocations and peak concurrency.

    Tasks listed in ``failures`` raise the mapped exception; tasks in
    ``wait_for_cancel`` block until the shared cancel signal is set.
    """

    def __init__(
        self,
        *,
        failures: Mapping[str, Exception] | None = None,
        delay_seconds: float = 0.0,
        wait_for_cancel: Iterable[str] = (),
        on_start: Callable[[str], None] | None = None,
    ) -> None:
        self.failures = dict(failures or {})
        self.delay_seconds = delay_seconds
        self.wait_for_cancel = frozenset(wait_for_cancel)
        self.on_start = on_start
        self.invoked: list[str] = []
        self.max_concurrency = 0
        self._active = 0
        self._lock = threading.Lock()

    def run_task(
        self,
        cancel: threading.Event,
        task_id: str,
        spec_name: str,
        tasks_path: Path,
    ) -> None:
        with self._lock:
            self.invoked.append(task_id)
            self._active += 1
            self.max_concurrency = max(self.max_concurrency, self._active)
        try:
            if self.on_start is not None:
                self.on_start(task_id)
            if task_id in self.wait_for_cancel:
                cancel.wait(timeout=10)
                raise ExecutionCancelledError(f"task {task_id} cancelled")
            if self.delay_seconds:
                cancel.wait(timeout=self.delay_seconds)
            if task_id in self.failures:
                raise self.failures[task_id]
        finally:
            with self._lock:
                self._active -= 1


class DirectoryWorktreeManager:
    """Creates a plain directory per task under ``root_dir``."""

    def __init__(self, root_dir: Path) -> None:
        self.root_dir = root_dir
        self.created: list[str] = []

    def create(self, task_id: str) -> Path:
        path = self.root_dir / task_id
        path.mkdir(parents=True, exist_ok=True)
        self.created.append(task_id)
        return path

