"""Collaborator interfaces for agent invocation and per-task execution."""

from __future__ import annotations

import threading
from pathlib import Path
from typing import Protocol


class AgentInvoker(Protocol):
    """Runs one agent session for a prompt.

    Implementations raise :class:`~spec_forge.workflow.errors.ExecutionError`
    on process failure and ``AgentTimeoutError`` when the deadline expires.
    """

    def execute(self, prompt: str) -> None:
        """Run the agent to completion."""

    def format_command(self, prompt: str) -> str:
        """Render the shell command that ``execute`` would run."""


class TaskRunner(Protocol):
    """Executes one implementation task; raises on failure."""

    def run_task(
        self,
        cancel: threading.Event,
        task_id: str,
        spec_name: str,
        tasks_path: Path,
    ) -> None:
        """Run ``task_id``, returning promptly once ``cancel`` is set."""


class WorktreeManager(Protocol):
    """Creates an isolated working directory for a task."""

    def create(self, task_id: str) -> Path:
        """Return the path of a fresh working directory for ``task_id``."""
