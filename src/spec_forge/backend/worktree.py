"""Git worktree isolation for parallel tasks."""

from __future__ import annotations

import logging
import subprocess
from pathlib import Path

from spec_forge.workflow.errors import ExecutionError

logger = logging.getLogger(__name__)


class GitWorktreeManager:
    """Create one ``git worktree`` per task under ``<repo_root>/<worktree_dir>``."""

    def __init__(
        self,
        repo_root: Path,
        worktree_dir: Path,
        *,
        branch_prefix: str = "forge",
    ) -> None:
        self.repo_root = repo_root
        self.worktree_dir = worktree_dir
        self.branch_prefix = branch_prefix

    def path_for(self, task_id: str) -> Path:
        if self.worktree_dir.is_absolute():
            return self.worktree_dir / task_id
        return self.repo_root / self.worktree_dir / task_id

    def create(self, task_id: str) -> Path:
        path = self.path_for(task_id)
        if path.exists():
            logger.info("Reusing worktree for %s at %s", task_id, path)
            return path

        path.parent.mkdir(parents=True, exist_ok=True)
        branch = f"{self.branch_prefix}/{task_id.lower()}"
        argv = ["git", "-C", str(self.repo_root), "worktree", "add", "-B", branch, str(path)]
        completed = subprocess.run(  # noqa: S603
            argv,
            capture_output=True,
            text=True,
            check=False,
        )
        if completed.returncode != 0:
            raise ExecutionError(
                f"creating worktree for task {task_id}: {completed.stderr.strip()}",
                exit_code=completed.returncode,
            )
        logger.info("Created worktree for %s at %s (branch %s)", task_id, path, branch)
        return path
