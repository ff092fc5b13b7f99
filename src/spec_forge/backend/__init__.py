"""Agent backend implementations."""

from spec_forge.backend.base import AgentInvoker, TaskRunner, WorktreeManager
from spec_forge.backend.cli_backend import AgentTaskRunner, CliAgentInvoker
from spec_forge.backend.worktree import GitWorktreeManager

__all__ = [
    "AgentInvoker",
    "AgentTaskRunner",
    "CliAgentInvoker",
    "GitWorktreeManager",
    "TaskRunner",
    "WorktreeManager",
]
