"""Runtime configuration for stage and parallel task execution."""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path

SUPPORTED_AGENTS = ("claude", "codex", "gemini")

DEFAULT_COMMAND_TEMPLATES = {
    "claude": "claude -p --permission-mode acceptEdits -- {prompt}",
    "codex": "codex exec --sandbox workspace-write {prompt}",
    "gemini": "gemini --approval-mode auto_edit --prompt {prompt}",
}


@dataclass(slots=True)
class AgentSettings:
    """External agent invocation settings."""

    name: str = "claude"
    model: str = ""
    command_template: str = DEFAULT_COMMAND_TEMPLATES["claude"]
    timeout_seconds: int = 1_800
    log_dir: Path | None = None


@dataclass(slots=True)
class ExecutionSettings:
    """Retry and parallelism settings."""

    max_retries: int = 3
    max_parallel: int = 4
    use_worktrees: bool = False
    worktree_dir: Path = Path(".worktrees")


@dataclass(slots=True)
class Settings:
    """Application settings grouped by concern."""

    specs_dir: Path = Path("specs")
    state_dir: Path = Path(".spec-forge/state")
    agent: AgentSettings = field(default_factory=AgentSettings)
    execution: ExecutionSettings = field(default_factory=ExecutionSettings)

    @classmethod
    def from_env(
        cls,
        *,
        specs_dir: Path | None = None,
        state_dir: Path | None = None,
    ) -> Settings:
        """Load settings from ``SPEC_FORGE_*`` variables with local defaults."""

        agent_name = os.getenv("SPEC_FORGE_AGENT", "claude").strip().lower()
        command_template = os.getenv("SPEC_FORGE_AGENT_COMMAND", "").strip()
        if not command_template:
            command_template = DEFAULT_COMMAND_TEMPLATES.get(agent_name, "")
        log_dir_raw = os.getenv("SPEC_FORGE_AGENT_LOG_DIR", "").strip()

        return cls(
            specs_dir=specs_dir or Path(os.getenv("SPEC_FORGE_SPECS_DIR", "specs")),
            state_dir=state_dir or Path(os.getenv("SPEC_FORGE_STATE_DIR", ".spec-forge/state")),
            agent=AgentSettings(
                name=agent_name,
                model=os.getenv("SPEC_FORGE_AGENT_MODEL", "").strip(),
                command_template=command_template,
                timeout_seconds=_env_int("SPEC_FORGE_AGENT_TIMEOUT_SECONDS", 1_800),
                log_dir=Path(log_dir_raw) if log_dir_raw else None,
            ),
            execution=ExecutionSettings(
                max_retries=_env_int("SPEC_FORGE_MAX_RETRIES", 3),
                max_parallel=_env_int("SPEC_FORGE_MAX_PARALLEL", 4),
                use_worktrees=_env_bool("SPEC_FORGE_USE_WORKTREES", default=False),
                worktree_dir=Path(os.getenv("SPEC_FORGE_WORKTREE_DIR", ".worktrees")),
            ),
        )

    def validate(self) -> None:
        """Raise configuration error for values the engines cannot run with."""

        if not self.agent.command_template:
            raise ValueError(
                f"No command template for agent {self.agent.name!r}. "
                f"Set SPEC_FORGE_AGENT_COMMAND or use one of: {', '.join(SUPPORTED_AGENTS)}.",
            )
        if "{prompt}" not in self.agent.command_template:
            raise ValueError("SPEC_FORGE_AGENT_COMMAND must include {prompt}.")
        if self.agent.timeout_seconds <= 0:
            raise ValueError("SPEC_FORGE_AGENT_TIMEOUT_SECONDS must be > 0.")
        if self.execution.max_retries < 0:
            raise ValueError("SPEC_FORGE_MAX_RETRIES must be >= 0.")
        if self.execution.max_parallel < 1:
            raise ValueError("SPEC_FORGE_MAX_PARALLEL must be >= 1.")


def _env_int(name: str, default: int) -> int:
    value = os.getenv(name)
    if value is None or not value.strip():
        return default
    try:
        return int(value.strip())
    except ValueError as error:
        raise ValueError(f"Invalid integer value for {name}: {value!r}") from error


def _env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    normalized = value.strip().lower()
    if normalized in {"1", "true", "yes", "on"}:
        return True
    if normalized in {"0", "false", "no", "off"}:
        return False
    raise ValueError(f"Invalid boolean value for {name}: {value!r}")
