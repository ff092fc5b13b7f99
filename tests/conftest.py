"""Shared test fixtures."""

from __future__ import annotations

import shlex
import sys
from collections.abc import Callable, Iterable
from pathlib import Path

import pytest
import yaml

_ENV_VARS = (
    "SPEC_FORGE_AGENT",
    "SPEC_FORGE_AGENT_COMMAND",
    "SPEC_FORGE_AGENT_LOG_DIR",
    "SPEC_FORGE_AGENT_MODEL",
    "SPEC_FORGE_AGENT_TIMEOUT_SECONDS",
    "SPEC_FORGE_MAX_RETRIES",
    "SPEC_FORGE_MAX_PARALLEL",
    "SPEC_FORGE_USE_WORKTREES",
    "SPEC_FORGE_WORKTREE_DIR",
    "SPEC_FORGE_SPECS_DIR",
    "SPEC_FORGE_STATE_DIR",
)


@pytest.fixture(autouse=True)
def _clean_forge_env(monkeypatch):
    """Keep developer ``SPEC_FORGE_*`` settings out of tests."""
    for name in _ENV_VARS:
        monkeypatch.delenv(name, raising=False)


@pytest.fixture()
def echo_agent_command() -> Callable[..., str]:
    """Build a command template that runs the bundled echo agent for one spec dir."""

    def _build(spec_dir: Path, *extra_args: str) -> str:
        parts = [
            shlex.quote(sys.executable),
            "-m",
            "spec_forge.backend.echo_agent",
            "--spec-dir",
            shlex.quote(str(spec_dir)),
            *extra_args,
        ]
        return " ".join(parts) + " {prompt}"

    return _build


@pytest.fixture()
def write_tasks() -> Callable[[Path, Iterable[dict[str, object]]], Path]:
    """Write a single-phase ``tasks.yaml`` into a spec directory."""

    def _write(spec_dir: Path, tasks: Iterable[dict[str, object]]) -> Path:
        spec_dir.mkdir(parents=True, exist_ok=True)
        path = spec_dir / "tasks.yaml"
        payload = {"phases": [{"number": 1, "title": "Implementation", "tasks": list(tasks)}]}
        path.write_text(yaml.safe_dump(payload, sort_keys=False), "utf-8")
        return path

    return _write
