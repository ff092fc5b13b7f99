"""Subprocess-based agent invocation for CLI coding agents."""

from __future__ import annotations

import logging
import os
import shlex
import subprocess
import threading
import time
from collections.abc import Callable
from contextlib import ExitStack
from pathlib import Path
from typing import IO

from spec_forge.workflow.errors import (
    AgentTimeoutError,
    ExecutionCancelledError,
    ExecutionError,
)
from spec_forge.workflow.models import Stage

logger = logging.getLogger(__name__)

_POLL_INTERVAL_SECONDS = 0.1


class CliAgentInvoker:
    """Run an agent CLI rendered from a ``{prompt}``/``{model}`` command template.

    The call blocks until the process exits, the timeout expires or ``cancel`` is
    set; in the last two cases the process is terminated, then killed.
    """

    def __init__(  # noqa: PLR0913
        self,
        *,
        command_template: str,
        model: str = "",
        timeout_seconds: float = 1_800,
        cwd: Path | None = None,
        log_dir: Path | None = None,
        log_name: str = "agent",
        cancel: threading.Event | None = None,
        extra_env: dict[str, str] | None = None,
    ) -> None:
        self.command_template = command_template
        self.model = model
        self.timeout_seconds = timeout_seconds
        self.cwd = cwd
        self.log_dir = log_dir
        self.log_name = log_name
        self.cancel = cancel
        self.extra_env = dict(extra_env or {})

    def format_command(self, prompt: str) -> str:
        return shlex.join(build_run_args(self.command_template, model=self.model, prompt=prompt))

    def execute(self, prompt: str) -> None:
        argv = build_run_args(self.command_template, model=self.model, prompt=prompt)
        env = os.environ.copy()
        env.update(self.extra_env)
        display = shlex.join(argv)
        logger.debug("Executing agent command: %s", display)

        try:
            with ExitStack() as stack:
                stdout_handle, stderr_handle = self._open_logs(stack)
                returncode = run_subprocess(
                    argv,
                    env=env,
                    cwd=self.cwd,
                    timeout_seconds=self.timeout_seconds,
                    stdout_handle=stdout_handle,
                    stderr_handle=stderr_handle,
                    cancel=self.cancel,
                )
        except FileNotFoundError as error:
            raise ExecutionError(f"agent command not found: {argv[0]}") from error
        except OSError as error:
            raise ExecutionError(f"agent command failed to start: {error}") from error

        if returncode != 0:
            raise ExecutionError(
                f"agent command exited with code {returncode}: {argv[0]}",
                exit_code=returncode,
            )

    def _open_logs(self, stack: ExitStack) -> tuple[IO[str] | None, IO[str] | None]:
        if self.log_dir is None:
            return None, None
        self.log_dir.mkdir(parents=True, exist_ok=True)
        stdout_path = self.log_dir / f"{self.log_name}.stdout.log"
        stderr_path = self.log_dir / f"{self.log_name}.stderr.log"
        return (
            stack.enter_context(stdout_path.open("a", encoding="utf-8")),
            stack.enter_context(stderr_path.open("a", encoding="utf-8")),
        )


class AgentTaskRunner:
    """Run one implementation task as its own short agent session."""

    def __init__(  # noqa: PLR0913
        self,
        *,
        command_template: str,
        model: str = "",
        timeout_seconds: float = 1_800,
        log_dir: Path | None = None,
        workdir_for: Callable[[str], str | None] | None = None,
    ) -> None:
        self.command_template = command_template
        self.model = model
        self.timeout_seconds = timeout_seconds
        self.log_dir = log_dir
        self.workdir_for = workdir_for

    def run_task(
        self,
        cancel: threading.Event,
        task_id: str,
        spec_name: str,
        tasks_path: Path,
    ) -> None:
        workdir = self.workdir_for(task_id) if self.workdir_for is not None else None
        invoker = CliAgentInvoker(
            command_template=self.command_template,
            model=self.model,
            timeout_seconds=self.timeout_seconds,
            cwd=Path(workdir) if workdir else None,
            log_dir=self.log_dir / spec_name if self.log_dir is not None else None,
            log_name=task_id,
            cancel=cancel,
            extra_env={"SPEC_FORGE_TASK_ID": task_id, "SPEC_FORGE_SPEC": spec_name},
        )
        invoker.execute(build_task_prompt(task_id, spec_name, tasks_path))


def build_task_prompt(task_id: str, spec_name: str, tasks_path: Path) -> str:
    return (
        f"{Stage.IMPLEMENT.command()} --task {task_id}\n"
        f"\n"
        f"Spec: {spec_name}\n"
        f"Tasks file: {tasks_path}\n"
        f"Implement only task {task_id}. Do not start other tasks.\n"
        f"Set its status to Completed in the tasks file when done.\n"
    )


def build_run_args(command_template: str, *, model: str, prompt: str) -> list[str]:
    """Render ``command_template`` into argv with shell-quoted placeholders."""

    stripped = command_template.strip()
    if not stripped:
        raise ExecutionError("agent command template is empty")
    if "{prompt}" not in stripped:
        raise ExecutionError("agent command template must include {prompt}")
    try:
        rendered = stripped.format(model=shlex.quote(model), prompt=shlex.quote(prompt))
    except (KeyError, IndexError) as error:
        raise ExecutionError(f"unsupported command template placeholder: {error}") from error

    argv = shlex.split(rendered)
    if not argv:
        raise ExecutionError("agent command template rendered empty command")
    return argv


def run_subprocess(  # noqa: PLR0913
    argv: list[str],
    *,
    env: dict[str, str],
    cwd: Path | None,
    timeout_seconds: float,
    stdout_handle: IO[str] | None,
    stderr_handle: IO[str] | None,
    cancel: threading.Event | None,
) -> int:
    """Wait for the child while polling the deadline and the cancel signal."""

    process = subprocess.Popen(  # noqa: S603
        argv,
        env=env,
        cwd=cwd,
        stdout=stdout_handle,
        stderr=stderr_handle,
        text=True,
    )
    started = time.monotonic()
    while True:
        returncode = process.poll()
        if returncode is not None:
            return returncode

        if time.monotonic() - started >= timeout_seconds:
            _terminate_process(process)
            raise AgentTimeoutError(timeout_seconds, shlex.join(argv)) from TimeoutError(
                f"deadline of {timeout_seconds:g}s exceeded",
            )

        if cancel is not None and cancel.is_set():
            _terminate_process(process)
            raise ExecutionCancelledError(f"agent command cancelled: {argv[0]}")

        time.sleep(_POLL_INTERVAL_SECONDS)


def _terminate_process(process: subprocess.Popen[str]) -> None:
    try:
        process.terminate()
    except OSError:
        return
    try:
        process.wait(timeout=2)
    except subprocess.TimeoutExpired:
        try:
            process.kill()
        except OSError:
            return
        process.wait(timeout=2)
