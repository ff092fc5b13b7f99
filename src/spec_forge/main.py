"""CLI entrypoint for spec-forge."""

import logging
from pathlib import Path

import rich_click as click

from spec_forge import __version__
from spec_forge.workflow.controllers import (
    CommandFailedError,
    CommandReport,
    ForgeCliController,
    ImplementCommand,
    ParallelStatusCommand,
    RetryResetCommand,
    RetryStatusCommand,
    RunCommand,
    StageCommand,
    WavesCommand,
)
from spec_forge.workflow.models import CANONICAL_ORDER

click.rich_click.USE_MARKDOWN = True
CONTROLLER = ForgeCliController()

STAGE_NAMES = [stage.value for stage in CANONICAL_ORDER]

specs_dir_option = click.option(
    "--specs-dir",
    type=click.Path(path_type=Path, file_okay=False),
    default=None,
    help="Directory holding one artifact folder per spec. Defaults to SPEC_FORGE_SPECS_DIR.",
)
state_dir_option = click.option(
    "--state-dir",
    type=click.Path(path_type=Path, file_okay=False),
    default=None,
    help="Directory for retry and parallel checkpoints. Defaults to SPEC_FORGE_STATE_DIR.",
)


@click.group()
@click.version_option(version=__version__, prog_name="spec-forge")
@click.option("--verbose", "-v", is_flag=True, default=False, help="Enable debug logging.")
def spec_forge(verbose: bool) -> None:
    """Drive a coding agent through spec-driven stages with retries and parallel tasks."""

    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


@spec_forge.command("stage")
@click.argument("spec_name")
@click.argument("stage", type=click.Choice(STAGE_NAMES, case_sensitive=False))
@click.option("--prompt", default="", help="Extra instructions passed to the stage command.")
@specs_dir_option
@state_dir_option
def stage_command(
    spec_name: str,
    stage: str,
    prompt: str,
    specs_dir: Path | None,
    state_dir: Path | None,
) -> None:
    """Run one stage, retrying with validation errors until it passes or retries run out."""

    _emit_report(
        CONTROLLER.stage(
            StageCommand(
                spec_name=spec_name,
                stage=stage,
                prompt=prompt,
                specs_dir=specs_dir,
                state_dir=state_dir,
            ),
        ),
    )


@spec_forge.command("run")
@click.argument("spec_name")
@click.option(
    "--stage",
    "stages",
    multiple=True,
    type=click.Choice(STAGE_NAMES, case_sensitive=False),
    help="Stage to include. Can be repeated. Defaults to specify, plan and tasks.",
)
@click.option("--prompt", default="", help="Extra instructions passed to every stage.")
@specs_dir_option
@state_dir_option
def run_command(
    spec_name: str,
    stages: tuple[str, ...],
    prompt: str,
    specs_dir: Path | None,
    state_dir: Path | None,
) -> None:
    """Run the selected stages in canonical order, stopping at the first failure."""

    _emit_report(
        CONTROLLER.run(
            RunCommand(
                spec_name=spec_name,
                stages=stages,
                prompt=prompt,
                specs_dir=specs_dir,
                state_dir=state_dir,
            ),
        ),
    )


@spec_forge.command("implement")
@click.argument("spec_name")
@click.option(
    "--max-parallel",
    type=click.IntRange(min=1),
    default=None,
    help="Max tasks per wave running at once. Defaults to SPEC_FORGE_MAX_PARALLEL.",
)
@click.option(
    "--worktrees/--no-worktrees",
    "use_worktrees",
    default=None,
    help="Run each task in its own git worktree.",
)
@click.option("--dry-run", is_flag=True, default=False, help="Print the wave plan and exit.")
@click.option(
    "--resume",
    "resume_option",
    type=click.Choice(["retry", "skip-wave", "reset", "abort"], case_sensitive=False),
    default=None,
    help="Answer for an interrupted run instead of prompting.",
)
@specs_dir_option
@state_dir_option
def implement_command(  # noqa: PLR0913
    spec_name: str,
    max_parallel: int | None,
    use_worktrees: bool | None,
    dry_run: bool,
    resume_option: str | None,
    specs_dir: Path | None,
    state_dir: Path | None,
) -> None:
    """Execute `tasks.yaml` wave by wave with a bounded pool of agent sessions."""

    _emit_report(
        CONTROLLER.implement(
            ImplementCommand(
                spec_name=spec_name,
                max_parallel=max_parallel,
                use_worktrees=use_worktrees,
                dry_run=dry_run,
                resume_option=_resume_alias(resume_option),
                specs_dir=specs_dir,
                state_dir=state_dir,
                on_progress=click.echo,
            ),
        ),
    )


@spec_forge.command("waves")
@click.argument("spec_name")
@click.option("--compact", is_flag=True, default=False, help="Print the plan on one line.")
@specs_dir_option
def waves_command(spec_name: str, compact: bool, specs_dir: Path | None) -> None:
    """Show the execution waves computed from `tasks.yaml`."""

    _emit_lines(
        CONTROLLER.waves(WavesCommand(spec_name=spec_name, compact=compact, specs_dir=specs_dir)),
    )


@spec_forge.command("retry-status")
@click.argument("spec_name")
@state_dir_option
def retry_status_command(spec_name: str, state_dir: Path | None) -> None:
    """Show persisted retry counters of every stage."""

    _emit_lines(
        CONTROLLER.retry_status(RetryStatusCommand(spec_name=spec_name, state_dir=state_dir)),
    )


@spec_forge.command("retry-reset")
@click.argument("spec_name")
@click.option(
    "--stage",
    "stages",
    multiple=True,
    type=click.Choice(STAGE_NAMES, case_sensitive=False),
    help="Stage to reset. Can be repeated. Defaults to every recorded stage.",
)
@state_dir_option
def retry_reset_command(spec_name: str, stages: tuple[str, ...], state_dir: Path | None) -> None:
    """Reset retry counters so exhausted stages can run again."""

    _emit_lines(
        CONTROLLER.retry_reset(
            RetryResetCommand(spec_name=spec_name, stages=stages, state_dir=state_dir),
        ),
    )


@spec_forge.command("parallel-status")
@click.argument("spec_name")
@click.option(
    "--format",
    "output_format",
    type=click.Choice(["table", "json"], case_sensitive=False),
    default="table",
    show_default=True,
    help="Output format.",
)
@state_dir_option
def parallel_status_command(spec_name: str, output_format: str, state_dir: Path | None) -> None:
    """Show the checkpoint of the last parallel run."""

    _emit_lines(
        CONTROLLER.parallel_status(
            ParallelStatusCommand(
                spec_name=spec_name,
                output_format=output_format.lower(),
                state_dir=state_dir,
            ),
        ),
    )


def _resume_alias(value: str | None) -> str | None:
    if value is None:
        return None
    return {"skip-wave": "skip"}.get(value.lower(), value.lower())


def _emit_report(report: CommandReport) -> None:
    _emit_lines(report.lines)
    if not report.success:
        raise CommandFailedError(report.message, exit_code=report.exit_code or 1)


def _emit_lines(lines: list[str]) -> None:
    for line in lines:
        click.echo(line)


if __name__ == "__main__":  # pragma: no cover
    spec_forge()
