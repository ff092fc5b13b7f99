"""Stage execution: invoke the agent, validate artifacts, retry with error context."""

from __future__ import annotations

import logging
from collections.abc import Callable, Mapping
from pathlib import Path

from spec_forge.backend.base import AgentInvoker
from spec_forge.workflow.errors import (
    ArtifactValidationError,
    ExecutionError,
    RetryExhaustedError,
)
from spec_forge.workflow.models import (
    RetryState,
    Stage,
    StageOutcome,
    StageResult,
    StageSelection,
)
from spec_forge.workflow.retry_context import (
    build_retry_command,
    extract_validation_errors,
    format_retry_context,
)
from spec_forge.workflow.retry_store import RetryStateStore

logger = logging.getLogger(__name__)

Validator = Callable[[Path], None]


def _no_validation(_artifact_dir: Path) -> None:
    return None


def _as_validation_error(error: Exception) -> ArtifactValidationError:
    """Treat any validator failure as a validation failure, keeping the original as cause."""

    if isinstance(error, ArtifactValidationError):
        return error
    wrapped = ArtifactValidationError(str(error))
    wrapped.__cause__ = error
    return wrapped


class StageExecutionEngine:
    """Run one stage to success or exhaustion.

    Attempts are sequential. Validation failures are retried up to the store's
    ``max_retries`` with the errors injected into the next command; agent
    process failures are surfaced immediately.
    """

    def __init__(
        self,
        *,
        invoker: AgentInvoker,
        store: RetryStateStore,
        specs_dir: Path,
    ) -> None:
        self.invoker = invoker
        self.store = store
        self.specs_dir = specs_dir

    @property
    def max_retries(self) -> int:
        return self.store.max_retries

    def artifact_dir(self, spec_name: str) -> Path:
        return self.specs_dir / spec_name

    def execute_stage(
        self,
        spec_name: str,
        stage: Stage,
        command: str,
        validator: Validator | None = None,
    ) -> StageResult:
        validate = validator or _no_validation
        retry_state = self.store.load(spec_name, stage.value)
        result = StageResult(stage=stage, outcome=StageOutcome.OK, retry_count=retry_state.count)
        current_command = command

        while True:
            result.attempts += 1
            logger.info(
                "Running stage %s for %s (attempt %d, retries %d/%d)",
                stage.value,
                spec_name or "-",
                result.attempts,
                retry_state.count,
                retry_state.max_retries,
            )
            try:
                self.invoker.execute(current_command)
            except ExecutionError as error:
                return self._execution_failed(result, retry_state, error)

            try:
                validate(self.artifact_dir(spec_name))
            except Exception as raised:  # noqa: BLE001
                validation_error = _as_validation_error(raised)
                result.validation_errors = extract_validation_errors(str(validation_error))
                logger.info(
                    "Stage %s validation failed with %d error(s)",
                    stage.value,
                    len(result.validation_errors),
                )
                if not retry_state.can_retry():
                    return self._exhausted(result, retry_state, validation_error)

                self.store.increment(retry_state)
                result.retry_count = retry_state.count
                result.outcome = StageOutcome.VALIDATION_FAILED
                retry_context = format_retry_context(
                    retry_state.count,
                    retry_state.max_retries,
                    result.validation_errors,
                )
                current_command = build_retry_command(command, retry_context)
                logger.info(
                    "Retry %d/%d - injecting validation errors into command",
                    retry_state.count,
                    retry_state.max_retries,
                )
                continue

            retry_state.reset()
            self.store.save(retry_state)
            result.outcome = StageOutcome.OK
            result.retry_count = 0
            result.exhausted = False
            result.validation_errors = []
            result.error = None
            logger.info("Stage %s completed after %d attempt(s)", stage.value, result.attempts)
            return result

    def _execution_failed(
        self,
        result: StageResult,
        retry_state: RetryState,
        error: ExecutionError,
    ) -> StageResult:
        # Process failures consume a retry slot but are never retried here.
        if retry_state.can_retry():
            self.store.increment(retry_state)
        else:
            self.store.save(retry_state)
            result.exhausted = True
        result.retry_count = retry_state.count
        result.outcome = StageOutcome.EXECUTION_FAILED
        result.error = error
        logger.warning("Stage %s agent execution failed: %s", result.stage.value, error)
        return result

    def _exhausted(
        self,
        result: StageResult,
        retry_state: RetryState,
        error: ArtifactValidationError,
    ) -> StageResult:
        self.store.save(retry_state)
        result.outcome = StageOutcome.EXHAUSTED
        result.exhausted = True
        result.retry_count = retry_state.count
        result.error = RetryExhaustedError(
            spec_name=retry_state.spec_name,
            stage=retry_state.stage,
            count=retry_state.count,
            max_retries=retry_state.max_retries,
            last_error=error,
        )
        result.error.__cause__ = error
        logger.warning("Stage %s exhausted retries: %s", result.stage.value, result.error)
        return result

    def get_retry_state(self, spec_name: str, stage: Stage) -> RetryState:
        return self.store.load(spec_name, stage.value)

    def reset_stage(self, spec_name: str, stage: Stage) -> None:
        self.store.reset(spec_name, stage.value)


class WorkflowRunner:
    """Run a selection of stages sequentially, one agent session per stage."""

    def __init__(
        self,
        engine: StageExecutionEngine,
        *,
        validator_for: Callable[[Stage], Validator],
    ) -> None:
        self.engine = engine
        self.validator_for = validator_for

    def missing_artifacts(self, spec_name: str, selection: StageSelection) -> list[str]:
        artifact_dir = self.engine.artifact_dir(spec_name)
        return [
            name for name in selection.required_artifacts() if not (artifact_dir / name).exists()
        ]

    def run(
        self,
        spec_name: str,
        selection: StageSelection,
        prompts: Mapping[Stage, str] | None = None,
    ) -> list[StageResult]:
        """Execute stages in canonical order and stop at the first non-ok result."""

        missing = self.missing_artifacts(spec_name, selection)
        if missing:
            raise ArtifactValidationError(
                f"Missing required artifacts in {self.engine.artifact_dir(spec_name)}",
                errors=missing,
            )

        prompts = prompts or {}
        results: list[StageResult] = []
        for position, stage in enumerate(selection.ordered(), start=1):
            logger.info("[%d/%d] %s", position, len(selection), stage.value)
            result = self.engine.execute_stage(
                spec_name,
                stage,
                stage.command(prompts.get(stage, "")),
                self.validator_for(stage),
            )
            results.append(result)
            if not result.success:
                logger.warning(
                    "Stopping workflow at stage %s (%s)",
                    stage.value,
                    result.outcome.value,
                )
                break
        return results
