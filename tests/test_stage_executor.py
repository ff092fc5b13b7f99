from __future__ import annotations

import allure
import pytest

from spec_forge.backend.scripted import ScriptedAgentInvoker, SequenceValidator
from spec_forge.workflow.errors import (
    AgentTimeoutError,
    ArtifactValidationError,
    ExecutionError,
    RetryExhaustedError,
)
from spec_forge.workflow.models import Stage, StageOutcome, StageSelection
from spec_forge.workflow.retry_store import RetryStateStore
from spec_forge.workflow.stage_executor import StageExecutionEngine, WorkflowRunner
from spec_forge.workflow.validator import validator_for

pytestmark = [
    allure.epic("Stage Execution"),
    allure.feature("Validation Retry Loop"),
]


def _engine(tmp_path, invoker, *, max_retries: int = 2) -> StageExecutionEngine:
    return StageExecutionEngine(
        invoker=invoker,
        store=RetryStateStore(tmp_path / "state", max_retries=max_retries),
        specs_dir=tmp_path / "specs",
    )


def test_first_attempt_success(tmp_path) -> None:
    invoker = ScriptedAgentInvoker()
    validator = SequenceValidator([None])
    engine = _engine(tmp_path, invoker)

    result = engine.execute_stage("001-auth", Stage.PLAN, "/forge.plan", validator)

    assert result.success
    assert result.outcome is StageOutcome.OK
    assert result.attempts == 1
    assert result.retry_count == 0
    assert not result.exhausted
    assert invoker.prompts == ["/forge.plan"]
    assert validator.calls == [tmp_path / "specs" / "001-auth"]


def test_always_failing_validation_exhausts_after_bound(tmp_path) -> None:
    invoker = ScriptedAgentInvoker()
    validator = SequenceValidator([["missing required field: plan"]], repeat_last=True)
    engine = _engine(tmp_path, invoker, max_retries=2)

    result = engine.execute_stage("001-auth", Stage.PLAN, "/forge.plan", validator)

    assert result.attempts == 3
    assert invoker.calls == 3
    assert result.outcome is StageOutcome.EXHAUSTED
    assert result.exhausted
    assert result.retry_count == 2
    assert result.validation_errors == ["missing required field: plan"]
    assert isinstance(result.error, RetryExhaustedError)
    assert isinstance(result.error.__cause__, ArtifactValidationError)
    assert result.error.count == 2
    assert result.error.exit_code == 2
    assert engine.get_retry_state("001-auth", Stage.PLAN).count == 2
    with pytest.raises(RetryExhaustedError, match="001-auth:plan"):
        result.raise_for_error()


def test_retry_prompts_carry_error_context(tmp_path) -> None:
    invoker = ScriptedAgentInvoker()
    validator = SequenceValidator([["missing required field: plan"]], repeat_last=True)
    engine = _engine(tmp_path, invoker, max_retries=2)

    engine.execute_stage("001-auth", Stage.PLAN, "/forge.plan", validator)

    first, second, third = invoker.prompts
    assert first == "/forge.plan"
    assert second.startswith("/forge.plan RETRY 1/2\nSchema validation failed:\n")
    assert "- missing required field: plan" in second
    assert "## Retry Instructions" in second
    assert third.startswith("/forge.plan RETRY 2/2\n")
    assert "RETRY 1/2" not in third


def test_fail_once_then_succeed_resets_counter(tmp_path) -> None:
    invoker = ScriptedAgentInvoker()
    validator = SequenceValidator([["bad"], None])
    engine = _engine(tmp_path, invoker, max_retries=2)

    result = engine.execute_stage("001-auth", Stage.TASKS, "/forge.tasks", validator)

    assert result.success
    assert result.attempts == 2
    assert result.retry_count == 0
    assert result.validation_errors == []
    assert engine.get_retry_state("001-auth", Stage.TASKS).count == 0


def test_zero_retries_exhausts_on_first_failure(tmp_path) -> None:
    invoker = ScriptedAgentInvoker()
    validator = SequenceValidator([["bad"]], repeat_last=True)
    engine = _engine(tmp_path, invoker, max_retries=0)

    result = engine.execute_stage("001-auth", Stage.PLAN, "/forge.plan", validator)

    assert result.attempts == 1
    assert result.exhausted
    assert result.retry_count == 0


def test_persisted_count_continues_across_runs(tmp_path) -> None:
    store = RetryStateStore(tmp_path / "state", max_retries=2)
    store.increment(store.load("001-auth", "plan"))
    engine = StageExecutionEngine(
        invoker=ScriptedAgentInvoker(),
        store=store,
        specs_dir=tmp_path / "specs",
    )

    result = engine.execute_stage(
        "001-auth",
        Stage.PLAN,
        "/forge.plan",
        SequenceValidator([["bad"]], repeat_last=True),
    )

    assert result.attempts == 2
    assert result.exhausted
    assert result.retry_count == 2


def test_execution_failure_surfaces_without_retry(tmp_path) -> None:
    invoker = ScriptedAgentInvoker([ExecutionError("agent exited with 1", exit_code=1)])
    validator = SequenceValidator([])
    engine = _engine(tmp_path, invoker, max_retries=2)

    result = engine.execute_stage("001-auth", Stage.PLAN, "/forge.plan", validator)

    assert result.outcome is StageOutcome.EXECUTION_FAILED
    assert result.attempts == 1
    assert invoker.calls == 1
    assert validator.calls == []
    assert result.retry_count == 1
    assert not result.exhausted
    assert isinstance(result.error, ExecutionError)
    assert engine.get_retry_state("001-auth", Stage.PLAN).count == 1


def test_execution_failure_at_bound_is_marked_exhausted(tmp_path) -> None:
    invoker = ScriptedAgentInvoker([AgentTimeoutError(5, "claude -p x")])
    engine = _engine(tmp_path, invoker, max_retries=0)

    result = engine.execute_stage("001-auth", Stage.PLAN, "/forge.plan")

    assert result.outcome is StageOutcome.EXECUTION_FAILED
    assert result.exhausted
    assert isinstance(result.error, AgentTimeoutError)
    assert result.error.exit_code == 5
    assert engine.store.path_for("001-auth", "plan").is_file()


def test_reset_stage_clears_counter(tmp_path) -> None:
    engine = _engine(tmp_path, ScriptedAgentInvoker(), max_retries=2)
    engine.store.increment(engine.get_retry_state("001-auth", Stage.PLAN))

    engine.reset_stage("001-auth", Stage.PLAN)

    assert engine.get_retry_state("001-auth", Stage.PLAN).count == 0


def test_workflow_runner_requires_missing_artifacts(tmp_path) -> None:
    engine = _engine(tmp_path, ScriptedAgentInvoker())
    runner = WorkflowRunner(engine, validator_for=lambda _stage: SequenceValidator([]))

    with pytest.raises(ArtifactValidationError, match="- spec.yaml"):
        runner.run("001-auth", StageSelection.of([Stage.PLAN, Stage.TASKS]))


def test_workflow_runner_runs_in_canonical_order_and_stops_on_failure(tmp_path) -> None:
    invoker = ScriptedAgentInvoker()
    validators = {
        Stage.SPECIFY: SequenceValidator([None]),
        Stage.PLAN: SequenceValidator([["bad"]], repeat_last=True),
        Stage.TASKS: SequenceValidator([None]),
    }
    runner = WorkflowRunner(_engine(tmp_path, invoker, max_retries=0), validator_for=validators.get)

    results = runner.run(
        "001-auth",
        StageSelection.of([Stage.TASKS, Stage.SPECIFY, Stage.PLAN]),
        prompts={Stage.SPECIFY: "add login"},
    )

    assert [result.stage for result in results] == [Stage.SPECIFY, Stage.PLAN]
    assert results[-1].exhausted
    assert invoker.prompts == ['/forge.specify "add login"', "/forge.plan"]
    assert validators[Stage.TASKS].calls == []


def test_undecodable_artifact_is_retried_as_validation_failure(tmp_path) -> None:
    plan_path = tmp_path / "specs" / "001-auth" / "plan.yaml"

    def _write_bytes(payload: bytes):
        def _write(_prompt: str) -> None:
            plan_path.parent.mkdir(parents=True, exist_ok=True)
            plan_path.write_bytes(payload)

        return _write

    invoker = ScriptedAgentInvoker(
        [_write_bytes(b"plan: \xff\xfe\n"), _write_bytes(b"plan:\n  branch: 001-auth\n")],
    )
    engine = _engine(tmp_path, invoker, max_retries=1)

    result = engine.execute_stage(
        "001-auth",
        Stage.PLAN,
        "/forge.plan",
        validator_for(Stage.PLAN),
    )

    assert result.success
    assert result.attempts == 2
    assert "- plan.yaml: unreadable:" in invoker.prompts[1]


def test_plain_exception_from_validator_counts_as_validation_failure(tmp_path) -> None:
    def _validator(_artifact_dir) -> None:
        raise ValueError("schema validation failed:\n- missing required field: plan")

    engine = _engine(tmp_path, ScriptedAgentInvoker(), max_retries=1)

    result = engine.execute_stage("001-auth", Stage.PLAN, "/forge.plan", _validator)

    assert result.outcome is StageOutcome.EXHAUSTED
    assert result.attempts == 2
    assert result.validation_errors == ["missing required field: plan"]
    assert isinstance(result.error, RetryExhaustedError)
    last_error = result.error.last_error
    assert isinstance(last_error, ArtifactValidationError)
    assert isinstance(last_error.__cause__, ValueError)
