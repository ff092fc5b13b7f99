from __future__ import annotations

import allure
import pytest

from spec_forge.workflow.errors import ArtifactValidationError
from spec_forge.workflow.models import Stage
from spec_forge.workflow.retry_context import extract_validation_errors
from spec_forge.workflow.validator import collect_artifact_errors, validator_for

pytestmark = [
    allure.epic("Stage Execution"),
    allure.feature("Artifact Validation"),
]


def test_missing_artifact_is_reported(tmp_path) -> None:
    assert collect_artifact_errors(tmp_path, "plan.yaml") == ["missing artifact: plan.yaml"]


def test_non_mapping_document_is_reported(tmp_path) -> None:
    (tmp_path / "spec.yaml").write_text("- item\n", "utf-8")

    assert collect_artifact_errors(tmp_path, "spec.yaml") == [
        "spec.yaml: invalid type for document: expected mapping",
    ]


def test_invalid_yaml_is_reported(tmp_path) -> None:
    (tmp_path / "plan.yaml").write_text("plan: [unclosed\n", "utf-8")

    errors = collect_artifact_errors(tmp_path, "plan.yaml")

    assert len(errors) == 1
    assert errors[0].startswith("plan.yaml: invalid YAML:")


def test_tasks_document_requires_phases(tmp_path) -> None:
    (tmp_path / "tasks.yaml").write_text("title: nothing\n", "utf-8")

    assert collect_artifact_errors(tmp_path, "tasks.yaml") == [
        "tasks.yaml: missing required field: phases",
    ]


def test_tasks_document_with_cycle_is_reported(write_tasks, tmp_path) -> None:
    write_tasks(
        tmp_path,
        [{"id": "T1", "dependencies": ["T2"]}, {"id": "T2", "dependencies": ["T1"]}],
    )

    errors = collect_artifact_errors(tmp_path, "tasks.yaml")

    assert len(errors) == 1
    assert "circular dependency detected" in errors[0]


def test_valid_tasks_document_passes(write_tasks, tmp_path) -> None:
    write_tasks(tmp_path, [{"id": "T1"}, {"id": "T2", "dependencies": ["T1"]}])

    assert collect_artifact_errors(tmp_path, "tasks.yaml") == []
    validator_for(Stage.TASKS)(tmp_path)


def test_validator_raises_with_bullet_errors(tmp_path) -> None:
    validate = validator_for(Stage.PLAN)

    with pytest.raises(ArtifactValidationError) as error_info:
        validate(tmp_path)

    assert extract_validation_errors(str(error_info.value)) == ["missing artifact: plan.yaml"]


def test_stage_without_outputs_always_passes(tmp_path) -> None:
    validator_for(Stage.CLARIFY)(tmp_path)
