"""Artifact presence validation for stage outputs."""

from __future__ import annotations

from collections.abc import Callable
from pathlib import Path

import yaml

from spec_forge.workflow.dag import DependencyGraph
from spec_forge.workflow.errors import (
    ArtifactValidationError,
    DependencyGraphError,
    TasksFileError,
)
from spec_forge.workflow.models import Stage
from spec_forge.workflow.tasks_file import TASKS_FILE_NAME, load_tasks


def collect_artifact_errors(artifact_dir: Path, artifact: str) -> list[str]:
    """Return human-readable problems with one artifact; empty when valid."""

    path = artifact_dir / artifact
    if not path.is_file():
        return [f"missing artifact: {artifact}"]
    try:
        text = path.read_text("utf-8")
    except (OSError, UnicodeDecodeError) as error:
        return [f"{artifact}: unreadable: {error}"]
    try:
        raw = yaml.safe_load(text)
    except yaml.YAMLError as error:
        return [f"{artifact}: invalid YAML: {error}"]
    if not isinstance(raw, dict):
        return [f"{artifact}: invalid type for document: expected mapping"]

    if artifact != TASKS_FILE_NAME:
        return []
    if "phases" not in raw:
        return [f"{artifact}: missing required field: phases"]
    try:
        DependencyGraph.build(load_tasks(path))
    except (TasksFileError, DependencyGraphError) as error:
        return [f"{artifact}: {error}"]
    return []


def validator_for(stage: Stage) -> Callable[[Path], None]:
    """Build a validator that checks every artifact ``stage`` produces."""

    def validate(artifact_dir: Path) -> None:
        errors: list[str] = []
        for artifact in stage.produces:
            errors.extend(collect_artifact_errors(artifact_dir, artifact))
        if errors:
            raise ArtifactValidationError(
                f"Schema validation failed for {stage.value} artifacts in {artifact_dir}:",
                errors=errors,
            )

    return validate
