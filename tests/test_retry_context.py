from __future__ import annotations

import allure

from spec_forge.workflow.retry_context import (
    MAX_RETRY_ERRORS,
    build_retry_command,
    extract_validation_errors,
    format_retry_context,
)

pytestmark = [
    allure.epic("Stage Execution"),
    allure.feature("Retry Context"),
]


def test_format_without_errors_is_only_the_retry_indicator() -> None:
    assert format_retry_context(1, 3, []) == "RETRY 1/3"


def test_format_with_errors_lists_bullets_then_instructions() -> None:
    context = format_retry_context(2, 3, ["missing required field: plan", "bad type"])

    assert context.startswith(
        "RETRY 2/3\nSchema validation failed:\n- missing required field: plan\n- bad type\n\n",
    )
    assert "## Retry Instructions" in context
    assert "### Common Schema Errors and Fixes" in context
    assert not context.endswith("\n")


def test_format_truncates_to_ten_errors() -> None:
    errors = [f"error {index}" for index in range(13)]

    context = format_retry_context(1, 2, errors)

    bullets = [line for line in context.splitlines() if line.startswith("- error ")]
    assert len(bullets) == MAX_RETRY_ERRORS
    assert "- error 9" in context
    assert "- error 10" not in context
    assert "...and 3 more errors" in context


def test_format_with_exactly_ten_errors_has_no_overflow_line() -> None:
    context = format_retry_context(1, 2, [f"e{index}" for index in range(10)])

    assert "more errors" not in context


def test_build_retry_command_appends_context() -> None:
    assert build_retry_command("/forge.plan", "RETRY 1/3") == "/forge.plan RETRY 1/3"


def test_build_retry_command_separates_original_args_with_blank_line() -> None:
    command = build_retry_command("/forge.plan", "RETRY 1/3", original_args="use postgres")

    assert command == "/forge.plan RETRY 1/3\n\nuse postgres"


def test_build_retry_command_without_context_keeps_command() -> None:
    assert build_retry_command("/forge.plan", "") == "/forge.plan"
    assert build_retry_command("/forge.plan", "", original_args="x") == "/forge.plan x"


def test_extract_validation_errors_collects_bullets() -> None:
    message = "Schema validation failed:\n- missing field: a\n  - bad type: b\nfooter"

    assert extract_validation_errors(message) == ["missing field: a", "bad type: b"]


def test_extract_validation_errors_falls_back_to_whole_message() -> None:
    assert extract_validation_errors("file is not YAML") == ["file is not YAML"]
    assert extract_validation_errors("") == []
