"""Retry-context formatting injected into the next attempt's prompt."""

from __future__ import annotations

from collections.abc import Sequence

MAX_RETRY_ERRORS = 10

# Only appended when there are errors, so first attempts stay short.
RETRY_INSTRUCTIONS = """
## Retry Instructions

This is a retry attempt. The previous attempt failed schema validation.

### How to Handle This Retry

1. **Parse the retry indicator**: the "RETRY X/Y" line above is attempt X of Y allowed retries
2. **Read the validation errors**: each line starting with "- " is one schema error
3. **Fix the specific errors**: address every listed error in your output
4. **Preserve intent**: keep the same approach and fix only the schema issues
5. **Re-validate**: run the artifact validation command before finishing

### Common Schema Errors and Fixes

| Error Pattern | Cause | Fix |
|---------------|-------|-----|
| "missing required field: X" | Field X was omitted | Add the field with an appropriate value |
| "invalid enum value for X: expected one of [...]" | Value outside the allowed set | Use one of the listed values |
| "invalid type for X: expected Y, got Z" | Wrong data type | Convert to the expected type |
| "X does not match pattern" | Format mismatch | Follow the required pattern (e.g. NNN-name) |
| "additional property not allowed" | Unexpected field present | Remove the unrecognized field |

### Important Notes

- Do not restructure parts of the artifact that already validate
- Field paths use dot notation ("feature.branch" is "branch" inside "feature")
- Array indices start at 0 ("user_stories[0]" is the first story)
- Fix all listed errors in a single attempt
"""


def format_retry_context(attempt: int, max_retries: int, errors: Sequence[str]) -> str:
    """Render ``RETRY X/Y`` plus bulleted validation errors.

    At most ``MAX_RETRY_ERRORS`` bullets are shown; the rest are summarized as
    ``...and K more errors``.
    """

    header = f"RETRY {attempt}/{max_retries}"
    if not errors:
        return header

    lines = [header, "Schema validation failed:"]
    lines.extend(f"- {message}" for message in errors[:MAX_RETRY_ERRORS])
    remaining = len(errors) - MAX_RETRY_ERRORS
    if remaining > 0:
        lines.append(f"...and {remaining} more errors")
    return "\n".join(lines) + "\n" + RETRY_INSTRUCTIONS.rstrip("\n")


def build_retry_command(command: str, retry_context: str, original_args: str = "") -> str:
    """Append ``retry_context`` to ``command``.

    The context and any pre-existing arguments are separated by a blank line.
    """

    if not retry_context:
        return f"{command} {original_args}" if original_args else command
    if not original_args:
        return f"{command} {retry_context}"
    return f"{command} {retry_context}\n\n{original_args}"


def extract_validation_errors(message: str) -> list[str]:
    """Collect ``"- "`` bullet lines; fall back to the whole message."""

    errors = [
        line.strip()[2:]
        for line in message.splitlines()
        if line.strip().startswith("- ")
    ]
    if not errors and message:
        return [message]
    return errors
