"""Local demo agent for CLI backend integration tests.

Understands ``/forge.<stage>`` prompts and writes minimal artifacts for the
stage into ``--spec-dir``.
"""

from __future__ import annotations

import argparse
import re
import sys
import time
from pathlib import Path

import yaml

from spec_forge.workflow.models import COMMAND_PREFIX, Stage

_STAGE_PATTERN = re.compile(rf"^{re.escape(COMMAND_PREFIX)}\.(?P<stage>[a-z]+)")
_TASK_PATTERN = re.compile(r"--task (?P<task>\S+)")


def _artifact_payload(artifact: str, spec_name: str) -> dict[str, object]:
    if artifact == "spec.yaml":
        return {"feature": {"branch": spec_name, "created": "2026-01-01"}, "user_stories": []}
    if artifact == "plan.yaml":
        return {"plan": {"branch": spec_name, "spec_path": f"specs/{spec_name}/spec.yaml"}}
    return {
        "phases": [
            {
                "number": 1,
                "title": "Setup",
                "tasks": [
                    {"id": "T001", "title": "Scaffold", "status": "Pending", "dependencies": []},
                    {
                        "id": "T002",
                        "title": "Implement",
                        "status": "Pending",
                        "dependencies": ["T001"],
                    },
                ],
            },
        ],
    }


def _bump_counter(path: Path) -> int:
    count = int(path.read_text("utf-8")) if path.exists() else 0
    count += 1
    path.write_text(str(count), "utf-8")
    return count


def main(argv: list[str] | None = None) -> int:
    """Write deterministic artifacts for the stage named in the prompt."""

    parser = argparse.ArgumentParser()
    parser.add_argument("--spec-dir", required=True)
    parser.add_argument("--invalid-attempts", type=int, default=0)
    parser.add_argument("--exit-code", type=int, default=0)
    parser.add_argument("--sleep", type=float, default=0.0)
    parser.add_argument("prompt")
    args = parser.parse_args(argv)

    if args.sleep:
        time.sleep(args.sleep)
    if args.exit_code:
        print("echo agent: simulated failure", file=sys.stderr)
        return args.exit_code

    spec_dir = Path(args.spec_dir)
    spec_dir.mkdir(parents=True, exist_ok=True)

    task_match = _TASK_PATTERN.search(args.prompt)
    if task_match is not None:
        with (spec_dir / "tasks.log").open("a", encoding="utf-8") as handle:
            handle.write(task_match.group("task") + "\n")
        return 0

    match = _STAGE_PATTERN.match(args.prompt.strip())
    if match is None:
        print(f"echo agent: unrecognized prompt: {args.prompt[:80]}", file=sys.stderr)
        return 2
    stage = Stage.parse(match.group("stage"))

    attempt = _bump_counter(spec_dir / f".{stage.value}.attempts")
    for artifact in stage.produces:
        path = spec_dir / artifact
        if attempt <= args.invalid_attempts:
            path.write_text("- not a mapping\n", "utf-8")
            continue
        path.write_text(
            yaml.safe_dump(_artifact_payload(artifact, spec_dir.name), sort_keys=False),
            "utf-8",
        )
    print(f"echo agent: {stage.value} attempt {attempt}")
    return 0


if __name__ == "__main__":  # pragma: no cover
    sys.exit(main())
