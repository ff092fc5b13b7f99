"""File-backed retry counters keyed by (spec, stage)."""

from __future__ import annotations

import json
import logging
from datetime import datetime
from pathlib import Path

from spec_forge.workflow.models import RetryState
from spec_forge.workflow.storage import (
    format_timestamp,
    load_json,
    parse_timestamp,
    utc_now,
    write_json,
)

logger = logging.getLogger(__name__)


class RetryStateStore:
    """Persist one JSON document per (spec, stage) under ``<state_dir>/retry``.

    Not safe for concurrent writers: one coordinating process per spec.
    """

    def __init__(self, state_dir: Path, *, max_retries: int) -> None:
        self.root_dir = state_dir / "retry"
        self.max_retries = max_retries

    def path_for(self, spec_name: str, stage: str) -> Path:
        return self.root_dir / spec_name / f"{stage}.json"

    def load(self, spec_name: str, stage: str) -> RetryState:
        """Return the stored state or a fresh one.

        ``max_retries`` always reflects the store's current configuration, not the
        value recorded when the file was written.
        """

        path = self.path_for(spec_name, stage)
        if not path.exists():
            return RetryState(spec_name=spec_name, stage=stage, max_retries=self.max_retries)
        try:
            raw = load_json(path)
        except (OSError, TypeError, json.JSONDecodeError) as error:
            logger.warning("Ignoring unreadable retry state %s: %s", path, error)
            return RetryState(spec_name=spec_name, stage=stage, max_retries=self.max_retries)

        count = raw.get("count", 0)
        if not isinstance(count, int) or count < 0:
            logger.warning("Ignoring invalid retry count in %s: %r", path, count)
            count = 0
        return RetryState(
            spec_name=spec_name,
            stage=stage,
            count=count,
            max_retries=self.max_retries,
            last_attempt=parse_timestamp(raw.get("last_attempt")),
        )

    def save(self, state: RetryState) -> None:
        write_json(
            self.path_for(state.spec_name, state.stage),
            {
                "spec_name": state.spec_name,
                "stage": state.stage,
                "count": state.count,
                "max_retries": state.max_retries,
                "last_attempt": format_timestamp(state.last_attempt),
            },
        )

    def increment(self, state: RetryState, *, now: datetime | None = None) -> RetryState:
        state.increment(now or utc_now())
        self.save(state)
        logger.debug(
            "Retry counter for %s:%s is now %d/%d",
            state.spec_name,
            state.stage,
            state.count,
            state.max_retries,
        )
        return state

    def reset(self, spec_name: str, stage: str) -> RetryState:
        state = self.load(spec_name, stage)
        state.reset()
        self.save(state)
        return state

    def list_states(self, spec_name: str) -> list[RetryState]:
        spec_dir = self.root_dir / spec_name
        if not spec_dir.is_dir():
            return []
        return [self.load(spec_name, path.stem) for path in sorted(spec_dir.glob("*.json"))]
