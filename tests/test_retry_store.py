from __future__ import annotations

import json
from datetime import UTC, datetime

import allure

from spec_forge.workflow.retry_store import RetryStateStore

pytestmark = [
    allure.epic("Stage Execution"),
    allure.feature("Retry State Persistence"),
]


def test_load_missing_state_is_fresh(tmp_path) -> None:
    store = RetryStateStore(tmp_path, max_retries=3)

    state = store.load("001-auth", "plan")

    assert state.count == 0
    assert state.max_retries == 3
    assert state.last_attempt is None
    assert not store.path_for("001-auth", "plan").exists()


def test_increment_persists_deterministic_json(tmp_path) -> None:
    store = RetryStateStore(tmp_path, max_retries=3)
    state = store.load("001-auth", "plan")
    now = datetime(2026, 3, 1, 12, 30, tzinfo=UTC)

    store.increment(state, now=now)

    path = tmp_path / "retry" / "001-auth" / "plan.json"
    assert json.loads(path.read_text("utf-8")) == {
        "count": 1,
        "last_attempt": "2026-03-01T12:30:00+00:00",
        "max_retries": 3,
        "spec_name": "001-auth",
        "stage": "plan",
    }
    assert not path.with_name("plan.json.tmp").exists()


def test_load_uses_current_max_retries(tmp_path) -> None:
    first = RetryStateStore(tmp_path, max_retries=1)
    first.increment(first.load("001-auth", "tasks"))

    state = RetryStateStore(tmp_path, max_retries=5).load("001-auth", "tasks")

    assert state.count == 1
    assert state.max_retries == 5
    assert state.can_retry()


def test_corrupt_file_loads_fresh_state(tmp_path) -> None:
    store = RetryStateStore(tmp_path, max_retries=2)
    path = store.path_for("001-auth", "plan")
    path.parent.mkdir(parents=True)
    path.write_text("{not json", "utf-8")

    state = store.load("001-auth", "plan")

    assert state.count == 0
    assert state.max_retries == 2


def test_non_object_and_negative_count_are_ignored(tmp_path) -> None:
    store = RetryStateStore(tmp_path, max_retries=2)
    plan_path = store.path_for("001-auth", "plan")
    plan_path.parent.mkdir(parents=True)
    plan_path.write_text("[1, 2]", "utf-8")
    store.path_for("001-auth", "tasks").write_text('{"count": -4}', "utf-8")

    assert store.load("001-auth", "plan").count == 0
    assert store.load("001-auth", "tasks").count == 0


def test_naive_timestamp_is_read_as_utc(tmp_path) -> None:
    store = RetryStateStore(tmp_path, max_retries=2)
    path = store.path_for("001-auth", "plan")
    path.parent.mkdir(parents=True)
    path.write_text('{"count": 1, "last_attempt": "2026-01-01T10:00:00"}', "utf-8")

    state = store.load("001-auth", "plan")

    assert state.last_attempt == datetime(2026, 1, 1, 10, 0, tzinfo=UTC)


def test_reset_clears_count_and_timestamp(tmp_path) -> None:
    store = RetryStateStore(tmp_path, max_retries=2)
    state = store.load("001-auth", "plan")
    store.increment(state)
    store.increment(state)
    assert not state.can_retry()

    reset = store.reset("001-auth", "plan")

    assert reset.count == 0
    assert reset.last_attempt is None
    assert store.load("001-auth", "plan").count == 0


def test_list_states_is_sorted_by_stage(tmp_path) -> None:
    store = RetryStateStore(tmp_path, max_retries=2)
    store.increment(store.load("001-auth", "tasks"))
    store.save(store.load("001-auth", "plan"))

    states = store.list_states("001-auth")

    assert [state.stage for state in states] == ["plan", "tasks"]
    assert [state.count for state in states] == [0, 1]
    assert store.list_states("002-other") == []
