from __future__ import annotations

import json
from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest

from ralphloop.models import Guardrail, IterationState, IterationStatus, StateError
from ralphloop.state import (
    ProgressStore,
    acquire_lock,
    force_break_lock,
    inspect_lock,
    parse_guardrails,
    release_lock,
)


def _store(tmp_path: Path) -> ProgressStore:
    workspace = tmp_path / "repo"
    workspace.mkdir()
    store = ProgressStore(workspace)
    store.initialize()
    return store


# ===================================================================
# Initialisation
# ===================================================================


def test_initialize_creates_files_once(tmp_path: Path) -> None:
    workspace = tmp_path / "repo"
    workspace.mkdir()
    store = ProgressStore(workspace)
    created = store.initialize()
    assert store.progress_path in created
    assert store.guardrails_path in created
    assert store.root == workspace / ".ralph"

    store.progress_path.write_text("custom\n", encoding="utf-8")
    assert store.initialize() == []
    assert store.read_progress() == "custom\n"


def test_default_guardrails_are_parsed(tmp_path: Path) -> None:
    store = _store(tmp_path)
    guardrails = store.read_guardrails()
    assert len(guardrails) == 3
    assert guardrails[0].trigger == "Before modifying any file"
    assert guardrails[0].added_after_iteration == "Core principle"


# ===================================================================
# Iteration counter
# ===================================================================


class TestIterationCounter:
    def test_defaults_to_one(self, tmp_path: Path) -> None:
        store = _store(tmp_path)
        assert store.read_iteration() == 1

    def test_corrupt_counter_raises(self, tmp_path: Path) -> None:
        store = _store(tmp_path)
        store.iteration_path.write_text("three\n", encoding="utf-8")
        with pytest.raises(StateError):
            store.read_iteration()

    def test_claim_writes_running_state(self, tmp_path: Path) -> None:
        store = _store(tmp_path)
        state = store.claim_iteration()
        assert state.iteration == 1
        assert state.status is IterationStatus.RUNNING
        assert store.read_iteration() == 1
        payload = json.loads(store.state_path.read_text(encoding="utf-8"))
        assert payload["iteration"] == 1
        assert payload["status"] == "RUNNING"
        assert payload["updated_at"]

    def test_claim_moves_past_a_used_number(self, tmp_path: Path) -> None:
        store = _store(tmp_path)
        first = store.claim_iteration()
        store.mark_status(first, IterationStatus.GUTTER)
        second = store.claim_iteration()
        assert second.iteration == 2
        assert store.read_iteration() == 2

    def test_advance_increments_by_exactly_one(self, tmp_path: Path) -> None:
        store = _store(tmp_path)
        state = store.claim_iteration()
        assert store.advance_iteration(state.iteration) == 2
        assert store.read_iteration() == 2
        assert store.claim_iteration().iteration == 2

    def test_advance_detects_concurrent_writer(self, tmp_path: Path) -> None:
        store = _store(tmp_path)
        store.write_iteration(5)
        with pytest.raises(StateError):
            store.advance_iteration(4)
        assert store.read_iteration() == 5

    def test_mark_status_keeps_extra_fields(self, tmp_path: Path) -> None:
        store = _store(tmp_path)
        state = IterationState(iteration=3, status=IterationStatus.RUNNING, started_at="2026-01-01T00:00:00Z")
        store.mark_status(state, IterationStatus.ROTATED, remote_run_id="bc-1")
        payload = json.loads(store.state_path.read_text(encoding="utf-8"))
        assert payload["status"] == "ROTATED"
        assert payload["remote_run_id"] == "bc-1"
        loaded = store.read_state()
        assert loaded is not None
        assert loaded.status is IterationStatus.ROTATED

    def test_malformed_state_raises(self, tmp_path: Path) -> None:
        store = _store(tmp_path)
        store.state_path.write_text(json.dumps({"iteration": 1, "status": "BOGUS"}), encoding="utf-8")
        with pytest.raises(StateError):
            store.read_state()


# ===================================================================
# Guardrails / progress / artifacts
# ===================================================================


class TestDurableFiles:
    def test_guardrails_are_append_only(self, tmp_path: Path) -> None:
        store = _store(tmp_path)
        before = store.guardrails_path.read_text(encoding="utf-8")
        store.append_guardrail(
            Guardrail(trigger="When pytest hangs", instruction="Run with -x --timeout=60", added_after_iteration="2")
        )
        after = store.guardrails_path.read_text(encoding="utf-8")
        assert after.startswith(before)
        guardrails = store.read_guardrails()
        assert len(guardrails) == 4
        assert guardrails[-1].instruction == "Run with -x --timeout=60"

    def test_empty_instruction_is_rejected(self, tmp_path: Path) -> None:
        store = _store(tmp_path)
        with pytest.raises(StateError):
            store.append_guardrail(Guardrail(trigger="x", instruction="  ", added_after_iteration="1"))

    def test_parse_skips_signs_without_instruction(self) -> None:
        text = "### Sign: Empty\n- **Trigger**: t\n\n### Sign: Real\n- **Instruction**: do it\n"
        guardrails = parse_guardrails(text)
        assert len(guardrails) == 1
        assert guardrails[0].trigger == "Real"

    def test_progress_appends(self, tmp_path: Path) -> None:
        store = _store(tmp_path)
        store.append_progress("### Iteration 1\n- did things")
        assert store.read_progress().endswith("- did things\n")

    def test_logs_are_timestamped(self, tmp_path: Path) -> None:
        store = _store(tmp_path)
        store.log_activity("hello")
        store.log_error("broken")
        assert store.activity_log_path.read_text(encoding="utf-8").strip().endswith("hello")
        assert "broken" in store.errors_log_path.read_text(encoding="utf-8")

    def test_mirror_into_copies_progress_and_guardrails(self, tmp_path: Path) -> None:
        workspace = tmp_path / "repo"
        workspace.mkdir()
        store = ProgressStore(workspace, ralph_dir=tmp_path / "external")
        store.initialize()
        copied = store.mirror_into(workspace / ".ralph")
        assert {path.name for path in copied} == {"progress.md", "guardrails.md"}

    def test_mirror_into_self_is_noop(self, tmp_path: Path) -> None:
        store = _store(tmp_path)
        assert store.mirror_into(store.root) == []


# ===================================================================
# Lock
# ===================================================================


class TestLock:
    def test_acquire_and_release(self, tmp_path: Path) -> None:
        lock_path = tmp_path / ".ralph" / "lock"
        ok, message = acquire_lock(lock_path, workspace=tmp_path, command="ralphloop run", stale_seconds=1800)
        assert ok, message
        info = inspect_lock(lock_path)
        assert info is not None
        assert info["command"] == "ralphloop run"

        ok_again, message_again = acquire_lock(lock_path, workspace=tmp_path, command="x", stale_seconds=1800)
        assert not ok_again
        assert "active lock" in message_again

        release_lock(lock_path)
        assert not lock_path.exists()

    def test_stale_lock_is_replaced(self, tmp_path: Path) -> None:
        lock_path = tmp_path / "lock"
        old = (datetime.now(timezone.utc) - timedelta(hours=2)).strftime("%Y-%m-%dT%H:%M:%SZ")
        lock_path.write_text(json.dumps({"pid": 1, "host": "h", "last_heartbeat_at": old}), encoding="utf-8")
        ok, message = acquire_lock(lock_path, workspace=tmp_path, command="x", stale_seconds=1800)
        assert ok
        assert "stale" in message

    def test_force_break(self, tmp_path: Path) -> None:
        lock_path = tmp_path / "lock"
        assert force_break_lock(lock_path, reason="test") == "no lock to break"
        acquire_lock(lock_path, workspace=tmp_path, command="x", stale_seconds=1800)
        message = force_break_lock(lock_path, reason="test")
        assert "lock broken" in message
        assert not lock_path.exists()
