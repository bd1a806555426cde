from __future__ import annotations

import json
from pathlib import Path
from typing import Any, Callable, Iterator

import pytest

import ralphloop.loop as loop_module
from ralphloop.config import load_loop_config
from ralphloop.loop import LoopDriver
from ralphloop.models import (
    DispatchRequest,
    DispatchResult,
    InvocationOutcome,
    IterationStatus,
    LoopConfig,
    SetupError,
    TerminalSignal,
    TransientDispatchError,
)
from ralphloop.state import ProgressStore

TASK_OPEN = """---
task: Make the widget
max_iterations: 10
---
# Task

- [ ] widget exists
- [ ] widget documented
"""

TASK_DONE = TASK_OPEN.replace("[ ]", "[x]")


class ScriptedAgent:
    def __init__(self, lines: list[str]) -> None:
        self._lines = lines
        self.consumed = 0
        self.terminated = False
        self.sent: list[str] = []

    def lines(self) -> Iterator[str]:
        for line in self._lines:
            self.consumed += 1
            yield line

    def send(self, text: str) -> bool:
        self.sent.append(text)
        return True

    def terminate(self) -> None:
        self.terminated = True

    def wait(self, timeout: float | None = None) -> int | None:
        return -15 if self.terminated else 0


class ScriptedLauncher:
    """Hands out one scripted agent per launch; ``on_launch`` hooks mutate the workspace."""

    def __init__(self, scripts: list[tuple[list[str], Callable[[], None] | None]]) -> None:
        self.scripts = list(scripts)
        self.prompts: list[tuple[int, str]] = []
        self.agents: list[ScriptedAgent] = []

    def launch(self, prompt: str, *, iteration: int) -> ScriptedAgent:
        self.prompts.append((iteration, prompt))
        lines, on_launch = self.scripts.pop(0)
        if on_launch is not None:
            on_launch()
        agent = ScriptedAgent(lines)
        self.agents.append(agent)
        return agent


class FakeDispatcher:
    def __init__(self, *, fail: bool = False) -> None:
        self.fail = fail
        self.requests: list[DispatchRequest] = []

    def select_model(self) -> str:
        return "remote-model"

    def dispatch(self, request: DispatchRequest) -> DispatchResult:
        self.requests.append(request)
        if self.fail:
            raise TransientDispatchError("remote dispatch returned no run identifier (HTTP 400): bad request")
        return DispatchResult(run_id="bc-42", monitor_url="https://cursor.test/bc-42", branch_name=request.branch_name)


def _read(path: str, size: int = 10) -> str:
    return json.dumps({"v": 1, "kind": "read", "path": path, "bytes": size}) + "\n"


def _tokens(value: int) -> str:
    return json.dumps({"v": 1, "kind": "tokens", "tokens": value}) + "\n"


def _shell(command: str, exit_code: int) -> str:
    return json.dumps({"v": 1, "kind": "shell", "command": command, "bytes": 10, "exit_code": exit_code}) + "\n"


def _make_workspace(tmp_path: Path, task_text: str = TASK_OPEN) -> tuple[Path, Path, ProgressStore]:
    workspace = tmp_path / "repo"
    workspace.mkdir()
    task_path = workspace / "RALPH_TASK.md"
    task_path.write_text(task_text, encoding="utf-8")
    store = ProgressStore(workspace)
    store.initialize()
    return workspace, task_path, store


def _config(store: ProgressStore, **sections: dict[str, Any]) -> LoopConfig:
    overrides: dict[str, dict[str, Any]] = {"loop": {"auto_commit": False}}
    for name, values in sections.items():
        overrides.setdefault(name, {}).update(values)
    return load_loop_config(store.root, overrides=overrides, environ={}, include_global=False)


def _driver(
    store: ProgressStore,
    task_path: Path,
    launcher: ScriptedLauncher,
    *,
    dispatcher: FakeDispatcher | None = None,
    **sections: dict[str, Any],
) -> LoopDriver:
    return LoopDriver(
        _config(store, **sections),
        store,
        task_path,
        launcher=launcher,
        dispatcher=dispatcher,
        clock=lambda: 0.0,
        echo=lambda message: None,
    )


def _complete_task(task_path: Path) -> Callable[[], None]:
    def _apply() -> None:
        task_path.write_text(TASK_DONE, encoding="utf-8")

    return _apply


def _rotating_script() -> list[str]:
    # record #42 pushes the estimate over the default rotate threshold
    lines = [_read(f"src/file{index}.py") for index in range(41)]
    lines.append(_tokens(80_500))
    lines.extend(_read(f"src/late{index}.py") for index in range(10))
    return lines


# ===================================================================
# Local loop
# ===================================================================


class TestLocalLoop:
    def test_already_complete_task_launches_nothing(self, tmp_path: Path) -> None:
        _, task_path, store = _make_workspace(tmp_path, TASK_DONE)
        launcher = ScriptedLauncher([])
        result = _driver(store, task_path, launcher).run()
        assert result.exit_code == 0
        assert result.signal is TerminalSignal.DONE
        assert result.invocations == 0
        assert launcher.prompts == []

    def test_rotate_then_complete(self, tmp_path: Path) -> None:
        workspace, task_path, store = _make_workspace(tmp_path)
        launcher = ScriptedLauncher(
            [
                (_rotating_script(), None),
                ([_read("RALPH_TASK.md")], _complete_task(task_path)),
            ]
        )
        result = _driver(store, task_path, launcher).run()

        assert result.exit_code == 0
        assert result.signal is TerminalSignal.DONE
        assert result.invocations == 2
        assert result.iteration == 2

        first_agent = launcher.agents[0]
        assert first_agent.terminated
        assert first_agent.consumed == 42

        assert [iteration for iteration, _ in launcher.prompts] == [1, 2]
        assert launcher.prompts[0][1].startswith("# Ralph Iteration 1\n")
        second_prompt = launcher.prompts[1][1]
        assert second_prompt.startswith("# Ralph Iteration 2")
        assert "Continue from where iteration 1 left off" in second_prompt
        assert store.handoff_path.read_text(encoding="utf-8") == second_prompt

        assert store.read_iteration() == 2
        state = store.read_state()
        assert state is not None
        assert state.iteration == 2
        assert state.status is IterationStatus.COMPLETE
        progress = store.read_progress()
        assert "Iteration 1 - ROTATED" in progress
        assert "Iteration 2 - COMPLETE" in progress
        assert not store.lock_path.exists()

    def test_gutter_halts_and_writes_snapshot(self, tmp_path: Path) -> None:
        _, task_path, store = _make_workspace(tmp_path)
        launcher = ScriptedLauncher([([_shell("pytest -x", 1)] * 4, None)])
        result = _driver(store, task_path, launcher).run()

        assert result.exit_code == 3
        assert result.signal is TerminalSignal.GUTTER
        snapshot = json.loads(store.gutter_path.read_text(encoding="utf-8"))
        assert snapshot["rule"] == "repeated_failure"
        assert snapshot["subject"] == "pytest -x"
        assert snapshot["iteration"] == 1
        assert "GUTTER" in store.errors_log_path.read_text(encoding="utf-8")
        state = store.read_state()
        assert state is not None
        assert state.status is IterationStatus.GUTTER

    def test_restart_after_gutter_uses_a_fresh_number(self, tmp_path: Path) -> None:
        _, task_path, store = _make_workspace(tmp_path)
        _driver(store, task_path, ScriptedLauncher([([_shell("make", 2)] * 3, None)])).run()

        launcher = ScriptedLauncher([([_read("a")], _complete_task(task_path))])
        result = _driver(store, task_path, launcher).run()
        assert result.exit_code == 0
        assert launcher.prompts[0][0] == 2

    def test_max_invocations_exhausted(self, tmp_path: Path) -> None:
        _, task_path, store = _make_workspace(tmp_path)
        launcher = ScriptedLauncher([([_read("a")], None), ([_read("b")], None), ([_read("c")], None)])
        result = _driver(store, task_path, launcher, loop={"max_iterations": 2}).run()
        assert result.exit_code == 4
        assert result.invocations == 2
        assert len(launcher.prompts) == 2
        assert store.read_iteration() == 3

    def test_task_max_iterations_caps_the_run(self, tmp_path: Path) -> None:
        _, task_path, store = _make_workspace(tmp_path, TASK_OPEN.replace("max_iterations: 10", "max_iterations: 1"))
        launcher = ScriptedLauncher([([_read("a")], None), ([_read("b")], None)])
        result = _driver(store, task_path, launcher).run()
        assert result.exit_code == 4
        assert result.invocations == 1

    def test_missing_task_is_a_setup_error(self, tmp_path: Path) -> None:
        workspace, task_path, store = _make_workspace(tmp_path)
        task_path.unlink()
        with pytest.raises(SetupError):
            _driver(store, task_path, ScriptedLauncher([])).run()

    def test_active_lock_blocks_a_second_loop(self, tmp_path: Path) -> None:
        _, task_path, store = _make_workspace(tmp_path)
        store.lock_path.write_text(
            json.dumps({"pid": 999999, "host": "elsewhere", "last_heartbeat_at": "2999-01-01T00:00:00Z"}),
            encoding="utf-8",
        )
        with pytest.raises(SetupError, match="active lock"):
            _driver(store, task_path, ScriptedLauncher([])).run()

    def test_interrupt_releases_lock(self, tmp_path: Path) -> None:
        _, task_path, store = _make_workspace(tmp_path)

        def _interrupt() -> None:
            raise KeyboardInterrupt

        launcher = ScriptedLauncher([([_read("a")], _interrupt)])
        with pytest.raises(KeyboardInterrupt):
            _driver(store, task_path, launcher).run()
        assert not store.lock_path.exists()


# ===================================================================
# Remote handoff
# ===================================================================


class TestRemoteHandoff:
    @pytest.fixture(autouse=True)
    def _coordinates(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setattr(
            loop_module,
            "resolve_repository_coordinates",
            lambda workspace: ("https://github.com/acme/widgets", "main"),
        )

    def test_successful_dispatch_exits_after_handoff(self, tmp_path: Path) -> None:
        _, task_path, store = _make_workspace(tmp_path)
        dispatcher = FakeDispatcher()
        launcher = ScriptedLauncher([(_rotating_script(), None), ([_read("never")], None)])
        result = _driver(store, task_path, launcher, dispatcher=dispatcher, remote={"enabled": True}).run()

        assert result.exit_code == 0
        assert result.signal is TerminalSignal.ROTATE
        assert result.iteration == 2
        assert len(launcher.prompts) == 1

        request = dispatcher.requests[0]
        assert request.branch_name == "ralph-iteration-2"
        assert request.repository == "https://github.com/acme/widgets"
        assert request.ref == "main"
        assert request.model == "remote-model"
        assert request.prompt.startswith("# Ralph Iteration 2")
        assert "Continue from where iteration 1 left off" in request.prompt

        assert store.read_iteration() == 2
        payload = json.loads(store.state_path.read_text(encoding="utf-8"))
        assert payload["iteration"] == 2
        assert payload["remote_run_id"] == "bc-42"
        progress = store.read_progress()
        assert "REMOTE HANDOFF" in progress
        assert "Run ID: bc-42" in progress

    def test_next_local_run_after_handoff_does_not_reuse_number(self, tmp_path: Path) -> None:
        _, task_path, store = _make_workspace(tmp_path)
        launcher = ScriptedLauncher([(_rotating_script(), None)])
        _driver(store, task_path, launcher, dispatcher=FakeDispatcher(), remote={"enabled": True}).run()

        local = ScriptedLauncher([([_read("a")], _complete_task(task_path))])
        _driver(store, task_path, local).run()
        assert local.prompts[0][0] == 3

    def test_failed_dispatch_leaves_counter_unchanged(self, tmp_path: Path) -> None:
        _, task_path, store = _make_workspace(tmp_path)
        dispatcher = FakeDispatcher(fail=True)
        launcher = ScriptedLauncher([(_rotating_script(), None)])
        result = _driver(store, task_path, launcher, dispatcher=dispatcher, remote={"enabled": True}).run()

        assert result.exit_code == 6
        assert "no run identifier" in result.message
        assert store.read_iteration() == 1
        state = store.read_state()
        assert state is not None
        assert state.iteration == 1
        assert state.status is IterationStatus.ROTATED
        assert "remote dispatch failed" in store.errors_log_path.read_text(encoding="utf-8")

    def test_remote_without_dispatcher_is_a_setup_error(self, tmp_path: Path) -> None:
        _, task_path, store = _make_workspace(tmp_path)
        with pytest.raises(SetupError):
            _driver(store, task_path, ScriptedLauncher([]), remote={"enabled": True}).run()

    def test_remote_rotation_before_preflight_is_a_setup_error(self, tmp_path: Path) -> None:
        _, task_path, store = _make_workspace(tmp_path)
        store.initialize()
        driver = _driver(store, task_path, ScriptedLauncher([]), dispatcher=FakeDispatcher(), remote={"enabled": True})
        state = store.claim_iteration()
        outcome = InvocationOutcome(TerminalSignal.ROTATE, state.iteration, 0, 0, 0, 0, "rotate threshold")
        with pytest.raises(SetupError, match="remote dispatch"):
            driver._on_remote_rotate(state, outcome, 1)
        assert store.read_iteration() == 1
