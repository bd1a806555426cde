from __future__ import annotations

import sys
import time
from pathlib import Path
from typing import Callable

from ralphloop.constants import (
    EXIT_DISPATCH,
    EXIT_DONE,
    EXIT_GUTTER,
    EXIT_MAX_ITERATIONS,
    LOCK_STALE_SECONDS,
    RALPH_DIR_NAME,
)
from ralphloop.controller import IterationController
from ralphloop.dispatch import Dispatcher, remote_branch_name, resolve_repository_coordinates
from ralphloop.handoff import compose_handoff, compose_initial_prompt
from ralphloop.models import (
    CompletionResult,
    DispatchRequest,
    InvocationOutcome,
    IterationState,
    IterationStatus,
    LoopConfig,
    LoopResult,
    SetupError,
    TaskDefinition,
    TerminalSignal,
    TransientDispatchError,
)
from ralphloop.runners import AgentLauncher
from ralphloop.state import ProgressStore, acquire_lock, heartbeat_lock, release_lock
from ralphloop.task import evaluate_completion, load_task, run_verification_command
from ralphloop.utils import _checkpoint_commit, _push_branch, _utc_now


class LoopDriver:
    """Run invocations until the task is done, the agent is stuck, or the budget runs out.

    Each pass claims an iteration number, launches one agent, lets an
    ``IterationController`` turn its output into a terminal signal, then acts
    on that signal:

    * DONE: record completion, checkpoint, exit 0
    * GUTTER: write a diagnostic snapshot and halt; a human has to step in
    * ROTATE: bump the counter, checkpoint, write the continuation artifact and
      either loop locally or dispatch the continuation to the remote endpoint
      and exit without waiting for it
    """

    def __init__(
        self,
        config: LoopConfig,
        store: ProgressStore,
        task_path: Path,
        *,
        launcher: AgentLauncher,
        dispatcher: Dispatcher | None = None,
        run_command: Callable[..., tuple[int, str]] = run_verification_command,
        clock: Callable[[], float] = time.monotonic,
        echo: Callable[[str], None] = print,
        use_lock: bool = True,
    ) -> None:
        self.config = config
        self.store = store
        self.workspace = store.workspace
        self.task_path = task_path
        self.launcher = launcher
        self.dispatcher = dispatcher
        self.run_command = run_command
        self.clock = clock
        self.echo = echo
        self.use_lock = use_lock
        self._coordinates: tuple[str, str] | None = None

    # -- setup --------------------------------------------------------------

    def preflight(self) -> TaskDefinition:
        task = load_task(self.task_path)
        self.store.initialize()
        self.store.read_iteration()
        if self.config.remote.enabled:
            if self.dispatcher is None:
                raise SetupError("remote dispatch is enabled but no dispatcher is configured")
            self._coordinates = resolve_repository_coordinates(self.workspace)
        return task

    def _check_completion(self) -> CompletionResult:
        return evaluate_completion(
            load_task(self.task_path),
            workspace=self.workspace,
            run_command=self.run_command,
        )

    def _checkpoint(self, message: str) -> str:
        if not self.config.auto_commit:
            return "checkpoint: skipped (auto_commit disabled)"
        summary = _checkpoint_commit(self.workspace, message=message)
        self.store.log_activity(f"{summary}: {message}")
        return summary

    def _progress_note(self, iteration: int, title: str, lines: list[str]) -> None:
        body = "".join(f"- {line}\n" for line in lines)
        self.store.append_progress(f"\n### Iteration {iteration} - {title} ({_utc_now()})\n\n{body}")

    # -- main loop ----------------------------------------------------------

    def run(self) -> LoopResult:
        task = self.preflight()
        lock_acquired = False
        if self.use_lock:
            ok, message = acquire_lock(
                self.store.lock_path,
                workspace=self.workspace,
                command=" ".join(sys.argv),
                stale_seconds=LOCK_STALE_SECONDS,
            )
            if not ok:
                raise SetupError(message)
            lock_acquired = True
            self.store.log_activity(message)
        try:
            return self._run_invocations(task)
        finally:
            if lock_acquired:
                release_lock(self.store.lock_path)

    def _run_invocations(self, task: TaskDefinition) -> LoopResult:
        initial = self._check_completion()
        if initial.done:
            self.echo(f"ralphloop: task already complete ({initial.message})")
            return LoopResult(EXIT_DONE, TerminalSignal.DONE, self.store.read_iteration(), 0, initial.message)

        max_invocations = self.config.max_iterations
        if task.max_iterations:
            max_invocations = min(max_invocations, task.max_iterations)

        prompt: str | None = None
        invocations = 0
        last_iteration = self.store.read_iteration()
        while invocations < max_invocations:
            invocations += 1
            heartbeat_lock(self.store.lock_path)
            state = self.store.claim_iteration()
            last_iteration = state.iteration
            guardrails = self.store.read_guardrails()
            if prompt is None:
                prompt = compose_initial_prompt(
                    state.iteration,
                    self.task_path,
                    self.store.guardrails_path,
                    self.store.progress_path,
                    guardrails=guardrails,
                    workspace=self.workspace,
                )
            self.store.log_activity(
                f"iteration={state.iteration} launching invocation {invocations}/{max_invocations} "
                f"guardrails={len(guardrails)} prompt_bytes={len(prompt.encode('utf-8'))}"
            )
            self.echo(f"ralphloop: iteration {state.iteration} ({invocations}/{max_invocations})")

            controller = IterationController(
                self.config,
                self.store,
                state,
                completion_check=self._check_completion,
                clock=self.clock,
            )
            agent = self.launcher.launch(prompt, iteration=state.iteration)
            outcome = controller.run(agent, prompt=prompt)
            state = controller.iteration
            self.echo(
                f"ralphloop: iteration {state.iteration} -> {outcome.signal.value} "
                f"(estimate={outcome.estimate}, records={outcome.records}): {outcome.reason}"
            )

            if outcome.signal is TerminalSignal.DONE:
                return self._on_done(state, outcome, invocations)
            if outcome.signal is TerminalSignal.GUTTER:
                return self._on_gutter(state, outcome, invocations)
            if self.config.remote.enabled:
                return self._on_remote_rotate(state, outcome, invocations)
            prompt = self._on_local_rotate(state, outcome)

        message = f"reached max invocations ({max_invocations}) without completing the task"
        self.store.log_error(message)
        self.echo(f"ralphloop: {message}")
        return LoopResult(EXIT_MAX_ITERATIONS, TerminalSignal.ROTATE, last_iteration, invocations, message)

    # -- terminal signals ---------------------------------------------------

    def _on_done(self, state: IterationState, outcome: InvocationOutcome, invocations: int) -> LoopResult:
        self.store.mark_status(state, IterationStatus.COMPLETE)
        self._progress_note(state.iteration, "COMPLETE", [outcome.reason])
        self._checkpoint(f"ralph: iteration {state.iteration} complete")
        return LoopResult(EXIT_DONE, TerminalSignal.DONE, state.iteration, invocations, outcome.reason)

    def _on_gutter(self, state: IterationState, outcome: InvocationOutcome, invocations: int) -> LoopResult:
        self.store.mark_status(state, IterationStatus.GUTTER)
        gutter = outcome.gutter
        snapshot_path = self.store.write_gutter_snapshot(
            {
                "iteration": state.iteration,
                "rule": gutter.rule if gutter else "",
                "subject": gutter.subject if gutter else "",
                "count": gutter.count if gutter else 0,
                "reason": outcome.reason,
                "estimate": outcome.estimate,
                "records": outcome.records,
                "window": outcome.gutter_snapshot,
            }
        )
        self.store.log_error(f"iteration={state.iteration} GUTTER {outcome.reason} snapshot={snapshot_path}")
        self._progress_note(
            state.iteration,
            "GUTTER",
            [
                outcome.reason,
                f"Diagnostic snapshot: {snapshot_path.name}",
                "Human intervention required: add a guardrail or fix the blocker, then restart.",
            ],
        )
        message = f"agent is stuck: {outcome.reason}"
        return LoopResult(EXIT_GUTTER, TerminalSignal.GUTTER, state.iteration, invocations, message)

    def _on_local_rotate(self, state: IterationState, outcome: InvocationOutcome) -> str:
        self.store.mark_status(state, IterationStatus.ROTATED)
        next_iteration = self.store.advance_iteration(state.iteration)
        self._progress_note(state.iteration, "ROTATED", [outcome.reason, f"Continuing as iteration {next_iteration}."])
        self._checkpoint(f"ralph: iteration {state.iteration} checkpoint")
        handoff = compose_handoff(
            next_iteration,
            state.iteration,
            self.task_path,
            self.store.guardrails_path,
            self.store.progress_path,
            workspace=self.workspace,
        )
        self.store.write_handoff(handoff)
        self.store.log_activity(f"iteration={state.iteration} rotated to iteration={next_iteration}")
        return handoff

    def _on_remote_rotate(self, state: IterationState, outcome: InvocationOutcome, invocations: int) -> LoopResult:
        if self.dispatcher is None or self._coordinates is None:
            raise SetupError("remote rotation requested before remote dispatch was set up")
        repository, ref = self._coordinates
        self.store.mark_status(state, IterationStatus.ROTATED)
        self._checkpoint(f"ralph: iteration {state.iteration} checkpoint (remote handoff)")
        if self.config.auto_commit:
            pushed, detail = _push_branch(self.workspace, ref)
            if not pushed:
                self.store.log_error(f"push before remote handoff failed: {detail}")
                self.echo(f"ralphloop: WARN could not push {ref}; the remote run may not see the latest changes")

        next_iteration = state.iteration + 1
        mirror_dir = self.workspace / RALPH_DIR_NAME
        prompt = compose_handoff(
            next_iteration,
            state.iteration,
            self.task_path,
            mirror_dir / self.store.guardrails_path.name,
            mirror_dir / self.store.progress_path.name,
            workspace=self.workspace,
        )
        request = DispatchRequest(
            repository=repository,
            ref=ref,
            branch_name=remote_branch_name(next_iteration),
            prompt=prompt,
            model=self.dispatcher.select_model(),
        )
        try:
            result = self.dispatcher.dispatch(request)
        except TransientDispatchError as exc:
            self.store.log_error(f"iteration={state.iteration} remote dispatch failed: {exc}")
            return LoopResult(EXIT_DISPATCH, TerminalSignal.ROTATE, state.iteration, invocations, str(exc))

        self.store.advance_iteration(state.iteration)
        self.store.write_state(
            IterationState(next_iteration, IterationStatus.RUNNING, _utc_now()),
            remote_run_id=result.run_id,
            remote_branch=result.branch_name,
        )
        self._progress_note(
            state.iteration,
            "REMOTE HANDOFF",
            [
                f"Local iteration: {state.iteration}",
                f"Remote iteration: {next_iteration}",
                f"Run ID: {result.run_id}",
                f"Branch: {result.branch_name}",
                f"Monitor: {result.monitor_url or '<none>'}",
            ],
        )
        self.store.mirror_into(mirror_dir)
        self._checkpoint(f"ralph: sync state for remote iteration {next_iteration}")
        if self.config.auto_commit:
            _push_branch(self.workspace, ref)
        self.store.log_activity(
            f"iteration={state.iteration} dispatched iteration={next_iteration} run_id={result.run_id}"
        )
        message = f"handed off to remote run {result.run_id} on {result.branch_name}"
        return LoopResult(EXIT_DONE, TerminalSignal.ROTATE, next_iteration, invocations, message)
