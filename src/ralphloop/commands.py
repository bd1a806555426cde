from __future__ import annotations

import argparse
import importlib.metadata as importlib_metadata
import sys
from pathlib import Path

from ralphloop.config import load_loop_config, resolve_api_key
from ralphloop.constants import (
    DEFAULT_TASK_FILE,
    DEFAULT_TASK_TEMPLATE,
    EXIT_DISPATCH,
    EXIT_ERROR,
    EXIT_INTERRUPTED,
    EXIT_SETUP,
    EXIT_USAGE,
    RALPH_DIR_NAME,
)
from ralphloop.detector import PatternDetector
from ralphloop.dispatch import RemoteDispatcher
from ralphloop.loop import LoopDriver
from ralphloop.meter import ResourceMeter
from ralphloop.models import (
    Guardrail,
    RalphError,
    SetupError,
    StateError,
    TransientDispatchError,
)
from ralphloop.runners import SubprocessAgentLauncher
from ralphloop.state import ProgressStore, force_break_lock, inspect_lock
from ralphloop.stream import iter_records
from ralphloop.task import load_task
from ralphloop.utils import _ensure_text_file


def _package_version() -> str:
    try:
        return importlib_metadata.version("ralphloop")
    except importlib_metadata.PackageNotFoundError:
        return "unknown"


def _resolve_workspace(args: argparse.Namespace) -> Path:
    return Path(getattr(args, "workspace", ".") or ".").expanduser().resolve()


def _resolve_task_path(args: argparse.Namespace, workspace: Path) -> Path:
    raw = getattr(args, "task", "") or DEFAULT_TASK_FILE
    path = Path(raw).expanduser()
    if not path.is_absolute():
        path = workspace / path
    return path.resolve()


# ---------------------------------------------------------------------------
# init
# ---------------------------------------------------------------------------


def _cmd_init(args: argparse.Namespace) -> int:
    workspace = _resolve_workspace(args)
    task_path = _resolve_task_path(args, workspace)
    store = ProgressStore(workspace)
    created = store.initialize()
    if args.force and task_path.exists():
        task_path.write_text(DEFAULT_TASK_TEMPLATE, encoding="utf-8")
        created.append(task_path)
    else:
        _ensure_text_file(task_path, DEFAULT_TASK_TEMPLATE, created)
    store.log_activity(f"init: created {len(created)} file(s)")

    print("ralphloop init")
    print(f"workspace: {workspace}")
    print(f"state_dir: {store.root}")
    print(f"task: {task_path}")
    if created:
        for path in created:
            print(f"  created: {path}")
    else:
        print("  nothing to create")
    return 0


# ---------------------------------------------------------------------------
# run
# ---------------------------------------------------------------------------


def _run_overrides(args: argparse.Namespace) -> dict[str, dict[str, object]]:
    remote: bool | None = None
    if args.remote:
        remote = True
    elif args.local:
        remote = False
    return {
        "thresholds": {"warn_tokens": args.warn_tokens, "rotate_tokens": args.rotate_tokens},
        "loop": {
            "max_iterations": args.max_iterations,
            "auto_commit": False if args.no_commit else None,
        },
        "agent": {"model": args.model},
        "remote": {"enabled": remote},
    }


def _cmd_run(args: argparse.Namespace) -> int:
    workspace = _resolve_workspace(args)
    task_path = _resolve_task_path(args, workspace)
    store = ProgressStore(workspace)
    try:
        config = load_loop_config(store.root, overrides=_run_overrides(args))
        dispatcher = None
        if config.remote.enabled:
            dispatcher = RemoteDispatcher(config.remote, api_key=resolve_api_key(store.root))
        launcher = SubprocessAgentLauncher(config.agent, workspace=workspace, log_dir=store.log_dir)
        driver = LoopDriver(config, store, task_path, launcher=launcher, dispatcher=dispatcher)
        result = driver.run()
    except KeyboardInterrupt:
        store.log_error("run interrupted by operator")
        print("ralphloop run: interrupted", file=sys.stderr)
        return EXIT_INTERRUPTED
    except SetupError as exc:
        print(f"ralphloop run: ERROR {exc}", file=sys.stderr)
        return EXIT_SETUP
    except TransientDispatchError as exc:
        print(f"ralphloop run: ERROR {exc}", file=sys.stderr)
        return EXIT_DISPATCH
    except RalphError as exc:
        print(f"ralphloop run: ERROR {exc}", file=sys.stderr)
        return EXIT_ERROR

    print(f"ralphloop run: {result.signal.value} iteration={result.iteration} invocations={result.invocations}")
    print(f"  {result.message}")
    return result.exit_code


# ---------------------------------------------------------------------------
# status
# ---------------------------------------------------------------------------


def _cmd_status(args: argparse.Namespace) -> int:
    workspace = _resolve_workspace(args)
    task_path = _resolve_task_path(args, workspace)
    store = ProgressStore(workspace)
    try:
        next_iteration = store.read_iteration()
        state = store.read_state()
    except StateError as exc:
        print(f"ralphloop status: ERROR {exc}", file=sys.stderr)
        return EXIT_ERROR

    print("ralphloop status")
    print(f"state_dir: {store.root}")
    print(f"next_iteration: {next_iteration}")
    if state is None:
        print("last_iteration: <none>")
    else:
        print(f"last_iteration: {state.iteration}")
        print(f"status: {state.status.value}")
        print(f"started_at: {state.started_at}")

    if task_path.exists():
        try:
            task = load_task(task_path)
        except SetupError as exc:
            print(f"task: ERROR {exc}")
        else:
            print(f"task: {task.description or task_path.name}")
            print(f"criteria: {task.checked_count}/{len(task.items)} checked")
    else:
        print(f"task: <missing> ({task_path})")

    print(f"guardrails: {len(store.read_guardrails())}")
    info = inspect_lock(store.lock_path)
    if info is None:
        print("lock: none")
    else:
        age = info.get("age_seconds")
        age_text = f"{age:.0f}s" if age is not None else "<unknown>"
        print(f"lock: pid={info.get('pid', '<unknown>')} host={info.get('host', '<unknown>')} age={age_text}")
    if store.gutter_path.exists():
        print(f"gutter snapshot: {store.gutter_path}")
    return 0


# ---------------------------------------------------------------------------
# guardrail
# ---------------------------------------------------------------------------


def _cmd_guardrail_add(args: argparse.Namespace) -> int:
    workspace = _resolve_workspace(args)
    store = ProgressStore(workspace)
    trigger = args.trigger.strip()
    instruction = args.instruction.strip()
    if not trigger or not instruction:
        print("ralphloop guardrail add: ERROR --trigger and --instruction must be non-empty", file=sys.stderr)
        return EXIT_ERROR
    try:
        added_after = args.added_after or f"iteration {max(store.read_iteration() - 1, 0)}"
    except StateError as exc:
        print(f"ralphloop guardrail add: ERROR {exc}", file=sys.stderr)
        return EXIT_ERROR
    store.initialize()
    store.append_guardrail(Guardrail(trigger=trigger, instruction=instruction, added_after_iteration=added_after))
    store.log_activity(f"guardrail added: {trigger}")
    print(f"ralphloop guardrail add: appended to {store.guardrails_path}")
    return 0


# ---------------------------------------------------------------------------
# lock
# ---------------------------------------------------------------------------


def _cmd_lock(args: argparse.Namespace) -> int:
    workspace = _resolve_workspace(args)
    store = ProgressStore(workspace)
    action = args.action

    if action == "status":
        info = inspect_lock(store.lock_path)
        if info is None:
            print("ralphloop lock: no active lock")
            return 0
        print("ralphloop lock: active")
        for key in ("pid", "host", "owner_uuid", "started_at", "last_heartbeat_at", "command"):
            print(f"  {key}: {info.get(key, '<unknown>')}")
        age = info.get("age_seconds")
        if age is not None:
            print(f"  age: {age:.0f}s")
        return 0

    if action == "break":
        message = force_break_lock(store.lock_path, reason=args.reason or "manual break")
        if store.root.exists():
            store.log_activity(f"lock break: {message}")
        print(f"ralphloop lock: {message}")
        return 0

    print(f"ralphloop lock: unknown action '{action}'", file=sys.stderr)
    return EXIT_ERROR


# ---------------------------------------------------------------------------
# parse
# ---------------------------------------------------------------------------


def _cmd_parse(args: argparse.Namespace) -> int:
    workspace = _resolve_workspace(args)
    try:
        config = load_loop_config(workspace / RALPH_DIR_NAME)
    except SetupError as exc:
        print(f"ralphloop parse: ERROR {exc}", file=sys.stderr)
        return EXIT_SETUP

    meter = ResourceMeter(config.thresholds)
    # Replayed offline, so timestamps carry no meaning and the thrash window
    # is evaluated as if every write happened at once.
    detector = PatternDetector(config.detector, clock=lambda: 0.0)
    skipped: list[str] = []
    counts: dict[str, int] = {}

    if args.file and args.file != "-":
        path = Path(args.file).expanduser()
        try:
            lines = path.read_text(encoding="utf-8", errors="replace").splitlines()
        except OSError as exc:
            print(f"ralphloop parse: ERROR could not read {path}: {exc}", file=sys.stderr)
            return EXIT_ERROR
    else:
        lines = sys.stdin.read().splitlines()

    gutter = None
    for record in iter_records(lines, on_skip=skipped.append):
        counts[record.kind.value] = counts.get(record.kind.value, 0) + 1
        meter.add(record)
        reason = detector.observe(record)
        if reason is not None and gutter is None:
            gutter = reason

    print("ralphloop parse")
    for kind in sorted(counts):
        print(f"  {kind}: {counts[kind]}")
    print(f"skipped_lines: {len(skipped)}")
    print(f"estimate: {meter.estimate} ({meter.percent_of_rotate()}% of rotate threshold)")
    print(f"classification: {meter.classify()}")
    if gutter is not None:
        print(f"gutter: {gutter.rule} subject={gutter.subject} count={gutter.count}")
    else:
        print("gutter: none")
    return 0


# ---------------------------------------------------------------------------
# parser
# ---------------------------------------------------------------------------


def _add_workspace_argument(parser: argparse.ArgumentParser) -> None:
    parser.add_argument(
        "--workspace",
        default=".",
        help="Workspace (git checkout) holding the task and .ralph/ state (default: .)",
    )


def _add_task_argument(parser: argparse.ArgumentParser) -> None:
    parser.add_argument(
        "--task",
        default=DEFAULT_TASK_FILE,
        help=f"Task document relative to the workspace (default: {DEFAULT_TASK_FILE})",
    )


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="ralphloop command line interface")
    parser.add_argument("--version", action="version", version=f"ralphloop {_package_version()}")
    subparsers = parser.add_subparsers(dest="command")

    init = subparsers.add_parser("init", help="Create .ralph/ state files and a task template")
    _add_workspace_argument(init)
    _add_task_argument(init)
    init.add_argument("--force", action="store_true", help="Overwrite an existing task document with the template")
    init.set_defaults(handler=_cmd_init)

    run = subparsers.add_parser("run", help="Run agent invocations until the task is done or the agent is stuck")
    _add_workspace_argument(run)
    _add_task_argument(run)
    run.add_argument("--max-iterations", type=int, default=None, help="Maximum invocations for this run")
    run.add_argument("--warn-tokens", type=int, default=None, help="Estimate at which a wrap-up is requested")
    run.add_argument("--rotate-tokens", type=int, default=None, help="Estimate at which the agent is rotated")
    run.add_argument("--model", default=None, help="Model passed to the agent command")
    run.add_argument("--no-commit", action="store_true", help="Do not create checkpoint commits")
    placement = run.add_mutually_exclusive_group()
    placement.add_argument("--remote", action="store_true", help="Dispatch continuations to the remote endpoint")
    placement.add_argument("--local", action="store_true", help="Run every continuation locally")
    run.set_defaults(handler=_cmd_run)

    status = subparsers.add_parser("status", help="Show iteration, status and checklist progress")
    _add_workspace_argument(status)
    _add_task_argument(status)
    status.set_defaults(handler=_cmd_status)

    guardrail = subparsers.add_parser("guardrail", help="Manage guardrails (signs)")
    guardrail_subparsers = guardrail.add_subparsers(dest="guardrail_command")
    guardrail_add = guardrail_subparsers.add_parser("add", help="Append a guardrail")
    _add_workspace_argument(guardrail_add)
    guardrail_add.add_argument("--trigger", required=True, help="Situation in which the sign applies")
    guardrail_add.add_argument("--instruction", required=True, help="What the agent must do")
    guardrail_add.add_argument("--added-after", default="", help="Provenance text (default: last iteration)")
    guardrail_add.set_defaults(handler=_cmd_guardrail_add)

    lock = subparsers.add_parser("lock", help="Inspect or break the ralphloop run lock")
    lock.add_argument(
        "action",
        choices=("status", "break"),
        help="Action: status (show lock info) or break (force remove lock)",
    )
    _add_workspace_argument(lock)
    lock.add_argument(
        "--reason",
        default="manual break",
        help="Reason for breaking the lock (used in audit log)",
    )
    lock.set_defaults(handler=_cmd_lock)

    parse = subparsers.add_parser("parse", help="Replay a captured agent stream and report the estimate")
    parse.add_argument("file", nargs="?", default="-", help="Captured stream (default: stdin)")
    _add_workspace_argument(parse)
    parse.set_defaults(handler=_cmd_parse)

    return parser


def main(argv: list[str] | None = None) -> int:
    parser = _build_parser()
    args = parser.parse_args(argv)
    handler = getattr(args, "handler", None)
    if handler is None:
        parser.print_help()
        return EXIT_USAGE
    return int(handler(args))
