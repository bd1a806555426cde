from __future__ import annotations

import re
import subprocess
from pathlib import Path
from typing import Any, Callable

import yaml

from ralphloop.constants import VERIFICATION_COMMAND_TIMEOUT_SECONDS
from ralphloop.models import (
    ChecklistItem,
    CompletionResult,
    TaskDefinition,
    TaskFormatError,
    _coerce_positive_int,
)
from ralphloop.utils import _compact_log_text

_FRONT_MATTER_PATTERN = re.compile(r"\A---[ \t]*\r?\n(.*?)\r?\n---[ \t]*(?:\r?\n|\Z)", re.DOTALL)
_CHECKLIST_PATTERN = re.compile(r"^\s*(?:[-*+]|\d+[.)])\s+\[([ xX])\]\s+(.*\S)\s*$")
_FENCE_PATTERN = re.compile(r"^\s*(```|~~~)")


def _split_front_matter(text: str) -> tuple[dict[str, Any], str, int]:
    match = _FRONT_MATTER_PATTERN.match(text)
    if match is None:
        return ({}, text, 0)
    try:
        loaded = yaml.safe_load(match.group(1))
    except yaml.YAMLError as exc:
        raise TaskFormatError(f"task front matter is not valid YAML: {exc}") from exc
    if loaded is None:
        loaded = {}
    if not isinstance(loaded, dict):
        raise TaskFormatError("task front matter must be a mapping")
    consumed_lines = match.group(0).count("\n")
    return (loaded, text[match.end():], consumed_lines)


def _parse_checklist(body: str, *, line_offset: int) -> tuple[ChecklistItem, ...]:
    items: list[ChecklistItem] = []
    in_fence = False
    for index, line in enumerate(body.splitlines(), start=1):
        if _FENCE_PATTERN.match(line):
            in_fence = not in_fence
            continue
        if in_fence:
            continue
        match = _CHECKLIST_PATTERN.match(line)
        if match is None:
            continue
        items.append(
            ChecklistItem(
                text=match.group(2),
                checked=match.group(1).lower() == "x",
                line_number=index + line_offset,
            )
        )
    return tuple(items)


def parse_task_text(text: str, *, path: Path) -> TaskDefinition:
    metadata, body, consumed = _split_front_matter(text)
    description = str(metadata.get("task", metadata.get("description", "")) or "").strip()
    verification_command = str(
        metadata.get("test_command", metadata.get("verify_command", "")) or ""
    ).strip()
    raw_max = metadata.get("max_iterations")
    max_iterations = _coerce_positive_int(raw_max, default=0) if raw_max is not None else 0
    return TaskDefinition(
        path=path,
        description=description,
        verification_command=verification_command,
        max_iterations=max_iterations or None,
        items=_parse_checklist(body, line_offset=consumed),
    )


def load_task(path: Path) -> TaskDefinition:
    if not path.exists():
        raise TaskFormatError(f"task file not found: {path}")
    try:
        text = path.read_text(encoding="utf-8")
    except OSError as exc:
        raise TaskFormatError(f"task file could not be read: {path}: {exc}") from exc
    return parse_task_text(text, path=path)


def run_verification_command(
    command: str,
    *,
    cwd: Path,
    timeout: float = VERIFICATION_COMMAND_TIMEOUT_SECONDS,
) -> tuple[int, str]:
    try:
        process = subprocess.run(
            command,
            cwd=cwd,
            shell=True,
            text=True,
            capture_output=True,
            check=False,
            timeout=timeout,
        )
    except subprocess.TimeoutExpired:
        return (124, f"verification command timed out after {timeout}s: {command}")
    except OSError as exc:
        return (127, f"verification command failed to start: {exc}")
    output = (process.stdout or "") + (process.stderr or "")
    return (process.returncode, _compact_log_text(output))


def evaluate_completion(
    task: TaskDefinition,
    *,
    workspace: Path,
    run_command: Callable[..., tuple[int, str]] = run_verification_command,
) -> CompletionResult:
    """DONE iff every checklist item is checked and the verification command passes.

    The verification command only runs once the checklist is complete.
    """
    total = len(task.items)
    unchecked = task.unchecked_count
    if total == 0:
        return CompletionResult(False, 0, 0, None, "task has no checklist items")
    if unchecked:
        return CompletionResult(
            False, unchecked, total, None, f"{unchecked}/{total} criteria unchecked"
        )
    if not task.verification_command:
        return CompletionResult(True, 0, total, None, f"all {total} criteria checked")

    exit_code, detail = run_command(task.verification_command, cwd=workspace)
    if exit_code != 0:
        return CompletionResult(
            False,
            0,
            total,
            exit_code,
            f"all criteria checked but verification exited {exit_code}: {detail}",
        )
    return CompletionResult(
        True, 0, total, 0, f"all {total} criteria checked and verification passed"
    )
