"""Continuation artifacts handed to a fresh invocation.

Everything here is built from iteration numbers and file locations only.
Nothing from a previous conversation is carried over: the next agent learns
what happened by reading the progress and guardrail files.
"""

from __future__ import annotations

import os
from pathlib import Path
from typing import Sequence

from ralphloop.constants import SIGIL_COMPLETE, SIGIL_GUTTER
from ralphloop.models import Guardrail


def _display_path(path: Path, workspace: Path | None) -> str:
    if workspace is not None:
        try:
            return Path(os.path.relpath(path, workspace)).as_posix()
        except ValueError:
            pass
    return path.as_posix()


def _protocol_lines(task_ref: str, progress_ref: str, guardrails_ref: str) -> list[str]:
    return [
        "## Ralph Protocol",
        "",
        f"1. Read `{progress_ref}` to understand the current state",
        f"2. Work on the next unchecked criterion in `{task_ref}`",
        "3. Run the task's test command after changes (if one is defined)",
        "4. Check off completed criteria with [x]",
        "5. Commit frequently with descriptive messages",
        f"6. Append what you did and what is next to `{progress_ref}`",
        f"7. When ALL criteria pass, print `{SIGIL_COMPLETE}`",
        f"8. If stuck 3+ times on the same issue, add a sign to `{guardrails_ref}` "
        f"and print `{SIGIL_GUTTER}`",
    ]


def compose_handoff(
    next_iteration: int,
    previous_iteration: int,
    task_path: Path,
    guardrails_path: Path,
    progress_path: Path,
    *,
    workspace: Path | None = None,
) -> str:
    task_ref = _display_path(task_path, workspace)
    guardrails_ref = _display_path(guardrails_path, workspace)
    progress_ref = _display_path(progress_path, workspace)
    lines = [
        f"# Ralph Iteration {next_iteration} (Fresh Context)",
        "",
        "You are continuing an autonomous development task using the Ralph methodology.",
        "",
        "## CRITICAL: Read State Files First",
        "",
        f"1. **Task Definition**: Read `{task_ref}` for the task and completion criteria.",
        f"2. **Progress**: Read `{progress_ref}` to see what has been accomplished.",
        f"3. **Guardrails**: Read `{guardrails_ref}` for lessons learned.",
        "",
        "## Your Mission",
        "",
        f"Continue from where iteration {previous_iteration} left off. "
        "That agent's context was full, so you have FRESH CONTEXT.",
        "",
        *_protocol_lines(task_ref, progress_ref, guardrails_ref),
        "",
        "Begin by reading the state files.",
        "",
    ]
    return "\n".join(lines)


def compose_initial_prompt(
    iteration: int,
    task_path: Path,
    guardrails_path: Path,
    progress_path: Path,
    *,
    guardrails: Sequence[Guardrail] = (),
    workspace: Path | None = None,
) -> str:
    task_ref = _display_path(task_path, workspace)
    guardrails_ref = _display_path(guardrails_path, workspace)
    progress_ref = _display_path(progress_path, workspace)
    signs: list[str] = []
    if guardrails:
        signs = ["## Current Guardrails", ""]
        signs.extend(f"- When {sign.trigger}: {sign.instruction}" for sign in guardrails)
        signs.append("")
    lines = [
        f"# Ralph Iteration {iteration}",
        "",
        "You are an autonomous development agent using the Ralph methodology.",
        "Your memory is limited to this session; all durable state lives in files.",
        "",
        "## FIRST: Read State Files",
        "",
        f"1. `{task_ref}` - the task and its completion criteria",
        f"2. `{guardrails_ref}` - lessons learned (follow these)",
        f"3. `{progress_ref}` - what has been done so far",
        "",
        *signs,
        *_protocol_lines(task_ref, progress_ref, guardrails_ref),
        "",
        "Begin by reading the state files.",
        "",
    ]
    return "\n".join(lines)


def compose_wrapup_instruction(estimate: int, rotate_threshold: int, *, progress_path: Path) -> str:
    return (
        f"Context budget warning: about {estimate} of {rotate_threshold} units used. "
        "Finish the current step now: commit your work, check off any completed criteria, "
        f"and record what is done and what comes next in {progress_path.name}. "
        "A fresh agent will continue from those files.\n"
    )
