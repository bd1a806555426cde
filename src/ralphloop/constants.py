"""Ralphloop constants: durable file names, sigils, exit codes, and defaults.

The `.ralph/` directory is the only place loop state lives.  Every invocation
reads it at start and the driver writes it at end, so the names below are the
contract between invocations (and between a local loop and a remote run that
receives a copy of the directory).
"""

from __future__ import annotations

import re

RALPH_DIR_NAME = ".ralph"
DEFAULT_TASK_FILE = "RALPH_TASK.md"
PROGRESS_FILE = "progress.md"
GUARDRAILS_FILE = "guardrails.md"
ITERATION_FILE = ".iteration"
STATE_FILE = "state.json"
ACTIVITY_LOG_FILE = "activity.log"
ERRORS_LOG_FILE = "errors.log"
GUTTER_SNAPSHOT_FILE = "gutter.json"
HANDOFF_FILE = "handoff.md"
LOCK_FILE = "lock"
CONFIG_FILE = "config.yaml"
AGENT_LOG_DIR = "logs"

LOCK_STALE_SECONDS = 30 * 60
LOCK_HEARTBEAT_SECONDS = 60

# Resource accounting
DEFAULT_WARN_TOKENS = 70_000
DEFAULT_ROTATE_TOKENS = 80_000
DEFAULT_OVERHEAD_MULTIPLIER = 0.3

# Loop bounds
DEFAULT_MAX_ITERATIONS = 20
DEFAULT_AUTO_COMMIT = True

# Stuck-agent detection
DEFAULT_FAILURE_THRESHOLD = 3
DEFAULT_FAILURE_WINDOW_SIZE = 50
DEFAULT_FAILURE_WINDOW_SECONDS = 30 * 60.0
DEFAULT_THRASH_THRESHOLD = 5
DEFAULT_THRASH_WINDOW_SECONDS = 10 * 60.0

# Agent subprocess
DEFAULT_AGENT_MODEL = "opus-4.5-thinking"
DEFAULT_AGENT_COMMAND = (
    "cursor-agent -p --force --output-format stream-json --model {model} {prompt}"
)
DEFAULT_AGENT_TIMEOUT_SECONDS = 0.0
DEFAULT_AGENT_MAX_RECORDS = 0

# Remote dispatch
DEFAULT_REMOTE_API_URL = "https://api.cursor.com"
DEFAULT_REMOTE_MODEL = "claude-4.5-opus-high-thinking"
DEFAULT_REMOTE_TIMEOUT_SECONDS = 30.0
REMOTE_API_KEY_ENV = "CURSOR_API_KEY"
REMOTE_BRANCH_PREFIX = "ralph-iteration-"

# Agent sigils, emitted inside assistant text
SIGIL_COMPLETE = "<ralph>COMPLETE</ralph>"
SIGIL_GUTTER = "<ralph>GUTTER</ralph>"
SIGIL_PATTERN = re.compile(r"<ralph>\s*(COMPLETE|GUTTER)\s*</ralph>", re.IGNORECASE)

# Exit codes
EXIT_DONE = 0
EXIT_ERROR = 1
EXIT_USAGE = 2
EXIT_GUTTER = 3
EXIT_MAX_ITERATIONS = 4
EXIT_SETUP = 5
EXIT_DISPATCH = 6
EXIT_INTERRUPTED = 130

VERIFICATION_COMMAND_TIMEOUT_SECONDS = 600

DEFAULT_GUARDRAILS_TEMPLATE = """# Ralph Guardrails (Signs)

> Lessons learned from past failures. READ THESE BEFORE ACTING.
> Entries are append-only; never delete a sign.

### Sign: Read Before Writing
- **Trigger**: Before modifying any file
- **Instruction**: Read the current contents of the file first
- **Added after**: Core principle

### Sign: Test After Changes
- **Trigger**: After any code change
- **Instruction**: Run the task's test command and check the result
- **Added after**: Core principle

### Sign: Commit Checkpoints
- **Trigger**: Before risky changes
- **Instruction**: Commit the current working state first
- **Added after**: Core principle
"""

DEFAULT_PROGRESS_TEMPLATE = """# Progress Log

> Updated by the agent after significant work.
> Append notes; keep earlier entries for the next iteration to read.

## Summary

- Iterations completed: 0
- Current status: Initialized

## How This Works

Progress is tracked in THIS FILE, not in the agent's context.
When the context fills up a fresh agent starts and reads this file.

## Session History

"""

DEFAULT_TASK_TEMPLATE = """---
task: Describe the task in one sentence
test_command: ""
max_iterations: 20
---
# Task

Explain what should be built.

## Success Criteria

1. [ ] First criterion
2. [ ] Second criterion
3. [ ] Third criterion
"""
