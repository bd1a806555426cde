from __future__ import annotations

import json
import re
import subprocess
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from ralphloop.constants import ACTIVITY_LOG_FILE, ERRORS_LOG_FILE
from ralphloop.models import StateError


# ---------------------------------------------------------------------------
# Time helpers
# ---------------------------------------------------------------------------


def _utc_now() -> str:
    return (
        datetime.now(timezone.utc).isoformat(timespec="seconds").replace("+00:00", "Z")
    )


def _parse_utc(value: str) -> datetime | None:
    text = str(value).strip()
    if not text:
        return None
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    try:
        dt = datetime.fromisoformat(text)
    except ValueError:
        return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


# ---------------------------------------------------------------------------
# JSON / text helpers
# ---------------------------------------------------------------------------


def _write_json(path: Path, payload: dict[str, Any]) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(json.dumps(payload, indent=2) + "\n", encoding="utf-8")


def _read_json(path: Path) -> dict[str, Any]:
    if not path.exists():
        raise StateError(f"state file not found: {path}")
    try:
        payload = json.loads(path.read_text(encoding="utf-8"))
    except json.JSONDecodeError as exc:
        raise StateError(f"state file is not valid JSON: {path}: {exc}") from exc
    if not isinstance(payload, dict):
        raise StateError(f"state file must contain an object: {path}")
    return payload


def _compact_log_text(text: str, limit: int = 240) -> str:
    compact = " ".join(text.strip().split())
    if len(compact) <= limit:
        return compact
    return f"{compact[:limit]}..."


def _ensure_text_file(path: Path, content: str, created: list[Path]) -> None:
    if path.exists():
        return
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(content, encoding="utf-8")
    created.append(path)


SECRET_PATTERNS: tuple[re.Pattern[str], ...] = (
    re.compile(r"(?i)\b(api[_-]?key|token|secret|password)\b\s*[:=]\s*([^\s]+)"),
    re.compile(r"(?i)\b(authorization:\s*bearer)\s+([^\s]+)"),
    re.compile(r"\bsk-[A-Za-z0-9_-]{10,}\b"),
    re.compile(r"\bsk-ant-[A-Za-z0-9_-]{10,}\b"),
    re.compile(r"\bkey_[A-Za-z0-9]{20,}\b"),
    re.compile(r"\bgh[pousr]_[A-Za-z0-9]{20,}\b"),
)


def _redact_sensitive_text(text: str) -> str:
    redacted = str(text)
    for pattern in SECRET_PATTERNS:
        redacted = pattern.sub(lambda match: f"{match.group(1)}=<redacted>" if match.groups() else "<redacted>", redacted)
    return redacted


# ---------------------------------------------------------------------------
# Append-only logs
# ---------------------------------------------------------------------------


def _append_log(ralph_dir: Path, message: str, *, log_name: str = ACTIVITY_LOG_FILE) -> None:
    log_path = ralph_dir / log_name
    log_path.parent.mkdir(parents=True, exist_ok=True)
    with log_path.open("a", encoding="utf-8") as handle:
        handle.write(f"{_utc_now()} {message}\n")


def _append_error(ralph_dir: Path, message: str) -> None:
    _append_log(ralph_dir, message, log_name=ERRORS_LOG_FILE)


# ---------------------------------------------------------------------------
# Git helpers
# ---------------------------------------------------------------------------


def _run_git(repo_root: Path, args: list[str]) -> subprocess.CompletedProcess[str]:
    command = ["git", "-C", str(repo_root), *args]
    try:
        return subprocess.run(
            command,
            text=True,
            capture_output=True,
            check=False,
        )
    except FileNotFoundError as exc:
        return subprocess.CompletedProcess(command, 127, "", f"git not found: {exc}")
    except OSError as exc:
        return subprocess.CompletedProcess(command, 1, "", str(exc))


def _is_git_worktree(repo_root: Path) -> bool:
    check = _run_git(repo_root, ["rev-parse", "--is-inside-work-tree"])
    return check.returncode == 0 and check.stdout.strip() == "true"


def _current_branch(repo_root: Path) -> str:
    branch = _run_git(repo_root, ["branch", "--show-current"])
    name = branch.stdout.strip() if branch.returncode == 0 else ""
    return name or "main"


def _normalize_remote_url(raw_url: str) -> str:
    url = raw_url.strip()
    if url.startswith("git@github.com:"):
        url = "https://github.com/" + url[len("git@github.com:"):]
    if url.endswith(".git"):
        url = url[: -len(".git")]
    return url


def _remote_url(repo_root: Path, remote: str = "origin") -> str:
    result = _run_git(repo_root, ["remote", "get-url", remote])
    if result.returncode != 0:
        return ""
    return _normalize_remote_url(result.stdout)


def _checkpoint_commit(repo_root: Path, *, message: str, paths: tuple[str, ...] = ()) -> str:
    """Stage and commit the workspace; return a one-line summary for the log."""
    if not _is_git_worktree(repo_root):
        return "checkpoint: skipped (not a git work tree)"

    conflicts = _run_git(repo_root, ["diff", "--name-only", "--diff-filter=U"])
    if conflicts.returncode != 0:
        detail = _compact_log_text(
            (conflicts.stderr or conflicts.stdout or "unknown git error").strip()
        )
        return f"checkpoint: skipped (probe failed: {detail})"
    if conflicts.stdout.strip():
        return "checkpoint: skipped (unresolved merge conflicts)"

    add_args = ["add", "--", *paths] if paths else ["add", "-A"]
    add = _run_git(repo_root, add_args)
    if add.returncode != 0:
        detail = _compact_log_text((add.stderr or add.stdout or "git add failed").strip())
        return f"checkpoint: failed (git add failed: {detail})"

    staged = _run_git(repo_root, ["diff", "--cached", "--quiet"])
    if staged.returncode == 0:
        return "checkpoint: skipped (no changes)"
    if staged.returncode not in {0, 1}:
        detail = _compact_log_text(
            (staged.stderr or staged.stdout or "git diff --cached failed").strip()
        )
        return f"checkpoint: failed (staged check failed: {detail})"

    commit = _run_git(repo_root, ["commit", "-m", message])
    if commit.returncode != 0:
        detail = _compact_log_text((commit.stderr or commit.stdout or "git commit failed").strip())
        return f"checkpoint: failed ({detail})"

    head = _run_git(repo_root, ["rev-parse", "--short", "HEAD"])
    commit_id = head.stdout.strip() if head.returncode == 0 else "<unknown>"
    return f"checkpoint: committed {commit_id}"


def _push_branch(repo_root: Path, branch: str, *, remote: str = "origin") -> tuple[bool, str]:
    push = _run_git(repo_root, ["push", remote, branch])
    if push.returncode != 0:
        detail = _compact_log_text((push.stderr or push.stdout or "git push failed").strip())
        return (False, detail)
    return (True, f"pushed {branch} to {remote}")
