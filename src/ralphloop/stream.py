"""Parse the agent's stream-json output into ActivityRecords.

One line in, at most one record out.  Two producer shapes are understood:

* the native, versioned shape ``{"v": 1, "kind": "read"|"write"|"shell"|"tokens", ...}``
* the agent CLI's ``tool_call`` / ``assistant`` / ``result`` events

Anything else is a malformed line and yields ``None``; callers count and skip
it.  No state is carried between lines.
"""

from __future__ import annotations

import json
from typing import Any, Callable, Iterable, Iterator

from ralphloop.models import ActivityRecord, RecordKind
from ralphloop.utils import _utc_now

NATIVE_SHAPE_VERSION = 1

_NATIVE_KINDS = {
    "read": RecordKind.READ,
    "write": RecordKind.WRITE,
    "shell": RecordKind.SHELL,
    "tokens": RecordKind.TOKEN_REPORT,
}

_TOOL_CALL_KINDS = {
    "readToolCall": RecordKind.READ,
    "writeToolCall": RecordKind.WRITE,
    "editToolCall": RecordKind.WRITE,
    "shellToolCall": RecordKind.SHELL,
}

_USAGE_KEYS = (
    "input_tokens",
    "output_tokens",
    "cache_creation_input_tokens",
    "cache_read_input_tokens",
)


def _utf8_size(value: Any) -> int:
    if not isinstance(value, str):
        return 0
    return len(value.encode("utf-8"))


def _as_int(value: Any) -> int | None:
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    if isinstance(value, float) and value.is_integer():
        return int(value)
    return None


def _parse_native(payload: dict[str, Any], raw_line: str, timestamp: str) -> ActivityRecord | None:
    if payload.get("v") != NATIVE_SHAPE_VERSION:
        return None
    kind = _NATIVE_KINDS.get(str(payload.get("kind", "")).lower())
    if kind is None:
        return None

    if kind is RecordKind.TOKEN_REPORT:
        tokens = _as_int(payload.get("tokens"))
        if tokens is None or tokens < 0:
            return None
        return ActivityRecord(timestamp, kind, "tokens", tokens, None, raw_line)

    subject_key = "command" if kind is RecordKind.SHELL else "path"
    subject = payload.get(subject_key)
    size = _as_int(payload.get("bytes", 0))
    if not isinstance(subject, str) or not subject.strip() or size is None or size < 0:
        return None

    exit_code: int | None = None
    if kind is RecordKind.SHELL:
        exit_code = _as_int(payload.get("exit_code"))
        if exit_code is None:
            return None
    return ActivityRecord(timestamp, kind, subject.strip(), size, exit_code, raw_line)


def _tool_result_size(kind: RecordKind, args: dict[str, Any], result: dict[str, Any]) -> int:
    success = result.get("success")
    failure = result.get("failure")
    body = success if isinstance(success, dict) else failure if isinstance(failure, dict) else {}
    if kind is RecordKind.READ:
        size = _utf8_size(body.get("content"))
        return size or (_as_int(body.get("contentSize")) or 0)
    if kind is RecordKind.WRITE:
        size = _utf8_size(args.get("fileText")) or _utf8_size(args.get("newString"))
        return size or (_as_int(body.get("fileSize")) or 0)
    return _utf8_size(body.get("stdout")) + _utf8_size(body.get("stderr"))


def _parse_tool_call(payload: dict[str, Any], raw_line: str, timestamp: str) -> ActivityRecord | None:
    if payload.get("subtype") != "completed":
        return None
    tool_call = payload.get("tool_call")
    if not isinstance(tool_call, dict):
        return None

    for tool_name, kind in _TOOL_CALL_KINDS.items():
        call = tool_call.get(tool_name)
        if not isinstance(call, dict):
            continue
        args = call.get("args") if isinstance(call.get("args"), dict) else {}
        result = call.get("result") if isinstance(call.get("result"), dict) else {}
        subject_key = "command" if kind is RecordKind.SHELL else "path"
        subject = args.get(subject_key)
        if not isinstance(subject, str) or not subject.strip():
            return None
        size = _tool_result_size(kind, args, result)

        exit_code: int | None = None
        if kind is RecordKind.SHELL:
            success = result.get("success")
            failure = result.get("failure")
            if isinstance(success, dict):
                exit_code = _as_int(success.get("exitCode"))
                exit_code = 0 if exit_code is None else exit_code
            elif isinstance(failure, dict):
                exit_code = _as_int(failure.get("exitCode"))
                exit_code = 1 if exit_code in (None, 0) else exit_code
            else:
                return None
        return ActivityRecord(timestamp, kind, subject.strip(), size, exit_code, raw_line)
    return None


def _parse_assistant(payload: dict[str, Any], raw_line: str, timestamp: str) -> ActivityRecord | None:
    message = payload.get("message")
    if not isinstance(message, dict):
        return None
    content = message.get("content")
    if not isinstance(content, list):
        return None
    texts = [
        item.get("text")
        for item in content
        if isinstance(item, dict) and item.get("type") == "text" and isinstance(item.get("text"), str)
    ]
    if not texts:
        return None
    text = "".join(texts)
    return ActivityRecord(timestamp, RecordKind.OTHER, text, _utf8_size(text), None, raw_line)


def _parse_usage(payload: dict[str, Any], raw_line: str, timestamp: str) -> ActivityRecord | None:
    usage = payload.get("usage")
    if not isinstance(usage, dict):
        return None
    total = 0
    seen = False
    for key in _USAGE_KEYS:
        value = _as_int(usage.get(key))
        if value is not None and value >= 0:
            total += value
            seen = True
    if not seen:
        return None
    return ActivityRecord(timestamp, RecordKind.TOKEN_REPORT, "usage", total, None, raw_line)


_TYPE_PARSERS: dict[str, Callable[[dict[str, Any], str, str], ActivityRecord | None]] = {
    "tool_call": _parse_tool_call,
    "assistant": _parse_assistant,
    "result": _parse_usage,
    "usage": _parse_usage,
}


def parse_record_line(line: str, *, timestamp: str | None = None) -> ActivityRecord | None:
    raw_line = line.rstrip("\r\n")
    stripped = raw_line.strip()
    if not stripped.startswith("{"):
        return None
    try:
        payload = json.loads(stripped)
    except json.JSONDecodeError:
        return None
    if not isinstance(payload, dict):
        return None

    stamp = timestamp or _utc_now()
    if "v" in payload:
        return _parse_native(payload, raw_line, stamp)
    parser = _TYPE_PARSERS.get(str(payload.get("type", "")))
    if parser is None:
        return None
    return parser(payload, raw_line, stamp)


def iter_records(
    lines: Iterable[str],
    *,
    on_skip: Callable[[str], None] | None = None,
) -> Iterator[ActivityRecord]:
    """Yield one record per recognised line, in order, without look-ahead."""
    for line in lines:
        record = parse_record_line(line)
        if record is None:
            if on_skip is not None and line.strip():
                on_skip(line)
            continue
        yield record
