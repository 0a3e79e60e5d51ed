"""Classify raw model output as a final answer, a tool-call batch, or plain text.

The model is asked to answer with one of two JSON shapes:

    {"final_response": "..."}
    {"tool_calls": [{"id": "call-1", "name": "read_file", "input": {...}}]}

Either may be wrapped in a ```json fence. Models that drift into ReAct style
are also understood:

    Action: read_file
    Action Input: {"path": "src/main.py"}

Anything else is returned as Unparsed, which callers treat as the answer.
"""

import json
import re
import uuid
from dataclasses import dataclass, field


@dataclass(frozen=True)
class ToolCall:
    id: str
    name: str
    input: dict = field(default_factory=dict)


@dataclass(frozen=True)
class FinalAnswer:
    message: str


@dataclass(frozen=True)
class ToolBatch:
    calls: tuple[ToolCall, ...]

    def __post_init__(self):
        if not self.calls:
            raise ValueError("ToolBatch requires at least one call")


@dataclass(frozen=True)
class Unparsed:
    raw: str


ParsedOutcome = FinalAnswer | ToolBatch | Unparsed

_FENCED_JSON_RE = re.compile(r"```json\s*(.+?)```", re.IGNORECASE | re.DOTALL)
_ACTION_RE = re.compile(r"(?:\*\*)?Action:(?:\*\*)?[ \t]*([A-Za-z_][\w.-]*)")
_ACTION_INPUT_RE = re.compile(r"(?:\*\*)?Action Input:(?:\*\*)?")

_MISSING = object()


def _loads(text: str):
    try:
        return json.loads(text)
    except (ValueError, RecursionError):
        return _MISSING


def _decode_payload(text: str):
    """Strict decode first, then the first ```json fenced block."""
    payload = _loads(text)
    if payload is not _MISSING:
        return payload
    match = _FENCED_JSON_RE.search(text)
    if match:
        return _loads(match.group(1).strip())
    return _MISSING


def _valid_call(entry) -> ToolCall | None:
    if not isinstance(entry, dict):
        return None
    call_id = entry.get("id")
    name = entry.get("name")
    call_input = entry.get("input")
    if not isinstance(call_id, str) or not call_id:
        return None
    if not isinstance(name, str) or not name:
        return None
    if not isinstance(call_input, dict):
        return None
    return ToolCall(id=call_id, name=name, input=call_input)


def _interpret(payload) -> ParsedOutcome | None:
    if not isinstance(payload, dict):
        return None
    final = payload.get("final_response")
    if isinstance(final, str):
        return FinalAnswer(message=final)
    entries = payload.get("tool_calls")
    if isinstance(entries, list):
        calls = [c for c in (_valid_call(e) for e in entries) if c is not None]
        if calls:
            return ToolBatch(calls=tuple(calls))
    return None


def scan_json_object(text: str, start: int = 0) -> str | None:
    """Return the first balanced {...} at or after start, or None.

    Braces inside string literals are ignored, and backslash escapes inside
    strings are honoured, so inputs like {"code": "if (x) { y }"} survive.
    """
    begin = text.find("{", start)
    if begin == -1:
        return None
    depth = 0
    in_string = False
    escaped = False
    for i in range(begin, len(text)):
        ch = text[i]
        if in_string:
            if escaped:
                escaped = False
            elif ch == "\\":
                escaped = True
            elif ch == '"':
                in_string = False
            continue
        if ch == '"':
            in_string = True
        elif ch == "{":
            depth += 1
        elif ch == "}":
            depth -= 1
            if depth == 0:
                return text[begin : i + 1]
    return None


def new_call_id() -> str:
    return f"call-{uuid.uuid4().hex[:12]}"


def _parse_action_markers(raw: str) -> ToolBatch | None:
    action = _ACTION_RE.search(raw)
    if not action:
        return None
    marker = _ACTION_INPUT_RE.search(raw, action.end())
    if not marker:
        return None
    snippet = scan_json_object(raw, marker.end())
    if snippet is None:
        return None
    call_input = _loads(snippet)
    if not isinstance(call_input, dict):
        return None
    return ToolBatch(
        calls=(ToolCall(id=new_call_id(), name=action.group(1), input=call_input),)
    )


def parse(raw: str) -> ParsedOutcome:
    """Classify one model response. Never raises."""
    text = raw.strip()
    outcome = _interpret(_decode_payload(text))
    if outcome is not None:
        return outcome
    batch = _parse_action_markers(text)
    if batch is not None:
        return batch
    return Unparsed(raw=raw)
