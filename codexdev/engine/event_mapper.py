"""Map Codex ``--json`` output lines to progress events.

Codex --json event types of interest:
  thread.started                 -> start (content: session/thread id)
  item.started / item.created /
  item.completed wrapping:
    reasoning                    -> reasoning
    command_execution            -> command, or command_result once an
                                    exit_code is present
    file_change                  -> file_change ("kind: path, ...")
    agent_message                -> message
    {role: assistant, content}   -> message (older CLI builds)
  turn.completed                 -> end (usage JSON, else "turn completed")

Two historical shapes exist for file changes ({changes: [{path, kind}]}
vs. {filename, action}) and for assistant messages ({text} vs. a list
of typed content blocks). Both are accepted.

Anything else, including non-JSON noise, maps to None. This module
never raises and never logs.
"""
from __future__ import annotations

import json
from typing import Any, Callable

from .models import ProgressEvent, ProgressEventType

_ITEM_EVENTS = ("item.completed", "item.created")

# Each rule returns (progress type, content), or None when it does not apply.
_Rule = Callable[[str, dict[str, Any]], "tuple[ProgressEventType, str] | None"]


def _text(value: Any) -> str:
    if value is None:
        return ""
    return value if isinstance(value, str) else str(value)


def _item(event: dict[str, Any]) -> dict[str, Any] | None:
    item = event.get("item")
    return item if isinstance(item, dict) else None


def _thread_started(etype: str, event: dict[str, Any]):
    if etype != "thread.started":
        return None
    sid = event.get("session_id") or event.get("thread_id") or ""
    return ProgressEventType.START, _text(sid)


def _reasoning(etype: str, event: dict[str, Any]):
    item = _item(event)
    if etype not in _ITEM_EVENTS or not item or item.get("type") != "reasoning":
        return None
    text = item.get("text")
    if text is None:
        blocks = item.get("content")
        if isinstance(blocks, list) and blocks and isinstance(blocks[0], dict):
            text = blocks[0].get("text")
    return ProgressEventType.REASONING, _text(text)


def _command_started(etype: str, event: dict[str, Any]):
    item = _item(event)
    if etype != "item.started" or not item or item.get("type") != "command_execution":
        return None
    return ProgressEventType.COMMAND, _text(item.get("command"))


def _command_execution(etype: str, event: dict[str, Any]):
    item = _item(event)
    if etype not in _ITEM_EVENTS or not item or item.get("type") != "command_execution":
        return None
    exit_code = item.get("exit_code")
    if exit_code is None:
        command = item.get("command")
        return ProgressEventType.COMMAND, _text(command) if command is not None else json.dumps(item)
    output = _text(item.get("output") or item.get("aggregated_output"))
    content = f"exit {exit_code}" + (f": {output}" if output else "")
    return ProgressEventType.COMMAND_RESULT, content


def _file_change(etype: str, event: dict[str, Any]):
    item = _item(event)
    if etype not in _ITEM_EVENTS or not item or item.get("type") != "file_change":
        return None
    changes = item.get("changes")
    if isinstance(changes, list):
        parts = [
            f"{_text(c.get('kind'))}: {_text(c.get('path'))}"
            for c in changes
            if isinstance(c, dict)
        ]
        return ProgressEventType.FILE_CHANGE, ", ".join(parts)
    action = _text(item.get("action")) or "change"
    return ProgressEventType.FILE_CHANGE, f"{action}: {_text(item.get('filename'))}"


def _agent_message(etype: str, event: dict[str, Any]):
    item = _item(event)
    if etype not in _ITEM_EVENTS or not item:
        return None
    if item.get("type") == "agent_message":
        return ProgressEventType.MESSAGE, _text(item.get("text"))
    if item.get("role") == "assistant":
        blocks = item.get("content")
        if isinstance(blocks, list) and blocks:
            text = " ".join(
                _text(b.get("text")) for b in blocks if isinstance(b, dict)
            )
            return ProgressEventType.MESSAGE, text
    return None


def _turn_completed(etype: str, event: dict[str, Any]):
    if etype != "turn.completed":
        return None
    usage = event.get("usage")
    content = json.dumps(usage) if usage else "turn completed"
    return ProgressEventType.END, content


# Order matters: a command_execution on item.started is a plain command
# even if a stale exit_code field rides along.
_RULES: tuple[_Rule, ...] = (
    _thread_started,
    _command_started,
    _reasoning,
    _command_execution,
    _file_change,
    _agent_message,
    _turn_completed,
)


def map_codex_line(line: str, operation_id: str) -> ProgressEvent | None:
    """Parse one JSONL line and map it to a ProgressEvent, or None to ignore."""
    try:
        event = json.loads(line)
    except (ValueError, TypeError, RecursionError):
        # RecursionError: pathologically nested JSON.
        return None
    if not isinstance(event, dict):
        return None

    etype = event.get("type")
    if not isinstance(etype, str):
        return None

    for rule in _RULES:
        try:
            match = rule(etype, event)
        except (AttributeError, TypeError, ValueError):
            # Malformed payload inside a recognized envelope.
            return None
        if match is not None:
            kind, content = match
            return ProgressEvent(
                operation_id=operation_id,
                type=kind,
                content=content,
            )
    return None
