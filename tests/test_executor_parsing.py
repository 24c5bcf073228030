"""Transcript parsing and argument building for CodexExecutor."""
from __future__ import annotations

import json

from codexdev.engine.executor import CodexExecutor, parse_output
from codexdev.engine.models import SandboxMode


def _transcript(*events) -> str:
    return "\n".join(e if isinstance(e, str) else json.dumps(e) for e in events) + "\n"


def test_parse_output_extracts_session_files_and_summary() -> None:
    stdout = _transcript(
        {"type": "thread.started", "thread_id": "abc"},
        "some banner text",
        {"type": "item.completed", "item": {"type": "file_change", "changes": [
            {"path": "new.py", "kind": "add"},
            {"path": "old.py", "kind": "update"},
        ]}},
        {"type": "item.completed", "item": {"type": "file_change", "filename": "legacy.txt", "action": "created"}},
        {"type": "item.completed", "item": {"type": "agent_message", "text": "first"}},
        {"type": "item.completed", "item": {"role": "assistant", "content": [
            {"type": "text", "text": "second"},
            {"type": "image", "url": "x"},
        ]}},
    )
    parsed = parse_output(stdout)
    assert parsed.session_id == "abc"
    assert parsed.files_created == ["new.py", "legacy.txt"]
    assert parsed.files_modified == ["old.py"]
    assert parsed.agent_messages == ["first", "second"]
    assert parsed.summary == "second"
    assert len(parsed.raw_events) == 5


def test_parse_output_uses_first_thread_started() -> None:
    parsed = parse_output(_transcript(
        {"type": "thread.started", "session_id": "one"},
        {"type": "thread.started", "session_id": "two"},
    ))
    assert parsed.session_id == "one"


def test_summary_is_truncated_to_500_chars() -> None:
    parsed = parse_output(_transcript(
        {"type": "item.completed", "item": {"type": "agent_message", "text": "x" * 900}},
    ))
    assert len(parsed.summary) == 500


def test_summary_falls_back_to_file_lists() -> None:
    parsed = parse_output(_transcript(
        {"type": "item.completed", "item": {"type": "file_change", "changes": [
            {"path": "a", "kind": "add"},
            {"path": "b", "kind": "add"},
            {"path": "c", "kind": "update"},
        ]}},
    ))
    assert parsed.summary == "Created: a, b. Modified: c"

    modified_only = parse_output(_transcript(
        {"type": "item.completed", "item": {"type": "file_change", "filename": "m", "action": "modified"}},
    ))
    assert modified_only.summary == "Modified: m"


def test_duplicates_are_kept_in_order() -> None:
    change = {"type": "item.completed", "item": {"type": "file_change", "changes": [{"path": "a", "kind": "update"}]}}
    parsed = parse_output(_transcript(change, change))
    assert parsed.files_modified == ["a", "a"]


def test_empty_and_garbage_output() -> None:
    parsed = parse_output("")
    assert parsed.session_id == ""
    assert parsed.summary == ""
    assert parsed.raw_events == []

    parsed = parse_output("garbage\n[1,2]\n{\n")
    assert parsed.raw_events == []


def test_deeply_nested_line_is_skipped() -> None:
    nested = "[" * 100_000 + "]" * 100_000
    parsed = parse_output(_transcript(
        {"type": "thread.started", "thread_id": "abc"},
        nested,
        {"type": "item.completed", "item": {"type": "agent_message", "text": "after"}},
    ))
    assert parsed.session_id == "abc"
    assert parsed.summary == "after"
    assert len(parsed.raw_events) == 2


def test_legacy_file_change_with_unknown_action_is_ignored() -> None:
    parsed = parse_output(_transcript(
        {"type": "item.completed", "item": {"type": "file_change", "filename": "x", "action": "deleted"}},
    ))
    assert parsed.files_created == []
    assert parsed.files_modified == []


def test_build_args_for_new_session() -> None:
    executor = CodexExecutor("codex", default_model="gpt-5.2-codex")
    args = executor.build_args(sandbox=SandboxMode.WORKSPACE_WRITE)
    assert args == [
        "exec", "-", "--json",
        "--model", "gpt-5.2-codex",
        "--sandbox", "workspace-write",
    ]


def test_build_args_defaults_to_full_access_and_applies_overrides() -> None:
    executor = CodexExecutor("codex")
    args = executor.build_args(config_overrides=["approval_policy=on-request"])
    assert args == [
        "exec", "-", "--json",
        "--sandbox", "danger-full-access",
        "-c", "approval_policy=on-request",
    ]


def test_build_args_for_resume_never_sends_sandbox() -> None:
    executor = CodexExecutor("codex", default_sandbox=SandboxMode.READ_ONLY)
    args = executor.build_args(
        session_id="sess-1",
        model="m",
        sandbox=SandboxMode.WORKSPACE_WRITE,
        config_overrides=["approval_policy=on-request"],
    )
    assert args == ["exec", "resume", "sess-1", "-", "--json", "--model", "m"]
    assert "--sandbox" not in args
    assert "-c" not in args


def test_instruction_is_never_on_the_command_line() -> None:
    executor = CodexExecutor("codex")
    args = executor.build_args(session_id="s")
    assert args.count("-") == 1
    assert args[args.index("-") - 1] == "s"
