"""SessionRunner: progress lifecycle, session tracking, discard."""
from __future__ import annotations

import uuid
from pathlib import Path

import pytest

from conftest import SCENARIO_A_LINES

from codexdev.engine.config import SupervisorConfig
from codexdev.engine.errors import CodexErrorCode
from codexdev.engine.executor import CodexExecutor
from codexdev.engine.models import (
    ProgressEvent,
    SessionRecord,
    SessionStatus,
    SessionType,
)
from codexdev.engine.session_runner import REVIEW_APPROVAL_OVERRIDE, SessionRunner
from codexdev.progress.hub import HubRole, ProgressHub
from codexdev.shared.services.session_store import SessionStore


class RecordingHub(ProgressHub):
    """A hub that keeps every emitted event instead of serving it."""

    def __init__(self) -> None:
        super().__init__(port=0)
        self.role = HubRole.HUB
        self.events: list[ProgressEvent] = []

    def emit(self, event: ProgressEvent) -> None:
        self.events.append(event)

    def for_operation(self, operation_id: str) -> list[ProgressEvent]:
        return [e for e in self.events if e.operation_id == operation_id]


@pytest.fixture
def config(tmp_path: Path, fake_codex) -> SupervisorConfig:
    return SupervisorConfig(
        command=fake_codex.command[0],
        data_dir=tmp_path / "data",
        codex_home=tmp_path / "codex",
        timeout_seconds=30,
    )


@pytest.fixture
def hub() -> RecordingHub:
    return RecordingHub()


@pytest.fixture
def runner(config: SupervisorConfig, fake_codex, hub: RecordingHub) -> SessionRunner:
    executor = CodexExecutor(fake_codex.command, default_timeout=config.timeout_seconds)
    return SessionRunner(config, executor, SessionStore(config.data_dir), hub)


def _session_lines(session_id: str, text: str = "ok") -> list[dict]:
    return [
        {"type": "thread.started", "thread_id": session_id},
        {"type": "item.completed", "item": {"type": "agent_message", "text": text}},
    ]


@pytest.mark.asyncio
async def test_write_run_with_file_changes_needs_review(
    runner: SessionRunner, fake_codex, project_dir: Path,
) -> None:
    fake_codex.configure(SCENARIO_A_LINES)

    outcome = await runner.run("write a.txt", kind="write", cwd=project_dir, base_sha="abc")

    assert outcome.success is True
    assert outcome.status == "needs_review"
    assert outcome.session_id == "s1"
    assert outcome.files_created == ["a.txt"]
    assert outcome.summary == "done"
    assert outcome.error is None

    record = await runner.store.get("s1", project_dir)
    assert record.type == SessionType.WRITE
    assert record.status == SessionStatus.COMPLETED
    assert record.instruction == "write a.txt"
    assert record.base_sha == "abc"


@pytest.mark.asyncio
async def test_failed_run_reports_error_and_abandons(
    runner: SessionRunner, fake_codex, project_dir: Path,
) -> None:
    fake_codex.configure(SCENARIO_A_LINES, exit_code=1, stderr="boom")

    outcome = await runner.run("write a.txt", cwd=project_dir)

    assert outcome.success is False
    assert outcome.status == "error"
    assert outcome.error.code == CodexErrorCode.CODEX_EXECUTION_FAILED
    assert "boom" in outcome.error.message
    assert outcome.files_created == ["a.txt"]
    record = await runner.store.get("s1", project_dir)
    assert record.status == SessionStatus.ABANDONED


@pytest.mark.asyncio
async def test_exactly_one_start_and_one_terminal_event(
    runner: SessionRunner, fake_codex, hub: RecordingHub, project_dir: Path,
) -> None:
    fake_codex.configure(SCENARIO_A_LINES + [
        {"type": "turn.completed", "usage": {"input_tokens": 10}},
    ])

    outcome = await runner.run("write a.txt", cwd=project_dir, description="add a.txt")

    events = hub.for_operation(outcome.operation_id)
    types = [e.type for e in events]
    assert types[0] == "start"
    assert events[0].content == "[write] add a.txt"
    assert types.count("start") == 1
    assert sum(e.is_terminal for e in events) == 1
    assert events[-1].type == "end"
    assert events[-1].content == "completed"

    messages = [e.content for e in events if e.type == "message"]
    assert "session s1" in messages
    assert "done" in messages
    assert 'usage {"input_tokens": 10}' in messages
    assert "file_change" in types


@pytest.mark.asyncio
async def test_raised_failure_emits_single_error_event(
    runner: SessionRunner, fake_codex, hub: RecordingHub, project_dir: Path,
) -> None:
    # A new run that never reports a session id is invalid output.
    fake_codex.configure([{"type": "item.completed", "item": {"type": "agent_message", "text": "?"}}])

    outcome = await runner.run("x", cwd=project_dir)

    assert outcome.success is False
    assert outcome.error.code == CodexErrorCode.CODEX_INVALID_OUTPUT
    events = hub.for_operation(outcome.operation_id)
    assert [e.type for e in events if e.is_terminal] == ["error"]
    assert await runner.store.list_all(project_dir) == []


@pytest.mark.asyncio
async def test_resumed_run_updates_existing_record(
    runner: SessionRunner, fake_codex, project_dir: Path,
) -> None:
    sid = str(uuid.uuid4())
    await runner.store.track(
        SessionRecord(session_id=sid, type=SessionType.WRITE, status=SessionStatus.COMPLETED,
                      instruction="first"),
        project_dir,
    )
    fake_codex.configure([{"type": "item.completed", "item": {"type": "agent_message", "text": "more"}}])

    outcome = await runner.run("continue", session_id=sid, cwd=project_dir)

    assert outcome.success is True
    assert outcome.session_id == sid
    assert outcome.status == "completed"
    record = await runner.store.get(sid, project_dir)
    assert record.status == SessionStatus.COMPLETED
    assert record.last_resumed_at is not None
    assert record.instruction == "first"
    assert fake_codex.recorded()["argv"][:3] == ["exec", "resume", sid]


@pytest.mark.asyncio
async def test_failed_resume_marks_session_abandoned(
    runner: SessionRunner, fake_codex, project_dir: Path,
) -> None:
    sid = str(uuid.uuid4())
    await runner.store.track(
        SessionRecord(session_id=sid, type=SessionType.WRITE, status=SessionStatus.COMPLETED),
        project_dir,
    )
    fake_codex.configure([], exit_code=2, stderr="no such session")

    outcome = await runner.run("continue", session_id=sid, cwd=project_dir)

    assert outcome.success is False
    record = await runner.store.get(sid, project_dir)
    assert record.status == SessionStatus.ABANDONED


@pytest.mark.asyncio
async def test_disabled_kind_never_spawns(
    runner: SessionRunner, fake_codex, hub: RecordingHub, project_dir: Path,
) -> None:
    fake_codex.configure(SCENARIO_A_LINES)
    runner.config.tools = {"exec": {"enabled": False}}

    outcome = await runner.run("ls", kind=SessionType.EXEC, cwd=project_dir)

    assert outcome.success is False
    assert outcome.error.code == CodexErrorCode.CONFIG_INVALID
    assert not fake_codex.record_path.exists()
    assert hub.events == []


@pytest.mark.asyncio
async def test_new_review_requests_approval_and_links(
    runner: SessionRunner, fake_codex, project_dir: Path,
) -> None:
    await runner.store.track(
        SessionRecord(session_id="w1", type=SessionType.WRITE, status=SessionStatus.COMPLETED),
        project_dir,
    )
    fake_codex.configure(_session_lines("r1", "looks fine"))

    outcome = await runner.run("review it", kind="review", cwd=project_dir, link_to="w1")

    argv = fake_codex.recorded()["argv"]
    assert argv[argv.index("-c") + 1] == REVIEW_APPROVAL_OVERRIDE
    assert outcome.status == "completed"
    review = await runner.store.get("r1", project_dir)
    assert review.type == SessionType.REVIEW
    assert review.linked_session_id == "w1"
    assert (await runner.store.get("w1", project_dir)).linked_session_id == "r1"


@pytest.mark.asyncio
async def test_resumed_review_sends_no_overrides(
    runner: SessionRunner, fake_codex, project_dir: Path,
) -> None:
    fake_codex.configure(_session_lines("r2"))
    await runner.run("again", kind="review", session_id="r2", cwd=project_dir)
    assert "-c" not in fake_codex.recorded()["argv"]


@pytest.mark.asyncio
async def test_list_sessions_filters_and_orders(runner: SessionRunner, project_dir: Path) -> None:
    store = runner.store
    await store.track(SessionRecord("b", SessionType.WRITE, SessionStatus.ACTIVE,
                                    created_at="2024-01-02T00:00:00+00:00"), project_dir)
    await store.track(SessionRecord("a", SessionType.REVIEW, SessionStatus.ACTIVE,
                                    created_at="2024-01-01T00:00:00+00:00"), project_dir)
    await store.track(SessionRecord("c", SessionType.WRITE, SessionStatus.COMPLETED,
                                    created_at="2024-01-03T00:00:00+00:00"), project_dir)

    active = await runner.list_sessions(cwd=project_dir)
    assert [r.session_id for r in active] == ["a", "b"]

    writes = await runner.list_sessions(cwd=project_dir, kind="write", status="all")
    assert [r.session_id for r in writes] == ["b", "c"]


@pytest.mark.asyncio
async def test_discard_validates_ids_and_removes_artifacts(
    runner: SessionRunner, config: SupervisorConfig, project_dir: Path,
) -> None:
    done_id = str(uuid.uuid4())
    active_id = str(uuid.uuid4())
    artifacts = config.codex_home / "sessions" / done_id
    (artifacts / "nested").mkdir(parents=True)
    (artifacts / "nested" / "rollout.jsonl").write_text("{}\n", encoding="utf-8")
    await runner.store.track(SessionRecord(done_id, SessionType.WRITE, SessionStatus.COMPLETED), project_dir)
    await runner.store.track(SessionRecord(active_id, SessionType.WRITE, SessionStatus.ACTIVE), project_dir)

    outcome = await runner.discard(["../../etc", active_id, done_id], cwd=project_dir)

    assert outcome.success is False
    assert outcome.discarded == [done_id]
    reasons = {f["sessionId"]: f["reason"] for f in outcome.failed}
    assert "UUID" in reasons["../../etc"]
    assert "active" in reasons[active_id]
    assert not artifacts.exists()
    assert await runner.store.get(done_id, project_dir) is None
    assert await runner.store.get(active_id, project_dir) is not None

    forced = await runner.discard([active_id], cwd=project_dir, force=True)
    assert forced.success is True
    assert forced.discarded == [active_id]
    assert await runner.store.get(active_id, project_dir) is None


@pytest.mark.asyncio
async def test_discard_unknown_session_is_not_found(runner: SessionRunner, project_dir: Path) -> None:
    ghost = str(uuid.uuid4())

    outcome = await runner.discard([ghost], cwd=project_dir)

    assert outcome.success is False
    assert outcome.discarded == []
    assert outcome.failed == [{"sessionId": ghost, "reason": f"Session not found: {ghost}"}]


@pytest.mark.asyncio
async def test_resuming_untracked_session_starts_tracking_it(
    runner: SessionRunner, fake_codex, project_dir: Path,
) -> None:
    sid = str(uuid.uuid4())
    fake_codex.configure([{"type": "item.completed", "item": {"type": "agent_message", "text": "back"}}])

    outcome = await runner.run("continue", kind="review", session_id=sid, cwd=project_dir)

    assert outcome.success is True
    record = await runner.store.get(sid, project_dir)
    assert record is not None
    assert record.type == SessionType.REVIEW
    assert record.status == SessionStatus.COMPLETED
    assert record.instruction == "continue"
    assert record.last_resumed_at is not None


@pytest.mark.asyncio
async def test_deeply_nested_output_line_still_yields_an_outcome(
    runner: SessionRunner, fake_codex, hub: RecordingHub, project_dir: Path,
) -> None:
    nested = "[" * 100_000 + "]" * 100_000
    fake_codex.configure(_session_lines("deep", "survived") + [nested])

    outcome = await runner.run("x", cwd=project_dir)

    assert outcome.success is True
    assert outcome.session_id == "deep"
    assert outcome.summary == "survived"
    events = hub.for_operation(outcome.operation_id)
    assert [e.type for e in events if e.is_terminal] == ["end"]


@pytest.mark.asyncio
async def test_unexpected_error_reverts_resume_and_reports_failure(
    runner: SessionRunner, fake_codex, hub: RecordingHub, project_dir: Path,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    sid = str(uuid.uuid4())
    await runner.store.track(
        SessionRecord(session_id=sid, type=SessionType.WRITE, status=SessionStatus.COMPLETED),
        project_dir,
    )

    async def broken_resume(*args, **kwargs):
        raise RecursionError("maximum recursion depth exceeded")

    monkeypatch.setattr(runner.executor, "run_resumed", broken_resume)

    outcome = await runner.run("continue", session_id=sid, cwd=project_dir)

    assert outcome.success is False
    assert outcome.error.code == CodexErrorCode.UNKNOWN_ERROR
    assert "recursion" in outcome.error.message
    events = hub.for_operation(outcome.operation_id)
    assert [e.type for e in events if e.is_terminal] == ["error"]
    assert (await runner.store.get(sid, project_dir)).status == SessionStatus.ABANDONED


@pytest.mark.asyncio
@pytest.mark.parametrize("bad", [{"kind": "poetry"}, {"sandbox": "yolo"}])
async def test_invalid_kind_or_sandbox_is_config_invalid(
    runner: SessionRunner, fake_codex, hub: RecordingHub, project_dir: Path, bad: dict,
) -> None:
    fake_codex.configure(SCENARIO_A_LINES)

    outcome = await runner.run("x", cwd=project_dir, **bad)

    assert outcome.success is False
    assert outcome.error.code == CodexErrorCode.CONFIG_INVALID
    assert not fake_codex.record_path.exists()
    assert hub.events == []
