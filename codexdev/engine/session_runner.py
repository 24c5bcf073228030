"""Supervised runs: executor + session tracking + live progress.

SessionRunner is the one caller of the executor. For every run it

1. opens a progress operation (exactly one ``start`` event),
2. marks a resumed session ``active`` for the duration of the process,
3. relays each stdout line through the event mapper to the hub,
4. records the outcome in the session store,
5. closes the operation with exactly one terminal event.

Failures come back as ``RunOutcome(success=False, error=...)``; only
task cancellation propagates as an exception.
"""
from __future__ import annotations

import asyncio
import logging
import re
import shutil
import uuid
from pathlib import Path
from typing import Iterable

from codexdev.shared.services.session_store import SessionStore

from .config import SupervisorConfig
from .errors import (
    CodexError,
    CodexErrorCode,
    ConfigInvalidError,
    ErrorInfo,
    SessionNotFoundError,
)
from .event_mapper import map_codex_line
from .executor import CodexExecutor
from .models import (
    DiscardOutcome,
    InvocationResult,
    ProgressEvent,
    ProgressEventType,
    RunOptions,
    RunOutcome,
    SandboxMode,
    SessionRecord,
    SessionStatus,
    SessionType,
    utc_now_iso,
)

logger = logging.getLogger(__name__)

# Session ids double as directory names under the tool's home.
SESSION_ID_RE = re.compile(
    r"^[0-9a-f]{8}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{12}$",
    re.IGNORECASE,
)
REVIEW_APPROVAL_OVERRIDE = "approval_policy=on-request"
_DESCRIPTION_CHARS = 120


class SessionRunner:
    def __init__(
        self,
        config: SupervisorConfig,
        executor: CodexExecutor,
        store: SessionStore,
        hub=None,
    ) -> None:
        self.config = config
        self.executor = executor
        self.store = store
        self.hub = hub

    @classmethod
    def from_config(cls, config: SupervisorConfig, hub=None) -> SessionRunner:
        executor = CodexExecutor(
            config.command,
            default_timeout=config.timeout_seconds,
            default_model=config.model,
            default_sandbox=config.sandbox,
        )
        return cls(config, executor, SessionStore(config.data_dir), hub)

    # ── progress relay ──

    def _emit(self, event: ProgressEvent) -> None:
        if self.hub is not None:
            self.hub.emit(event)

    def _relay_line(self, operation_id: str, line: str) -> None:
        event = map_codex_line(line, operation_id)
        if event is None:
            return
        # The runner owns the operation's start and terminal events.
        if event.type == ProgressEventType.START.value:
            event.type = ProgressEventType.MESSAGE.value
            event.content = f"session {event.content}"
        elif event.type == ProgressEventType.END.value:
            event.type = ProgressEventType.MESSAGE.value
            if event.content != "turn completed":
                event.content = f"usage {event.content}"
        self._emit(event)

    # ── runs ──

    async def run(
        self,
        instruction: str,
        *,
        kind: SessionType | str = SessionType.WRITE,
        session_id: str | None = None,
        cwd: str | Path | None = None,
        model: str | None = None,
        sandbox: SandboxMode | str | None = None,
        timeout: float | None = None,
        cancel_event: asyncio.Event | None = None,
        description: str | None = None,
        base_sha: str | None = None,
        head_sha: str | None = None,
        link_to: str | None = None,
    ) -> RunOutcome:
        """Run one invocation (new, or resumed when session_id is given)."""
        try:
            kind = SessionType(kind)
            sandbox_mode = SandboxMode(sandbox) if sandbox else None
        except ValueError as exc:
            error = ConfigInvalidError(str(exc))
            return self._failure(f"invalid-{uuid.uuid4()}", session_id, error.info)
        operation_id = f"{kind.value}-{uuid.uuid4()}"
        settings = self.config.tool_settings(kind)
        cwd_str = str(cwd) if cwd is not None else None

        if not settings.enabled:
            error = ConfigInvalidError(f"The '{kind.value}' tool is disabled in configuration")
            return self._failure(operation_id, session_id, error.info)

        if self.hub is not None:
            self.hub.start_operation(
                operation_id, kind.value, (description or instruction)[:_DESCRIPTION_CHARS],
            )

        overrides: list[str] = []
        if kind is SessionType.REVIEW and not session_id:
            overrides.append(REVIEW_APPROVAL_OVERRIDE)
        options = RunOptions(
            cwd=cwd_str,
            model=model or settings.model,
            sandbox=sandbox_mode or settings.sandbox,
            timeout_seconds=timeout if timeout is not None else settings.timeout_seconds,
            on_line=lambda line: self._relay_line(operation_id, line),
            cancel_event=cancel_event,
            config_overrides=overrides,
        )

        logger.info(
            "Run %s: kind=%s session=%s cwd=%s",
            operation_id, kind.value, session_id or "<new>", cwd_str or ".",
        )
        try:
            if session_id:
                await self.store.update_status(session_id, SessionStatus.ACTIVE, cwd)
                result = await self.executor.run_resumed(session_id, instruction, options)
            else:
                result = await self.executor.run_new(instruction, options)
        except asyncio.CancelledError:
            self._emit(ProgressEvent(operation_id, ProgressEventType.ERROR, "canceled"))
            await self._revert(session_id, cwd)
            raise
        except CodexError as exc:
            logger.warning("Run %s failed: %s", operation_id, exc)
            self._emit(ProgressEvent(operation_id, ProgressEventType.ERROR, str(exc)))
            await self._revert(session_id, cwd)
            return self._failure(operation_id, session_id, exc.info)
        except Exception as exc:
            # Every run ends with a terminal event and a RunOutcome.
            logger.exception("Run %s failed unexpectedly", operation_id)
            self._emit(ProgressEvent(operation_id, ProgressEventType.ERROR, str(exc)))
            await self._revert(session_id, cwd)
            return self._failure(operation_id, session_id, ErrorInfo.from_exception(exc))

        if self.hub is not None:
            self.hub.end_operation(operation_id, result.success)

        try:
            await self._record(
                result, kind, instruction, cwd,
                resumed_id=session_id, base_sha=base_sha, head_sha=head_sha, link_to=link_to,
            )
        except OSError as exc:
            logger.error("Failed to record session %s: %s", result.session_id, exc)

        return self._outcome(operation_id, result)

    async def _record(
        self,
        result: InvocationResult,
        kind: SessionType,
        instruction: str,
        cwd: str | Path | None,
        *,
        resumed_id: str | None,
        base_sha: str | None,
        head_sha: str | None,
        link_to: str | None,
    ) -> None:
        status = SessionStatus.COMPLETED if result.success else SessionStatus.ABANDONED
        if resumed_id and await self.store.get(resumed_id, cwd) is not None:
            await self.store.mark_resumed(resumed_id, cwd)
            await self.store.update_status(resumed_id, status, cwd)
        elif resumed_id:
            # Swept, or started by another host: track it from here on.
            await self.store.track(
                SessionRecord(
                    session_id=result.session_id,
                    type=kind,
                    status=status,
                    instruction=instruction,
                    base_sha=base_sha,
                    head_sha=head_sha,
                    last_resumed_at=utc_now_iso(),
                ),
                cwd,
            )
        else:
            await self.store.track(
                SessionRecord(
                    session_id=result.session_id,
                    type=kind,
                    status=status,
                    instruction=instruction,
                    base_sha=base_sha,
                    head_sha=head_sha,
                ),
                cwd,
            )
        if link_to:
            await self.store.link(result.session_id, link_to, cwd)

    async def _revert(self, session_id: str | None, cwd: str | Path | None) -> None:
        """Best-effort: a failed resumption must not stay ``active``."""
        if not session_id:
            return
        try:
            await self.store.update_status(session_id, SessionStatus.ABANDONED, cwd)
        except Exception:
            logger.warning("Could not mark session %s abandoned", session_id, exc_info=True)

    @staticmethod
    def _outcome(operation_id: str, result: InvocationResult) -> RunOutcome:
        if not result.success:
            status = "error"
        elif result.files_created or result.files_modified:
            status = "needs_review"
        else:
            status = "completed"
        error = None
        if not result.success:
            detail = result.stderr.strip()[-500:]
            error = ErrorInfo(
                code=CodexErrorCode.CODEX_EXECUTION_FAILED,
                message=f"Codex exited with code {result.exit_code}" + (f": {detail}" if detail else ""),
                recoverable=True,
            )
        return RunOutcome(
            success=result.success,
            session_id=result.session_id,
            operation_id=operation_id,
            status=status,
            summary=result.summary,
            files_created=list(result.files_created),
            files_modified=list(result.files_modified),
            error=error,
        )

    @staticmethod
    def _failure(operation_id: str, session_id: str | None, info: ErrorInfo) -> RunOutcome:
        return RunOutcome(
            success=False,
            session_id=session_id or "",
            operation_id=operation_id,
            status="error",
            error=info,
        )

    # ── session management ──

    async def list_sessions(
        self,
        *,
        cwd: str | Path | None = None,
        kind: str = "all",
        status: str = "active",
    ) -> list[SessionRecord]:
        records = await self.store.list_all(cwd)
        if kind != "all":
            wanted_kind = SessionType(kind)
            records = [r for r in records if r.type == wanted_kind]
        if status != "all":
            wanted_status = SessionStatus(status)
            records = [r for r in records if r.status == wanted_status]
        return sorted(records, key=lambda r: r.created_at)

    async def sweep(self, max_age_hours: float, cwd: str | Path | None = None) -> list[str]:
        return await self.store.sweep(max_age_hours, cwd)

    async def link(self, session_a: str, session_b: str, cwd: str | Path | None = None) -> bool:
        return await self.store.link(session_a, session_b, cwd)

    async def discard(
        self,
        session_ids: Iterable[str],
        *,
        cwd: str | Path | None = None,
        force: bool = False,
    ) -> DiscardOutcome:
        """Delete the tool's session artifacts, then the tracking record."""
        outcome = DiscardOutcome()
        sessions_dir = self.config.codex_home / "sessions"

        for session_id in session_ids:
            if not SESSION_ID_RE.match(session_id):
                outcome.failed.append({
                    "sessionId": session_id,
                    "reason": "Invalid session ID format (expected UUID).",
                })
                continue

            tracked = await self.store.get(session_id, cwd)
            if tracked is not None and tracked.status == SessionStatus.ACTIVE and not force:
                outcome.failed.append({
                    "sessionId": session_id,
                    "reason": "Session is still marked as active. Pass force=true to discard anyway.",
                })
                continue

            artifacts = sessions_dir / session_id
            if tracked is None and not (artifacts.exists() or artifacts.is_symlink()):
                outcome.failed.append({
                    "sessionId": session_id,
                    "reason": str(SessionNotFoundError(session_id)),
                })
                continue

            try:
                await asyncio.to_thread(_remove_artifacts, artifacts, force)
                await self.store.remove(session_id, cwd)
            except OSError as exc:
                outcome.failed.append({"sessionId": session_id, "reason": str(exc)})
                continue
            outcome.discarded.append(session_id)
            logger.info("Discarded session %s", session_id)

        outcome.success = not outcome.failed
        return outcome


def _remove_artifacts(path: Path, force: bool) -> None:
    if path.is_dir() and not path.is_symlink():
        shutil.rmtree(path, ignore_errors=force)
    elif path.exists() or path.is_symlink():
        path.unlink()
