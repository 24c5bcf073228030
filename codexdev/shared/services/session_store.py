"""Session tracking store: durable session metadata, one table per project.

Storage layout:
    <data_dir>/projects/{project_id}/sessions.json

    {"sessions": {"<session id>": {"sessionId": ..., "type": ...,
                                    "status": ..., "createdAt": ...}}}

The file is the source of truth. Each project root gets an in-memory
cache that is filled on first access and updated by every mutation.
Mutations for one project run behind that project's lock, and every
write replaces the file atomically (temp file + rename), so concurrent
callers never lose updates and a crash never leaves a torn table.

Only tracking metadata lives here. The tool's own session artifacts
are removed by SessionRunner.discard(), never by this store.
"""
from __future__ import annotations

import asyncio
import dataclasses
import json
import logging
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Callable, Iterable, TypeVar

from codexdev.engine.errors import SessionCorruptedError
from codexdev.engine.models import (
    SessionRecord,
    SessionStatus,
    SessionType,
    parse_iso,
    utc_now_iso,
)
from codexdev.shared.services.durable_write import atomic_write_json
from codexdev.shared.services.project import ProjectManager

logger = logging.getLogger(__name__)

DEFAULT_DATA_DIR = Path.home() / ".codexdev"
TABLE_FILENAME = "sessions.json"

T = TypeVar("T")


class _ProjectTable:
    """Cache + write lock for one project root."""

    def __init__(self, root: Path, path: Path) -> None:
        self.root = root
        self.path = path
        self.sessions: dict[str, SessionRecord] = {}
        self.loaded = False
        self.lock = asyncio.Lock()


def _read_table(path: Path) -> dict[str, SessionRecord]:
    """Load a table from disk. Unreadable or corrupt files yield {}."""
    if not path.exists():
        return {}
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
        raw_sessions = data["sessions"]
        if not isinstance(raw_sessions, dict):
            raise ValueError("'sessions' is not an object")
    except (OSError, ValueError, KeyError, TypeError, RecursionError) as exc:
        logger.warning(
            "Session table %s is unreadable (%s); treating as empty", path, exc,
        )
        return {}

    sessions: dict[str, SessionRecord] = {}
    for session_id, raw in raw_sessions.items():
        try:
            record = SessionRecord.from_dict(raw)
        except SessionCorruptedError as exc:
            logger.warning("Skipping corrupt session record %s in %s: %s", session_id, path, exc)
            continue
        sessions[session_id] = record
    return sessions


class SessionStore:
    """Per-project session tracking with serialized, atomic writes."""

    def __init__(self, data_dir: Path | None = None) -> None:
        self._data_dir = Path(data_dir) if data_dir is not None else DEFAULT_DATA_DIR
        self._tables: dict[Path, _ProjectTable] = {}

    @property
    def data_dir(self) -> Path:
        return self._data_dir

    def table_path(self, cwd: str | Path | None = None) -> Path:
        return self._table(cwd).path

    # ── internals ──

    def _table(self, cwd: str | Path | None) -> _ProjectTable:
        root = ProjectManager.find_project_root(cwd)
        table = self._tables.get(root)
        if table is None:
            path = ProjectManager.get_project_dir(self._data_dir, root) / TABLE_FILENAME
            table = _ProjectTable(root, path)
            self._tables[root] = table
        return table

    async def _ensure_loaded(self, table: _ProjectTable) -> None:
        if table.loaded:
            return
        async with table.lock:
            if table.loaded:
                return
            table.sessions = await asyncio.to_thread(_read_table, table.path)
            table.loaded = True
            logger.debug(
                "Loaded %d tracked session(s) for %s", len(table.sessions), table.root,
            )

    async def _save(self, table: _ProjectTable) -> None:
        """Write the table. Caller must hold table.lock."""
        snapshot = {
            "sessions": {sid: rec.to_dict() for sid, rec in table.sessions.items()},
        }
        try:
            await asyncio.to_thread(atomic_write_json, table.path, snapshot)
        except OSError:
            # Disk is the source of truth; drop the cache so the next
            # access re-reads what actually got persisted.
            table.loaded = False
            raise

    async def _mutate(
        self,
        cwd: str | Path | None,
        fn: Callable[[dict[str, SessionRecord]], tuple[T, bool]],
    ) -> T:
        table = self._table(cwd)
        await self._ensure_loaded(table)
        async with table.lock:
            if not table.loaded:
                table.sessions = await asyncio.to_thread(_read_table, table.path)
                table.loaded = True
            result, changed = fn(table.sessions)
            if changed:
                await self._save(table)
            return result

    async def _snapshot(self, cwd: str | Path | None) -> list[SessionRecord]:
        table = self._table(cwd)
        await self._ensure_loaded(table)
        return [dataclasses.replace(rec) for rec in table.sessions.values()]

    # ── public API ──

    async def track(self, record: SessionRecord, cwd: str | Path | None = None) -> None:
        """Insert or overwrite a record."""
        stored = dataclasses.replace(record)

        def apply(sessions: dict[str, SessionRecord]) -> tuple[None, bool]:
            sessions[stored.session_id] = stored
            return None, True

        await self._mutate(cwd, apply)
        logger.info("Tracking session %s (%s, %s)", record.session_id, record.type.value, record.status.value)

    async def get(self, session_id: str, cwd: str | Path | None = None) -> SessionRecord | None:
        table = self._table(cwd)
        await self._ensure_loaded(table)
        record = table.sessions.get(session_id)
        return dataclasses.replace(record) if record else None

    async def update_status(
        self,
        session_id: str,
        status: SessionStatus,
        cwd: str | Path | None = None,
    ) -> bool:
        """Set status and refresh last activity. False if untracked."""
        def apply(sessions: dict[str, SessionRecord]) -> tuple[bool, bool]:
            record = sessions.get(session_id)
            if record is None:
                return False, False
            record.status = SessionStatus(status)
            record.last_resumed_at = utc_now_iso()
            return True, True

        return await self._mutate(cwd, apply)

    async def mark_resumed(self, session_id: str, cwd: str | Path | None = None) -> bool:
        def apply(sessions: dict[str, SessionRecord]) -> tuple[bool, bool]:
            record = sessions.get(session_id)
            if record is None:
                return False, False
            record.last_resumed_at = utc_now_iso()
            return True, True

        return await self._mutate(cwd, apply)

    async def link(
        self,
        session_a: str,
        session_b: str,
        cwd: str | Path | None = None,
    ) -> bool:
        """Point each existing record's lineage at the other one."""
        def apply(sessions: dict[str, SessionRecord]) -> tuple[bool, bool]:
            changed = False
            first = sessions.get(session_a)
            second = sessions.get(session_b)
            if first is not None:
                first.linked_session_id = session_b
                changed = True
            if second is not None:
                second.linked_session_id = session_a
                changed = True
            return changed, changed

        return await self._mutate(cwd, apply)

    async def remove(self, session_id: str, cwd: str | Path | None = None) -> bool:
        def apply(sessions: dict[str, SessionRecord]) -> tuple[bool, bool]:
            existed = sessions.pop(session_id, None) is not None
            return existed, existed

        return await self._mutate(cwd, apply)

    async def remove_multiple(
        self,
        session_ids: Iterable[str],
        cwd: str | Path | None = None,
    ) -> tuple[list[str], list[str]]:
        """Remove several records in one write. Returns (removed, not_found)."""
        ids = list(session_ids)

        def apply(sessions: dict[str, SessionRecord]) -> tuple[tuple[list[str], list[str]], bool]:
            removed: list[str] = []
            not_found: list[str] = []
            for session_id in ids:
                if sessions.pop(session_id, None) is not None:
                    removed.append(session_id)
                else:
                    not_found.append(session_id)
            return (removed, not_found), bool(removed)

        return await self._mutate(cwd, apply)

    async def list_all(self, cwd: str | Path | None = None) -> list[SessionRecord]:
        return await self._snapshot(cwd)

    async def list_by_type(
        self,
        session_type: SessionType,
        cwd: str | Path | None = None,
    ) -> list[SessionRecord]:
        wanted = SessionType(session_type)
        return [r for r in await self._snapshot(cwd) if r.type == wanted]

    async def list_active(self, cwd: str | Path | None = None) -> list[SessionRecord]:
        return [r for r in await self._snapshot(cwd) if r.status == SessionStatus.ACTIVE]

    async def sweep(
        self,
        max_age_hours: float,
        cwd: str | Path | None = None,
        *,
        now: datetime | None = None,
    ) -> list[str]:
        """Drop records whose last activity is older than max_age_hours.

        Tracking metadata only; the tool's session files are untouched.
        """
        cutoff = (now or datetime.now(timezone.utc)) - timedelta(hours=max_age_hours)

        def apply(sessions: dict[str, SessionRecord]) -> tuple[list[str], bool]:
            stale: list[str] = []
            for session_id, record in sessions.items():
                try:
                    last_activity = parse_iso(record.last_activity)
                except ValueError:
                    logger.debug("Session %s has an unparseable timestamp; keeping it", session_id)
                    continue
                if last_activity < cutoff:
                    stale.append(session_id)
            for session_id in stale:
                del sessions[session_id]
            return stale, bool(stale)

        removed = await self._mutate(cwd, apply)
        if removed:
            logger.info("Swept %d stale session tracking entries", len(removed))
        return removed
