from __future__ import annotations

import json
import os
import sys
import time
from pathlib import Path
from typing import Any

import pytest

FAKE_CODEX = Path(__file__).with_name("fake_codex.py")

SCENARIO_A_LINES: list[Any] = [
    {"type": "thread.started", "session_id": "s1"},
    {
        "type": "item.completed",
        "item": {"type": "file_change", "changes": [{"path": "a.txt", "kind": "add"}]},
    },
    {"type": "item.completed", "item": {"type": "agent_message", "text": "done"}},
]


class FakeCodex:
    """Configures tests/fake_codex.py through environment variables."""

    def __init__(self, monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
        self._monkeypatch = monkeypatch
        self._tmp_path = tmp_path
        self.command = [sys.executable, str(FAKE_CODEX)]
        self.record_path = tmp_path / "fake_codex_record.json"
        self.child_pid_path = tmp_path / "fake_codex_child.pid"
        self.lines_path = tmp_path / "fake_codex_lines.json"
        monkeypatch.setenv("FAKE_CODEX_RECORD", str(self.record_path))
        for name in ("FAKE_CODEX_LINES_FILE", "FAKE_CODEX_EXIT", "FAKE_CODEX_STDERR",
                     "FAKE_CODEX_HANG", "FAKE_CODEX_CHILD_PID"):
            monkeypatch.delenv(name, raising=False)

    def configure(
        self,
        lines: list[Any] | None = None,
        *,
        exit_code: int = 0,
        stderr: str | None = None,
        hang: float | None = None,
        spawn_child: bool = False,
    ) -> None:
        # Lines go through a file: long ones would overflow the environment.
        self.lines_path.write_text(json.dumps(lines or []), encoding="utf-8")
        self._monkeypatch.setenv("FAKE_CODEX_LINES_FILE", str(self.lines_path))
        self._monkeypatch.setenv("FAKE_CODEX_EXIT", str(exit_code))
        if stderr is not None:
            self._monkeypatch.setenv("FAKE_CODEX_STDERR", stderr)
        if hang is not None:
            self._monkeypatch.setenv("FAKE_CODEX_HANG", str(hang))
        if spawn_child:
            self._monkeypatch.setenv("FAKE_CODEX_CHILD_PID", str(self.child_pid_path))

    def recorded(self) -> dict[str, Any]:
        return json.loads(self.record_path.read_text(encoding="utf-8"))

    def child_pid(self) -> int:
        return int(self.child_pid_path.read_text(encoding="utf-8"))


@pytest.fixture
def fake_codex(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> FakeCodex:
    return FakeCodex(monkeypatch, tmp_path)


@pytest.fixture
def project_dir(tmp_path: Path) -> Path:
    """A project root (has a .git entry) for session-store scoping."""
    root = tmp_path / "project"
    (root / ".git").mkdir(parents=True)
    return root


def pid_alive(pid: int) -> bool:
    """True while *pid* is running (zombies count as gone)."""
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        return True
    stat = Path(f"/proc/{pid}/stat")
    try:
        # Field 3 is the state; the command name in field 2 may hold spaces.
        state = stat.read_text().rsplit(")", 1)[1].split()[0]
    except (OSError, IndexError):
        return True
    return state != "Z"


def wait_until_dead(pid: int, timeout: float = 5.0) -> bool:
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if not pid_alive(pid):
            return True
        time.sleep(0.05)
    return not pid_alive(pid)
