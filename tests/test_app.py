"""CLI entry point: argument parsing, instruction sources, commands."""
from __future__ import annotations

import argparse
import io
import json
import logging
import sys
from pathlib import Path

import pytest

from codexdev import app
from codexdev.engine.config import SupervisorConfig
from codexdev.engine.health import collect_health


@pytest.fixture
def isolated_env(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> Path:
    home = tmp_path / "home"
    monkeypatch.setenv("CODEX_DEV_HOME", str(home))
    monkeypatch.setenv("CODEX_HOME", str(tmp_path / "codex"))
    monkeypatch.setenv("CODEX_DEV_PROGRESS", "false")
    root = logging.getLogger()
    saved_handlers, saved_level = list(root.handlers), root.level
    yield home
    for handler in root.handlers:
        if handler not in saved_handlers:
            handler.close()
    root.handlers[:] = saved_handlers
    root.setLevel(saved_level)


def _run_args(**overrides) -> argparse.Namespace:
    values = {"instruction": None, "file": None}
    values.update(overrides)
    return argparse.Namespace(**values)


def test_parser_run_defaults() -> None:
    args = app.build_parser().parse_args(["run", "do it"])
    assert args.command == "run"
    assert args.instruction == "do it"
    assert args.kind == "write"
    assert args.session is None
    assert args.timeout is None


def test_parser_rejects_unknown_sandbox() -> None:
    with pytest.raises(SystemExit):
        app.build_parser().parse_args(["run", "--sandbox", "yolo", "x"])


def test_instruction_from_positional_file_and_stdin(
    tmp_path: Path, monkeypatch: pytest.MonkeyPatch,
) -> None:
    assert app._resolve_instruction(_run_args(instruction="  add a flag \n")) == "add a flag"

    path = tmp_path / "task.md"
    path.write_text("from a file\n", encoding="utf-8")
    assert app._resolve_instruction(_run_args(file=str(path))) == "from a file"

    monkeypatch.setattr(sys, "stdin", io.StringIO("from stdin\n"))
    assert app._resolve_instruction(_run_args(instruction="-")) == "from stdin"


@pytest.mark.parametrize(
    "args",
    [
        _run_args(),
        _run_args(instruction="   "),
        _run_args(instruction="x", file="y"),
        _run_args(file="/definitely/not/here.md"),
    ],
)
def test_bad_instruction_sources_exit(args: argparse.Namespace) -> None:
    with pytest.raises(SystemExit):
        app._resolve_instruction(args)


def test_sessions_list_prints_json(isolated_env: Path, tmp_path: Path, capsys) -> None:
    project = tmp_path / "project"
    (project / ".git").mkdir(parents=True)

    with pytest.raises(SystemExit) as excinfo:
        app.main(["sessions", "--cwd", str(project), "list", "--status", "all"])

    assert excinfo.value.code == 0
    assert json.loads(capsys.readouterr().out) == {"sessions": []}
    assert (isolated_env / "logs" / "codexdev.log").exists()


def test_discard_with_invalid_id_fails(isolated_env: Path, tmp_path: Path, capsys) -> None:
    with pytest.raises(SystemExit) as excinfo:
        app.main(["sessions", "--cwd", str(tmp_path), "discard", "not-a-uuid"])

    assert excinfo.value.code == 1
    out = json.loads(capsys.readouterr().out)
    assert out["success"] is False
    assert out["failed"][0]["sessionId"] == "not-a-uuid"


@pytest.mark.asyncio
async def test_health_reports_missing_codex(isolated_env: Path, tmp_path: Path) -> None:
    config = SupervisorConfig(
        command="definitely-not-a-real-codex-binary",
        data_dir=isolated_env,
        codex_home=tmp_path / "codex",
    )

    report = await collect_health(config, cwd=tmp_path)

    assert report["ok"] is False
    assert report["checks"]["codex"]["found"] is False
    assert any("npm install" in s for s in report["suggestions"])
    assert report["checks"]["project"]["tracking"]["writable"] is True
    assert report["checks"]["progress"]["role"] == "not started"


@pytest.mark.asyncio
async def test_health_ok_with_runnable_command(isolated_env: Path, tmp_path: Path) -> None:
    config = SupervisorConfig(
        command=sys.executable,
        data_dir=isolated_env,
        codex_home=tmp_path / "codex",
    )

    report = await collect_health(config, cwd=tmp_path)

    assert report["ok"] is True
    assert report["checks"]["codex"]["path"]
    assert report["checks"]["codexSessions"]["exists"] is False
