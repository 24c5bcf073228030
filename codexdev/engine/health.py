"""Environment diagnostics for ``codexdev health``."""
from __future__ import annotations

import os
import platform
import sys
from pathlib import Path
from typing import Any

from codexdev.shared.services.project import ProjectManager

from .config import SupervisorConfig
from .executor import CodexExecutor


def _dir_status(path: Path) -> dict[str, Any]:
    """exists / writable for *path*, or for its nearest existing parent."""
    existing = path
    while not existing.exists() and existing != existing.parent:
        existing = existing.parent
    return {
        "path": str(path),
        "exists": path.exists(),
        "writable": os.access(existing, os.W_OK),
    }


async def collect_health(
    config: SupervisorConfig,
    *,
    cwd: str | Path | None = None,
    hub=None,
) -> dict[str, Any]:
    suggestions: list[str] = []
    checks: dict[str, Any] = {
        "platform": {
            "system": platform.system(),
            "release": platform.release(),
            "python": sys.version.split()[0],
        },
    }

    checks["config"] = {
        "effective": config.to_dict(),
        "warnings": list(config.warnings),
    }
    if config.warnings:
        suggestions.append("Fix config warnings (see checks.config.warnings).")

    executor = CodexExecutor(config.command)
    resolved = executor.resolve_executable()
    version = await executor.get_version() if resolved else None
    checks["codex"] = {
        "command": config.command,
        "found": resolved is not None,
        "path": resolved,
        "version": version,
    }
    if resolved is None:
        suggestions.append(
            "Install the Codex CLI (npm install -g @openai/codex) and make sure it is on PATH."
        )

    if cwd is not None and not Path(cwd).expanduser().is_dir():
        checks["project"] = {"cwd": str(cwd), "exists": False}
        suggestions.append(f"Set a valid working directory (not found: {cwd}).")
    else:
        root = ProjectManager.find_project_root(cwd)
        tracking_dir = ProjectManager.get_project_dir(config.data_dir, root)
        tracking = _dir_status(tracking_dir)
        checks["project"] = {
            "root": str(root),
            "isGitRepo": (root / ".git").exists(),
            "tracking": tracking,
        }
        if not tracking["writable"]:
            suggestions.append(f"Make {tracking_dir} writable (used for sessions.json).")

    codex_sessions = config.codex_home / "sessions"
    checks["codexSessions"] = _dir_status(codex_sessions)

    if hub is not None:
        checks["progress"] = {"role": hub.role.value, "port": hub.port, "url": hub.url}
    else:
        checks["progress"] = {
            "role": "disabled" if not config.progress_enabled else "not started",
            "port": config.progress_port,
        }

    ok = resolved is not None and checks["project"].get("tracking", {}).get("writable", False)
    return {"ok": bool(ok), "checks": checks, "suggestions": suggestions}
