"""Project scoping: map a working directory to its project root.

A project root is the nearest enclosing directory holding a ``.git``
entry (directory for normal clones, file for worktrees and submodules),
or the working directory itself outside version control. Each root owns
a data directory under ``<data_dir>/projects/<project_id>/``.
"""
from __future__ import annotations

import hashlib
import re
from pathlib import Path

_UNSAFE_CHARS_RE = re.compile(r"[^A-Za-z0-9._-]+")


class ProjectManager:
    """Resolves project roots and their per-project storage paths."""

    @staticmethod
    def find_project_root(cwd: str | Path | None = None) -> Path:
        start = Path(cwd).expanduser() if cwd else Path.cwd()
        start = start.resolve()
        for candidate in (start, *start.parents):
            if (candidate / ".git").exists():
                return candidate
        return start

    @staticmethod
    def get_project_id(project_root: Path) -> str:
        """Filesystem-safe, stable identity for a project root.

        Example: /home/user/myproject -> home-user-myproject-1a2b3c4d
        The hash suffix keeps roots that differ only in unsafe
        characters from colliding.
        """
        resolved = str(project_root.resolve())
        readable = _UNSAFE_CHARS_RE.sub("-", resolved).strip("-") or "root"
        digest = hashlib.sha1(resolved.encode("utf-8")).hexdigest()[:8]
        return f"{readable[-80:]}-{digest}"

    @staticmethod
    def get_project_dir(data_dir: Path, project_root: Path) -> Path:
        """Return ``<data_dir>/projects/<project_id>`` (not created)."""
        return data_dir / "projects" / ProjectManager.get_project_id(project_root)
