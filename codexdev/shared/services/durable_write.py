"""Crash-safe JSON documents.

The session table is serialized up front, written to a hidden sibling
file, fsynced, and renamed over the target. Readers see either the old
table or the new one.
"""
from __future__ import annotations

import json
import os
import tempfile
from pathlib import Path
from typing import Any


def _sync_parent(directory: Path) -> None:
    """Persist the rename itself. Not possible on Windows."""
    if os.name == "nt":
        return
    try:
        handle = os.open(directory, os.O_RDONLY)
    except OSError:
        return
    try:
        os.fsync(handle)
    except OSError:
        pass
    finally:
        os.close(handle)


def atomic_write_json(path: Path, data: Any) -> None:
    """Replace *path* with *data* as indented JSON, all or nothing.

    Serialization errors surface before anything touches the disk.
    """
    payload = (json.dumps(data, indent=2, sort_keys=True) + "\n").encode("utf-8")
    directory = path.parent
    directory.mkdir(parents=True, exist_ok=True)

    staged: Path | None = None
    try:
        with tempfile.NamedTemporaryFile(
            "wb", dir=directory, prefix=f".{path.name}.", suffix=".partial", delete=False,
        ) as handle:
            staged = Path(handle.name)
            handle.write(payload)
            handle.flush()
            os.fsync(handle.fileno())
        os.replace(staged, path)
        staged = None
        _sync_parent(directory)
    finally:
        if staged is not None:
            staged.unlink(missing_ok=True)
