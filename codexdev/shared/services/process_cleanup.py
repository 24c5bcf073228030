"""Reliable termination of tool process trees.

The tool may fork helpers (shell wrappers, node shims, the commands it
runs on the user's behalf). Killing only the direct child leaves those
running, so every spawned process gets its own process group (POSIX)
or console process group (Windows), and termination targets the whole
tree:

- POSIX: SIGTERM to the process group, a short grace period, then
  SIGKILL to whatever is left of the group.
- Windows: ``taskkill /T /F`` by PID, falling back to a direct kill.

Call sites only ever use ``spawn_kwargs()`` and ``terminate_process_tree()``.
"""
from __future__ import annotations

import asyncio
import logging
import os
import signal
import subprocess
from typing import Any

logger = logging.getLogger(__name__)

DEFAULT_GRACE_SECONDS = 2.0


class _TreeTerminator:
    def spawn_kwargs(self) -> dict[str, Any]:
        return {}

    async def terminate(
        self,
        proc: asyncio.subprocess.Process,
        grace_seconds: float,
    ) -> None:
        raise NotImplementedError


class _PosixGroupTerminator(_TreeTerminator):
    def spawn_kwargs(self) -> dict[str, Any]:
        return {"start_new_session": True}

    @staticmethod
    def _signal_group(proc: asyncio.subprocess.Process, sig: signal.Signals) -> bool:
        try:
            os.killpg(proc.pid, sig)
            return True
        except ProcessLookupError:
            return False
        except PermissionError:
            # The group id was recycled by someone else's process.
            logger.warning("Not permitted to signal process group %s", proc.pid)
            return False

    async def terminate(
        self,
        proc: asyncio.subprocess.Process,
        grace_seconds: float,
    ) -> None:
        # Signal the group even if the leader already exited: its
        # children may still be alive under the same group id.
        if not self._signal_group(proc, signal.SIGTERM) and proc.returncode is None:
            try:
                proc.terminate()
            except ProcessLookupError:
                return
        try:
            await asyncio.wait_for(proc.wait(), timeout=grace_seconds)
        except asyncio.TimeoutError:
            logger.warning(
                "Process %s still running %.1fs after SIGTERM; sending SIGKILL",
                proc.pid, grace_seconds,
            )
        if self._signal_group(proc, signal.SIGKILL):
            logger.debug("SIGKILL sent to process group %s", proc.pid)
        if proc.returncode is None:
            try:
                proc.kill()
            except ProcessLookupError:
                pass


class _WindowsTreeTerminator(_TreeTerminator):
    def spawn_kwargs(self) -> dict[str, Any]:
        return {"creationflags": getattr(subprocess, "CREATE_NEW_PROCESS_GROUP", 0)}

    async def terminate(
        self,
        proc: asyncio.subprocess.Process,
        grace_seconds: float,
    ) -> None:
        try:
            killer = await asyncio.create_subprocess_exec(
                "taskkill", "/PID", str(proc.pid), "/T", "/F",
                stdout=asyncio.subprocess.DEVNULL,
                stderr=asyncio.subprocess.DEVNULL,
            )
            await asyncio.wait_for(killer.wait(), timeout=max(grace_seconds, 1.0))
        except (OSError, asyncio.TimeoutError) as exc:
            logger.warning("taskkill failed for pid %s: %s", proc.pid, exc)
        if proc.returncode is None:
            try:
                proc.kill()
            except ProcessLookupError:
                pass


def _select_terminator() -> _TreeTerminator:
    if os.name == "nt":
        return _WindowsTreeTerminator()
    return _PosixGroupTerminator()


_TERMINATOR = _select_terminator()


def spawn_kwargs() -> dict[str, Any]:
    """Extra ``create_subprocess_exec`` kwargs that make the tree killable."""
    return _TERMINATOR.spawn_kwargs()


async def terminate_process_tree(
    proc: asyncio.subprocess.Process,
    *,
    grace_seconds: float = DEFAULT_GRACE_SECONDS,
) -> None:
    """Stop *proc* and every process it spawned."""
    logger.info("Terminating process tree pid=%s", proc.pid)
    await _TERMINATOR.terminate(proc, grace_seconds)
