"""Codex CLI process orchestration.

Runs ``codex exec`` as a child process, one process per invocation:

    new:     codex exec - --json [--model M] --sandbox S [-c key=value ...]
    resumed: codex exec resume <session id> - --json [--model M]

The instruction always travels over stdin (the trailing ``-``), never
on the command line, and no shell is involved. stdout is read line by
line as it arrives so callers can relay live progress; once the process
exits the whole transcript is parsed again into an InvocationResult.
"""
from __future__ import annotations

import asyncio
import json
import logging
import shutil
import time
from typing import Any, Sequence

from codexdev.shared.services.process_cleanup import (
    spawn_kwargs,
    terminate_process_tree,
)

from .errors import (
    CodexNotFoundError,
    ExecutionCanceledError,
    ExecutionFailedError,
    ExecutionTimeoutError,
    InvalidOutputError,
)
from .models import (
    ExecuteResult,
    InvocationResult,
    LineCallback,
    ParsedOutput,
    RunOptions,
    SandboxMode,
)

logger = logging.getLogger(__name__)

SUMMARY_MAX_CHARS = 500
_ITEM_EVENTS = ("item.completed", "item.created")
# How long to wait for pipes to drain after the tree has been killed.
_REAP_TIMEOUT_SECONDS = 5.0
VERSION_TIMEOUT_SECONDS = 10.0


async def _read_line_unbounded(stream: asyncio.StreamReader) -> bytes:
    """Read one full line from *stream* with no size limit.

    ``StreamReader.readline()`` raises once a line exceeds the reader's
    64 KiB buffer, and a single ``--json`` event (a command result
    holding a large listing) can easily be bigger. Returns b"" at EOF.
    """
    chunks: list[bytes] = []
    while True:
        try:
            chunks.append(await stream.readuntil(b"\n"))
            return b"".join(chunks)
        except asyncio.LimitOverrunError as exc:
            chunks.append(await stream.read(exc.consumed))
        except asyncio.IncompleteReadError as exc:
            chunks.append(exc.partial)
            return b"".join(chunks)


def parse_output(stdout: str) -> ParsedOutput:
    """Build the structured result from a complete ``--json`` transcript.

    Non-JSON lines are skipped. The session id comes from the first
    ``thread.started`` event; file and message lists keep the order in
    which events appeared (duplicates included).
    """
    events: list[dict[str, Any]] = []
    for line in stdout.splitlines():
        if not line.strip():
            continue
        try:
            event = json.loads(line)
        except (ValueError, RecursionError):
            continue
        if isinstance(event, dict):
            events.append(event)

    parsed = ParsedOutput(raw_events=events)

    for event in events:
        if event.get("type") == "thread.started":
            started_id = event.get("session_id") or event.get("thread_id")
            if isinstance(started_id, str) and started_id:
                parsed.session_id = started_id
            break

    for event in events:
        if event.get("type") not in _ITEM_EVENTS:
            continue
        item = event.get("item")
        if not isinstance(item, dict):
            continue
        _collect_file_changes(item, parsed)
        _collect_messages(item, parsed)

    if parsed.agent_messages:
        parsed.summary = parsed.agent_messages[-1][:SUMMARY_MAX_CHARS]
    elif parsed.files_created or parsed.files_modified:
        parts = []
        if parsed.files_created:
            parts.append("Created: " + ", ".join(parsed.files_created))
        if parsed.files_modified:
            parts.append("Modified: " + ", ".join(parsed.files_modified))
        parsed.summary = ". ".join(parts)[:SUMMARY_MAX_CHARS]
    return parsed


def _collect_file_changes(item: dict[str, Any], parsed: ParsedOutput) -> None:
    if item.get("type") != "file_change":
        return
    changes = item.get("changes")
    if isinstance(changes, list):
        for change in changes:
            if not isinstance(change, dict) or not isinstance(change.get("path"), str):
                continue
            if change.get("kind") == "add":
                parsed.files_created.append(change["path"])
            else:
                parsed.files_modified.append(change["path"])
        return
    # Older tool versions: one filename + action per item.
    filename = item.get("filename")
    if isinstance(filename, str) and filename:
        if item.get("action") == "created":
            parsed.files_created.append(filename)
        elif item.get("action") == "modified":
            parsed.files_modified.append(filename)


def _collect_messages(item: dict[str, Any], parsed: ParsedOutput) -> None:
    if item.get("type") == "agent_message":
        text = item.get("text")
        if isinstance(text, str) and text:
            parsed.agent_messages.append(text)
        return
    if item.get("role") == "assistant" and isinstance(item.get("content"), list):
        for block in item["content"]:
            if (
                isinstance(block, dict)
                and block.get("type") == "text"
                and isinstance(block.get("text"), str)
                and block["text"]
            ):
                parsed.agent_messages.append(block["text"])


class CodexExecutor:
    """Spawns and supervises ``codex exec`` processes.

    ``command`` is either an executable name looked up on PATH or a
    full argv prefix (e.g. ``[sys.executable, "fake_codex.py"]``).
    """

    def __init__(
        self,
        command: str | Sequence[str] = "codex",
        *,
        default_timeout: float | None = None,
        default_model: str | None = None,
        default_sandbox: SandboxMode = SandboxMode.DANGER_FULL_ACCESS,
    ) -> None:
        argv = [command] if isinstance(command, str) else list(command)
        if not argv or not argv[0]:
            raise ValueError("command must name an executable")
        self._argv = argv
        self.default_timeout = default_timeout
        self.default_model = default_model
        self.default_sandbox = SandboxMode(default_sandbox)

    @property
    def command(self) -> list[str]:
        return list(self._argv)

    def resolve_executable(self) -> str | None:
        return shutil.which(self._argv[0])

    def check_installed(self) -> str:
        """Return the resolved executable path or raise CodexNotFoundError."""
        resolved = self.resolve_executable()
        if resolved is None:
            raise CodexNotFoundError(self._argv[0])
        return resolved

    async def get_version(self) -> str | None:
        """``codex --version`` output, or None when it cannot be run."""
        executable = self.resolve_executable()
        if executable is None:
            return None
        try:
            proc = await asyncio.create_subprocess_exec(
                executable, *self._argv[1:], "--version",
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.DEVNULL,
            )
        except OSError as exc:
            logger.debug("codex --version failed: %s", exc)
            return None
        try:
            stdout, _ = await asyncio.wait_for(proc.communicate(), timeout=VERSION_TIMEOUT_SECONDS)
        except asyncio.TimeoutError:
            logger.debug("codex --version timed out after %.1fs", VERSION_TIMEOUT_SECONDS)
            try:
                proc.kill()
            except ProcessLookupError:
                pass
            await proc.wait()
            return None
        if proc.returncode != 0:
            return None
        return stdout.decode("utf-8", errors="replace").strip() or None

    # ── argument building ──

    def build_args(
        self,
        *,
        session_id: str | None = None,
        model: str | None = None,
        sandbox: SandboxMode | None = None,
        config_overrides: Sequence[str] = (),
    ) -> list[str]:
        """Arguments after the executable. The instruction goes to stdin."""
        if session_id:
            args = ["exec", "resume", session_id, "-"]
        else:
            args = ["exec", "-"]
        args.append("--json")

        model = model or self.default_model
        if model:
            args.extend(["--model", model])

        # The tool rejects --sandbox and -c overrides on resume.
        if not session_id:
            args.extend(["--sandbox", SandboxMode(sandbox or self.default_sandbox).value])
            for override in config_overrides:
                args.extend(["-c", override])
        return args

    # ── public API ──

    async def run_new(
        self,
        instruction: str,
        options: RunOptions | None = None,
    ) -> InvocationResult:
        """Start a brand-new session.

        Raises InvalidOutputError if the tool never reports a session id.
        """
        options = options or RunOptions()
        self.check_installed()
        args = self.build_args(
            model=options.model,
            sandbox=options.sandbox,
            config_overrides=options.config_overrides,
        )
        raw = await self._spawn(args, instruction, options)
        parsed = parse_output(raw.stdout)
        if not parsed.session_id:
            detail = raw.stderr.strip()[-500:]
            raise InvalidOutputError(
                "Codex output did not include a session id"
                + (f": {detail}" if detail else "")
            )
        return InvocationResult(
            session_id=parsed.session_id,
            parsed=parsed,
            exit_code=raw.exit_code,
            stderr=raw.stderr,
        )

    async def run_resumed(
        self,
        session_id: str,
        instruction: str,
        options: RunOptions | None = None,
    ) -> InvocationResult:
        """Continue an existing session. Sandbox settings are not re-sent."""
        options = options or RunOptions()
        self.check_installed()
        args = self.build_args(session_id=session_id, model=options.model)
        raw = await self._spawn(args, instruction, options)
        parsed = parse_output(raw.stdout)
        if not parsed.session_id:
            logger.debug(
                "Resumed run reported no session id; keeping %s", session_id,
            )
        return InvocationResult(
            session_id=parsed.session_id or session_id,
            parsed=parsed,
            exit_code=raw.exit_code,
            stderr=raw.stderr,
        )

    # ── process lifecycle ──

    async def _spawn(
        self,
        args: list[str],
        stdin_content: str,
        options: RunOptions,
    ) -> ExecuteResult:
        cancel_event: asyncio.Event | None = options.cancel_event
        if cancel_event is not None and cancel_event.is_set():
            raise ExecutionCanceledError("Operation was canceled before execution started")

        timeout = options.timeout_seconds
        if timeout is None:
            timeout = self.default_timeout
        effective_timeout = timeout if timeout and timeout > 0 else None

        argv = [*self._argv, *args]
        try:
            proc = await asyncio.create_subprocess_exec(
                *argv,
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                cwd=options.cwd,
                **spawn_kwargs(),
            )
        except FileNotFoundError as exc:
            raise CodexNotFoundError(self._argv[0]) from exc
        except OSError as exc:
            raise ExecutionFailedError(f"Failed to start Codex: {exc}") from exc

        started = time.monotonic()
        logger.info(
            "Codex started pid=%s args=%s cwd=%s timeout=%s",
            proc.pid, " ".join(args), options.cwd or ".", effective_timeout,
        )

        stdout_chunks: list[bytes] = []
        waiter = asyncio.ensure_future(asyncio.gather(
            self._feed_stdin(proc, stdin_content),
            self._pump_stdout(proc.stdout, stdout_chunks, options.on_line),
            proc.stderr.read(),
            proc.wait(),
        ))
        cancel_wait = (
            asyncio.ensure_future(cancel_event.wait())
            if cancel_event is not None else None
        )
        pending = {waiter} if cancel_wait is None else {waiter, cancel_wait}

        try:
            done, _ = await asyncio.wait(
                pending,
                timeout=effective_timeout,
                return_when=asyncio.FIRST_COMPLETED,
            )
        except asyncio.CancelledError:
            await self._abort(proc, waiter)
            raise
        finally:
            if cancel_wait is not None:
                cancel_wait.cancel()

        if waiter not in done:
            await self._abort(proc, waiter)
            if cancel_wait is not None and cancel_wait in done:
                logger.info("Codex pid=%s canceled by caller", proc.pid)
                raise ExecutionCanceledError()
            logger.warning("Codex pid=%s timed out after %ss", proc.pid, effective_timeout)
            raise ExecutionTimeoutError(effective_timeout)

        _, _, stderr_bytes, exit_code = waiter.result()
        stdout = b"".join(stdout_chunks).decode("utf-8", errors="replace")
        stderr = stderr_bytes.decode("utf-8", errors="replace")
        logger.info(
            "Codex exited pid=%s code=%s duration=%.1fs stdout=%dB stderr=%dB",
            proc.pid, exit_code, time.monotonic() - started, len(stdout), len(stderr),
        )
        if exit_code != 0 and stderr.strip():
            logger.debug("Codex stderr (pid=%s): %s", proc.pid, stderr.strip()[-2000:])
        return ExecuteResult(stdout=stdout, stderr=stderr, exit_code=exit_code)

    @staticmethod
    async def _feed_stdin(proc: asyncio.subprocess.Process, content: str) -> None:
        assert proc.stdin is not None
        try:
            proc.stdin.write(content.encode("utf-8"))
            await proc.stdin.drain()
            proc.stdin.close()
            await proc.stdin.wait_closed()
        except (BrokenPipeError, ConnectionResetError):
            # The process exited without reading its input.
            logger.debug("Codex pid=%s closed stdin early", proc.pid)

    @staticmethod
    async def _pump_stdout(
        stream: asyncio.StreamReader,
        sink: list[bytes],
        on_line: LineCallback | None,
    ) -> None:
        while True:
            raw = await _read_line_unbounded(stream)
            if not raw:
                return
            sink.append(raw)
            if on_line is None:
                continue
            line = raw.decode("utf-8", errors="replace").rstrip("\r\n")
            if not line.strip():
                continue
            try:
                on_line(line)
            except Exception:
                # Callback errors must not interrupt stdout collection.
                logger.debug("on_line callback raised", exc_info=True)

    @staticmethod
    async def _abort(proc: asyncio.subprocess.Process, waiter: asyncio.Future) -> None:
        await terminate_process_tree(proc)
        done, _ = await asyncio.wait({waiter}, timeout=_REAP_TIMEOUT_SECONDS)
        if waiter in done:
            # Consume the result so a pipe error is not reported as unhandled.
            if not waiter.cancelled():
                waiter.exception()
        else:
            logger.warning("Codex pid=%s pipes still open after kill", proc.pid)
            waiter.cancel()
