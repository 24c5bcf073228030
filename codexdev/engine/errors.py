"""Exception hierarchy for the Codex supervisor.

One exception per failure kind. Each carries an ErrorInfo so callers
that turn failures into results (see SessionRunner) can report a kind,
a message, a recoverability flag and an optional suggestion without
inspecting exception types.
"""
from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Any


class CodexErrorCode(str, Enum):
    CODEX_NOT_FOUND = "CODEX_NOT_FOUND"
    CODEX_EXECUTION_FAILED = "CODEX_EXECUTION_FAILED"
    CODEX_TIMEOUT = "CODEX_TIMEOUT"
    CODEX_CANCELED = "CODEX_CANCELED"
    CODEX_INVALID_OUTPUT = "CODEX_INVALID_OUTPUT"
    SESSION_NOT_FOUND = "SESSION_NOT_FOUND"
    SESSION_CORRUPTED = "SESSION_CORRUPTED"
    CONFIG_INVALID = "CONFIG_INVALID"
    UNKNOWN_ERROR = "UNKNOWN_ERROR"


@dataclass
class ErrorInfo:
    """Structured, serializable description of a failure."""
    code: CodexErrorCode
    message: str
    recoverable: bool = False
    suggestion: str | None = None

    def to_dict(self) -> dict[str, Any]:
        d: dict[str, Any] = {
            "code": self.code.value,
            "message": self.message,
            "recoverable": self.recoverable,
        }
        if self.suggestion:
            d["suggestion"] = self.suggestion
        return d

    @classmethod
    def from_exception(cls, exc: BaseException) -> ErrorInfo:
        if isinstance(exc, CodexError):
            return exc.info
        return cls(
            code=CodexErrorCode.UNKNOWN_ERROR,
            message=str(exc) or type(exc).__name__,
        )


class CodexError(Exception):
    """Base exception for all supervisor errors."""

    code = CodexErrorCode.UNKNOWN_ERROR
    default_message = "Unknown error"
    recoverable = False
    suggestion: str | None = None

    def __init__(
        self,
        message: str | None = None,
        *,
        suggestion: str | None = None,
    ) -> None:
        self.info = ErrorInfo(
            code=self.code,
            message=message or self.default_message,
            recoverable=self.recoverable,
            suggestion=suggestion or self.suggestion,
        )
        super().__init__(self.info.message)


class CodexNotFoundError(CodexError):
    """The external tool is not installed or not on PATH."""
    code = CodexErrorCode.CODEX_NOT_FOUND
    default_message = "Codex CLI not found. Please install it first."
    suggestion = (
        "Install the Codex CLI (npm install -g @openai/codex) "
        "and make sure it is on PATH"
    )

    def __init__(self, command: str) -> None:
        self.command = command
        super().__init__(
            f"Codex CLI not found: '{command}' is not an executable on PATH"
        )


class ExecutionFailedError(CodexError):
    """The process could not be spawned or crashed abnormally."""
    code = CodexErrorCode.CODEX_EXECUTION_FAILED
    default_message = "Codex execution failed"
    recoverable = True


class ExecutionTimeoutError(CodexError):
    """The process outlived its time budget and was terminated."""
    code = CodexErrorCode.CODEX_TIMEOUT
    default_message = "Codex execution timed out"
    recoverable = True
    suggestion = "Try increasing the timeout or simplifying the instruction"

    def __init__(self, timeout_seconds: float) -> None:
        self.timeout_seconds = timeout_seconds
        super().__init__(f"Execution timed out after {timeout_seconds:g}s")


class ExecutionCanceledError(CodexError):
    """The caller canceled the run; the process was terminated."""
    code = CodexErrorCode.CODEX_CANCELED
    default_message = "Operation was canceled"


class InvalidOutputError(CodexError):
    """The process exited but its output lacks a required session id."""
    code = CodexErrorCode.CODEX_INVALID_OUTPUT
    default_message = "Failed to parse Codex output"


class SessionNotFoundError(CodexError):
    code = CodexErrorCode.SESSION_NOT_FOUND
    default_message = "Session not found"

    def __init__(self, session_id: str) -> None:
        self.session_id = session_id
        super().__init__(f"Session not found: {session_id}")


class SessionCorruptedError(CodexError):
    code = CodexErrorCode.SESSION_CORRUPTED
    default_message = "Session data corrupted"


class ConfigInvalidError(CodexError):
    code = CodexErrorCode.CONFIG_INVALID
    default_message = "Invalid configuration"
