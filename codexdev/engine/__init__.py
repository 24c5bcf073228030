"""codexdev engine: supervised Codex CLI runs with live progress."""
from .models import (
    DiscardOutcome,
    InvocationResult,
    ParsedOutput,
    ProgressEvent,
    ProgressEventType,
    RunOptions,
    RunOutcome,
    SandboxMode,
    SessionRecord,
    SessionStatus,
    SessionType,
)
from .config import SupervisorConfig, ToolSettings
from .errors import (
    CodexError,
    CodexErrorCode,
    CodexNotFoundError,
    ConfigInvalidError,
    ErrorInfo,
    ExecutionCanceledError,
    ExecutionFailedError,
    ExecutionTimeoutError,
    InvalidOutputError,
    SessionCorruptedError,
    SessionNotFoundError,
)
from .event_mapper import map_codex_line

__all__ = [
    # Runtime (lazy import to avoid circular deps with shared.services)
    "CodexExecutor",
    "SessionRunner",
    "collect_health",
    # Models
    "DiscardOutcome",
    "InvocationResult",
    "ParsedOutput",
    "ProgressEvent",
    "ProgressEventType",
    "RunOptions",
    "RunOutcome",
    "SandboxMode",
    "SessionRecord",
    "SessionStatus",
    "SessionType",
    # Config
    "SupervisorConfig",
    "ToolSettings",
    # Event mapping
    "map_codex_line",
    # Errors
    "CodexError",
    "CodexErrorCode",
    "CodexNotFoundError",
    "ConfigInvalidError",
    "ErrorInfo",
    "ExecutionCanceledError",
    "ExecutionFailedError",
    "ExecutionTimeoutError",
    "InvalidOutputError",
    "SessionCorruptedError",
    "SessionNotFoundError",
]


def __getattr__(name: str):
    if name == "CodexExecutor":
        from .executor import CodexExecutor
        return CodexExecutor
    if name == "SessionRunner":
        from .session_runner import SessionRunner
        return SessionRunner
    if name == "collect_health":
        from .health import collect_health
        return collect_health
    raise AttributeError(f"module {__name__!r} has no attribute {name!r}")
