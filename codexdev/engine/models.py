"""Core data models for the Codex supervisor.

Session records, progress events and invocation results. Single
source of truth to avoid circular imports between the executor,
the session store and the progress hub.
"""
from __future__ import annotations

from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable

from .errors import ErrorInfo, SessionCorruptedError


class SessionType(str, Enum):
    """What kind of invocation created a session."""
    WRITE = "write"
    REVIEW = "review"
    EXEC = "exec"


class SessionStatus(str, Enum):
    """Tracked session lifecycle. ACTIVE only while a resumption runs."""
    ACTIVE = "active"
    COMPLETED = "completed"
    ABANDONED = "abandoned"


class SandboxMode(str, Enum):
    """Permission level handed to the tool for brand-new sessions."""
    READ_ONLY = "read-only"
    WORKSPACE_WRITE = "workspace-write"
    DANGER_FULL_ACCESS = "danger-full-access"


class ProgressEventType(str, Enum):
    START = "start"
    REASONING = "reasoning"
    COMMAND = "command"
    COMMAND_RESULT = "command_result"
    FILE_CHANGE = "file_change"
    MESSAGE = "message"
    END = "end"
    ERROR = "error"


TERMINAL_EVENT_TYPES = frozenset({ProgressEventType.END.value, ProgressEventType.ERROR.value})

# Callback receiving each complete stdout line of a running invocation.
LineCallback = Callable[[str], None]


def utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def parse_iso(value: str) -> datetime:
    """Parse an ISO-8601 timestamp, treating naive values as UTC."""
    if value.endswith("Z"):
        value = value[:-1] + "+00:00"
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


# ── Sessions ──

# On-disk key for each SessionRecord attribute.
_RECORD_KEYS = {
    "session_id": "sessionId",
    "type": "type",
    "instruction": "instruction",
    "base_sha": "baseSha",
    "head_sha": "headSha",
    "created_at": "createdAt",
    "last_resumed_at": "lastResumedAt",
    "linked_session_id": "linkedSessionId",
    "status": "status",
}


@dataclass
class SessionRecord:
    """Tracking metadata for one resumable tool session."""
    session_id: str
    type: SessionType
    status: SessionStatus
    created_at: str = field(default_factory=utc_now_iso)
    instruction: str | None = None
    base_sha: str | None = None
    head_sha: str | None = None
    last_resumed_at: str | None = None
    linked_session_id: str | None = None

    @property
    def last_activity(self) -> str:
        return self.last_resumed_at or self.created_at

    def to_dict(self) -> dict[str, Any]:
        d: dict[str, Any] = {}
        for attr, key in _RECORD_KEYS.items():
            value = getattr(self, attr)
            if value is None:
                continue
            d[key] = value.value if isinstance(value, Enum) else value
        return d

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> SessionRecord:
        """Build a record from its on-disk form.

        Raises SessionCorruptedError for records missing required
        fields or carrying unknown enum values.
        """
        try:
            kwargs = {
                attr: data[key]
                for attr, key in _RECORD_KEYS.items()
                if data.get(key) is not None
            }
            kwargs["type"] = SessionType(kwargs["type"])
            kwargs["status"] = SessionStatus(kwargs["status"])
            return cls(**kwargs)
        except (KeyError, ValueError, TypeError, AttributeError) as exc:
            raise SessionCorruptedError(f"Invalid session record: {exc!r}") from exc


# ── Progress ──


@dataclass
class ProgressEvent:
    """One entry of the live progress feed, correlated by operation_id."""
    operation_id: str
    type: str
    content: str
    timestamp: str = field(default_factory=utc_now_iso)

    def __post_init__(self) -> None:
        if isinstance(self.type, Enum):
            self.type = self.type.value

    @property
    def is_terminal(self) -> bool:
        return self.type in TERMINAL_EVENT_TYPES

    def to_dict(self) -> dict[str, str]:
        return {
            "timestamp": self.timestamp,
            "operationId": self.operation_id,
            "type": self.type,
            "content": self.content,
        }

    @classmethod
    def from_dict(cls, data: Any) -> ProgressEvent | None:
        """Validate a wire payload. Returns None unless all four fields are strings."""
        if not isinstance(data, dict):
            return None
        fields = ("timestamp", "operationId", "type", "content")
        if not all(isinstance(data.get(name), str) for name in fields):
            return None
        return cls(
            operation_id=data["operationId"],
            type=data["type"],
            content=data["content"],
            timestamp=data["timestamp"],
        )


# ── Invocations ──


@dataclass
class RunOptions:
    """Per-invocation knobs for the executor.

    timeout_seconds <= 0 disables the timeout; None means "use the
    executor's configured default".
    """
    cwd: str | None = None
    model: str | None = None
    sandbox: SandboxMode | None = None
    timeout_seconds: float | None = None
    on_line: LineCallback | None = None
    cancel_event: Any = None  # asyncio.Event
    config_overrides: list[str] = field(default_factory=list)


@dataclass
class ExecuteResult:
    """Raw outcome of one process run."""
    stdout: str
    stderr: str
    exit_code: int | None


@dataclass
class ParsedOutput:
    """Structured view of a complete stdout transcript."""
    session_id: str = ""
    summary: str = ""
    files_created: list[str] = field(default_factory=list)
    files_modified: list[str] = field(default_factory=list)
    agent_messages: list[str] = field(default_factory=list)
    raw_events: list[dict[str, Any]] = field(default_factory=list)


@dataclass
class InvocationResult:
    """What the executor hands back once the process has exited."""
    session_id: str
    parsed: ParsedOutput
    exit_code: int | None
    stderr: str = ""

    @property
    def success(self) -> bool:
        return self.exit_code == 0

    @property
    def summary(self) -> str:
        return self.parsed.summary

    @property
    def files_created(self) -> list[str]:
        return self.parsed.files_created

    @property
    def files_modified(self) -> list[str]:
        return self.parsed.files_modified


@dataclass
class RunOutcome:
    """Caller-facing result of a supervised run.

    success=False always carries a populated error.
    """
    success: bool
    session_id: str
    operation_id: str
    status: str = "completed"  # "completed", "needs_review", "error"
    summary: str = ""
    files_created: list[str] = field(default_factory=list)
    files_modified: list[str] = field(default_factory=list)
    error: ErrorInfo | None = None

    def to_dict(self) -> dict[str, Any]:
        d = asdict(self)
        d["error"] = self.error.to_dict() if self.error else None
        return d


@dataclass
class DiscardOutcome:
    success: bool = True
    discarded: list[str] = field(default_factory=list)
    failed: list[dict[str, str]] = field(default_factory=list)
