"""Supervisor configuration.

Resolution order (later wins):
    1. dataclass defaults
    2. YAML file ($CODEX_DEV_HOME/config.yaml, or an explicit path)
    3. CODEX_DEV_* environment variables

Example YAML:
    model: gpt-5.2-codex
    sandbox: workspace-write
    timeout_seconds: 900
    progress_port: 23120
    session_cleanup_hours: 48
    tools:
      review:
        model: gpt-5.2-codex
        sandbox: read-only
      exec:
        enabled: false

Invalid values never fail startup: each one is dropped, a warning is
kept in ``config.warnings`` for the caller to log, and the default
applies.
"""
from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Any

import yaml

from .models import SandboxMode, SessionType

logger = logging.getLogger(__name__)

DEFAULT_PROGRESS_PORT = 23120
DEFAULT_TIMEOUT_SECONDS = 1800.0
_TRUTHY = {"1", "true", "yes", "on"}
_FALSY = {"0", "false", "no", "off"}


def _default_data_dir() -> Path:
    return Path(os.getenv("CODEX_DEV_HOME") or Path.home() / ".codexdev")


def _default_codex_home() -> Path:
    return Path(os.getenv("CODEX_HOME") or Path.home() / ".codex")


@dataclass
class ToolSettings:
    """Effective settings for one invocation kind (write/review/exec)."""
    enabled: bool = True
    model: str | None = None
    sandbox: SandboxMode = SandboxMode.DANGER_FULL_ACCESS
    timeout_seconds: float | None = None


@dataclass
class SupervisorConfig:
    """Resolved configuration object."""

    command: str = "codex"
    model: str | None = None
    sandbox: SandboxMode = SandboxMode.DANGER_FULL_ACCESS
    # <= 0 disables the timeout.
    timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS
    progress_port: int = DEFAULT_PROGRESS_PORT
    progress_enabled: bool = True
    # None disables the startup sweep.
    session_cleanup_hours: float | None = None
    data_dir: Path = field(default_factory=_default_data_dir)
    codex_home: Path = field(default_factory=_default_codex_home)
    log_level: str = "INFO"
    # Per-kind overrides: {"review": {"model": ..., "sandbox": ..., ...}}
    tools: dict[str, dict[str, Any]] = field(default_factory=dict)
    warnings: list[str] = field(default_factory=list, repr=False)

    # ── loading ──

    @classmethod
    def load(cls, path: str | Path | None = None) -> SupervisorConfig:
        """Build the config from defaults, an optional YAML file and the env."""
        config = cls()
        config_path = Path(path) if path else config.data_dir / "config.yaml"
        config._merge_file(config_path, explicit=path is not None)
        config._apply_env()
        logger.info(
            "SupervisorConfig: command=%s model=%s sandbox=%s timeout=%ss port=%s",
            config.command, config.model or "<tool default>", config.sandbox.value,
            config.timeout_seconds, config.progress_port,
        )
        return config

    @classmethod
    def from_env(cls) -> SupervisorConfig:
        """Defaults plus CODEX_DEV_* environment overrides only."""
        config = cls()
        config._apply_env()
        return config

    def _warn(self, message: str) -> None:
        self.warnings.append(message)

    def _merge_file(self, path: Path, *, explicit: bool) -> None:
        if not path.exists():
            if explicit:
                self._warn(f"config file not found: {path}")
            return
        try:
            data = yaml.safe_load(path.read_text(encoding="utf-8"))
        except (OSError, yaml.YAMLError) as exc:
            self._warn(f"ignoring unreadable config file {path}: {exc}")
            return
        if data is None:
            return
        if not isinstance(data, dict):
            self._warn(f"ignoring config file {path}: top level must be a mapping")
            return
        self._apply_mapping(data, source=str(path))

    def _apply_mapping(self, data: dict[str, Any], *, source: str) -> None:
        known = {f.name for f in fields(self)} - {"warnings"}
        for key, value in data.items():
            if key not in known:
                self._warn(f"{source}: unknown key '{key}'")
                continue
            self._set(key, value, source)

    def _apply_env(self) -> None:
        env_map = {
            "CODEX_DEV_COMMAND": "command",
            "CODEX_DEV_MODEL": "model",
            "CODEX_DEV_SANDBOX_MODE": "sandbox",
            "CODEX_DEV_TIMEOUT": "timeout_seconds",
            "CODEX_DEV_PROGRESS_PORT": "progress_port",
            "CODEX_DEV_PROGRESS": "progress_enabled",
            "CODEX_DEV_SESSION_CLEANUP_HOURS": "session_cleanup_hours",
            "CODEX_DEV_LOG_LEVEL": "log_level",
        }
        for env_name, key in env_map.items():
            raw = os.getenv(env_name)
            if raw:
                self._set(key, raw, env_name)

        review_model = os.getenv("CODEX_DEV_REVIEW_MODEL")
        if review_model:
            self.tools.setdefault(SessionType.REVIEW.value, {})["model"] = review_model

    # ── validation ──

    def _set(self, key: str, value: Any, source: str) -> None:
        try:
            coerced = self._coerce(key, value)
        except (TypeError, ValueError) as exc:
            self._warn(f"{source}: invalid {key}={value!r} ({exc}); using default")
            return
        setattr(self, key, coerced)

    def _coerce(self, key: str, value: Any) -> Any:
        if key in ("command", "log_level"):
            if not isinstance(value, str) or not value.strip():
                raise ValueError("expected a non-empty string")
            return value.strip().upper() if key == "log_level" else value.strip()
        if key == "model":
            if value is None:
                return None
            if not isinstance(value, str) or not value.strip():
                raise ValueError("expected a non-empty string")
            return value.strip()
        if key == "sandbox":
            return SandboxMode(value)
        if key == "timeout_seconds":
            return _positive_float(value, allow_zero=True)
        if key == "session_cleanup_hours":
            return None if value is None else _positive_float(value)
        if key == "progress_port":
            port = int(value)
            if isinstance(value, bool) or not 0 < port < 65536:
                raise ValueError("expected a port number between 1 and 65535")
            return port
        if key == "progress_enabled":
            return _as_bool(value)
        if key in ("data_dir", "codex_home"):
            if not isinstance(value, (str, Path)) or not str(value):
                raise ValueError("expected a path")
            return Path(value).expanduser()
        if key == "tools":
            return self._coerce_tools(value)
        raise ValueError(f"unsupported key {key}")

    def _coerce_tools(self, value: Any) -> dict[str, dict[str, Any]]:
        if not isinstance(value, dict):
            raise TypeError("expected a mapping of kind -> settings")
        kinds = {k.value for k in SessionType}
        tools: dict[str, dict[str, Any]] = {}
        for kind, settings in value.items():
            if kind not in kinds:
                self._warn(f"tools: unknown kind '{kind}'")
                continue
            if not isinstance(settings, dict):
                self._warn(f"tools.{kind}: expected a mapping")
                continue
            cleaned: dict[str, Any] = {}
            for name, raw in settings.items():
                try:
                    if name == "enabled":
                        cleaned[name] = _as_bool(raw)
                    elif name == "model":
                        cleaned[name] = self._coerce("model", raw)
                    elif name == "sandbox":
                        cleaned[name] = SandboxMode(raw)
                    elif name == "timeout_seconds":
                        cleaned[name] = _positive_float(raw, allow_zero=True)
                    else:
                        self._warn(f"tools.{kind}: unknown key '{name}'")
                except (TypeError, ValueError) as exc:
                    self._warn(f"tools.{kind}: invalid {name}={raw!r} ({exc})")
            tools[kind] = cleaned
        return tools

    # ── lookups ──

    def tool_settings(self, kind: SessionType | str) -> ToolSettings:
        """Per-kind override where present, else the global value."""
        key = SessionType(kind).value
        override = self.tools.get(key, {})
        return ToolSettings(
            enabled=override.get("enabled", True),
            model=override.get("model", self.model),
            sandbox=override.get("sandbox", self.sandbox),
            timeout_seconds=override.get("timeout_seconds", self.timeout_seconds),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "command": self.command,
            "model": self.model,
            "sandbox": self.sandbox.value,
            "timeout_seconds": self.timeout_seconds,
            "progress_port": self.progress_port,
            "progress_enabled": self.progress_enabled,
            "session_cleanup_hours": self.session_cleanup_hours,
            "data_dir": str(self.data_dir),
            "codex_home": str(self.codex_home),
            "log_level": self.log_level,
            "tools": {
                kind: {
                    k: (v.value if isinstance(v, SandboxMode) else v)
                    for k, v in settings.items()
                }
                for kind, settings in self.tools.items()
            },
        }


def _positive_float(value: Any, *, allow_zero: bool = False) -> float:
    if isinstance(value, bool):
        raise TypeError("expected a number")
    number = float(value)
    if number < 0 or (number == 0 and not allow_zero):
        raise ValueError("must be positive")
    return number


def _as_bool(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    lowered = str(value).strip().lower()
    if lowered in _TRUTHY:
        return True
    if lowered in _FALSY:
        return False
    raise ValueError("expected a boolean")
