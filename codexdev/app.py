"""codexdev command-line entry point.

    codexdev run "Add a --json flag to the export command"
    codexdev run --session <id> "Also update the README"
    codexdev run --kind review --link-to <write id> --file review.md
    codexdev sessions list --status all
    codexdev sessions sweep 48
    codexdev sessions discard <id> [<id> ...] [--force]
    codexdev hub
    codexdev health

Results are printed to stdout as JSON; logs go to stderr and to
``<data_dir>/logs/codexdev.log``.
"""
from __future__ import annotations

import argparse
import asyncio
import json
import logging
import sys
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Any

from codexdev.engine.config import SupervisorConfig
from codexdev.engine.health import collect_health
from codexdev.engine.models import SandboxMode, SessionType
from codexdev.engine.session_runner import SessionRunner
from codexdev.progress.hub import HubRole, ProgressHub

logger = logging.getLogger(__name__)


def _configure_logging(config: SupervisorConfig, verbose: bool) -> Path | None:
    root = logging.getLogger()
    root.setLevel(logging.DEBUG if verbose else getattr(logging, config.log_level, logging.INFO))
    root.handlers.clear()
    formatter = logging.Formatter(
        "%(asctime)s %(levelname)s %(name)s [pid=%(process)d] %(message)s"
    )

    stream_handler = logging.StreamHandler(sys.stderr)
    stream_handler.setFormatter(formatter)
    # stdout carries the JSON result; keep stderr quiet unless asked.
    stream_handler.setLevel(logging.DEBUG if verbose else logging.WARNING)
    root.addHandler(stream_handler)

    log_file = config.data_dir / "logs" / "codexdev.log"
    try:
        log_file.parent.mkdir(parents=True, exist_ok=True)
        file_handler = RotatingFileHandler(
            log_file, maxBytes=2_000_000, backupCount=5, encoding="utf-8"
        )
    except OSError as exc:
        logger.warning("File logging disabled (%s): %s", log_file, exc)
        return None
    file_handler.setFormatter(formatter)
    root.addHandler(file_handler)
    return log_file


def _print_json(data: Any) -> None:
    sys.stdout.write(json.dumps(data, indent=2) + "\n")
    sys.stdout.flush()


def _resolve_instruction(args: argparse.Namespace) -> str:
    """Instruction from the positional arg, --file, or stdin ("-")."""
    if args.instruction and args.file:
        raise SystemExit("error: provide either an instruction or --file, not both")
    if args.file:
        path = Path(args.file)
        if not path.is_file():
            raise SystemExit(f"error: instruction file not found: {args.file}")
        text = path.read_text(encoding="utf-8")
    elif args.instruction == "-":
        text = sys.stdin.read()
    else:
        text = args.instruction or ""
    if not text.strip():
        raise SystemExit("error: the instruction is empty")
    return text.strip()


async def _start_hub(config: SupervisorConfig) -> ProgressHub | None:
    if not config.progress_enabled:
        return None
    hub = ProgressHub(port=config.progress_port)
    role = await hub.start()
    if role is HubRole.HUB:
        print(f"codexdev: progress at {hub.url}", file=sys.stderr)
    return hub


async def _startup_sweep(runner: SessionRunner, cwd: str | None) -> None:
    hours = runner.config.session_cleanup_hours
    if hours is None:
        return
    try:
        removed = await runner.sweep(hours, cwd)
    except OSError as exc:
        logger.warning("Startup session sweep failed: %s", exc)
        return
    if removed:
        logger.info("Startup sweep removed %d session record(s)", len(removed))


# ── commands ──


async def _cmd_run(config: SupervisorConfig, args: argparse.Namespace) -> int:
    instruction = _resolve_instruction(args)
    hub = await _start_hub(config)
    runner = SessionRunner.from_config(config, hub)
    try:
        await _startup_sweep(runner, args.cwd)
        outcome = await runner.run(
            instruction,
            kind=args.kind,
            session_id=args.session,
            cwd=args.cwd,
            model=args.model,
            sandbox=args.sandbox,
            timeout=args.timeout,
            description=args.description,
            base_sha=args.base_sha,
            head_sha=args.head_sha,
            link_to=args.link_to,
        )
    finally:
        if hub is not None:
            await hub.stop()
    _print_json(outcome.to_dict())
    return 0 if outcome.success else 1


async def _cmd_sessions(config: SupervisorConfig, args: argparse.Namespace) -> int:
    runner = SessionRunner.from_config(config)
    if args.sessions_command == "list":
        records = await runner.list_sessions(cwd=args.cwd, kind=args.kind, status=args.status)
        _print_json({"sessions": [r.to_dict() for r in records]})
        return 0
    if args.sessions_command == "sweep":
        removed = await runner.sweep(args.hours, args.cwd)
        _print_json({"removed": removed})
        return 0
    if args.sessions_command == "discard":
        outcome = await runner.discard(args.session_ids, cwd=args.cwd, force=args.force)
        _print_json({
            "success": outcome.success,
            "discarded": outcome.discarded,
            "failed": outcome.failed,
        })
        return 0 if outcome.success else 1
    if args.sessions_command == "link":
        linked = await runner.link(args.session_a, args.session_b, args.cwd)
        _print_json({"success": linked})
        return 0 if linked else 1
    raise SystemExit(f"error: unknown sessions command {args.sessions_command!r}")


async def _cmd_hub(config: SupervisorConfig, args: argparse.Namespace) -> int:
    hub = ProgressHub(port=args.port or config.progress_port)
    role = await hub.start()
    if role is not HubRole.HUB:
        print(f"codexdev: port {hub.port} is already served by another instance", file=sys.stderr)
        await hub.stop()
        return 1
    print(f"codexdev: progress at {hub.url} (Ctrl+C to stop)", file=sys.stderr)
    try:
        await asyncio.Event().wait()
    except asyncio.CancelledError:
        logger.info("Progress hub shutting down")
    finally:
        await hub.stop()
    return 0


async def _cmd_health(config: SupervisorConfig, args: argparse.Namespace) -> int:
    report = await collect_health(config, cwd=args.cwd)
    _print_json(report)
    return 0 if report["ok"] else 1


_COMMANDS = {
    "run": _cmd_run,
    "sessions": _cmd_sessions,
    "hub": _cmd_hub,
    "health": _cmd_health,
}


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="codexdev",
        description="Supervise Codex CLI runs with resumable sessions and live progress",
    )
    parser.add_argument(
        "--config", metavar="PATH",
        help="YAML config file (default: $CODEX_DEV_HOME/config.yaml)",
    )
    parser.add_argument(
        "-v", "--verbose", action="store_true",
        help="Debug logging on stderr",
    )
    sub = parser.add_subparsers(dest="command", required=True)

    run = sub.add_parser("run", help="Run an instruction (new or resumed session)")
    run.add_argument(
        "instruction", nargs="?",
        help='Instruction text, or "-" to read it from stdin',
    )
    run.add_argument("--file", metavar="PATH", help="Read the instruction from a file")
    run.add_argument("--session", metavar="ID", help="Resume this session")
    run.add_argument(
        "--kind", choices=[k.value for k in SessionType], default=SessionType.WRITE.value,
        help="Session type (default: write)",
    )
    run.add_argument("--cwd", help="Working directory (default: current directory)")
    run.add_argument("--model", help="Model override")
    run.add_argument(
        "--sandbox", choices=[m.value for m in SandboxMode],
        help="Sandbox mode for new sessions",
    )
    run.add_argument(
        "--timeout", type=float, metavar="SECONDS",
        help="Timeout in seconds (0 disables)",
    )
    run.add_argument("--link-to", metavar="ID", help="Link the session to another one")
    run.add_argument("--description", help="Short label shown in the progress viewer")
    run.add_argument("--base-sha", help="Base revision recorded with the session")
    run.add_argument("--head-sha", help="Head revision recorded with the session")

    sessions = sub.add_parser("sessions", help="Inspect and clean up tracked sessions")
    sessions.add_argument("--cwd", help="Project working directory")
    sessions_sub = sessions.add_subparsers(dest="sessions_command", required=True)

    ls = sessions_sub.add_parser("list", help="List tracked sessions")
    ls.add_argument("--kind", choices=["all", *(k.value for k in SessionType)], default="all")
    ls.add_argument("--status", choices=["all", "active", "completed", "abandoned"], default="active")

    sweep = sessions_sub.add_parser("sweep", help="Forget sessions idle longer than HOURS")
    sweep.add_argument("hours", type=float, metavar="HOURS")

    discard = sessions_sub.add_parser("discard", help="Delete session files and tracking")
    discard.add_argument("session_ids", nargs="+", metavar="ID")
    discard.add_argument("--force", action="store_true", help="Discard even active sessions")

    link = sessions_sub.add_parser("link", help="Link two sessions (e.g. review <-> write)")
    link.add_argument("session_a", metavar="ID_A")
    link.add_argument("session_b", metavar="ID_B")

    hub = sub.add_parser("hub", help="Serve the progress viewer until interrupted")
    hub.add_argument("--port", type=int, help="Port (default: config progress_port)")

    health = sub.add_parser("health", help="Check the environment")
    health.add_argument("--cwd", help="Project working directory")

    return parser


def main(argv: list[str] | None = None) -> None:
    parser = build_parser()
    args = parser.parse_args(argv)

    config = SupervisorConfig.load(args.config)
    log_file = _configure_logging(config, args.verbose)
    # Warnings collected before handlers existed.
    for warning in config.warnings:
        logger.warning("Config: %s", warning)
    logger.info("codexdev %s cwd=%s log=%s", args.command, Path.cwd(), log_file or "<none>")

    try:
        code = asyncio.run(_COMMANDS[args.command](config, args))
    except KeyboardInterrupt:
        print("\nInterrupted.", file=sys.stderr)
        code = 130
    sys.exit(code)


if __name__ == "__main__":
    main()
