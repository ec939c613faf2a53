"""envision: track, diff and restore shell environment changes.

Messages, tables and prompts go to stderr. stdout carries only what the
shell hook evaluates (export/unset statements) and diff documents.
"""

from __future__ import annotations

import argparse
import logging
import sys
from collections.abc import Sequence
from logging.handlers import RotatingFileHandler
from pathlib import Path

import yaml
from rich.console import Console
from rich.prompt import Confirm
from rich.table import Table
from rich.text import Text

from envision.engine.config import EnvisionConfig
from envision.engine.environment import ShellEnvironment
from envision.engine.errors import (
    EXIT_STORAGE_CORRUPT,
    EXIT_USAGE,
    EnvisionError,
    OperationCancelledError,
)
from envision.engine.models import LoadStatus
from envision.engine.profiles import Profile
from envision.engine.restore import ClearPlan
from envision.engine.service import EnvisionService
from envision.engine.yaml_config import ConfigError, resolve_config
from envision.shared.formatters.diff import escape_value, render_csv, render_human, render_json
from envision.shared.models.session import SessionScope
from envision.shared.services.persistence import SessionStore, default_data_dir

logger = logging.getLogger(__name__)

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s [pid=%(process)d] %(message)s"


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="envision",
        description="Track how this shell's environment diverges from its baseline",
    )
    parser.add_argument(
        "--config", metavar="PATH",
        help="YAML config file (default: $XDG_CONFIG_HOME/envision/config.yaml)",
    )
    parser.add_argument(
        "--no-color", action="store_true",
        help="Disable colored output",
    )
    parser.add_argument(
        "--verbose", "-v", action="store_true",
        help="Also log to stderr",
    )
    commands = parser.add_subparsers(dest="command", metavar="COMMAND")
    commands.required = True

    def _add_init_flags(p: argparse.ArgumentParser) -> None:
        group = p.add_mutually_exclusive_group()
        group.add_argument(
            "--force", action="store_true",
            help="Discard the existing session and capture a new baseline",
        )
        group.add_argument(
            "--resume", action="store_true",
            help="Keep the existing session",
        )

    session = commands.add_parser("session", help="Session management")
    session_commands = session.add_subparsers(dest="session_command", metavar="ACTION")
    session_commands.required = True
    session_init = session_commands.add_parser("init", help="Capture the baseline")
    _add_init_flags(session_init)

    init = commands.add_parser("init", help="Alias for 'session init'")
    _add_init_flags(init)

    commands.add_parser("status", help="Summarize tracked and untracked changes")

    set_cmd = commands.add_parser("set", help="Set a variable and track it")
    set_cmd.add_argument("name")
    set_cmd.add_argument("value")

    unset_cmd = commands.add_parser("unset", help="Unset a variable and track it")
    unset_cmd.add_argument("name")

    clear = commands.add_parser("clear", help="Restore tracked variables to baseline")
    clear.add_argument(
        "--force", action="store_true",
        help="Skip the confirmation prompt",
    )

    diff = commands.add_parser("diff", help="Show differences from the baseline")
    which = diff.add_mutually_exclusive_group()
    which.add_argument("--tracked", action="store_true", help="Only tracked variables")
    which.add_argument("--untracked", action="store_true", help="Only untracked changes")
    diff.add_argument("--pattern", metavar="GLOB", help="Only names matching GLOB")
    diff.add_argument(
        "--all", dest="show_all", action="store_true",
        help="Include unchanged variables",
    )
    diff.add_argument(
        "--format", choices=("human", "json", "csv"), default="human",
        help="Output format (default: human)",
    )

    profile = commands.add_parser("profile", help="Apply a profile script")
    profile.add_argument("path")
    profile.add_argument(
        "--dry-run", action="store_true",
        help="Show what would change without applying it",
    )
    profile.add_argument(
        "--yes", "-y", action="store_true",
        help="Skip the confirmation prompt",
    )

    commands.add_parser("snapshots", help="List auto-snapshots, newest first")
    return parser


def _configure_logging(data_dir: Path, level: str, verbose: bool) -> Path | None:
    root = logging.getLogger()
    root.setLevel(getattr(logging, level.upper(), logging.INFO))
    root.handlers.clear()
    formatter = logging.Formatter(LOG_FORMAT)

    log_file: Path | None = data_dir / "logs" / "envision.log"
    try:
        log_file.parent.mkdir(parents=True, exist_ok=True)
        file_handler = RotatingFileHandler(
            log_file, maxBytes=2_000_000, backupCount=5, encoding="utf-8"
        )
    except OSError:
        log_file = None
    else:
        file_handler.setFormatter(formatter)
        root.addHandler(file_handler)

    if verbose:
        stream_handler = logging.StreamHandler(sys.stderr)
        stream_handler.setFormatter(formatter)
        root.addHandler(stream_handler)
    if not root.handlers:
        root.addHandler(logging.NullHandler())
    return log_file


def _write_stdout(text: str) -> None:
    """Write to stdout keeping surrogate-escaped bytes intact."""
    if not text:
        return
    sys.stdout.flush()
    sys.stdout.buffer.write(text.encode("utf-8", errors="surrogateescape"))
    sys.stdout.buffer.flush()


def _confirm(console: Console, question: str, operation: str, flag: str) -> bool:
    if not sys.stdin.isatty():
        raise OperationCancelledError(
            operation,
            f"needs confirmation but stdin is not a terminal. Use {flag} to skip.",
        )
    return Confirm.ask(question, console=console, default=False)


def _warn(console: Console, messages: Sequence[str]) -> None:
    for message in messages:
        console.print(Text(f"Warning: {message}", style="yellow"))


def _kv(console: Console, rows: Sequence[tuple[str, str]]) -> None:
    grid = Table.grid(padding=(0, 2))
    grid.add_column(style="bold")
    grid.add_column()
    for key, value in rows:
        grid.add_row(key, value)
    console.print(grid)


# ── Commands ────────────────────────────────────────────────


def _cmd_init(args, service: EnvisionService, console: Console) -> int:
    result = service.init(force=args.force, resume=args.resume)
    _warn(console, result.warnings)
    session = result.session
    if result.outcome == "resumed":
        console.print(Text("Session resumed", style="green"))
    else:
        console.print(Text("Session initialized", style="green"))
    rows = [
        ("Session", session.session_id),
        ("Baseline", session.created_at.strftime("%Y-%m-%d %H:%M:%S UTC")),
        ("Storage", str(result.path)),
    ]
    if result.outcome != "resumed":
        rows.append(("Captured", f"{result.captured} variables"))
    _kv(console, rows)
    return 0


def _cmd_status(args, service: EnvisionService, console: Console) -> int:
    report = service.status()
    if report.storage_status is LoadStatus.CORRUPT:
        console.print(Text(
            f"Session data corrupted ({report.path}): {report.error}", style="red",
        ))
        console.print("Run 'envision session init --force' to start over.")
        return report.exit_code
    session = report.session
    if report.summary is None:
        console.print(Text(f"Error: {report.error}", style="red"))
        return EXIT_STORAGE_CORRUPT
    summary = report.summary
    rows = [
        ("Session", session.session_id),
        ("Baseline", session.created_at.strftime("%Y-%m-%d %H:%M:%S UTC")),
        ("Tracked changes", str(summary.tracked)),
        ("Untracked changes", str(summary.untracked)),
        ("Drifted", str(summary.drifted)),
        ("Total changed", str(summary.tracked + summary.untracked)),
    ]
    if session.active_profile:
        rows.append(("Profile", session.active_profile))
    _kv(console, rows)
    if report.dirty:
        console.print(Text("State: dirty", style="yellow"))
    else:
        console.print(Text("State: clean", style="green"))
    return report.exit_code


def _cmd_set(args, service: EnvisionService, console: Console) -> int:
    result = service.set(args.name, args.value)
    _warn(console, result.warnings)
    _write_stdout(service.env.render_statements())
    if result.already_set:
        console.print(Text(f"{result.name} already set", style="green"))
    else:
        console.print(Text(
            f"Set {result.name}={escape_value(result.value)}", style="green",
        ))
    if result.previous_value is not None and not result.already_set:
        kind = f" (was {result.overwrite.value})" if result.overwrite else ""
        _kv(console, [("Previous", escape_value(result.previous_value) + kind)])
    return 0


def _cmd_unset(args, service: EnvisionService, console: Console) -> int:
    result = service.unset(args.name)
    _warn(console, result.warnings)
    _write_stdout(service.env.render_statements())
    if result.was_set:
        console.print(Text(
            f"Unset {result.name} (was: {escape_value(result.previous_value)})",
            style="green",
        ))
        _kv(console, [("Was", result.removed.value)])
    return 0


def _print_plan(console: Console, plan: ClearPlan) -> None:
    console.print(f"{len(plan.steps)} tracked change(s) to clear:")
    for step in plan.removals:
        console.print(Text(f"  unset {step.name}", style="red"))
    for step in plan.restorations:
        console.print(Text(
            f"  restore {step.name}={escape_value(step.target or '')}", style="green",
        ))
    for step in plan.unchanged:
        console.print(Text(f"  keep {step.name} (already at baseline)", style="dim"))


def _cmd_clear(args, service: EnvisionService, console: Console) -> int:
    def _ask(plan: ClearPlan) -> bool:
        _print_plan(console, plan)
        return _confirm(console, "Clear all tracked changes?", "clear", "--force")

    if args.force:
        plan = service.preview_clear()
        if not plan.empty:
            _print_plan(console, plan)
    report = service.clear(force=args.force, confirm=_ask)
    _write_stdout(service.env.render_statements())
    if report.nothing_to_clear:
        console.print(Text("Nothing to clear", style="green"))
        return 0
    rows = []
    if report.removed:
        rows.append(("Removed", str(report.removed)))
    if report.restored:
        rows.append(("Restored", str(report.restored)))
    if rows:
        _kv(console, rows)
    report.raise_for_failures()
    console.print(Text("State: clean", style="green"))
    return 0


def _cmd_diff(args, service: EnvisionService, console: Console, color: bool) -> int:
    report = service.diff(
        tracked=args.tracked,
        untracked=args.untracked,
        pattern=args.pattern,
        show_all=args.show_all,
    )
    if report.storage_status is LoadStatus.CORRUPT:
        console.print(Text(
            f"Session data corrupted ({report.path}): {report.error}", style="red",
        ))
        return EXIT_STORAGE_CORRUPT
    if args.format == "json":
        _write_stdout(render_json(report.entries, report.summary, report.unchanged))
    elif args.format == "csv":
        _write_stdout(render_csv(report.entries))
    else:
        out = Console(no_color=not color, highlight=False, soft_wrap=True)
        out.print(render_human(report.entries, report.unchanged), end="")
    return 0


def _cmd_profile(args, service: EnvisionService, console: Console) -> int:
    def _ask(profile: Profile) -> bool:
        console.print(Text(f"Loading profile: {profile.path}", style="yellow"))
        return _confirm(console, "Continue?", "profile loading", "--yes")

    result = service.load_profile(
        args.path, dry_run=args.dry_run, assume_yes=args.yes, confirm=_ask,
    )
    profile = result.profile
    if result.session_created:
        console.print("No active session; created one for this shell")
    _warn(console, result.warnings)

    if result.dry_run:
        console.print(f"Dry run for profile '{profile.name}':")
        if not profile.assignments:
            console.print("  (no changes)")
        for name, value in profile.assignments.items():
            if value is None:
                console.print(Text(f"  unset {name}", style="red"))
            else:
                console.print(Text(f"  set {name}={escape_value(value)}", style="green"))
        return 0

    _write_stdout(service.env.render_statements())
    for failure in result.failures:
        console.print(Text(f"Failed: {failure.name}: {failure.reason}", style="red"))
    if not result.ok:
        console.print(Text(
            f"Profile '{profile.name}' partially applied "
            f"({len(result.failures)} failure(s))",
            style="red",
        ))
        return 1
    console.print(Text(f"Profile '{profile.name}' loaded", style="green"))
    _kv(console, [("Variables changed", str(result.changed))])
    return 0


def _cmd_snapshots(args, service: EnvisionService, console: Console) -> int:
    snapshots = service.snapshots()
    if not snapshots:
        console.print("No auto-snapshots.")
        return 0
    table = Table(title="Auto-snapshots")
    table.add_column("Name", style="bold")
    table.add_column("Created")
    table.add_column("Reason")
    table.add_column("Records", justify="right")
    table.add_column("Profile")
    for snap in snapshots:
        table.add_row(
            snap.name,
            snap.created_at.strftime("%Y-%m-%d %H:%M:%S"),
            snap.reason,
            str(len(snap.changes)),
            snap.active_profile or "",
        )
    console.print(table)
    return 0


def main(argv: Sequence[str] | None = None) -> int:
    parser = _build_parser()
    args = parser.parse_args(argv)

    try:
        config: EnvisionConfig = resolve_config(args.config)
    except (OSError, yaml.YAMLError, ConfigError) as exc:
        Console(stderr=True, highlight=False).print(
            Text(f"Error: invalid configuration: {exc}", style="red"),
        )
        return EXIT_USAGE
    color = config.color and not args.no_color
    console = Console(stderr=True, no_color=not color, highlight=False)

    data_dir = Path(config.data_dir) if config.data_dir else default_data_dir()
    log_file = _configure_logging(data_dir, config.log_level, args.verbose)
    logger.debug("envision %s (log=%s)", args.command, log_file or "<none>")

    scope = SessionScope.from_environment()
    store = SessionStore(data_dir, scope)
    env = ShellEnvironment(readonly=config.readonly_variables)
    service = EnvisionService(config, store, env, cwd=Path.cwd())

    handlers = {
        "session": _cmd_init,
        "init": _cmd_init,
        "status": _cmd_status,
        "set": _cmd_set,
        "unset": _cmd_unset,
        "clear": _cmd_clear,
        "profile": _cmd_profile,
        "snapshots": _cmd_snapshots,
    }
    try:
        if args.command == "diff":
            return _cmd_diff(args, service, console, color)
        return handlers[args.command](args, service, console)
    except EnvisionError as exc:
        logger.info("%s failed: %s", args.command, exc)
        console.print(Text(f"Error: {exc}", style="red"))
        return exc.exit_code
    except KeyboardInterrupt:
        console.print(Text("Interrupted", style="red"))
        return 130


if __name__ == "__main__":
    sys.exit(main())
