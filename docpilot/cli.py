"""Terminal entry point.

Usage:
    docpilot run notes/plan.md -p "Add a summary section" --write
    docpilot run notes/plan.md -p "What is missing here?" --root ~/vault
    docpilot check
    docpilot history notes/plan.md
    docpilot reset notes/plan.md
"""
from __future__ import annotations

import argparse
import asyncio
import logging
import os
import sys
from logging.handlers import RotatingFileHandler
from pathlib import Path

from rich.console import Console
from rich.markdown import Markdown
from rich.panel import Panel
from rich.table import Table
from rich.text import Text

from docpilot import __version__
from docpilot.engine.config import RunnerSettings
from docpilot.engine.environment import (
    ShellEnvironmentProvider,
    check_installation,
    detect_executable_path,
)
from docpilot.engine.errors import ConfigurationError, DocpilotError
from docpilot.engine.interpreter import Notification, NotificationKind
from docpilot.engine.models import RunRequest, RunResponse
from docpilot.engine.yaml_config import find_default_config, load_yaml_settings
from docpilot.shared.services.context_store import DocumentContextManager
from docpilot.shared.services.durable_write import atomic_write_text
from docpilot.shared.services.session_store import SessionStore

logger = logging.getLogger(__name__)

_STYLES = {
    NotificationKind.STATUS: "dim",
    NotificationKind.SESSION: "dim cyan",
    NotificationKind.ACTIVITY: "cyan",
    NotificationKind.USAGE: "dim",
    NotificationKind.RAW: "dim",
    NotificationKind.STDERR: "red",
    NotificationKind.WARNING: "yellow",
}


def _configure_logging(verbose: bool, level_name: str) -> None:
    level = logging.DEBUG if verbose else getattr(logging, level_name, logging.INFO)
    logging.basicConfig(
        level=level,
        format="%(asctime)s %(name)s %(levelname)s %(message)s",
        datefmt="%H:%M:%S",
    )
    log_file = os.getenv("DOCPILOT_LOG_FILE")
    if log_file:
        path = Path(log_file).expanduser()
        path.parent.mkdir(parents=True, exist_ok=True)
        handler = RotatingFileHandler(
            path, maxBytes=2_000_000, backupCount=5, encoding="utf-8",
        )
        handler.setFormatter(logging.Formatter(
            "%(asctime)s %(levelname)s %(name)s [pid=%(process)d] %(message)s"
        ))
        logging.getLogger().addHandler(handler)


def _load_settings(config_path: str | None) -> RunnerSettings:
    path = Path(config_path) if config_path else find_default_config()
    if path is None:
        return RunnerSettings.from_env()
    return load_yaml_settings(path)


class NotificationRenderer:
    """Prints notifications to a rich console as they arrive."""

    def __init__(self, console: Console, *, show_raw: bool = False) -> None:
        self.console = console
        self.show_raw = show_raw
        self._mid_stream = False

    def finish(self) -> None:
        if self._mid_stream:
            self.console.print()
            self._mid_stream = False

    def __call__(self, notification: Notification) -> None:
        kind = notification.kind
        if kind == NotificationKind.TEXT_DELTA:
            self.console.print(notification.text, end="", markup=False, highlight=False)
            self._mid_stream = True
            return
        if kind == NotificationKind.TEXT_FINISH:
            self.finish()
            return
        if kind == NotificationKind.RAW and not self.show_raw:
            return
        self.finish()
        if kind == NotificationKind.ASSISTANT_TEXT:
            self.console.print(Markdown(notification.text))
            return
        self.console.print(
            Text(notification.text.rstrip(), style=_STYLES.get(kind, "")),
        )


def _read_prompt(args: argparse.Namespace) -> str:
    if args.prompt_file:
        return Path(args.prompt_file).read_text(encoding="utf-8").strip()
    if args.prompt:
        return args.prompt
    if not sys.stdin.isatty():
        return sys.stdin.read().strip()
    raise ConfigurationError("Provide a request with --prompt or --prompt-file")


def _render_response(console: Console, response: RunResponse, document: Path, write: bool) -> None:
    if not response.success:
        console.print(Panel(
            Text(response.error or "Run failed"),
            title=f"[red]Failed ({response.error_kind or 'error'})",
            border_style="red",
        ))
        return
    if response.is_permission_request:
        console.print(Panel(
            "Claude is asking for approval. Re-run with --bypass-permissions "
            "to let it proceed.",
            border_style="yellow",
        ))
    if response.modified_content:
        if write:
            atomic_write_text(document, response.modified_content + "\n")
            console.print(f"[green]✓ Wrote changes to {document}")
        else:
            console.print(Panel(
                Markdown(response.modified_content),
                title="Proposed content (use --write to apply)",
                border_style="green",
            ))
    if response.token_usage is not None:
        usage = response.token_usage
        console.print(
            f"[dim]{usage.input_tokens} in / {usage.output_tokens} out "
            f"({usage.total_tokens} total) in {response.duration_seconds:.1f}s"
        )


async def _run_command(args: argparse.Namespace, settings: RunnerSettings, console: Console) -> int:
    document = Path(args.document).expanduser().resolve()
    root = Path(args.root).expanduser().resolve() if args.root else document.parent
    text = document.read_text(encoding="utf-8") if document.exists() else ""
    selection = (
        Path(args.selection_file).read_text(encoding="utf-8")
        if args.selection_file else None
    )
    request = RunRequest(
        document_text=text,
        user_prompt=_read_prompt(args),
        document_path=str(document),
        selected_text=selection,
        root_dir=str(root),
        bypass_permissions=args.bypass_permissions,
        model_override=args.model,
    )

    manager = DocumentContextManager(settings)
    manager.load_contexts(root)
    renderer = NotificationRenderer(console, show_raw=args.verbose)
    response = await manager.run(request, renderer)
    renderer.finish()

    try:
        manager.save_context(request.document_path, root)
    except DocpilotError as exc:
        logger.warning("Could not save context: %s", exc)

    _render_response(console, response, document, args.write)
    return 0 if response.success else 1


async def _check_command(settings: RunnerSettings, console: Console) -> int:
    env = ShellEnvironmentProvider().load()
    path = settings.executable_path or (
        detect_executable_path(env) if settings.auto_detect_path else None
    )
    if not path:
        console.print("[red]✗ claude executable not found")
        return 1
    result = await check_installation(path, env)
    if result.success:
        console.print(f"[green]✓ {path}: {result.version}")
        return 0
    console.print(f"[red]✗ {path}: {result.error}")
    return 1


def _history_command(args: argparse.Namespace, settings: RunnerSettings, console: Console) -> int:
    document = Path(args.document).expanduser().resolve()
    root = Path(args.root).expanduser().resolve() if args.root else document.parent
    store = SessionStore(settings.session_namespace)
    session = store.get_session_info(str(document), root)
    history = store.load_history(session.session_dir)

    console.print(f"[dim]Session: {session.session_id or '(none)'}")
    if not history:
        console.print("No conversation history.")
        return 0
    table = Table(show_header=True, header_style="bold")
    table.add_column("Time", style="dim", no_wrap=True)
    table.add_column("Role")
    table.add_column("Content")
    for entry in history:
        content = entry.content if len(entry.content) <= 200 else entry.content[:199] + "…"
        table.add_row(entry.timestamp[:19], entry.role, content)
    console.print(table)
    return 0


def _reset_command(args: argparse.Namespace, settings: RunnerSettings, console: Console) -> int:
    document = Path(args.document).expanduser().resolve()
    root = Path(args.root).expanduser().resolve() if args.root else document.parent
    store = SessionStore(settings.session_namespace)
    store.clear_session(store.session_dir(str(document), root))
    console.print(f"Session reset for {document}")
    return 0


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="docpilot",
        description="Edit or ask about a document with the claude CLI",
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    parser.add_argument(
        "--config", "-c",
        default=None,
        help="YAML config file (default: .docpilot.yaml or ~/.docpilot/config.yaml)",
    )
    parser.add_argument(
        "--verbose", "-v",
        action="store_true",
        help="Enable debug logging and show raw output lines",
    )
    sub = parser.add_subparsers(dest="command", required=True)

    run = sub.add_parser("run", help="Run a request against a document")
    run.add_argument("document", help="Document to edit or ask about")
    run.add_argument("--prompt", "-p", default=None, help="Request text")
    run.add_argument("--prompt-file", default=None, help="Read the request from a file")
    run.add_argument("--selection-file", default=None, help="Only work on this excerpt")
    run.add_argument("--root", default=None, help="Workspace root (default: document's directory)")
    run.add_argument("--model", default=None, help="Model alias override (sonnet, opus, haiku)")
    run.add_argument("--timeout", type=float, default=None, help="Run timeout in seconds (0 disables)")
    run.add_argument(
        "--bypass-permissions",
        action="store_true",
        help="Let claude use tools without asking",
    )
    run.add_argument("--write", "-w", action="store_true", help="Apply edits to the document")

    sub.add_parser("check", help="Verify the claude installation")

    for name, help_text in (
        ("history", "Show the conversation history for a document"),
        ("reset", "Forget the session and history for a document"),
    ):
        cmd = sub.add_parser(name, help=help_text)
        cmd.add_argument("document")
        cmd.add_argument("--root", default=None)

    return parser


def main(argv: list[str] | None = None) -> None:
    args = _build_parser().parse_args(argv)
    console = Console()

    try:
        settings = _load_settings(args.config)
    except ConfigurationError as exc:
        console.print(f"[red]Error: {exc}")
        sys.exit(2)
    _configure_logging(args.verbose, settings.log_level)

    if getattr(args, "timeout", None) is not None:
        settings.timeout_seconds = args.timeout
        settings.validate()

    try:
        if args.command == "run":
            code = asyncio.run(_run_command(args, settings, console))
        elif args.command == "check":
            code = asyncio.run(_check_command(settings, console))
        elif args.command == "history":
            code = _history_command(args, settings, console)
        else:
            code = _reset_command(args, settings, console)
    except KeyboardInterrupt:
        console.print("\nInterrupted.")
        sys.exit(130)
    except DocpilotError as exc:
        console.print(f"[red]Error: {exc}")
        sys.exit(1)
    sys.exit(code)


if __name__ == "__main__":
    main()
