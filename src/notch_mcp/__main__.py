"""
notch-mcp — actionable notifications for agents, shown in a notch display.

Two-process architecture:
  notch-mcp display   Long-running display process. Listens on the Unix
                      socket (~/.notch.sock), shows notifications, and
                      writes button clicks to the pending-action store.

  notch-mcp serve     MCP server on stdio, spawned by the agent. Relays
                      notifications to the display and, for actionable
                      ones, waits for the click to land in the store.

Usage:
    notch-mcp serve                     # MCP stdio server
    notch-mcp display                   # terminal display app
    notch-mcp display --headless        # log-only display (no UI)
    notch-mcp status                    # socket / store health
"""

from __future__ import annotations

import argparse
import logging
import signal
import sys
import threading

from .config import NotchConfig
from .display import ActionResolver, NotificationFeed, log_envelope
from .logging import (
    DISPLAY_LOG,
    SERVER_LOG,
    log_to_file,
    quiet_library_loggers,
    recent_problems,
)
from .store import PendingActionStore
from .transport import IngestionServer, is_listening

log = logging.getLogger("notch-mcp.main")


def _add_config_arg(parser: argparse.ArgumentParser) -> None:
    parser.add_argument(
        "--config-file", default=None, metavar="PATH",
        help="Config file (default: $NOTCH_MCP_CONFIG or ~/.config/notch-mcp/config.yml)",
    )


def _run_serve_command(argv: list[str]) -> None:
    """Run the MCP stdio server (notch-mcp serve)."""
    from .server import run_stdio

    parser = argparse.ArgumentParser(prog="notch-mcp serve",
        description="Serve notch-mcp tools over MCP stdio")
    _add_config_arg(parser)
    args = parser.parse_args(argv)

    # stdout is the MCP transport: file logging only
    log_to_file("notch-mcp", SERVER_LOG, level=logging.INFO, structured=False)
    quiet_library_loggers()

    config = NotchConfig.load(args.config_file)
    run_stdio(config)


def _run_display_command(argv: list[str]) -> None:
    """Run the display process (notch-mcp display)."""
    parser = argparse.ArgumentParser(prog="notch-mcp display",
        description="Listen for notifications and display them")
    _add_config_arg(parser)
    parser.add_argument("--headless", action="store_true",
        help="No UI; log notifications to the display log")
    args = parser.parse_args(argv)

    log_to_file("notch-mcp", DISPLAY_LOG)
    config = NotchConfig.load(args.config_file)

    store = PendingActionStore(config.store_path, config.lock_path)
    if config.orphan_max_age > 0:
        store.sweep(config.orphan_max_age)

    feed = NotificationFeed(config.history_size)
    resolver = ActionResolver(store)
    server = IngestionServer(
        config.socket_path, feed,
        backlog=config.backlog, buffer_size=config.buffer_size,
    )
    if not server.start():
        print(f"Error: cannot listen on {config.socket_path} (see {DISPLAY_LOG})", file=sys.stderr)
        sys.exit(1)

    try:
        if args.headless:
            feed.subscribe(log_envelope)
            print(f"  notch-mcp display: listening on {config.socket_path} (headless)", flush=True)
            stop = threading.Event()
            signal.signal(signal.SIGTERM, lambda *_: stop.set())
            try:
                stop.wait()
            except KeyboardInterrupt:
                pass
        else:
            from .tui import NotchDisplayApp

            app = NotchDisplayApp(feed, resolver, config.color_scheme, config.socket_path)
            app.run()
    finally:
        server.stop()


def _run_status_command(argv: list[str]) -> None:
    """Show socket and store health."""
    parser = argparse.ArgumentParser(prog="notch-mcp status",
        description="Show notch-mcp socket and store status")
    _add_config_arg(parser)
    args = parser.parse_args(argv)

    config = NotchConfig.load(args.config_file)
    store = PendingActionStore(config.store_path, config.lock_path)

    print("notch-mcp status")
    print("─" * 50)
    print(f"  Config:   {config.config_path}")
    if is_listening(config.socket_path, config.client_timeout):
        print(f"  Display:  ✔ listening on {config.socket_path}")
    else:
        print(f"  Display:  ✘ not listening on {config.socket_path}")

    records = store.all_actions()
    pending = [r for r in records if not r.resolved]
    orphans = len(records) - len(pending)
    print(f"  Store:    {config.store_path}")
    print(f"  Pending:  {len(pending)} waiting for a click")
    if orphans:
        print(f"  Orphans:  {orphans} resolved but unclaimed (notch-send sweep --max-age N)")
    for r in pending:
        print(f"    ○ {r.title or '(untitled)'} [{', '.join(r.actions)}] ({r.id[:8]}…)")

    problems = recent_problems(DISPLAY_LOG)
    if problems:
        print(f"  Display log ({DISPLAY_LOG}):")
        for entry in problems:
            print(f"    {entry.get('timestamp', '')} {entry['level']}: {entry.get('message', '')}")
    print("─" * 50)


def main() -> None:
    commands = {
        "serve": _run_serve_command,
        "display": _run_display_command,
        "status": _run_status_command,
    }
    if len(sys.argv) > 1 and sys.argv[1] in commands:
        commands[sys.argv[1]](sys.argv[2:])
        return

    parser = argparse.ArgumentParser(
        prog="notch-mcp",
        description="notch-mcp — actionable notifications for agents",
    )
    parser.add_argument("command", choices=sorted(commands), help="Subcommand to run")
    parser.parse_args()


if __name__ == "__main__":
    main()
