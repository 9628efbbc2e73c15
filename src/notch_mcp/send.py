"""CLI tool for poking the notch display and the pending-action store.

Usage:
    notch-send notify "Build complete" "All 212 tests passed" --type success
    notch-send notify "Deploy?" --action Yes --action No --priority 3
    echo "Long message" | notch-send notify "Heads up"     # message from stdin
    notch-send resolve 3f2c… Yes        # record a click, as the display would
    notch-send pending                  # unresolved requests as JSON
    notch-send pending --all            # include resolved orphans
    notch-send sweep --max-age 3600     # drop resolved orphans older than 1h

Options:
    --config-file PATH   Config file (default: ~/.config/notch-mcp/config.yml)
    --socket PATH        Display socket, overriding the config
"""

from __future__ import annotations

import argparse
import json
import sys

from .config import NotchConfig
from .envelope import (
    DISMISS_TOKEN,
    NotificationAction,
    NotificationEnvelope,
    NotificationKind,
    Priority,
)
from .store import PendingActionStore
from .transport import send_envelope


def _store(config: NotchConfig) -> PendingActionStore:
    return PendingActionStore(config.store_path, config.lock_path)


def main(argv: list[str] | None = None) -> None:
    parser = argparse.ArgumentParser(
        prog="notch-send",
        description="Send notifications to the notch display and inspect pending actions",
    )
    parser.add_argument("--config-file", default=None, metavar="PATH",
        help="Config file (default: $NOTCH_MCP_CONFIG or ~/.config/notch-mcp/config.yml)")
    parser.add_argument("--socket", default=None, metavar="PATH",
        help="Display socket (default: from config)")

    sub = parser.add_subparsers(dest="command", required=True)

    # notify
    nt = sub.add_parser("notify", help="Send a notification to the display")
    nt.add_argument("title", help="Notification title")
    nt.add_argument("message", nargs="*", help="Message text (or stdin)")
    nt.add_argument("--type", default="info",
        choices=[k.value for k in NotificationKind], help="Notification kind")
    nt.add_argument("--priority", type=int, default=int(Priority.NORMAL),
        choices=[int(p) for p in Priority], help="0=low 1=normal 2=high 3=urgent")
    nt.add_argument("--action", action="append", default=[], metavar="LABEL",
        help="Add a dismiss button (repeatable)")

    # resolve
    rs = sub.add_parser("resolve", help="Record a choice for a pending request")
    rs.add_argument("request_id", help="Correlation ID of the request")
    rs.add_argument("label", help="Chosen button label")

    # pending
    pd = sub.add_parser("pending", help="Print pending requests as JSON")
    pd.add_argument("--all", action="store_true", help="Include resolved records")

    # sweep
    sw = sub.add_parser("sweep", help="Remove resolved orphan records")
    sw.add_argument("--max-age", type=float, required=True, metavar="SECONDS",
        help="Only remove records older than this")

    args = parser.parse_args(argv)
    config = NotchConfig.load(args.config_file)

    if args.command == "notify":
        message = " ".join(args.message) if args.message else ""
        if not message and not sys.stdin.isatty():
            message = sys.stdin.read().strip()
        envelope = NotificationEnvelope(
            title=args.title,
            message=message,
            kind=NotificationKind(args.type),
            priority=Priority(args.priority),
            actions=[NotificationAction(label, DISMISS_TOKEN) for label in args.action],
            metadata={"source": "cli"},
        )
        socket_path = args.socket or config.socket_path
        ack = send_envelope(socket_path, envelope, config.client_timeout)
        if ack is None:
            print(f"Error: cannot reach the display at {socket_path}", file=sys.stderr)
            print("  Is it running? Start it with: notch-mcp display", file=sys.stderr)
            sys.exit(1)
        if not ack.get("success"):
            print(f"Error: {ack.get('error', 'rejected')}", file=sys.stderr)
            sys.exit(1)
        print("✓ Delivered")

    elif args.command == "resolve":
        _store(config).set_choice(args.request_id, args.label)
        print(f"✓ {args.request_id} → {args.label}")

    elif args.command == "pending":
        store = _store(config)
        records = store.all_actions() if args.all else store.list_pending()
        print(json.dumps([r.to_dict() for r in records], indent=2))

    elif args.command == "sweep":
        removed = _store(config).sweep(args.max_age)
        if removed:
            for request_id in removed:
                print(request_id)
        else:
            print("(nothing to sweep)")


if __name__ == "__main__":
    main()
