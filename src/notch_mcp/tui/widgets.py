"""Widgets for the notch display: feed items and the _safe_action decorator."""

from __future__ import annotations

import functools
import logging

from textual.app import ComposeResult
from textual.markup import escape
from textual.widgets import Label, ListItem

from ..envelope import ActionStyle, NotificationEnvelope, Priority
from ..logging import log_fields

_log = logging.getLogger("notch-mcp.tui")


KIND_ICONS: dict[str, str] = {
    "info": "ℹ",
    "success": "✔",
    "warning": "⚠",
    "error": "✘",
    "hook": "⚓",
    "tool_use": "⚙",
    "progress": "…",
    "celebration": "★",
    "reminder": "⏰",
    "download": "↓",
    "upload": "↑",
    "security": "⚿",
    "ai": "✦",
    "sync": "⟳",
}

BUTTON_VARIANTS: dict[ActionStyle, str] = {
    ActionStyle.NORMAL: "default",
    ActionStyle.PRIMARY: "primary",
    ActionStyle.DESTRUCTIVE: "error",
}


# ─── Safe action decorator ────────────────────────────────────────────────

def _safe_action(fn):
    """Decorator that catches exceptions in UI handlers.

    Logs the error and shows it in the status line instead of crashing
    the app.
    """

    @functools.wraps(fn)
    async def wrapper(self, *args, **kwargs):
        try:
            return await fn(self, *args, **kwargs)
        except Exception as exc:
            err = f"{type(exc).__name__}: {str(exc)[:100]}"
            _log.error(
                "Error in %s: %s", fn.__name__, err,
                exc_info=True,
                extra=log_fields(tool_name=fn.__name__),
            )
            self.set_status(f"[b]Error:[/b] {err}")
    return wrapper


# ─── Notification Item Widget ─────────────────────────────────────────────

class NotificationItem(ListItem):
    """One notification in the feed."""

    def __init__(self, envelope: NotificationEnvelope, **kwargs) -> None:
        super().__init__(classes=f"kind-{envelope.kind.value}", **kwargs)
        self.envelope = envelope

    def _format_title(self) -> str:
        e = self.envelope
        icon = KIND_ICONS.get(e.kind.value, "•")
        marker = " [b]![/b]" if e.priority >= Priority.URGENT else ""
        buttons = f"  [dim]({len(e.actions)} actions)[/dim]" if e.actions else ""
        return f"{icon} [b]{escape(e.title)}[/b]{marker}{buttons}"

    def compose(self) -> ComposeResult:
        yield Label(self._format_title(), classes="notification-title", markup=True)
        if self.envelope.message:
            yield Label(self.envelope.message, classes="notification-message", markup=False)
