"""Terminal display app: shows incoming notifications and their buttons.

Envelopes arrive on ingestion threads through the NotificationFeed and
are handed to the app's event loop with ``call_from_thread``.  The list
holds at most as many items as the feed keeps.  Pressing a
button on an actionable notification writes the choice to the store via
the ActionResolver, then dismisses the notification.
"""

from __future__ import annotations

import asyncio
import threading
from typing import Callable, Optional

from textual import on
from textual.app import App, ComposeResult
from textual.binding import Binding
from textual.containers import Horizontal, Vertical
from textual.markup import escape
from textual.widgets import Button, Footer, Label, ListView

from ..display import ActionResolver, NotificationFeed
from ..envelope import NotificationEnvelope
from .themes import DEFAULT_SCHEME, build_css
from .widgets import BUTTON_VARIANTS, NotificationItem, _safe_action


class NotchDisplayApp(App):
    """Textual app listing notifications, newest first."""

    CSS = build_css(DEFAULT_SCHEME)

    BINDINGS = [
        Binding("j,down", "cursor_down", "Down", show=False),
        Binding("k,up", "cursor_up", "Up", show=False),
        Binding("d", "dismiss_selected", "Dismiss", show=True),
        Binding("1", "press_button(0)", "", show=False),
        Binding("2", "press_button(1)", "", show=False),
        Binding("3", "press_button(2)", "", show=False),
        Binding("q,ctrl+c", "quit", "Quit", show=True),
    ]

    def __init__(
        self,
        feed: NotificationFeed,
        resolver: ActionResolver,
        color_scheme: str = DEFAULT_SCHEME,
        socket_path: str = "",
    ) -> None:
        self.CSS = build_css(color_scheme)
        super().__init__()
        self.feed = feed
        self.resolver = resolver
        self.socket_path = socket_path
        self._selected: Optional[NotificationEnvelope] = None
        self._unsubscribe: Optional[Callable[[], None]] = None
        self._loop_thread: Optional[int] = None

    # ─── Widget composition ────────────────────────────────────────

    def compose(self) -> ComposeResult:
        yield Label("", id="status")
        yield ListView(id="feed")
        with Vertical(id="detail"):
            yield Label("", id="detail-title")
            yield Label("", id="detail-message", markup=False)
            yield Horizontal(id="buttons")
        yield Footer()

    async def on_mount(self) -> None:
        self.title = "notch-mcp"
        self._loop_thread = threading.get_ident()
        self.query_one("#detail").display = False
        for envelope in reversed(self.feed.items()):
            await self._add_notification(envelope)
        self._unsubscribe = self.feed.subscribe(self._on_feed_envelope)
        self._refresh_status()

    def on_unmount(self) -> None:
        if self._unsubscribe is not None:
            self._unsubscribe()
            self._unsubscribe = None

    # ─── Feed hand-off ─────────────────────────────────────────────

    def _on_feed_envelope(self, envelope: NotificationEnvelope) -> None:
        """Feed subscriber; runs on whichever thread called feed.show()."""
        if not self.is_running:
            return
        if threading.get_ident() == self._loop_thread:
            self.run_worker(self._add_notification(envelope), exclusive=False)
            return
        try:
            self.call_from_thread(self._add_notification, envelope)
        except RuntimeError:
            # App is shutting down
            pass

    async def _add_notification(self, envelope: NotificationEnvelope) -> None:
        feed = self.query_one("#feed", ListView)
        await feed.insert(0, [NotificationItem(envelope)])
        for stale in list(self.query(NotificationItem))[self.feed.max_items:]:
            await stale.remove()
        feed.index = 0
        await self._show_detail(envelope)
        self._refresh_status()

    # ─── Status & detail ───────────────────────────────────────────

    def set_status(self, text: str) -> None:
        self.query_one("#status", Label).update(text)

    def _refresh_status(self) -> None:
        count = len(self.query(NotificationItem))
        where = f" — {escape(self.socket_path)}" if self.socket_path else ""
        self.set_status(f"notch-mcp: {count} notification{'s' if count != 1 else ''}{where}")

    async def _show_detail(self, envelope: Optional[NotificationEnvelope]) -> None:
        self._selected = envelope
        detail = self.query_one("#detail")
        buttons = self.query_one("#buttons", Horizontal)
        await buttons.remove_children()
        if envelope is None:
            detail.display = False
            return
        self.query_one("#detail-title", Label).update(escape(envelope.title))
        self.query_one("#detail-message", Label).update(envelope.message)
        await buttons.mount_all([
            Button(
                action.label,
                variant=BUTTON_VARIANTS.get(action.style, "default"),
                name=str(i),
                classes="action",
            )
            for i, action in enumerate(envelope.actions)
        ])
        detail.display = True

    @on(ListView.Highlighted, "#feed")
    async def on_feed_highlighted(self, event: ListView.Highlighted) -> None:
        if isinstance(event.item, NotificationItem):
            if event.item.envelope is not self._selected:
                await self._show_detail(event.item.envelope)

    # ─── Actions ───────────────────────────────────────────────────

    @on(Button.Pressed, ".action")
    @_safe_action
    async def on_action_pressed(self, event: Button.Pressed) -> None:
        envelope = self._selected
        if envelope is None or event.button.name is None:
            return
        action = envelope.actions[int(event.button.name)]
        if await asyncio.to_thread(self.resolver.resolve, action.action):
            self.set_status(f"Sent [b]{escape(action.label)}[/b]")
        await self._dismiss(envelope)

    async def _dismiss(self, envelope: NotificationEnvelope) -> None:
        self.feed.dismiss(envelope.envelope_id)
        for item in self.query(NotificationItem):
            if item.envelope is envelope:
                await item.remove()
                break
        feed = self.query_one("#feed", ListView)
        remaining = list(self.query(NotificationItem))
        if remaining:
            feed.index = 0
            await self._show_detail(remaining[0].envelope)
        else:
            await self._show_detail(None)
        self._refresh_status()

    @_safe_action
    async def action_dismiss_selected(self) -> None:
        if self._selected is not None:
            await self._dismiss(self._selected)

    async def action_press_button(self, index: int) -> None:
        buttons = list(self.query("#buttons Button.action"))
        if 0 <= index < len(buttons):
            buttons[index].press()

    def action_cursor_down(self) -> None:
        self.query_one("#feed", ListView).action_cursor_down()

    def action_cursor_up(self) -> None:
        self.query_one("#feed", ListView).action_cursor_up()
