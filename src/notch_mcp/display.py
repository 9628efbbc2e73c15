"""Display-process side of the notification flow.

The ingestion server hands every decoded envelope to a
:class:`DisplayPipeline`.  :class:`NotificationFeed` is the pipeline
used here: it keeps a bounded in-memory history and fans envelopes out
to subscribers (the textual app, or the headless logger).

Button clicks come back as action tokens; :class:`ActionResolver` turns
an actionable token into a ``set_choice`` on the pending-action store.
"""

from __future__ import annotations

import logging
import threading
import time
from collections import Counter
from typing import Callable, Optional, Protocol

from .envelope import NotificationEnvelope, decode_action_token
from .store import PendingActionStore

log = logging.getLogger("notch-mcp.display")


class DisplayPipeline(Protocol):
    """Anything that can present a notification.

    ``show`` is called from ingestion threads and must be thread-safe.
    """

    def show(self, envelope: NotificationEnvelope) -> None:
        ...


Subscriber = Callable[[NotificationEnvelope], None]


class NotificationFeed:
    """Bounded, thread-safe, newest-first list of received envelopes."""

    def __init__(self, max_items: int = 50) -> None:
        self.max_items = max(1, max_items)
        self._items: list[NotificationEnvelope] = []
        self._subscribers: list[Subscriber] = []
        self._lock = threading.Lock()
        self._received = 0
        self._by_kind: Counter[str] = Counter()
        self._started_at = time.time()

    def show(self, envelope: NotificationEnvelope) -> None:
        with self._lock:
            self._items.insert(0, envelope)
            del self._items[self.max_items:]
            self._received += 1
            self._by_kind[envelope.kind.value] += 1
            subscribers = list(self._subscribers)
        for callback in subscribers:
            try:
                callback(envelope)
            except Exception:
                log.exception(f"Feed subscriber failed for '{envelope.title}'")

    def subscribe(self, callback: Subscriber) -> Callable[[], None]:
        """Register *callback*; returns a function that unregisters it."""
        with self._lock:
            self._subscribers.append(callback)

        def _unsubscribe() -> None:
            with self._lock:
                if callback in self._subscribers:
                    self._subscribers.remove(callback)
        return _unsubscribe

    def items(self) -> list[NotificationEnvelope]:
        with self._lock:
            return list(self._items)

    def get(self, envelope_id: str) -> Optional[NotificationEnvelope]:
        with self._lock:
            return next((e for e in self._items if e.envelope_id == envelope_id), None)

    def dismiss(self, envelope_id: str) -> bool:
        with self._lock:
            for i, envelope in enumerate(self._items):
                if envelope.envelope_id == envelope_id:
                    del self._items[i]
                    return True
        return False

    def stats(self) -> dict:
        """Counters for this display session."""
        with self._lock:
            return {
                "received": self._received,
                "visible": len(self._items),
                "by_type": dict(self._by_kind),
                "uptime_secs": round(time.time() - self._started_at, 1),
            }


class ActionResolver:
    """Write button clicks on actionable notifications back to the store."""

    def __init__(self, store: PendingActionStore) -> None:
        self.store = store

    def resolve(self, token: str) -> bool:
        """Record the choice carried by *token*.

        Returns False for tokens that aren't actionable (``dismiss`` and
        friends); those need no store write.
        """
        decoded = decode_action_token(token)
        if decoded is None:
            return False
        request_id, label = decoded
        self.store.set_choice(request_id, label)
        log.info(f"Resolved {request_id} → {label}")
        return True


def log_envelope(envelope: NotificationEnvelope) -> None:
    """Feed subscriber for headless mode: one log line per notification."""
    buttons = ", ".join(a.label for a in envelope.actions)
    log.info(
        f"[{envelope.kind.value}/{envelope.priority.name.lower()}] {envelope.title}: {envelope.message}"
        + (f" [{buttons}]" if buttons else "")
    )
