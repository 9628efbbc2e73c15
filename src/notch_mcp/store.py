"""Pending-action store shared between the tool process and the display process.

A JSON file maps request IDs to pending actions::

    {"<request_id>": {"id": "...", "title": "...", "message": "...",
                      "type": "info", "actions": ["Yes", "No"],
                      "timestamp": "2026-10-18T09:00:00.000000+00:00",
                      "userChoice": null}}

Every operation is a full read-modify-write cycle under one exclusive
``flock`` on a separate lock file, plus an in-process lock so threads of
the same process queue up before touching the file lock.

Writes go to the file in place instead of temp-file + rename.  Rename
would swap the inode and break anyone watching the original file (see
``watcher.py``).  The cost is crash atomicity: a crash mid-write can
leave a truncated file, which reads back as an empty store.
"""

from __future__ import annotations

import fcntl
import json
import logging
import os
import threading
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Iterator, Optional

log = logging.getLogger("notch-mcp.store")


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _parse_timestamp(value: object) -> datetime:
    if isinstance(value, str):
        try:
            ts = datetime.fromisoformat(value.replace("Z", "+00:00"))
            return ts if ts.tzinfo else ts.replace(tzinfo=timezone.utc)
        except ValueError:
            pass
    return datetime.fromtimestamp(0, timezone.utc)


@dataclass
class PendingAction:
    """An actionable request waiting for (or holding) a user choice."""
    id: str
    title: str
    message: str
    kind: str
    actions: list[str]
    created_at: datetime = field(default_factory=_now)
    user_choice: Optional[str] = None

    @property
    def resolved(self) -> bool:
        return self.user_choice is not None

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "title": self.title,
            "message": self.message,
            "type": self.kind,
            "actions": list(self.actions),
            "timestamp": self.created_at.isoformat(),
            "userChoice": self.user_choice,
        }

    @classmethod
    def from_dict(cls, data: dict, fallback_id: str = "") -> "PendingAction":
        actions = data.get("actions")
        choice = data.get("userChoice")
        return cls(
            id=str(data.get("id") or fallback_id),
            title=str(data.get("title", "")),
            message=str(data.get("message", "")),
            kind=str(data.get("type", "info")),
            actions=[str(a) for a in actions] if isinstance(actions, list) else [],
            created_at=_parse_timestamp(data.get("timestamp")),
            user_choice=str(choice) if choice is not None else None,
        )


class PendingActionStore:
    """File-backed map of request ID → PendingAction.

    Safe for concurrent use from threads and from unrelated processes
    that use the same lock file.
    """

    def __init__(self, path: str, lock_path: Optional[str] = None) -> None:
        self.path = path
        self.lock_path = lock_path or os.path.splitext(path)[0] + ".lock"
        self._mutex = threading.Lock()

    # ─── Locking and file I/O ─────────────────────────────────────

    @contextmanager
    def _locked(self) -> Iterator[None]:
        """Hold the in-process mutex and the cross-process file lock."""
        with self._mutex:
            try:
                os.makedirs(os.path.dirname(self.lock_path) or ".", exist_ok=True)
                fd = open(self.lock_path, "a")
            except OSError as e:
                log.warning(f"Cannot open lock file {self.lock_path} ({e}) — using store unlocked (unsafe)")
                yield
                return
            try:
                fcntl.flock(fd, fcntl.LOCK_EX)
                try:
                    yield
                finally:
                    fcntl.flock(fd, fcntl.LOCK_UN)
            finally:
                fd.close()

    def _load(self) -> dict[str, PendingAction]:
        try:
            with open(self.path, "r", encoding="utf-8") as f:
                data = json.load(f)
        except FileNotFoundError:
            return {}
        except (OSError, ValueError) as e:
            log.warning(f"Unreadable pending-action store {self.path}: {e} — treating as empty")
            return {}
        if not isinstance(data, dict):
            return {}
        actions: dict[str, PendingAction] = {}
        for key, value in data.items():
            if isinstance(value, dict):
                actions[key] = PendingAction.from_dict(value, fallback_id=key)
        return actions

    def _save(self, actions: dict[str, PendingAction]) -> None:
        payload = json.dumps({key: action.to_dict() for key, action in actions.items()}, indent=2)
        os.makedirs(os.path.dirname(self.path) or ".", exist_ok=True)
        # In place: keeps the inode stable for the watcher.
        with open(self.path, "w", encoding="utf-8") as f:
            f.write(payload)
            f.flush()

    # ─── Public API ───────────────────────────────────────────────

    def create(self, id: str, title: str, message: str, kind: str, actions: list[str]) -> PendingAction:
        """Insert a fresh record, replacing any existing record with this id."""
        record = PendingAction(id=id, title=title, message=message, kind=kind, actions=list(actions))
        with self._locked():
            pending = self._load()
            pending[id] = record
            self._save(pending)
        log.debug(f"Created pending action {id} ({len(actions)} actions)")
        return record

    def set_choice(self, id: str, label: str) -> None:
        """Record the user's choice.

        Unknown ids get a placeholder record with the choice filled in:
        the display side may get here before the creator's record is on
        disk, and a late click after a timeout lands here too.
        """
        with self._locked():
            pending = self._load()
            record = pending.get(id)
            if record is None:
                log.info(f"Choice for unknown request {id} — storing placeholder")
                record = PendingAction(id=id, title="", message="", kind="info", actions=[label])
                pending[id] = record
            record.user_choice = label
            self._save(pending)

    def get_choice(self, id: str) -> Optional[str]:
        """The recorded choice for *id*, or None if unresolved or absent."""
        record = self.get(id)
        return record.user_choice if record else None

    def get(self, id: str) -> Optional[PendingAction]:
        with self._locked():
            return self._load().get(id)

    def remove(self, id: str) -> bool:
        """Delete *id*. Returns False (and leaves the file alone) if it was absent."""
        with self._locked():
            pending = self._load()
            if pending.pop(id, None) is None:
                return False
            self._save(pending)
        log.debug(f"Removed pending action {id}")
        return True

    def list_pending(self) -> list[PendingAction]:
        """Unresolved records, newest first."""
        return [a for a in self.all_actions() if not a.resolved]

    def all_actions(self) -> list[PendingAction]:
        """Every record including resolved ones, newest first."""
        with self._locked():
            actions = list(self._load().values())
        return sorted(actions, key=lambda a: a.created_at, reverse=True)

    def sweep(self, max_age: float) -> list[str]:
        """Remove resolved records older than *max_age* seconds.

        These are orphans: a click that arrived after the waiting tool
        call had already timed out and removed its record.  Unresolved
        records are never swept.
        """
        cutoff = _now() - timedelta(seconds=max_age)
        with self._locked():
            pending = self._load()
            stale = [key for key, a in pending.items() if a.resolved and a.created_at < cutoff]
            if not stale:
                return []
            for key in stale:
                del pending[key]
            self._save(pending)
        log.info(f"Swept {len(stale)} orphaned pending action(s)")
        return stale
