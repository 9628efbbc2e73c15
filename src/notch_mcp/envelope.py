"""Notification envelope: the wire payload pushed into the display process.

One JSON object per socket connection::

    {"title": "...", "message": "...", "type": "info", "priority": 1,
     "icon": null, "actions": [{"label": "Yes", "action": "...", "style": "normal"}],
     "metadata": {"source": "mcp"}}

Action buttons on actionable notifications carry an opaque token of the
form ``mcp_action:<request_id>:<label>`` so the display side can write
the click back to the pending-action store without knowing anything
about the tool that asked.
"""

from __future__ import annotations

import json
import time
import uuid
from dataclasses import dataclass, field
from enum import Enum, IntEnum
from typing import Any, Optional


ACTION_TOKEN_PREFIX = "mcp_action"
DISMISS_TOKEN = "dismiss"


class EnvelopeError(ValueError):
    """Raised when a request body is not a usable notification."""


class NotificationKind(str, Enum):
    INFO = "info"
    SUCCESS = "success"
    WARNING = "warning"
    ERROR = "error"
    HOOK = "hook"
    TOOL_USE = "tool_use"
    PROGRESS = "progress"
    CELEBRATION = "celebration"
    REMINDER = "reminder"
    DOWNLOAD = "download"
    UPLOAD = "upload"
    SECURITY = "security"
    AI = "ai"
    SYNC = "sync"

    @classmethod
    def parse(cls, value: Any) -> "NotificationKind":
        """Map a wire value to a kind, falling back to INFO."""
        try:
            return cls(value)
        except ValueError:
            return cls.INFO


class Priority(IntEnum):
    LOW = 0
    NORMAL = 1
    HIGH = 2
    URGENT = 3

    @classmethod
    def parse(cls, value: Any) -> "Priority":
        """Map a wire value to a priority, falling back to NORMAL."""
        if isinstance(value, bool):
            return cls.NORMAL
        try:
            return cls(int(value))
        except (TypeError, ValueError):
            return cls.NORMAL


class ActionStyle(str, Enum):
    NORMAL = "normal"
    PRIMARY = "primary"
    DESTRUCTIVE = "destructive"

    @classmethod
    def parse(cls, value: Any) -> "ActionStyle":
        try:
            return cls(value)
        except ValueError:
            return cls.NORMAL


# ─── Action tokens ──────────────────────────────────────────────────────

def encode_action_token(request_id: str, label: str) -> str:
    """Build the opaque token for one button of an actionable request."""
    return f"{ACTION_TOKEN_PREFIX}:{request_id}:{label}"


def decode_action_token(token: str) -> Optional[tuple[str, str]]:
    """Split a token into ``(request_id, label)``.

    Only the first two colons are significant, so labels may contain
    colons.  Returns None for anything that isn't an actionable token.
    """
    parts = token.split(":", 2)
    if len(parts) != 3 or parts[0] != ACTION_TOKEN_PREFIX:
        return None
    request_id, label = parts[1], parts[2]
    if not request_id:
        return None
    return request_id, label


# ─── Models ─────────────────────────────────────────────────────────────

@dataclass
class NotificationAction:
    """A button on a notification."""
    label: str
    action: str
    style: ActionStyle = ActionStyle.NORMAL

    @property
    def is_actionable(self) -> bool:
        return decode_action_token(self.action) is not None

    def to_dict(self) -> dict[str, str]:
        return {"label": self.label, "action": self.action, "style": self.style.value}


@dataclass
class NotificationEnvelope:
    """A notification as it travels over the ingestion socket."""
    title: str
    message: str
    kind: NotificationKind = NotificationKind.INFO
    priority: Priority = Priority.NORMAL
    icon: Optional[str] = None
    actions: list[NotificationAction] = field(default_factory=list)
    metadata: dict[str, str] = field(default_factory=dict)
    envelope_id: str = field(default_factory=lambda: uuid.uuid4().hex)
    received_at: float = field(default_factory=time.time)

    @property
    def request_id(self) -> Optional[str]:
        """Correlation ID for actionable notifications, else None."""
        return self.metadata.get("request_id") or None

    @property
    def is_actionable(self) -> bool:
        return self.metadata.get("actionable") == "true" or any(a.is_actionable for a in self.actions)

    def to_request(self) -> dict[str, Any]:
        """Wire shape (what a client writes to the socket)."""
        body: dict[str, Any] = {
            "title": self.title,
            "message": self.message,
            "type": self.kind.value,
            "priority": int(self.priority),
        }
        if self.icon:
            body["icon"] = self.icon
        if self.actions:
            body["actions"] = [a.to_dict() for a in self.actions]
        if self.metadata:
            body["metadata"] = dict(self.metadata)
        return body

    def to_json(self) -> str:
        return json.dumps(self.to_request())

    @classmethod
    def from_request(cls, body: Any) -> "NotificationEnvelope":
        """Validate a decoded request body and build an envelope.

        ``title`` and ``message`` are required strings.  ``type``,
        ``priority`` and action ``style`` fall back to defaults when
        unknown.  Each action needs a string ``label`` and ``action``.
        """
        if not isinstance(body, dict):
            raise EnvelopeError("request must be a JSON object")
        for key in ("title", "message"):
            if not isinstance(body.get(key), str):
                raise EnvelopeError(f"missing or non-string '{key}'")

        icon = body.get("icon")
        if icon is not None and not isinstance(icon, str):
            raise EnvelopeError("'icon' must be a string")

        actions: list[NotificationAction] = []
        raw_actions = body.get("actions")
        if raw_actions is not None:
            if not isinstance(raw_actions, list):
                raise EnvelopeError("'actions' must be a list")
            for i, item in enumerate(raw_actions):
                if not isinstance(item, dict):
                    raise EnvelopeError(f"actions[{i}] must be an object")
                label, token = item.get("label"), item.get("action")
                if not isinstance(label, str) or not isinstance(token, str):
                    raise EnvelopeError(f"actions[{i}] needs string 'label' and 'action'")
                actions.append(NotificationAction(label, token, ActionStyle.parse(item.get("style", "normal"))))

        metadata: dict[str, str] = {}
        raw_meta = body.get("metadata")
        if raw_meta is not None:
            if not isinstance(raw_meta, dict):
                raise EnvelopeError("'metadata' must be an object")
            for k, v in raw_meta.items():
                if not isinstance(v, str):
                    raise EnvelopeError(f"metadata['{k}'] must be a string")
                metadata[str(k)] = v

        return cls(
            title=body["title"],
            message=body["message"],
            kind=NotificationKind.parse(body.get("type", "info")),
            priority=Priority.parse(body.get("priority", 1)),
            icon=icon,
            actions=actions,
            metadata=metadata,
        )

    @classmethod
    def from_bytes(cls, data: bytes) -> "NotificationEnvelope":
        """Decode one socket payload."""
        try:
            body = json.loads(data.decode("utf-8"))
        except (UnicodeDecodeError, json.JSONDecodeError) as e:
            raise EnvelopeError(f"Invalid JSON: {e}") from e
        try:
            return cls.from_request(body)
        except EnvelopeError as e:
            raise EnvelopeError(f"Invalid notification: {e}") from e


def actionable_envelope(
    request_id: str,
    title: str,
    message: str,
    kind: NotificationKind,
    labels: list[str],
) -> NotificationEnvelope:
    """Build the urgent envelope for a blocking actionable request."""
    return NotificationEnvelope(
        title=title,
        message=message,
        kind=kind,
        priority=Priority.URGENT,
        actions=[NotificationAction(label, encode_action_token(request_id, label)) for label in labels],
        metadata={
            "source": "mcp",
            "interactive": "true",
            "actionable": "true",
            "request_id": request_id,
        },
    )
