"""MCP server module for notch-mcp.

Defines the tools, resources and prompt served over stdio to the agent.
Notifications are relayed to the display process over its Unix socket;
the only state shared with that process is the pending-action store.
"""

from __future__ import annotations

import asyncio
import functools
import json
import logging
import threading
import time
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Optional

from mcp import types
from mcp.server.fastmcp import FastMCP, Context
from pydantic import AnyUrl

from .config import NotchConfig
from .envelope import (
    DISMISS_TOKEN,
    NotificationAction,
    NotificationEnvelope,
    NotificationKind,
    Priority,
    actionable_envelope,
)
from .logging import TOOL_ERROR_LOG, log_fields, log_to_file
from .store import PendingActionStore
from .transport import send_envelope
from .watcher import PendingActionWatcher

log = logging.getLogger("notch-mcp.server")

SESSION_STATS_URI = "notch://stats/session"
HISTORY_URI = "notch://notifications/history"
PENDING_ACTIONS_URI = "notch://actions/pending"

MAX_ACTIONS = 3


class ProtocolError(ValueError):
    """Raised for tool arguments that can't be turned into a notification."""


@dataclass
class ServerState:
    """Per-server mutable state shared by the handlers."""
    subscriptions: set[str] = field(default_factory=set)
    """Resource URIs some client has subscribed to."""


def wait_for_choice(
    store: PendingActionStore,
    request_id: str,
    interval: float,
    max_polls: int,
    wake: Optional[threading.Event] = None,
) -> Optional[str]:
    """Block until *request_id* has a recorded choice, or give up.

    The store is checked once per *interval*, first one interval after
    the call, at most *max_polls* times.  If *wake* is given (set by a
    store watcher), a write triggers an extra check straight away; extra
    checks don't use up the poll budget, so the timeout stays at
    ``interval * max_polls``.

    Returns the chosen label, or None on timeout.
    """
    polls = 0
    next_tick = time.monotonic() + interval
    while True:
        if wake is None:
            time.sleep(interval)
            woke = False
        else:
            woke = wake.wait(max(0.0, next_tick - time.monotonic()))
            wake.clear()
        if not woke:
            polls += 1
            next_tick += interval

        choice = store.get_choice(request_id)
        if choice is not None:
            return choice
        if polls >= max_polls:
            return None


def _validate_labels(labels: list[str], minimum: int, maximum: Optional[int] = None) -> list[str]:
    if not isinstance(labels, list):
        raise ProtocolError("actions must be a list of labels")
    if len(labels) < minimum or (maximum is not None and len(labels) > maximum):
        bound = f"{minimum} to {maximum}" if maximum is not None else f"at least {minimum}"
        raise ProtocolError(f"expected {bound} labels, got {len(labels)}")
    cleaned = []
    for label in labels:
        if not isinstance(label, str) or not label.strip():
            raise ProtocolError(f"labels must be non-empty strings, got {label!r}")
        cleaned.append(label.strip())
    return cleaned


def create_mcp_server(
    store: PendingActionStore,
    config: Optional[NotchConfig] = None,
    socket_path: Optional[str] = None,
    state: Optional[ServerState] = None,
) -> FastMCP:
    """Create and configure the MCP server with all tools.

    Args:
        store: Pending-action store shared with the display process.
        config: Loaded config; defaults are used when omitted.
        socket_path: Display socket, overriding ``config.socket_path``.
        state: Handler state; a fresh one is created when omitted.

    Returns:
        Configured FastMCP server ready to run.
    """
    config = config or NotchConfig.defaults()
    socket_path = socket_path or config.socket_path
    state = state or ServerState()
    tool_errors = log_to_file("notch-mcp.tool-errors", TOOL_ERROR_LOG)

    server = FastMCP(
        "notch-mcp",
        instructions=(
            "Shows notifications in the user's notch display. "
            "Use show_actionable_result when you need the user to pick an option; "
            "it blocks until they click or the request times out."
        ),
    )

    def _safe_tool(fn):
        @functools.wraps(fn)
        async def wrapper(*args, **kwargs):
            try:
                return await fn(*args, **kwargs)
            except Exception as exc:
                err_msg = f"{type(exc).__name__}: {str(exc)[:200]}"
                log.error(f"Tool {fn.__name__} failed: {err_msg}")
                tool_errors.error(
                    f"Tool {fn.__name__} failed",
                    exc_info=True,
                    extra=log_fields(tool_name=fn.__name__),
                )
                return json.dumps({"error": err_msg, "tool": fn.__name__})
        return wrapper

    async def _relay(envelope: NotificationEnvelope) -> bool:
        loop = asyncio.get_event_loop()
        ack = await loop.run_in_executor(
            None, send_envelope, socket_path, envelope, config.client_timeout
        )
        if ack is None:
            return False
        if not ack.get("success"):
            log.warning(f"Display rejected '{envelope.title}': {ack.get('error')}")
            return False
        return True

    async def _notify_updated(ctx: Context, uri: str) -> None:
        if uri not in state.subscriptions:
            return
        try:
            await ctx.session.send_resource_updated(AnyUrl(uri))
        except ValueError:
            log.debug(f"No active session to notify about {uri}")
        except Exception as e:
            log.warning(f"Resource-updated notification for {uri} failed: {e}")

    # ─── Tools ────────────────────────────────────────────────────────

    @server.tool()
    @_safe_tool
    async def show_progress(title: str, progress: float, cancellable: bool = False) -> str:
        """Display a progress notification in the notch.

        Parameters
        ----------
        title:
            What is in progress (e.g. "Running tests").
        progress:
            Fraction complete, 0.0 to 1.0. Values outside are clamped.
        cancellable:
            Whether the operation can be cancelled.

        Returns
        -------
        str
            JSON: {"status": "displayed", "message": "...", "delivered": bool}
        """
        fraction = min(1.0, max(0.0, float(progress)))
        percent = int(fraction * 100)
        envelope = NotificationEnvelope(
            title=title,
            message=f"Progress: {percent}%",
            kind=NotificationKind.PROGRESS,
            priority=Priority.NORMAL,
            metadata={
                "progress": str(fraction),
                "cancellable": "true" if cancellable else "false",
                "source": "mcp",
            },
        )
        delivered = await _relay(envelope)
        return json.dumps({
            "status": "displayed",
            "message": f"Progress notification displayed: {title} at {percent}%",
            "delivered": delivered,
        })

    @server.tool()
    @_safe_tool
    async def show_result(title: str, type: str = "info", message: str = "") -> str:
        """Show the result of an operation.

        Parameters
        ----------
        title:
            Short result headline.
        type:
            One of success, error, warning, celebration, info (default).
        message:
            Optional detail line.

        Returns
        -------
        str
            JSON: {"status": "displayed", "message": "...", "delivered": bool}
        """
        envelope = NotificationEnvelope(
            title=title,
            message=message,
            kind=NotificationKind.parse(type),
            priority=Priority.HIGH,
            metadata={"source": "mcp"},
        )
        delivered = await _relay(envelope)
        return json.dumps({
            "status": "displayed",
            "message": f"Result notification displayed: {title}",
            "delivered": delivered,
        })

    @server.tool()
    @_safe_tool
    async def ask_confirmation(question: str, options: list[str]) -> str:
        """Put a confirmation prompt in front of the user without waiting.

        The buttons only dismiss the notification; nothing is reported
        back. Use show_actionable_result when you need the answer.

        Returns
        -------
        str
            JSON: {"status": "pending", "message": "...User response: pending", "delivered": bool}
        """
        labels = _validate_labels(options, minimum=1)
        envelope = NotificationEnvelope(
            title="Confirmation Required",
            message=question,
            kind=NotificationKind.REMINDER,
            priority=Priority.URGENT,
            actions=[NotificationAction(label, DISMISS_TOKEN) for label in labels],
            metadata={"source": "mcp", "interactive": "true"},
        )
        delivered = await _relay(envelope)
        return json.dumps({
            "status": "pending",
            "message": "Confirmation prompt displayed. User response: pending",
            "delivered": delivered,
        })

    @server.tool()
    @_safe_tool
    async def show_actionable_result(
        title: str,
        message: str,
        actions: list[str],
        ctx: Context,
        type: str = "info",
    ) -> str:
        """Show a notification with up to three buttons and WAIT for a click.

        Blocks until the user clicks a button or the request times out
        (about 50 seconds with the default settings).

        Parameters
        ----------
        title:
            Short title (e.g. "Deploy to production?").
        message:
            One or two sentences explaining the choice.
        actions:
            1 to 3 button labels, in display order.
        type:
            Visual style: success, error, warning or info.

        Returns
        -------
        str
            JSON: {"status": "selected", "selected": "<label>", "request_id": "..."}
            or {"status": "timeout", "selected": "timeout", "request_id": "..."}
        """
        if not isinstance(title, str) or not title.strip():
            raise ProtocolError("title must be a non-empty string")
        labels = _validate_labels(actions, minimum=1, maximum=MAX_ACTIONS)
        kind = NotificationKind.parse(type)
        request_id = str(uuid.uuid4())
        ctx_fields = log_fields(request_id=request_id, tool_name="show_actionable_result")
        loop = asyncio.get_event_loop()

        if config.orphan_max_age > 0:
            await loop.run_in_executor(None, store.sweep, config.orphan_max_age)

        await loop.run_in_executor(None, store.create, request_id, title, message, kind.value, labels)
        started = time.monotonic()
        try:
            envelope = actionable_envelope(request_id, title, message, kind, labels)
            if not await _relay(envelope):
                log.warning(
                    f"Actionable request {request_id} not delivered; waiting anyway",
                    extra=ctx_fields,
                )

            if config.use_watcher:
                wake = threading.Event()
                with PendingActionWatcher(store.path, wake.set, config.watcher_interval):
                    choice = await loop.run_in_executor(
                        None, wait_for_choice, store, request_id,
                        config.poll_interval, config.max_polls, wake,
                    )
            else:
                choice = await loop.run_in_executor(
                    None, wait_for_choice, store, request_id,
                    config.poll_interval, config.max_polls,
                )
        finally:
            await loop.run_in_executor(None, store.remove, request_id)

        duration_ms = (time.monotonic() - started) * 1000
        if choice is None:
            log.info(
                f"Actionable request {request_id} timed out",
                extra=log_fields(request_id=request_id, duration_ms=duration_ms),
            )
            return json.dumps({"status": "timeout", "selected": "timeout", "request_id": request_id})

        log.info(
            f"Actionable request {request_id} resolved: {choice}",
            extra=log_fields(request_id=request_id, duration_ms=duration_ms),
        )
        await _notify_updated(ctx, PENDING_ACTIONS_URI)
        return json.dumps({"status": "selected", "selected": choice, "request_id": request_id})

    @server.tool()
    @_safe_tool
    async def show_summary(
        project_name: str,
        task_description: str,
        completed_tasks: Optional[list[str]] = None,
        pending_tasks: Optional[list[str]] = None,
        modified_files: Optional[list[str]] = None,
        key_decisions: Optional[list[str]] = None,
        issues: Optional[list[dict]] = None,
        project_path: str = "",
    ) -> str:
        """Send a work-session summary to the display.

        Use at the end of a major task or when the user asks for a recap.

        Parameters
        ----------
        project_name:
            Name of the project.
        task_description:
            What was accomplished, in 2-3 sentences.
        completed_tasks / pending_tasks / key_decisions:
            Short one-line entries.
        modified_files:
            Paths created or modified.
        issues:
            Objects with "title", "description" and optional "solution".
        project_path:
            Absolute project directory.

        Returns
        -------
        str
            JSON: {"status": "displayed", "summary_id": "...", "message": "...", "delivered": bool}
        """
        if not project_name.strip():
            raise ProtocolError("project_name must be a non-empty string")

        summary_id = str(uuid.uuid4())
        summary = {
            "id": summary_id,
            "project_name": project_name,
            "task_description": task_description,
            "completed_tasks": [str(t) for t in completed_tasks or []],
            "pending_tasks": [str(t) for t in pending_tasks or []],
            "modified_files": [
                {"path": str(p), "modification_type": "modified"} for p in modified_files or []
            ],
            "key_decisions": [str(d) for d in key_decisions or []],
            "issues": [
                {
                    "title": str(i.get("title") or "Issue"),
                    "description": str(i.get("description") or ""),
                    "solution": i.get("solution"),
                }
                for i in issues or [] if isinstance(i, dict)
            ],
            "created_at": datetime.now(timezone.utc).isoformat(),
        }
        envelope = NotificationEnvelope(
            title="Session summary ready",
            message=project_name,
            kind=NotificationKind.SUCCESS,
            priority=Priority.HIGH,
            metadata={
                "source": "mcp",
                "summary_id": summary_id,
                "summary_data": json.dumps(summary),
                "project_path": project_path,
            },
        )
        delivered = await _relay(envelope)
        return json.dumps({
            "status": "displayed",
            "summary_id": summary_id,
            "message": f"Session summary generated. Summary ID: {summary_id}",
            "delivered": delivered,
        })

    # ─── Resources ────────────────────────────────────────────────────

    @server.resource(
        SESSION_STATS_URI,
        name="Current Session Statistics",
        description="Real-time statistics about the current work session",
        mime_type="application/json",
    )
    def session_stats() -> str:
        return json.dumps({"error": "Statistics only available in display process"})

    @server.resource(
        HISTORY_URI,
        name="Notification History",
        description="Recent notification history with metadata",
        mime_type="application/json",
    )
    def notification_history() -> str:
        return json.dumps({"error": "Notification history only available in display process"})

    @server.resource(
        PENDING_ACTIONS_URI,
        name="Pending Action Notifications",
        description="Interactive notifications waiting for user action, newest first",
        mime_type="application/json",
    )
    async def pending_actions() -> str:
        loop = asyncio.get_event_loop()
        pending = await loop.run_in_executor(None, store.list_pending)
        return json.dumps([a.to_dict() for a in pending], indent=2)

    # The low-level server always reports subscribe=False; clients only
    # subscribe when the capability says they can.
    lowlevel = server._mcp_server
    base_capabilities = lowlevel.get_capabilities

    def _capabilities_with_subscribe(*args, **kwargs) -> types.ServerCapabilities:
        caps = base_capabilities(*args, **kwargs)
        if caps.resources is not None:
            caps.resources.subscribe = True
        return caps

    lowlevel.get_capabilities = _capabilities_with_subscribe

    @lowlevel.subscribe_resource()
    async def _subscribe(uri: AnyUrl) -> None:
        state.subscriptions.add(str(uri))
        log.debug(f"Subscribed to {uri}")

    @lowlevel.unsubscribe_resource()
    async def _unsubscribe(uri: AnyUrl) -> None:
        state.subscriptions.discard(str(uri))
        log.debug(f"Unsubscribed from {uri}")

    # ─── Prompts ──────────────────────────────────────────────────────

    @server.prompt(name="work_summary", description="Generate a summary of the current work session")
    def work_summary() -> str:
        return (
            "Summarize the work done in this session and send it to the notch display "
            "by calling the show_summary tool. Fill in project_name, a 2-3 sentence "
            "task_description, completed_tasks, pending_tasks, modified_files, "
            "key_decisions, and any issues as {title, description, solution} objects. "
            "Keep each list entry to one line."
        )

    return server


def run_stdio(config: NotchConfig) -> None:
    """Serve the MCP tools over stdio until the client disconnects."""
    store = PendingActionStore(config.store_path, config.lock_path)
    server = create_mcp_server(store, config)
    log.info(f"MCP server starting (socket={config.socket_path}, store={config.store_path})")
    server.run(transport="stdio")
