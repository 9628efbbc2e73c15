"""Tests for the MCP tool/resource server, driven in-process.

A real IngestionServer on a temp socket stands in for the display
process; its pipeline "clicks" buttons through the ActionResolver the
same way the display app does.  Poll intervals are scaled down so the
50-poll timeout and the 2s/3s scenario run in a fraction of a second.

Covers:
- Tool / resource / prompt registration
- show_actionable_result: choice, timeout, scenario timing, watcher wake-up
- Record removal on both terminal states
- Protocol errors as structured results
- Fire-and-forget tools (progress, result, confirmation, summary)
- Resources and subscription tracking
- A connected client session: subscribe capability and resource-updated delivery
- wait_for_choice poll budget
"""

from __future__ import annotations

import asyncio
import json
import os
import shutil
import tempfile
import threading
import time
from datetime import datetime, timedelta, timezone

import pytest

from mcp import types
from mcp.server.fastmcp.exceptions import ToolError
from mcp.shared.memory import create_connected_server_and_client_session
from pydantic import AnyUrl

from notch_mcp.config import NotchConfig
from notch_mcp.display import ActionResolver
from notch_mcp.envelope import NotificationKind, Priority, decode_action_token
from notch_mcp.server import (
    HISTORY_URI,
    PENDING_ACTIONS_URI,
    SESSION_STATS_URI,
    ServerState,
    create_mcp_server,
    wait_for_choice,
)
from notch_mcp.store import PendingActionStore
from notch_mcp.transport import IngestionServer


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def _text(result) -> str:
    """Unwrap FastMCP.call_tool() output to the tool's string return value."""
    if isinstance(result, tuple):
        result = result[0]
    if isinstance(result, dict):
        return result["result"]
    return result[0].text


async def _call(server, name: str, **args) -> dict:
    return json.loads(_text(await server.call_tool(name, args)))


def _make_config(socket_path: str, store_path: str, *, poll: float = 0.02,
                 max_polls: int = 10, use_watcher: bool = False,
                 orphan_max_age: float = 0) -> NotchConfig:
    cfg = NotchConfig.defaults()
    cfg.expanded["paths"]["socket"] = socket_path
    cfg.expanded["paths"]["store"] = store_path
    cfg.expanded["actionable"]["pollIntervalSecs"] = poll
    cfg.expanded["actionable"]["maxPolls"] = max_polls
    cfg.expanded["actionable"]["useWatcher"] = use_watcher
    cfg.expanded["watcher"]["intervalSecs"] = 0.01
    cfg.expanded["store"]["orphanMaxAgeSecs"] = orphan_max_age
    cfg.expanded["transport"]["clientTimeoutSecs"] = 1.0
    return cfg


class ClickingDisplay:
    """Display pipeline that presses a button after *delay* seconds."""

    def __init__(self, store: PendingActionStore, label: str | None = None, delay: float = 0.0):
        self.resolver = ActionResolver(store)
        self.label = label
        self.delay = delay
        self.seen = []
        self.clicked_at: float | None = None

    def show(self, envelope) -> None:
        self.seen.append(envelope)
        if self.label is None or not envelope.is_actionable:
            return
        token = next(a.action for a in envelope.actions if a.label == self.label)

        def click():
            self.clicked_at = time.monotonic()
            self.resolver.resolve(token)

        threading.Timer(self.delay, click).start()


@pytest.fixture()
def sock_path():
    d = tempfile.mkdtemp(prefix="notch", dir="/tmp")
    yield os.path.join(d, "n.sock")
    shutil.rmtree(d, ignore_errors=True)


@pytest.fixture()
def store(tmp_path):
    return PendingActionStore(str(tmp_path / "pending.json"), str(tmp_path / "pending.lock"))


@pytest.fixture()
def display_factory(sock_path):
    servers = []

    def start(pipeline):
        srv = IngestionServer(sock_path, pipeline)
        assert srv.start()
        servers.append(srv)
        return pipeline

    yield start
    for srv in servers:
        srv.stop()


def _server(sock_path, store, **cfg_kwargs):
    cfg = _make_config(sock_path, store.path, **cfg_kwargs)
    return create_mcp_server(store, cfg)


# ---------------------------------------------------------------------------
# Registration
# ---------------------------------------------------------------------------

class TestRegistration:
    @pytest.mark.asyncio
    async def test_tools(self, sock_path, store):
        server = _server(sock_path, store)
        names = {t.name for t in await server.list_tools()}
        assert names == {
            "show_progress", "show_result", "ask_confirmation",
            "show_actionable_result", "show_summary",
        }

    @pytest.mark.asyncio
    async def test_actionable_schema_hides_context(self, sock_path, store):
        server = _server(sock_path, store)
        tool = next(t for t in await server.list_tools() if t.name == "show_actionable_result")
        props = tool.inputSchema["properties"]
        assert set(props) == {"title", "message", "actions", "type"}
        assert set(tool.inputSchema["required"]) == {"title", "message", "actions"}

    @pytest.mark.asyncio
    async def test_resources(self, sock_path, store):
        server = _server(sock_path, store)
        resources = {str(r.uri): r for r in await server.list_resources()}
        assert set(resources) == {SESSION_STATS_URI, HISTORY_URI, PENDING_ACTIONS_URI}
        assert all(r.mimeType == "application/json" for r in resources.values())

    @pytest.mark.asyncio
    async def test_prompt(self, sock_path, store):
        server = _server(sock_path, store)
        assert [p.name for p in await server.list_prompts()] == ["work_summary"]
        result = await server.get_prompt("work_summary")
        assert "show_summary" in result.messages[0].content.text


# ---------------------------------------------------------------------------
# show_actionable_result
# ---------------------------------------------------------------------------

class TestActionableResult:
    @pytest.mark.asyncio
    async def test_choice_returned_and_record_removed(self, sock_path, store, display_factory):
        display = display_factory(ClickingDisplay(store, label="No", delay=0.05))
        server = _server(sock_path, store, poll=0.02, max_polls=100)

        result = await _call(server, "show_actionable_result",
                             title="Deploy?", message="prod", type="warning", actions=["Yes", "No"])

        assert result["status"] == "selected"
        assert result["selected"] == "No"
        assert store.all_actions() == []
        envelope = display.seen[0]
        assert envelope.priority is Priority.URGENT
        assert envelope.kind is NotificationKind.WARNING
        assert envelope.request_id == result["request_id"]
        assert [decode_action_token(a.action) for a in envelope.actions] == [
            (result["request_id"], "Yes"), (result["request_id"], "No"),
        ]

    @pytest.mark.asyncio
    async def test_timeout_result_and_record_removed(self, sock_path, store, display_factory):
        display_factory(ClickingDisplay(store))
        server = _server(sock_path, store, poll=0.02, max_polls=5)

        started = time.monotonic()
        result = await _call(server, "show_actionable_result",
                             title="Deploy?", message="prod", actions=["Yes"])
        elapsed = time.monotonic() - started

        assert result["status"] == "timeout"
        assert result["selected"] == "timeout"
        assert result["request_id"]
        assert store.all_actions() == []
        assert elapsed >= 5 * 0.02

    @pytest.mark.asyncio
    async def test_timeout_boundary(self, sock_path, store):
        """No display at all: times out after max_polls intervals, not before."""
        unit = 0.01
        server = _server(sock_path, store, poll=unit, max_polls=50)
        started = time.monotonic()
        result = await _call(server, "show_actionable_result",
                             title="T", message="M", actions=["Yes"])
        elapsed = time.monotonic() - started
        assert result["status"] == "timeout"
        assert 50 * unit <= elapsed < 50 * unit + 1.0

    @pytest.mark.asyncio
    async def test_scenario_timing(self, sock_path, store, display_factory):
        """Click at t=2 units; the call returns between t=2 and t=3 (one poll of slack)."""
        unit = 0.1
        display = display_factory(ClickingDisplay(store, label="Yes", delay=2 * unit))
        server = _server(sock_path, store, poll=unit, max_polls=50)

        started = time.monotonic()
        result = await _call(server, "show_actionable_result",
                             title="T", message="M", actions=["Yes", "No"])
        elapsed = time.monotonic() - started

        assert result["selected"] == "Yes"
        assert 2 * unit <= elapsed <= 3 * unit + 0.15
        assert display.clicked_at is not None
        assert result["request_id"] not in {a.id for a in store.list_pending()}

    @pytest.mark.asyncio
    async def test_watcher_wakes_early(self, sock_path, store, display_factory):
        display_factory(ClickingDisplay(store, label="Yes", delay=0.05))
        server = _server(sock_path, store, poll=2.0, max_polls=3, use_watcher=True)

        started = time.monotonic()
        result = await _call(server, "show_actionable_result",
                             title="T", message="M", actions=["Yes"])
        assert result["selected"] == "Yes"
        assert time.monotonic() - started < 1.5

    @pytest.mark.asyncio
    async def test_pending_visible_while_waiting(self, sock_path, store, display_factory):
        display = display_factory(ClickingDisplay(store))
        server = _server(sock_path, store, poll=0.02, max_polls=250)

        task = asyncio.create_task(_call(server, "show_actionable_result",
                                         title="Pick", message="M", actions=["A", "B"]))
        for _ in range(100):
            if display.seen:
                break
            await asyncio.sleep(0.02)
        contents = list(await server.read_resource(PENDING_ACTIONS_URI))
        pending = json.loads(contents[0].content)
        assert len(pending) == 1
        assert pending[0]["title"] == "Pick"
        assert pending[0]["actions"] == ["A", "B"]
        assert pending[0]["userChoice"] is None

        store.set_choice(pending[0]["id"], "B")
        result = await task
        assert result == {"status": "selected", "selected": "B", "request_id": pending[0]["id"]}

    @pytest.mark.asyncio
    async def test_undeliverable_still_waits_then_times_out(self, sock_path, store):
        server = _server(sock_path, store, poll=0.01, max_polls=3)
        result = await _call(server, "show_actionable_result",
                             title="T", message="M", actions=["Yes"])
        assert result["status"] == "timeout"

    @pytest.mark.asyncio
    async def test_late_click_leaves_orphan(self, sock_path, store):
        server = _server(sock_path, store, poll=0.01, max_polls=2)
        result = await _call(server, "show_actionable_result",
                             title="T", message="M", actions=["Yes"])
        store.set_choice(result["request_id"], "Yes")
        assert store.list_pending() == []
        assert [a.id for a in store.all_actions()] == [result["request_id"]]

    @pytest.mark.asyncio
    async def test_orphans_swept_when_configured(self, sock_path, store):
        old = (datetime.now(timezone.utc) - timedelta(hours=2)).isoformat()
        with open(store.path, "w") as f:
            json.dump({"orphan": {"id": "orphan", "title": "", "message": "", "type": "info",
                                  "actions": ["Yes"], "timestamp": old, "userChoice": "Yes"}}, f)
        server = _server(sock_path, store, poll=0.01, max_polls=1, orphan_max_age=60)
        await _call(server, "show_actionable_result", title="T", message="M", actions=["Yes"])
        assert store.all_actions() == []

    @pytest.mark.asyncio
    async def test_orphans_kept_by_default(self, sock_path, store):
        store.set_choice("orphan", "Yes")
        server = _server(sock_path, store, poll=0.01, max_polls=1)
        await _call(server, "show_actionable_result", title="T", message="M", actions=["Yes"])
        assert [a.id for a in store.all_actions()] == ["orphan"]


class TestProtocolErrors:
    @pytest.mark.asyncio
    @pytest.mark.parametrize("args", [
        {"title": "T", "message": "M", "actions": []},
        {"title": "T", "message": "M", "actions": ["a", "b", "c", "d"]},
        {"title": "   ", "message": "M", "actions": ["a"]},
        {"title": "T", "message": "M", "actions": ["a", " "]},
    ])
    async def test_bad_arguments(self, sock_path, store, args):
        server = _server(sock_path, store)
        result = json.loads(_text(await server.call_tool("show_actionable_result", args)))
        assert result["tool"] == "show_actionable_result"
        assert result["error"].startswith("ProtocolError")
        assert store.all_actions() == []

    @pytest.mark.asyncio
    async def test_non_string_labels_rejected(self, sock_path, store):
        server = _server(sock_path, store)
        with pytest.raises(ToolError):
            await server.call_tool("show_actionable_result",
                                   {"title": "T", "message": "M", "actions": [{"x": 1}]})
        assert store.all_actions() == []

    @pytest.mark.asyncio
    async def test_missing_arguments(self, sock_path, store):
        server = _server(sock_path, store)
        with pytest.raises(ToolError):
            await server.call_tool("show_actionable_result", {"title": "T"})

    @pytest.mark.asyncio
    async def test_unknown_tool(self, sock_path, store):
        server = _server(sock_path, store)
        with pytest.raises(ToolError):
            await server.call_tool("notch_explode", {})

    @pytest.mark.asyncio
    async def test_confirmation_needs_options(self, sock_path, store):
        server = _server(sock_path, store)
        result = await _call(server, "ask_confirmation", question="Sure?", options=[])
        assert result["tool"] == "ask_confirmation"
        assert "ProtocolError" in result["error"]


# ---------------------------------------------------------------------------
# Fire-and-forget tools
# ---------------------------------------------------------------------------

class TestNotifyTools:
    @pytest.mark.asyncio
    async def test_show_progress(self, sock_path, store, display_factory):
        display = display_factory(ClickingDisplay(store))
        server = _server(sock_path, store)
        result = await _call(server, "show_progress", title="Tests", progress=0.42, cancellable=True)
        assert result["delivered"] is True
        assert result["message"] == "Progress notification displayed: Tests at 42%"
        env = display.seen[0]
        assert env.kind is NotificationKind.PROGRESS
        assert env.message == "Progress: 42%"
        assert env.metadata == {"progress": "0.42", "cancellable": "true", "source": "mcp"}

    @pytest.mark.asyncio
    @pytest.mark.parametrize("progress,percent", [(1.7, 100), (-0.5, 0), (0.0, 0), (1.0, 100)])
    async def test_show_progress_clamps(self, sock_path, store, display_factory, progress, percent):
        display = display_factory(ClickingDisplay(store))
        server = _server(sock_path, store)
        await _call(server, "show_progress", title="T", progress=progress)
        assert display.seen[0].message == f"Progress: {percent}%"

    @pytest.mark.asyncio
    async def test_show_progress_without_display(self, sock_path, store):
        server = _server(sock_path, store)
        result = await _call(server, "show_progress", title="T", progress=0.5)
        assert result["delivered"] is False

    @pytest.mark.asyncio
    async def test_show_result(self, sock_path, store, display_factory):
        display = display_factory(ClickingDisplay(store))
        server = _server(sock_path, store)
        result = await _call(server, "show_result", title="Built", type="success", message="ok")
        assert result["delivered"] is True
        env = display.seen[0]
        assert env.priority is Priority.HIGH
        assert env.kind is NotificationKind.SUCCESS
        assert env.message == "ok"

    @pytest.mark.asyncio
    async def test_show_result_unknown_type(self, sock_path, store, display_factory):
        display = display_factory(ClickingDisplay(store))
        server = _server(sock_path, store)
        await _call(server, "show_result", title="Built", type="sparkles")
        assert display.seen[0].kind is NotificationKind.INFO

    @pytest.mark.asyncio
    async def test_ask_confirmation(self, sock_path, store, display_factory):
        display = display_factory(ClickingDisplay(store))
        server = _server(sock_path, store)
        result = await _call(server, "ask_confirmation", question="Ship it?", options=["Yes", "No"])
        assert result["status"] == "pending"
        assert result["message"].endswith("User response: pending")
        env = display.seen[0]
        assert env.kind is NotificationKind.REMINDER
        assert env.priority is Priority.URGENT
        assert env.message == "Ship it?"
        assert [a.label for a in env.actions] == ["Yes", "No"]
        assert not env.is_actionable
        assert store.all_actions() == []

    @pytest.mark.asyncio
    async def test_show_summary(self, sock_path, store, display_factory):
        display = display_factory(ClickingDisplay(store))
        server = _server(sock_path, store)
        result = await _call(
            server, "show_summary",
            project_name="notch", task_description="Built the store.",
            completed_tasks=["store", "watcher"], modified_files=["src/store.py"],
            issues=[{"title": "flaky", "description": "timing", "solution": "scale"}, {"description": "untitled"}],
        )
        env = display.seen[0]
        assert env.metadata["summary_id"] == result["summary_id"]
        summary = json.loads(env.metadata["summary_data"])
        assert summary["project_name"] == "notch"
        assert summary["completed_tasks"] == ["store", "watcher"]
        assert summary["modified_files"] == [{"path": "src/store.py", "modification_type": "modified"}]
        assert summary["issues"] == [
            {"title": "flaky", "description": "timing", "solution": "scale"},
            {"title": "Issue", "description": "untitled", "solution": None},
        ]
        assert env.kind is NotificationKind.SUCCESS

    @pytest.mark.asyncio
    async def test_display_rejection_is_undelivered(self, sock_path, store, display_factory):
        class Broken:
            def show(self, envelope):
                raise RuntimeError("no screen")

        display_factory(Broken())
        server = _server(sock_path, store)
        result = await _call(server, "show_result", title="T")
        assert result["delivered"] is False


# ---------------------------------------------------------------------------
# Resources & subscriptions
# ---------------------------------------------------------------------------

class TestResources:
    @pytest.mark.asyncio
    async def test_stats_unavailable(self, sock_path, store):
        server = _server(sock_path, store)
        contents = list(await server.read_resource(SESSION_STATS_URI))
        assert json.loads(contents[0].content) == {"error": "Statistics only available in display process"}

    @pytest.mark.asyncio
    async def test_history_unavailable(self, sock_path, store):
        server = _server(sock_path, store)
        contents = list(await server.read_resource(HISTORY_URI))
        assert "error" in json.loads(contents[0].content)

    @pytest.mark.asyncio
    async def test_pending_newest_first_unresolved_only(self, sock_path, store):
        now = datetime.now(timezone.utc)
        records = {
            key: {"id": key, "title": key, "message": "", "type": "info", "actions": ["Yes"],
                  "timestamp": (now - timedelta(seconds=age)).isoformat(), "userChoice": choice}
            for key, age, choice in [("old", 30, None), ("new", 1, None), ("done", 5, "Yes")]
        }
        with open(store.path, "w") as f:
            json.dump(records, f)
        server = _server(sock_path, store)
        contents = list(await server.read_resource(PENDING_ACTIONS_URI))
        assert [r["id"] for r in json.loads(contents[0].content)] == ["new", "old"]

    @pytest.mark.asyncio
    async def test_subscription_tracking(self, sock_path, store):
        state = ServerState()
        server = create_mcp_server(store, _make_config(sock_path, store.path), state=state)
        handlers = server._mcp_server.request_handlers

        await handlers[types.SubscribeRequest](types.SubscribeRequest(
            method="resources/subscribe",
            params=types.SubscribeRequestParams(uri=PENDING_ACTIONS_URI),
        ))
        assert PENDING_ACTIONS_URI in state.subscriptions

        await handlers[types.UnsubscribeRequest](types.UnsubscribeRequest(
            method="resources/unsubscribe",
            params=types.UnsubscribeRequestParams(uri=PENDING_ACTIONS_URI),
        ))
        assert state.subscriptions == set()

    @pytest.mark.asyncio
    async def test_subscribed_choice_outside_session_still_returns(self, sock_path, store, display_factory):
        """No live client session to notify: the tool result is unaffected."""
        state = ServerState(subscriptions={PENDING_ACTIONS_URI})
        display_factory(ClickingDisplay(store, label="Yes", delay=0.02))
        server = create_mcp_server(store, _make_config(sock_path, store.path, max_polls=100), state=state)
        result = await _call(server, "show_actionable_result", title="T", message="M", actions=["Yes"])
        assert result["selected"] == "Yes"

    def test_advertises_subscribe_capability(self, sock_path, store):
        server = _server(sock_path, store)
        options = server._mcp_server.create_initialization_options()
        assert options.capabilities.resources is not None
        assert options.capabilities.resources.subscribe is True


class TestClientSession:
    """Drive the server through a connected in-memory client session."""

    @pytest.mark.asyncio
    async def test_subscribed_client_gets_resource_updated(self, sock_path, store, display_factory):
        updated: list[str] = []

        async def on_message(message) -> None:
            if isinstance(message, types.ServerNotification) and isinstance(
                message.root, types.ResourceUpdatedNotification
            ):
                updated.append(str(message.root.params.uri))

        display_factory(ClickingDisplay(store, label="Yes", delay=0.05))
        server = create_mcp_server(store, _make_config(sock_path, store.path, max_polls=100))

        async with create_connected_server_and_client_session(server, message_handler=on_message) as client:
            caps = client.get_server_capabilities()
            assert caps is not None and caps.resources is not None
            assert caps.resources.subscribe is True

            await client.subscribe_resource(AnyUrl(PENDING_ACTIONS_URI))
            result = await client.call_tool(
                "show_actionable_result", {"title": "Deploy?", "message": "prod", "actions": ["Yes", "No"]}
            )
            assert json.loads(result.content[0].text)["selected"] == "Yes"

            for _ in range(50):
                if updated:
                    break
                await asyncio.sleep(0.02)
        assert PENDING_ACTIONS_URI in updated


# ---------------------------------------------------------------------------
# wait_for_choice
# ---------------------------------------------------------------------------

class TestWaitForChoice:
    def test_times_out_after_budget(self, store):
        store.create("abc", "T", "M", "info", ["Yes"])
        started = time.monotonic()
        assert wait_for_choice(store, "abc", 0.01, 5) is None
        assert time.monotonic() - started >= 0.05

    def test_returns_existing_choice_after_first_interval(self, store):
        store.create("abc", "T", "M", "info", ["Yes"])
        store.set_choice("abc", "Yes")
        started = time.monotonic()
        assert wait_for_choice(store, "abc", 0.05, 5) == "Yes"
        assert time.monotonic() - started >= 0.05

    def test_wake_does_not_shorten_timeout(self, store):
        store.create("abc", "T", "M", "info", ["Yes"])
        wake = threading.Event()
        stop = threading.Event()

        def nudge():
            while not stop.is_set():
                wake.set()
                time.sleep(0.005)

        t = threading.Thread(target=nudge, daemon=True)
        t.start()
        try:
            started = time.monotonic()
            assert wait_for_choice(store, "abc", 0.02, 5, wake) is None
            assert time.monotonic() - started >= 5 * 0.02 - 0.005
        finally:
            stop.set()
            t.join()

    def test_wake_returns_early(self, store):
        store.create("abc", "T", "M", "info", ["Yes"])
        wake = threading.Event()

        def click():
            store.set_choice("abc", "Yes")
            wake.set()

        threading.Timer(0.05, click).start()
        started = time.monotonic()
        assert wait_for_choice(store, "abc", 5.0, 2, wake) == "Yes"
        assert time.monotonic() - started < 1.0
