"""
Tests for the realtime socket and the subscription hub.
"""

import asyncio
import json
from typing import Any, Dict, List

import pytest
from aiohttp import WSMsgType, test_utils, web

from teamsync.realtime.hub import SubscriptionHub, filter_expression, get_hub, set_hub
from teamsync.realtime.socket import ConnectionState, JoinRejected, PhoenixSocket, SubscriptionStatus
from teamsync.utils.config import BackendConfig, RealtimeConfig
from teamsync.utils.errors import SubscriptionError, ValidationError
from tests.utils import AsyncTestHelper, FakeSocket, settle, wait_for_condition


class TestFilterExpression:
    """Test channel filter rendering."""

    def test_no_filter(self):
        assert filter_expression(None) is None
        assert filter_expression({}) is None

    def test_single_column(self):
        assert filter_expression({"task_id": "t1"}) == "task_id=eq.t1"
        assert filter_expression({"read": False}) == "read=eq.false"

    def test_multiple_columns_rejected(self):
        with pytest.raises(ValidationError):
            filter_expression({"a": 1, "b": 2})


class TestSubscriptionHub:
    """Test reference counting and fan-out."""

    @pytest.mark.asyncio
    async def test_shared_topic_joined_once_left_last(self):
        socket = FakeSocket()
        hub = SubscriptionHub(socket)

        first = await hub.subscribe("tasks")
        second = await hub.subscribe("tasks")

        assert socket.joins == ["realtime:public:tasks"]
        assert hub.subscriber_count("realtime:public:tasks") == 2
        assert first.status is SubscriptionStatus.OPEN

        await first.close()
        assert socket.leaves == []

        await second.close()
        assert socket.leaves == ["realtime:public:tasks"]
        assert hub.topics == []

    @pytest.mark.asyncio
    async def test_concurrent_subscribers_share_pending_join(self):
        socket = FakeSocket()
        socket.join_gate = asyncio.Event()
        hub = SubscriptionHub(socket)

        tasks = [asyncio.create_task(hub.subscribe("messages")) for _ in range(3)]
        await settle()
        assert socket.joins == ["realtime:public:messages"]

        socket.join_gate.set()
        handles = await AsyncTestHelper.assert_completes_within(asyncio.gather(*tasks), 1.0)

        assert all(h.status is SubscriptionStatus.OPEN for h in handles)

    @pytest.mark.asyncio
    async def test_cancelled_subscribe_releases_topic(self):
        socket = FakeSocket()
        socket.join_gate = asyncio.Event()
        hub = SubscriptionHub(socket)

        task = asyncio.create_task(hub.subscribe("tasks"))
        await settle()
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

        assert hub.subscriber_count("realtime:public:tasks") == 0
        assert hub.topics == []
        assert socket.leaves == ["realtime:public:tasks"]

        socket.join_gate.set()
        handle = await hub.subscribe("tasks")

        assert handle.status is SubscriptionStatus.OPEN
        assert hub.subscriber_count("realtime:public:tasks") == 1

    @pytest.mark.asyncio
    async def test_cancelled_subscriber_leaves_shared_join_alone(self):
        socket = FakeSocket()
        socket.join_gate = asyncio.Event()
        hub = SubscriptionHub(socket)

        cancelled = asyncio.create_task(hub.subscribe("tasks"))
        kept = asyncio.create_task(hub.subscribe("tasks"))
        await settle()
        cancelled.cancel()
        with pytest.raises(asyncio.CancelledError):
            await cancelled

        socket.join_gate.set()
        handle = await kept

        assert handle.status is SubscriptionStatus.OPEN
        assert hub.subscriber_count("realtime:public:tasks") == 1
        assert socket.leaves == []

    @pytest.mark.asyncio
    async def test_filters_get_separate_topics(self):
        socket = FakeSocket()
        hub = SubscriptionHub(socket)

        await hub.subscribe("task_attachments", {"task_id": "t1"})
        await hub.subscribe("task_attachments", {"task_id": "t2"})

        assert socket.joins == [
            "realtime:public:task_attachments:task_id=eq.t1",
            "realtime:public:task_attachments:task_id=eq.t2",
        ]

    @pytest.mark.asyncio
    async def test_signal_reaches_every_open_handle(self):
        socket = FakeSocket()
        hub = SubscriptionHub(socket)
        received = {"a": 0, "b": 0}

        a = await hub.subscribe("tasks")
        b = await hub.subscribe("tasks")
        a.on_signal(lambda: received.__setitem__("a", received["a"] + 1))
        b.on_signal(lambda: received.__setitem__("b", received["b"] + 1))

        socket.signal("realtime:public:tasks")
        await b.close()
        socket.signal("realtime:public:tasks")

        assert received == {"a": 2, "b": 1}

    @pytest.mark.asyncio
    async def test_failed_join_degrades_instead_of_raising(self):
        hub = SubscriptionHub(FakeSocket(fail_join=True))

        handle = await hub.subscribe("notifications")

        assert handle.status is SubscriptionStatus.DEGRADED

    @pytest.mark.asyncio
    async def test_status_changes_propagate(self):
        socket = FakeSocket()
        hub = SubscriptionHub(socket)
        statuses = []

        handle = await hub.subscribe("tasks")
        handle.on_status(statuses.append)
        socket.status("realtime:public:tasks", SubscriptionStatus.DEGRADED)
        socket.status("realtime:public:tasks", SubscriptionStatus.OPEN)

        assert statuses == [SubscriptionStatus.DEGRADED, SubscriptionStatus.OPEN]

    @pytest.mark.asyncio
    async def test_close_is_idempotent(self):
        socket = FakeSocket()
        hub = SubscriptionHub(socket)

        handle = await hub.subscribe("tasks")
        await handle.close()
        await handle.close()

        assert handle.status is SubscriptionStatus.CLOSED
        assert socket.leaves == ["realtime:public:tasks"]

    @pytest.mark.asyncio
    async def test_disabled_hub_never_joins(self):
        socket = FakeSocket()
        hub = SubscriptionHub(socket, enabled=False)

        handle = await hub.subscribe("tasks")
        await handle.close()

        assert handle.status is SubscriptionStatus.CLOSED
        assert socket.joins == []
        assert socket.leaves == []

    @pytest.mark.asyncio
    async def test_hub_close(self):
        socket = FakeSocket()
        hub = SubscriptionHub(socket)

        handle = await hub.subscribe("tasks")
        await hub.close()

        assert handle.closed
        assert socket.closed

    @pytest.mark.asyncio
    async def test_multi_column_filter_rejected(self):
        hub = SubscriptionHub(FakeSocket())

        with pytest.raises(ValidationError):
            await hub.subscribe("tasks", {"status": "todo", "priority": "high"})

    @pytest.mark.asyncio
    async def test_process_wide_hub(self, test_config):
        hub = get_hub(test_config)

        assert isinstance(hub, SubscriptionHub)
        assert get_hub() is hub

        replacement = SubscriptionHub(FakeSocket())
        set_hub(replacement)
        assert get_hub() is replacement


class RealtimeServer:
    """Phoenix-style realtime endpoint."""

    def __init__(self):
        self.connections: List[web.WebSocketResponse] = []
        self.queries: List[Dict[str, str]] = []
        self.received: List[Dict[str, Any]] = []
        self.join_status = "ok"
        self.answer_heartbeats = True
        self.join_delay = 0.0

    def app(self) -> web.Application:
        app = web.Application()
        app.router.add_get("/realtime/v1/websocket", self.handler)
        return app

    def events(self, name: str) -> List[Dict[str, Any]]:
        return [m for m in self.received if m.get("event") == name]

    @staticmethod
    def _reply(message: Dict[str, Any], status: str) -> Dict[str, Any]:
        return {
            "topic": message["topic"],
            "event": "phx_reply",
            "payload": {"status": status, "response": {}},
            "ref": message["ref"],
        }

    async def handler(self, request):
        ws = web.WebSocketResponse()
        await ws.prepare(request)
        self.queries.append(dict(request.query))
        self.connections.append(ws)

        async for msg in ws:
            if msg.type != WSMsgType.TEXT:
                continue
            message = json.loads(msg.data)
            self.received.append(message)
            if message["event"] == "phx_join":
                if self.join_delay:
                    await asyncio.sleep(self.join_delay)
                await ws.send_json(self._reply(message, self.join_status))
            elif message["event"] == "heartbeat" and self.answer_heartbeats:
                await ws.send_json(self._reply(message, "ok"))
        return ws

    async def push(self, topic: str, event: str = "postgres_changes") -> None:
        await self.connections[-1].send_json({
            "topic": topic,
            "event": event,
            "payload": {"data": {"type": "UPDATE", "table": "tasks"}},
            "ref": None,
        })


@pytest.fixture
async def realtime_server():
    fake = RealtimeServer()
    server = test_utils.TestServer(fake.app())
    await server.start_server()
    fake.url = f"http://{server.host}:{server.port}"
    yield fake
    await server.close()


def make_socket(url: str, **realtime: Any) -> PhoenixSocket:
    settings = dict(
        heartbeat_interval=30.0,
        join_timeout=1.0,
        reconnect_delay=0.01,
        max_reconnect_delay=0.05,
        max_reconnect_attempts=5,
    )
    settings.update(realtime)
    return PhoenixSocket(BackendConfig(url=url, api_key="anon"), RealtimeConfig(**settings))


@pytest.mark.integration
class TestPhoenixSocket:
    """Test the websocket protocol against an in-process server."""

    @pytest.mark.asyncio
    async def test_join_payload(self, realtime_server):
        socket = make_socket(realtime_server.url)
        topic = socket.topic_for("tasks", "id=eq.1")
        try:
            await socket.join(topic, "tasks", "id=eq.1")

            assert socket.state is ConnectionState.OPEN
            assert realtime_server.queries[0] == {"apikey": "anon", "vsn": "1.0.0"}
            join = realtime_server.events("phx_join")[0]
            assert join["topic"] == "realtime:public:tasks:id=eq.1"
            assert join["payload"]["config"]["postgres_changes"] == [
                {"event": "*", "schema": "public", "table": "tasks", "filter": "id=eq.1"}
            ]
        finally:
            await socket.close()

    @pytest.mark.asyncio
    async def test_change_events_become_signals(self, realtime_server):
        socket = make_socket(realtime_server.url)
        signals = []
        socket.add_signal_handler(signals.append)
        topic = socket.topic_for("tasks")
        try:
            await socket.join(topic, "tasks")
            await realtime_server.push("realtime:public:unrelated")
            await realtime_server.push(topic)
            await realtime_server.push(topic, event="DELETE")

            await wait_for_condition(lambda: len(signals) == 2)
            assert signals == [topic, topic]
        finally:
            await socket.close()

    @pytest.mark.asyncio
    async def test_rejected_join(self, realtime_server):
        realtime_server.join_status = "error"
        socket = make_socket(realtime_server.url)
        topic = socket.topic_for("tasks")
        try:
            with pytest.raises(JoinRejected):
                await socket.join(topic, "tasks")
            assert socket.topics == []
        finally:
            await socket.close()

    @pytest.mark.asyncio
    async def test_leave(self, realtime_server):
        socket = make_socket(realtime_server.url)
        topic = socket.topic_for("tasks")
        try:
            await socket.join(topic, "tasks")
            await socket.leave(topic)

            await wait_for_condition(lambda: len(realtime_server.events("phx_leave")) == 1)
            assert socket.topics == []
        finally:
            await socket.close()

    @pytest.mark.asyncio
    async def test_reconnects_rejoins_and_signals(self, realtime_server):
        socket = make_socket(realtime_server.url)
        signals, statuses = [], []
        socket.add_signal_handler(signals.append)
        socket.add_status_handler(lambda topic, status: statuses.append(status))
        topic = socket.topic_for("notifications")
        try:
            await socket.join(topic, "notifications")
            await realtime_server.connections[0].close()

            await wait_for_condition(lambda: SubscriptionStatus.OPEN in statuses and signals)

            assert statuses == [SubscriptionStatus.DEGRADED, SubscriptionStatus.OPEN]
            assert signals == [topic]
            assert len(realtime_server.events("phx_join")) == 2
            assert socket.stats["reconnects"] == 1
            assert socket.state is ConnectionState.OPEN
        finally:
            await socket.close()

    @pytest.mark.asyncio
    async def test_topic_joined_during_reconnect_is_rejoined(self, realtime_server):
        socket = make_socket(realtime_server.url)
        statuses = []
        socket.add_status_handler(lambda topic, status: statuses.append((topic, status)))
        tasks = socket.topic_for("tasks")
        messages = socket.topic_for("messages")
        try:
            await socket.join(tasks, "tasks")
            realtime_server.join_delay = 0.1
            await realtime_server.connections[0].close()
            await wait_for_condition(lambda: len(realtime_server.events("phx_join")) == 2)

            assert socket.state is ConnectionState.RECONNECTING
            with pytest.raises(SubscriptionError):
                await socket.join(messages, "messages")

            await wait_for_condition(lambda: (messages, SubscriptionStatus.OPEN) in statuses)

            assert socket.state is ConnectionState.OPEN
            assert (tasks, SubscriptionStatus.OPEN) in statuses
            assert sorted(socket.topics) == sorted([tasks, messages])
        finally:
            await socket.close()

    @pytest.mark.asyncio
    async def test_channel_error_after_leave_does_not_rejoin(self, realtime_server):
        socket = make_socket(realtime_server.url)
        statuses = []
        socket.add_status_handler(lambda topic, status: statuses.append(status))
        topic = socket.topic_for("tasks")
        try:
            await socket.join(topic, "tasks")
            socket._dispatch({"topic": topic, "event": "phx_error", "payload": {}, "ref": None})
            rejoins = set(socket._tasks)
            await socket.leave(topic)

            done, pending = await asyncio.wait(rejoins, timeout=1.0)

            assert len(done) == 1 and not pending
            assert all(task.exception() is None for task in done)
            assert statuses == [SubscriptionStatus.DEGRADED]
            assert len(realtime_server.events("phx_join")) == 1
        finally:
            await socket.close()

    @pytest.mark.asyncio
    async def test_missed_heartbeat_forces_reconnect(self, realtime_server):
        socket = make_socket(realtime_server.url, heartbeat_interval=0.05)
        topic = socket.topic_for("tasks")
        try:
            await socket.join(topic, "tasks")
            await wait_for_condition(lambda: len(realtime_server.events("heartbeat")) >= 2)
            assert len(realtime_server.connections) == 1

            realtime_server.answer_heartbeats = False
            await wait_for_condition(lambda: len(realtime_server.connections) >= 2)
        finally:
            await socket.close()

    @pytest.mark.asyncio
    async def test_close(self, realtime_server):
        socket = make_socket(realtime_server.url)
        await socket.join(socket.topic_for("tasks"), "tasks")

        await socket.close()
        await socket.close()

        assert socket.state is ConnectionState.CLOSED
        assert socket.topics == []

    @pytest.mark.asyncio
    async def test_unreachable_server_degrades_subscription(self):
        socket = make_socket("http://127.0.0.1:1", max_reconnect_attempts=0)
        hub = SubscriptionHub(socket)

        handle = await hub.subscribe("tasks")

        assert handle.status is SubscriptionStatus.DEGRADED
        assert socket.state is ConnectionState.FAILED
        await hub.close()

    @pytest.mark.asyncio
    async def test_hub_over_real_socket(self, realtime_server):
        hub = SubscriptionHub(make_socket(realtime_server.url))
        received = []
        try:
            handle = await hub.subscribe("messages")
            handle.on_signal(lambda: received.append(True))
            await realtime_server.push(handle.topic)

            await wait_for_condition(lambda: received == [True])
        finally:
            await hub.close()
