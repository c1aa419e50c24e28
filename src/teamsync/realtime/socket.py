"""
Realtime change channel over a Phoenix websocket.

One socket carries any number of topics. This module provides:
- Topic join/leave with confirmed replies
- Heartbeats with missed-reply detection
- Row change events turned into content-free per-topic signals
- Reconnection with exponential backoff, rejoin and catch-up signals
"""

import asyncio
import enum
import itertools
import json
from typing import Any, Callable, Dict, List, Optional, Set

import aiohttp

from ..utils.config import BackendConfig, RealtimeConfig, TeamSyncConfig
from ..utils.errors import ErrorContext, ErrorRecovery, SubscriptionError
from ..utils.logging import get_logger


logger = get_logger("teamsync.realtime.socket")

PHOENIX_TOPIC = "phoenix"
PROTOCOL_VERSION = "1.0.0"
CHANGE_EVENTS = frozenset(("postgres_changes", "INSERT", "UPDATE", "DELETE"))


class ConnectionState(enum.Enum):
    """Physical socket state."""
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    OPEN = "open"
    RECONNECTING = "reconnecting"
    FAILED = "failed"
    CLOSED = "closed"


class SubscriptionStatus(enum.Enum):
    """Observable status of one topic subscription."""
    CONNECTING = "connecting"
    OPEN = "open"
    DEGRADED = "degraded"
    CLOSED = "closed"


class JoinRejected(SubscriptionError):
    """The server refused a topic join."""
    code = "JOIN_REJECTED"
    is_retryable = False


SignalHandler = Callable[[str], None]
StatusHandler = Callable[[str, SubscriptionStatus], None]


class PhoenixSocket:
    """Single websocket multiplexing realtime topics."""

    def __init__(
        self,
        backend: BackendConfig,
        realtime: Optional[RealtimeConfig] = None,
        session: Optional[aiohttp.ClientSession] = None,
    ):
        self.backend = backend
        self.realtime = realtime or RealtimeConfig()
        self.state = ConnectionState.DISCONNECTED
        self._session = session
        self._owns_session = session is None
        self._ws: Optional[aiohttp.ClientWebSocketResponse] = None
        # topic -> join payload, for every topic that should be joined
        self._topics: Dict[str, Dict[str, Any]] = {}
        self._pending: Dict[str, asyncio.Future] = {}
        self._refs = itertools.count(1)
        self._heartbeat_ref: Optional[str] = None
        self._reader_task: Optional[asyncio.Task] = None
        self._heartbeat_task: Optional[asyncio.Task] = None
        self._reconnect_task: Optional[asyncio.Task] = None
        self._tasks: Set[asyncio.Task] = set()
        self._connect_lock = asyncio.Lock()
        self._signal_handlers: List[SignalHandler] = []
        self._status_handlers: List[StatusHandler] = []
        self._stats = {
            "messages_sent": 0,
            "messages_received": 0,
            "reconnects": 0,
        }

    @classmethod
    def from_config(cls, config: TeamSyncConfig) -> 'PhoenixSocket':
        return cls(config.backend, config.realtime)

    @property
    def endpoint(self) -> str:
        base = self.backend.url
        if base.startswith("https://"):
            base = "wss://" + base[len("https://"):]
        elif base.startswith("http://"):
            base = "ws://" + base[len("http://"):]
        return f"{base}/realtime/v1/websocket"

    @property
    def topics(self) -> List[str]:
        return list(self._topics)

    @property
    def stats(self) -> Dict[str, int]:
        return dict(self._stats)

    def topic_for(self, table: str, filter_expr: Optional[str] = None) -> str:
        topic = f"realtime:{self.backend.schema_name}:{table}"
        if filter_expr:
            topic = f"{topic}:{filter_expr}"
        return topic

    def add_signal_handler(self, handler: SignalHandler) -> None:
        self._signal_handlers.append(handler)

    def add_status_handler(self, handler: StatusHandler) -> None:
        self._status_handlers.append(handler)

    # Lifecycle

    async def connect(self) -> None:
        """Open the socket. On failure a background reconnect is scheduled."""
        async with self._connect_lock:
            if self.state == ConnectionState.OPEN:
                return
            if self.state == ConnectionState.RECONNECTING:
                raise SubscriptionError("Realtime socket is reconnecting")

            self.state = ConnectionState.CONNECTING
            try:
                await self._open()
            except SubscriptionError:
                self._schedule_reconnect()
                raise
            self.state = ConnectionState.OPEN

    async def close(self) -> None:
        """Close the socket and forget every topic."""
        if self.state == ConnectionState.CLOSED:
            return
        self.state = ConnectionState.CLOSED

        tasks = [
            t for t in (self._reconnect_task, self._reader_task, self._heartbeat_task, *self._tasks)
            if t is not None and not t.done()
        ]
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)

        ws, self._ws = self._ws, None
        if ws is not None and not ws.closed:
            await ws.close()

        self._fail_pending(SubscriptionError("Realtime socket closed"))
        self._topics.clear()

        if self._owns_session and self._session and not self._session.closed:
            await self._session.close()
        self._session = None

        logger.info("socket_closed", **self._stats)

    async def _open(self) -> None:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession()
            self._owns_session = True

        params = {"apikey": self.backend.api_key, "vsn": PROTOCOL_VERSION}
        try:
            ws = await asyncio.wait_for(
                self._session.ws_connect(self.endpoint, params=params),
                timeout=self.realtime.join_timeout,
            )
        except (aiohttp.ClientError, asyncio.TimeoutError, OSError) as e:
            raise SubscriptionError(
                f"Cannot open realtime socket: {e}",
                context=ErrorContext(component="realtime", operation="connect"),
                cause=e,
            ) from e

        self._ws = ws
        self._heartbeat_ref = None
        self._reader_task = asyncio.create_task(self._read_loop(ws))
        self._heartbeat_task = asyncio.create_task(self._heartbeat_loop(ws))
        logger.info("socket_connected", endpoint=self.endpoint)

    async def _drop_socket(self) -> None:
        ws, self._ws = self._ws, None
        for task in (self._reader_task, self._heartbeat_task):
            if task is not None and not task.done():
                task.cancel()
        if ws is not None and not ws.closed:
            await ws.close()

    # Topics

    async def join(self, topic: str, table: str, filter_expr: Optional[str] = None) -> None:
        """
        Join a topic for row changes of a table.

        The topic is remembered even when the join fails for transport
        reasons, so a later reconnect rejoins it. A rejected join is forgotten.

        Raises:
            SubscriptionError: If the join could not be confirmed
        """
        change: Dict[str, Any] = {
            "event": "*",
            "schema": self.backend.schema_name,
            "table": table,
        }
        if filter_expr:
            change["filter"] = filter_expr

        self._topics[topic] = {
            "config": {
                "broadcast": {"self": False},
                "presence": {"key": ""},
                "postgres_changes": [change],
            },
            "access_token": self.backend.access_token or self.backend.api_key,
        }

        await self.connect()
        try:
            await self._send_join(topic)
        except JoinRejected:
            self._topics.pop(topic, None)
            raise
        logger.info("channel_joined", topic=topic)

    async def leave(self, topic: str) -> None:
        """Leave a topic. Never raises."""
        if self._topics.pop(topic, None) is None:
            return
        if self._ws is None or self._ws.closed:
            return
        try:
            await self._send({
                "topic": topic,
                "event": "phx_leave",
                "payload": {},
                "ref": self._next_ref(),
            })
        except SubscriptionError as e:
            logger.warning("channel_leave_failed", topic=topic, error=str(e))
            return
        logger.info("channel_left", topic=topic)

    async def _send_join(self, topic: str) -> None:
        payload = self._topics.get(topic)
        if payload is None:
            raise SubscriptionError(f"Topic is no longer joined: {topic}")
        ref = self._next_ref()
        future = asyncio.get_running_loop().create_future()
        self._pending[ref] = future
        try:
            await self._send({
                "topic": topic,
                "event": "phx_join",
                "payload": payload,
                "ref": ref,
                "join_ref": ref,
            })
            reply = await asyncio.wait_for(future, self.realtime.join_timeout)
        except asyncio.TimeoutError as e:
            raise SubscriptionError(
                f"Join timed out: {topic}",
                context=ErrorContext(component="realtime", operation="join", metadata={"topic": topic}),
            ) from e
        finally:
            self._pending.pop(ref, None)

        if not isinstance(reply, dict) or reply.get("status") != "ok":
            response = reply.get("response") if isinstance(reply, dict) else reply
            raise JoinRejected(
                f"Join rejected for {topic}: {response}",
                context=ErrorContext(component="realtime", operation="join", metadata={"topic": topic}),
            )

    async def _rejoin_all(self) -> List[str]:
        """Rejoin every remembered topic, including ones added meanwhile; returns the topics now joined."""
        joined: List[str] = []
        pending = list(self._topics)
        while pending:
            for topic in pending:
                if topic not in self._topics:
                    continue
                try:
                    await self._send_join(topic)
                except JoinRejected as e:
                    logger.warning("channel_rejoin_rejected", topic=topic, error=str(e))
                    self._topics.pop(topic, None)
                    self._emit_status(topic, SubscriptionStatus.DEGRADED)
                    continue
                joined.append(topic)
            pending = [topic for topic in self._topics if topic not in joined]
        return joined

    async def _rejoin(self, topic: str) -> None:
        if topic not in self._topics:
            return
        try:
            await self._send_join(topic)
        except SubscriptionError as e:
            logger.warning("channel_rejoin_failed", topic=topic, error=str(e))
            return
        logger.info("channel_rejoined", topic=topic)
        self._emit_status(topic, SubscriptionStatus.OPEN)
        self._emit_signal(topic)

    # Wire

    def _next_ref(self) -> str:
        return str(next(self._refs))

    async def _send(self, message: Dict[str, Any]) -> None:
        ws = self._ws
        if ws is None or ws.closed:
            raise SubscriptionError("Realtime socket is not connected")
        try:
            await ws.send_str(json.dumps(message))
        except (ConnectionResetError, aiohttp.ClientError, RuntimeError) as e:
            raise SubscriptionError(f"Send failed: {e}", cause=e) from e
        self._stats["messages_sent"] += 1

    async def _read_loop(self, ws: aiohttp.ClientWebSocketResponse) -> None:
        async for msg in ws:
            if msg.type == aiohttp.WSMsgType.TEXT:
                try:
                    message = json.loads(msg.data)
                except json.JSONDecodeError:
                    logger.warning("socket_invalid_frame", data=str(msg.data)[:200])
                    continue
                self._stats["messages_received"] += 1
                self._dispatch(message)
            elif msg.type == aiohttp.WSMsgType.ERROR:
                logger.warning("socket_error", error=str(ws.exception()))
                break

        self._on_connection_lost(ws)

    async def _heartbeat_loop(self, ws: aiohttp.ClientWebSocketResponse) -> None:
        while not ws.closed:
            await asyncio.sleep(self.realtime.heartbeat_interval)
            if self._heartbeat_ref is not None:
                # Previous heartbeat never answered
                logger.warning("heartbeat_timeout", ref=self._heartbeat_ref)
                await asyncio.shield(ws.close())
                return
            self._heartbeat_ref = self._next_ref()
            try:
                await self._send({
                    "topic": PHOENIX_TOPIC,
                    "event": "heartbeat",
                    "payload": {},
                    "ref": self._heartbeat_ref,
                })
            except SubscriptionError:
                return

    def _dispatch(self, message: Any) -> None:
        if not isinstance(message, dict):
            return

        topic = message.get("topic")
        event = message.get("event")
        payload = message.get("payload") or {}
        ref = message.get("ref")

        if event == "phx_reply":
            if ref is not None and ref == self._heartbeat_ref:
                self._heartbeat_ref = None
                return
            future = self._pending.pop(str(ref), None) if ref is not None else None
            if future is not None and not future.done():
                future.set_result(payload)
            return

        if topic not in self._topics:
            return

        if event in CHANGE_EVENTS:
            self._emit_signal(topic)
        elif event == "phx_error":
            logger.warning("channel_error", topic=topic)
            self._emit_status(topic, SubscriptionStatus.DEGRADED)
            task = asyncio.create_task(self._rejoin(topic))
            self._tasks.add(task)
            task.add_done_callback(self._tasks.discard)

    # Recovery

    def _on_connection_lost(self, ws: aiohttp.ClientWebSocketResponse) -> None:
        if self.state == ConnectionState.CLOSED or ws is not self._ws:
            return

        logger.warning("socket_connection_lost", topics=len(self._topics))
        self._ws = None
        if self._heartbeat_task is not None and not self._heartbeat_task.done():
            self._heartbeat_task.cancel()
        self._fail_pending(SubscriptionError("Realtime connection lost"))
        for topic in list(self._topics):
            self._emit_status(topic, SubscriptionStatus.DEGRADED)
        self._schedule_reconnect()

    def _schedule_reconnect(self) -> None:
        if self.state == ConnectionState.CLOSED:
            return
        if self._reconnect_task is not None and not self._reconnect_task.done():
            return
        if self.realtime.max_reconnect_attempts <= 0:
            self.state = ConnectionState.FAILED
            return
        self.state = ConnectionState.RECONNECTING
        self._reconnect_task = asyncio.create_task(self._reconnect_loop())

    async def _reconnect_loop(self) -> None:
        attempt = 0
        while attempt < self.realtime.max_reconnect_attempts:
            attempt += 1
            delay = ErrorRecovery.backoff_delay(
                attempt,
                base_delay=self.realtime.reconnect_delay,
                max_delay=self.realtime.max_reconnect_delay,
            )
            logger.info("socket_reconnecting", attempt=attempt, delay=delay)
            await asyncio.sleep(delay)

            try:
                await self._open()
                joined = await self._rejoin_all()
            except SubscriptionError as e:
                logger.warning("socket_reconnect_failed", attempt=attempt, error=str(e))
                await self._drop_socket()
                continue

            self.state = ConnectionState.OPEN
            self._stats["reconnects"] += 1
            logger.info("socket_reconnected", attempt=attempt, topics=len(joined))

            # Changes may have been missed while disconnected
            for topic in joined:
                self._emit_status(topic, SubscriptionStatus.OPEN)
                self._emit_signal(topic)
            return

        self.state = ConnectionState.FAILED
        logger.error("socket_reconnect_abandoned", attempts=attempt)

    def _fail_pending(self, error: Exception) -> None:
        pending, self._pending = self._pending, {}
        for future in pending.values():
            if not future.done():
                future.set_exception(error)

    def _emit_signal(self, topic: str) -> None:
        for handler in list(self._signal_handlers):
            try:
                handler(topic)
            except Exception as e:
                logger.error("signal_handler_failed", topic=topic, error=str(e))

    def _emit_status(self, topic: str, status: SubscriptionStatus) -> None:
        for handler in list(self._status_handlers):
            try:
                handler(topic, status)
            except Exception as e:
                logger.error("status_handler_failed", topic=topic, error=str(e))


__all__ = [
    'PhoenixSocket',
    'ConnectionState',
    'SubscriptionStatus',
    'JoinRejected',
    'PHOENIX_TOPIC',
]
