"""
Reference-counted change subscriptions.

Any number of ChangeSubscription handles share one topic per
(table, filter) pair. The topic is joined for the first handle and left
when the last one closes. Handles never raise on a failed join; they come
back DEGRADED so their owner can fall back to polling.
"""

import asyncio
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional

from .socket import PhoenixSocket, SubscriptionStatus
from ..models.collections import Filter
from ..utils.config import TeamSyncConfig, get_config
from ..utils.errors import SubscriptionError, ValidationError
from ..utils.logging import get_logger


logger = get_logger("teamsync.realtime.hub")


SignalCallback = Callable[[], None]
StatusCallback = Callable[[SubscriptionStatus], None]


def filter_expression(filter: Optional[Filter]) -> Optional[str]:
    """Render a single-column equality filter in channel syntax."""
    if not filter:
        return None
    if len(filter) > 1:
        raise ValidationError(
            "filter", dict(filter), "change subscriptions support one equality column"
        )
    (column, value), = filter.items()
    if isinstance(value, bool):
        value = "true" if value else "false"
    return f"{column}=eq.{value}"


class ChangeSubscription:
    """Handle delivering change signals for one (table, filter) topic."""

    def __init__(self, hub: 'SubscriptionHub', topic: str, table: str, filter: Optional[Filter]):
        self.topic = topic
        self.table = table
        self.filter = dict(filter) if filter else None
        self._hub = hub
        self._status = SubscriptionStatus.CONNECTING
        self._signal_callbacks: List[SignalCallback] = []
        self._status_callbacks: List[StatusCallback] = []
        self.signals_received = 0

    @property
    def status(self) -> SubscriptionStatus:
        return self._status

    @property
    def closed(self) -> bool:
        return self._status == SubscriptionStatus.CLOSED

    def on_signal(self, callback: SignalCallback) -> None:
        self._signal_callbacks.append(callback)

    def on_status(self, callback: StatusCallback) -> None:
        self._status_callbacks.append(callback)

    async def close(self) -> None:
        """Stop delivering signals and release the topic. Idempotent."""
        if self.closed:
            return
        self._status = SubscriptionStatus.CLOSED
        self._signal_callbacks.clear()
        self._status_callbacks.clear()
        await self._hub._release(self)

    def _deliver_signal(self) -> None:
        if self.closed:
            return
        self.signals_received += 1
        for callback in list(self._signal_callbacks):
            try:
                callback()
            except Exception as e:
                logger.error("signal_callback_failed", topic=self.topic, error=str(e))

    def _set_status(self, status: SubscriptionStatus) -> None:
        if self.closed or status == self._status:
            return
        self._status = status
        for callback in list(self._status_callbacks):
            try:
                callback(status)
            except Exception as e:
                logger.error("status_callback_failed", topic=self.topic, error=str(e))

    def __repr__(self) -> str:
        return f"ChangeSubscription(topic={self.topic!r}, status={self._status.value})"


@dataclass
class _TopicEntry:
    topic: str
    table: str
    filter_expr: Optional[str]
    status: SubscriptionStatus = SubscriptionStatus.CONNECTING
    handles: List[ChangeSubscription] = field(default_factory=list)
    join_task: Optional[asyncio.Task] = None


class SubscriptionHub:
    """Registry of shared realtime topics over one socket."""

    def __init__(self, socket: PhoenixSocket, enabled: bool = True):
        self.socket = socket
        self.enabled = enabled
        self._topics: Dict[str, _TopicEntry] = {}
        socket.add_signal_handler(self._on_signal)
        socket.add_status_handler(self._on_status)

    @classmethod
    def from_config(cls, config: TeamSyncConfig) -> 'SubscriptionHub':
        return cls(PhoenixSocket.from_config(config), enabled=config.realtime.enabled)

    def subscriber_count(self, topic: str) -> int:
        entry = self._topics.get(topic)
        return len(entry.handles) if entry else 0

    @property
    def topics(self) -> List[str]:
        return list(self._topics)

    async def subscribe(self, table: str, filter: Optional[Filter] = None) -> ChangeSubscription:
        """
        Subscribe to row changes of a table.

        Returns once the topic join is confirmed or has failed; in the latter
        case the handle is DEGRADED.

        Raises:
            ValidationError: If the filter has more than one column
        """
        filter_expr = filter_expression(filter)
        topic = self.socket.topic_for(table, filter_expr)
        handle = ChangeSubscription(self, topic, table, filter)

        entry = self._topics.get(topic)
        if entry is None:
            entry = _TopicEntry(topic=topic, table=table, filter_expr=filter_expr)
            self._topics[topic] = entry
            entry.join_task = asyncio.create_task(self._join(entry))
        entry.handles.append(handle)

        if entry.join_task is not None:
            try:
                await asyncio.shield(entry.join_task)
            except asyncio.CancelledError:
                await handle.close()
                raise

        handle._set_status(entry.status)
        logger.debug(
            "subscription_opened",
            topic=topic,
            status=handle.status.value,
            subscribers=len(entry.handles),
        )
        return handle

    async def close(self) -> None:
        """Close every handle and the socket."""
        for entry in list(self._topics.values()):
            for handle in list(entry.handles):
                await handle.close()
        self._topics.clear()
        await self.socket.close()

    async def _join(self, entry: _TopicEntry) -> None:
        if not self.enabled:
            entry.status = SubscriptionStatus.DEGRADED
            return
        try:
            await self.socket.join(entry.topic, entry.table, entry.filter_expr)
        except SubscriptionError as e:
            logger.warning("subscription_degraded", topic=entry.topic, error=str(e))
            entry.status = SubscriptionStatus.DEGRADED
            return
        entry.status = SubscriptionStatus.OPEN

    async def _release(self, handle: ChangeSubscription) -> None:
        entry = self._topics.get(handle.topic)
        if entry is None or handle not in entry.handles:
            return
        entry.handles.remove(handle)
        if entry.handles:
            return

        del self._topics[handle.topic]
        if entry.join_task is not None and not entry.join_task.done():
            # nobody is waiting on the join any more
            entry.join_task.cancel()
            await asyncio.gather(entry.join_task, return_exceptions=True)
        if self.enabled:
            await self.socket.leave(handle.topic)
        logger.debug("topic_released", topic=handle.topic)

    def _on_signal(self, topic: str) -> None:
        entry = self._topics.get(topic)
        if entry is None:
            return
        for handle in list(entry.handles):
            handle._deliver_signal()

    def _on_status(self, topic: str, status: SubscriptionStatus) -> None:
        entry = self._topics.get(topic)
        if entry is None:
            return
        entry.status = status
        for handle in list(entry.handles):
            handle._set_status(status)


# Process-wide default hub
_hub: Optional[SubscriptionHub] = None


def get_hub(config: Optional[TeamSyncConfig] = None) -> SubscriptionHub:
    """Get the process-wide hub, creating it from config on first use."""
    global _hub
    if _hub is None:
        _hub = SubscriptionHub.from_config(config or get_config())
    return _hub


def set_hub(hub: Optional[Any]) -> None:
    """Replace (or clear) the process-wide hub."""
    global _hub
    _hub = hub


__all__ = [
    'SubscriptionHub',
    'ChangeSubscription',
    'SubscriptionStatus',
    'filter_expression',
    'get_hub',
    'set_hub',
]
