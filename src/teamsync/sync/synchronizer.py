"""
Collection synchronizer.

Keeps one local, ordered, read-only snapshot of a remote collection
consistent with the server:
- Subscribe first, then fetch, so no change after the first fetch is missed
- Every change signal triggers a full re-fetch that replaces the snapshot
- Fetches never overlap; signals during a fetch coalesce into one trailing fetch
- Responses are applied in issue order only
- Polling takes over while the change subscription is degraded

State changes go through the pure `transition` function; the class only
performs the effects.
"""

import asyncio
from dataclasses import dataclass, replace
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Tuple

from ..models.collections import Collection, Filter, FilterKey, normalize_filter, order_snapshot
from ..models.records import Record
from ..realtime.hub import ChangeSubscription
from ..realtime.socket import SubscriptionStatus
from ..utils.errors import ErrorKind, SynchronizerError, ValidationError, error_kind_of
from ..utils.logging import get_logger


logger = get_logger("teamsync.sync.synchronizer")


class SyncState(Enum):
    """Synchronizer lifecycle states."""
    IDLE = "idle"
    LOADING = "loading"
    READY = "ready"
    ERROR = "error"
    CLOSED = "closed"


class SyncTrigger(Enum):
    """Events driving the synchronizer state machine."""
    MOUNT = "mount"
    SIGNAL = "signal"
    REFRESH = "refresh"
    FETCH_SUCCEEDED = "fetch_succeeded"
    FETCH_FAILED = "fetch_failed"
    UNMOUNT = "unmount"


_TRANSITIONS: Dict[Tuple[SyncState, SyncTrigger], SyncState] = {
    (SyncState.IDLE, SyncTrigger.MOUNT): SyncState.LOADING,
    (SyncState.LOADING, SyncTrigger.SIGNAL): SyncState.LOADING,
    (SyncState.LOADING, SyncTrigger.REFRESH): SyncState.LOADING,
    (SyncState.LOADING, SyncTrigger.FETCH_SUCCEEDED): SyncState.READY,
    (SyncState.LOADING, SyncTrigger.FETCH_FAILED): SyncState.ERROR,
    (SyncState.READY, SyncTrigger.SIGNAL): SyncState.LOADING,
    (SyncState.READY, SyncTrigger.REFRESH): SyncState.LOADING,
    (SyncState.ERROR, SyncTrigger.SIGNAL): SyncState.LOADING,
    (SyncState.ERROR, SyncTrigger.REFRESH): SyncState.LOADING,
}


def transition(state: SyncState, trigger: SyncTrigger) -> SyncState:
    """Next state for a trigger. CLOSED absorbs everything; unknown pairs are no-ops."""
    if state is SyncState.CLOSED or trigger is SyncTrigger.UNMOUNT:
        return SyncState.CLOSED
    return _TRANSITIONS.get((state, trigger), state)


@dataclass(frozen=True)
class CollectionView:
    """Immutable read-model handed to presentation."""
    collection: str
    data: Tuple[Record, ...] = ()
    state: SyncState = SyncState.IDLE
    error: Optional[ErrorKind] = None
    error_message: Optional[str] = None
    version: int = 0
    updated_at: Optional[datetime] = None

    @property
    def loading(self) -> bool:
        return self.state is SyncState.LOADING

    @property
    def has_data(self) -> bool:
        """True once at least one snapshot has been applied."""
        return self.version > 0


ViewListener = Callable[[CollectionView], Any]


class CollectionSynchronizer:
    """Mirror of one (collection, filter) pair."""

    def __init__(
        self,
        collection: Collection,
        gateway: Any,
        hub: Any,
        filter: Optional[Filter] = None,
        poll_interval: float = 15.0,
    ):
        """
        Initialize synchronizer.

        Args:
            collection: Collection to mirror
            gateway: Remote store gateway used for fetches
            hub: Subscription hub providing change signals
            filter: Equality filter scoping the collection
            poll_interval: Seconds between fetches while degraded
        """
        self.collection = collection
        self.gateway = gateway
        self.hub = hub
        self.filter = dict(filter) if filter else None
        self.poll_interval = poll_interval

        self._view = CollectionView(collection=collection.name)
        self._listeners: List[ViewListener] = []
        self._subscription: Optional[ChangeSubscription] = None
        self._started = False

        self._fetch_task: Optional[asyncio.Task] = None
        self._trailing: Optional[SyncTrigger] = None
        self._poll_task: Optional[asyncio.Task] = None
        self._issued_seq = 0
        self._applied_seq = 0

    @property
    def key(self) -> Tuple[str, FilterKey]:
        return (self.collection.name, normalize_filter(self.filter))

    @property
    def view(self) -> CollectionView:
        return self._view

    @property
    def state(self) -> SyncState:
        return self._view.state

    @property
    def subscription_status(self) -> Optional[SubscriptionStatus]:
        return self._subscription.status if self._subscription else None

    @property
    def polling(self) -> bool:
        return self._poll_task is not None and not self._poll_task.done()

    def add_listener(self, listener: ViewListener) -> None:
        self._listeners.append(listener)

    def remove_listener(self, listener: ViewListener) -> None:
        if listener in self._listeners:
            self._listeners.remove(listener)

    # Lifecycle

    async def start(self) -> None:
        """
        Mount: subscribe, then issue the initial fetch and wait for it.

        Raises:
            SynchronizerError: If called more than once
        """
        if self._started:
            raise SynchronizerError(f"Synchronizer for {self.collection.name} already started")
        self._started = True

        self._publish(state=transition(self.state, SyncTrigger.MOUNT))
        logger.info("synchronizer_mounted", collection=self.collection.name, filter=self.filter)

        try:
            subscription = await self.hub.subscribe(self.collection.table, self.filter)
        except ValidationError as e:
            logger.warning(
                "subscription_unavailable",
                collection=self.collection.name,
                error=str(e),
            )
            subscription = None
        except BaseException:
            await self.close()
            raise

        if self.state is SyncState.CLOSED:
            if subscription is not None:
                await subscription.close()
            return

        self._subscription = subscription
        if subscription is None or subscription.status is SubscriptionStatus.DEGRADED:
            self._start_polling()
        if subscription is not None:
            subscription.on_signal(self._on_signal)
            subscription.on_status(self._on_status)

        task = self._request_fetch(SyncTrigger.MOUNT)
        if task is not None:
            await asyncio.shield(task)

    async def refresh(self) -> None:
        """Re-fetch now; returns when the fetch chain including it has completed."""
        task = self._request_fetch(SyncTrigger.REFRESH)
        if task is not None:
            await asyncio.shield(task)

    async def wait_idle(self) -> None:
        """Wait until no fetch is in flight or queued."""
        while self._fetch_task is not None and not self._fetch_task.done():
            await asyncio.shield(self._fetch_task)

    async def close(self) -> None:
        """Unmount. Idempotent; a fetch still in flight finishes but is discarded."""
        if self.state is SyncState.CLOSED:
            return

        self._publish(state=transition(self.state, SyncTrigger.UNMOUNT))
        self._listeners.clear()
        await self._stop_polling()

        subscription, self._subscription = self._subscription, None
        if subscription is not None:
            await subscription.close()

        logger.info("synchronizer_closed", collection=self.collection.name, filter=self.filter)

    # Signals

    def _on_signal(self) -> None:
        logger.debug("change_signal", collection=self.collection.name)
        self._request_fetch(SyncTrigger.SIGNAL)

    def _on_status(self, status: SubscriptionStatus) -> None:
        logger.info(
            "subscription_status_changed",
            collection=self.collection.name,
            status=status.value,
        )
        if status is SubscriptionStatus.DEGRADED:
            self._start_polling()
        elif status is SubscriptionStatus.OPEN and self._poll_task is not None:
            # The channel emits a catch-up signal after recovery
            self._poll_task.cancel()
            self._poll_task = None

    # Fetching

    def _request_fetch(self, trigger: SyncTrigger) -> Optional[asyncio.Task]:
        if self.state in (SyncState.IDLE, SyncState.CLOSED):
            return None

        if self._fetch_task is not None and not self._fetch_task.done():
            self._trailing = trigger
            self._publish(state=transition(self.state, trigger))
            return self._fetch_task

        self._publish(state=transition(self.state, trigger))
        self._fetch_task = asyncio.create_task(self._run_fetches())
        return self._fetch_task

    async def _run_fetches(self) -> None:
        while True:
            self._trailing = None
            await self._fetch_once()

            trigger = self._trailing
            if trigger is None or self.state is SyncState.CLOSED:
                return
            self._publish(state=transition(self.state, trigger))

    async def _fetch_once(self) -> None:
        self._issued_seq += 1
        seq = self._issued_seq
        try:
            records = await self.gateway.fetch_collection(self.collection, self.filter)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            self._apply_failure(seq, e)
            return
        self._apply_success(seq, records)

    def _accepts(self, seq: int) -> bool:
        if self.state is SyncState.CLOSED:
            logger.debug("fetch_discarded", collection=self.collection.name, seq=seq, reason="closed")
            return False
        if seq <= self._applied_seq:
            logger.debug("fetch_discarded", collection=self.collection.name, seq=seq, reason="stale")
            return False
        self._applied_seq = seq
        return True

    def _apply_success(self, seq: int, records: List[Record]) -> bool:
        if not self._accepts(seq):
            return False

        snapshot, dropped = order_snapshot(records, self.collection.order)
        if dropped:
            logger.warning(
                "duplicate_records_dropped",
                collection=self.collection.name,
                dropped=dropped,
            )

        self._publish(
            data=snapshot,
            state=transition(self.state, SyncTrigger.FETCH_SUCCEEDED),
            error=None,
            error_message=None,
            version=self._view.version + 1,
            updated_at=datetime.now(timezone.utc),
        )
        logger.debug(
            "snapshot_applied",
            collection=self.collection.name,
            size=len(snapshot),
            version=self._view.version,
        )
        return True

    def _apply_failure(self, seq: int, error: BaseException) -> bool:
        if not self._accepts(seq):
            return False

        kind = error_kind_of(error)
        logger.warning(
            "fetch_failed",
            collection=self.collection.name,
            error_kind=kind.value,
            error=str(error),
            error_type=type(error).__name__,
        )
        self._publish(
            state=transition(self.state, SyncTrigger.FETCH_FAILED),
            error=kind,
            error_message=str(error),
        )
        return True

    # Polling

    def _start_polling(self) -> None:
        if self.polling or self.state is SyncState.CLOSED:
            return
        logger.info(
            "polling_started",
            collection=self.collection.name,
            interval=self.poll_interval,
        )
        self._poll_task = asyncio.create_task(self._poll_loop())

    async def _stop_polling(self) -> None:
        task, self._poll_task = self._poll_task, None
        if task is not None and not task.done():
            task.cancel()
            await asyncio.gather(task, return_exceptions=True)

    async def _poll_loop(self) -> None:
        while self.state is not SyncState.CLOSED:
            await asyncio.sleep(self.poll_interval)
            self._request_fetch(SyncTrigger.SIGNAL)

    # Views

    def _publish(self, **changes: Any) -> None:
        view = replace(self._view, **changes)
        if view == self._view:
            return
        self._view = view
        for listener in list(self._listeners):
            try:
                listener(view)
            except Exception as e:
                logger.error(
                    "view_listener_failed",
                    collection=self.collection.name,
                    error=str(e),
                )

    def __repr__(self) -> str:
        return (
            f"CollectionSynchronizer({self.collection.name}, filter={self.filter}, "
            f"state={self.state.value}, version={self._view.version})"
        )


__all__ = [
    'SyncState',
    'SyncTrigger',
    'transition',
    'CollectionView',
    'CollectionSynchronizer',
]
