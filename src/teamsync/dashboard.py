"""
Dashboard session.

Presentation-facing façade: mounts one synchronizer per (collection, filter),
exposes their views, and runs user actions whose failures come back as
values rather than exceptions.
"""

from dataclasses import dataclass
from typing import Any, Awaitable, Dict, List, Optional, Tuple

from .gateway.remote import RemoteStoreGateway
from .models.collections import (
    Collection,
    Filter,
    FilterKey,
    normalize_filter,
    NOTIFICATIONS,
    MESSAGES,
    TASKS,
    TASK_ATTACHMENTS,
    PROJECTS,
    TEAM_MEMBERS,
)
from .models.records import TaskAttachmentRecord
from .realtime.hub import SubscriptionHub, get_hub
from .sync.attachments import AttachmentManager
from .sync.synchronizer import CollectionSynchronizer, CollectionView
from .utils.config import TeamSyncConfig
from .utils.errors import ErrorKind, TeamSyncError, ValidationError
from .utils.logging import get_logger


logger = get_logger("teamsync.dashboard")

# Collections whose rows carry a client-settable read flag
_READABLE = (NOTIFICATIONS, MESSAGES)


@dataclass(frozen=True)
class ActionOutcome:
    """Result of a user action."""
    ok: bool
    value: Any = None
    error: Optional[ErrorKind] = None
    message: Optional[str] = None

    @classmethod
    def success(cls, value: Any = None) -> 'ActionOutcome':
        return cls(ok=True, value=value)

    @classmethod
    def failure(cls, error: TeamSyncError) -> 'ActionOutcome':
        return cls(ok=False, error=error.kind, message=error.message)


class DashboardSession:
    """Mounted views and actions for one signed-in user."""

    def __init__(
        self,
        config: TeamSyncConfig,
        gateway: Optional[RemoteStoreGateway] = None,
        hub: Optional[SubscriptionHub] = None,
    ):
        self.config = config
        self._owns_gateway = gateway is None
        self.gateway = gateway or RemoteStoreGateway.from_config(config)
        self.hub = hub or get_hub(config)
        self.attachments_manager = AttachmentManager(
            self.gateway,
            config.storage,
            lookup=self.find,
        )
        self._synchronizers: Dict[Tuple[str, FilterKey], CollectionSynchronizer] = {}

    async def __aenter__(self) -> 'DashboardSession':
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.close()

    # Views

    async def mount(
        self,
        collection: Collection,
        filter: Optional[Filter] = None,
    ) -> CollectionSynchronizer:
        """Start (or return the already mounted) synchronizer for a collection."""
        key = (collection.name, normalize_filter(filter))
        existing = self._synchronizers.get(key)
        if existing is not None:
            return existing

        synchronizer = CollectionSynchronizer(
            collection,
            self.gateway,
            self.hub,
            filter=filter,
            poll_interval=self.config.realtime.poll_interval,
        )
        self._synchronizers[key] = synchronizer
        try:
            await synchronizer.start()
        except BaseException:
            if self._synchronizers.get(key) is synchronizer:
                del self._synchronizers[key]
            await synchronizer.close()
            raise
        return synchronizer

    async def unmount(self, collection: Collection, filter: Optional[Filter] = None) -> None:
        synchronizer = self._synchronizers.pop((collection.name, normalize_filter(filter)), None)
        if synchronizer is not None:
            await synchronizer.close()

    def find(self, name: str, filter: Optional[Filter] = None) -> Optional[CollectionSynchronizer]:
        """Mounted synchronizer for a collection name and filter, if any."""
        return self._synchronizers.get((name, normalize_filter(filter)))

    def view(self, collection: Collection, filter: Optional[Filter] = None) -> CollectionView:
        """Current view; an empty IDLE view when nothing is mounted."""
        synchronizer = self.find(collection.name, filter)
        if synchronizer is None:
            return CollectionView(collection=collection.name)
        return synchronizer.view

    @property
    def mounted(self) -> List[CollectionSynchronizer]:
        return list(self._synchronizers.values())

    async def notifications(self) -> CollectionSynchronizer:
        return await self.mount(NOTIFICATIONS)

    async def messages(self) -> CollectionSynchronizer:
        return await self.mount(MESSAGES)

    async def tasks(self) -> CollectionSynchronizer:
        return await self.mount(TASKS)

    async def projects(self) -> CollectionSynchronizer:
        return await self.mount(PROJECTS)

    async def team(self) -> CollectionSynchronizer:
        """Roster of the configured workspace."""
        workspace_id = self.config.workspace.workspace_id
        if not workspace_id:
            raise ValidationError("workspace.workspace_id", workspace_id, "a workspace must be configured")
        return await self.mount(TEAM_MEMBERS, {"workspace_id": workspace_id})

    async def attachments(self, task_id: str) -> CollectionSynchronizer:
        return await self.mount(TASK_ATTACHMENTS, {"task_id": task_id})

    # Actions

    async def send(self, content: str, recipient_id: str) -> ActionOutcome:
        """Send a direct message."""
        if not content or not content.strip():
            return self._rejected("send", ValidationError("content", content, "message must not be empty"))
        if not recipient_id:
            return self._rejected("send", ValidationError("recipient_id", recipient_id, "a recipient is required"))

        values = {"content": content, "recipient_id": recipient_id}
        if self.config.workspace.user_id:
            values["sender_id"] = self.config.workspace.user_id

        outcome = await self._run("send", self.gateway.insert(MESSAGES, values))
        if outcome.ok:
            await self._refresh(MESSAGES)
        return outcome

    async def mark_read(self, collection: Collection, record_id: str) -> ActionOutcome:
        """Flag a notification or message as read."""
        if collection not in _READABLE:
            return self._rejected(
                "mark_read",
                ValidationError("collection", collection.name, "only notifications and messages can be marked read"),
            )

        outcome = await self._run(
            "mark_read", self.gateway.update(collection, record_id, {"read": True})
        )
        if outcome.ok:
            await self._refresh(collection)
        return outcome

    async def attach(
        self,
        task_id: str,
        data: bytes,
        file_name: str,
        content_type: Optional[str] = None,
    ) -> ActionOutcome:
        return await self._run(
            "attach",
            self.attachments_manager.attach(task_id, data, file_name, content_type),
        )

    async def detach(self, record: TaskAttachmentRecord) -> ActionOutcome:
        return await self._run("detach", self.attachments_manager.detach(record))

    async def close(self) -> None:
        """Unmount everything and release owned resources."""
        synchronizers, self._synchronizers = list(self._synchronizers.values()), {}
        for synchronizer in synchronizers:
            await synchronizer.close()
        if self._owns_gateway:
            await self.gateway.close()
        logger.info("session_closed", unmounted=len(synchronizers))

    async def _run(self, action: str, operation: Awaitable[Any]) -> ActionOutcome:
        try:
            value = await operation
        except TeamSyncError as e:
            return self._rejected(action, e)
        logger.info("action_succeeded", action=action)
        return ActionOutcome.success(value)

    def _rejected(self, action: str, error: TeamSyncError) -> ActionOutcome:
        logger.warning(
            "action_failed",
            action=action,
            error_kind=error.kind.value,
            error=error.message,
        )
        return ActionOutcome.failure(error)

    async def _refresh(self, collection: Collection) -> None:
        for synchronizer in list(self._synchronizers.values()):
            if synchronizer.collection is collection:
                await synchronizer.refresh()


__all__ = [
    'DashboardSession',
    'ActionOutcome',
]
