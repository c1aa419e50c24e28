"""
Attachment lifecycle.

Uploads binary objects for tasks and keeps the task_attachments rows that
reference them in step: a row is only ever inserted after its object was
stored, and removal deletes the row before the object. Both paths end by
refreshing the task's mounted attachments synchronizer.
"""

import re
import uuid
from typing import Callable, Optional

from ..models.collections import TASK_ATTACHMENTS, Filter
from ..models.records import TaskAttachmentRecord
from ..utils.config import StorageConfig
from ..utils.errors import NotFoundError, QuotaError, TeamSyncError, ValidationError
from ..utils.logging import get_logger
from .synchronizer import CollectionSynchronizer


logger = get_logger("teamsync.sync.attachments")

_SEGMENT_RE = re.compile(r"^[A-Za-z0-9_-]+$")
_EXTENSION_RE = re.compile(r"^[A-Za-z0-9]{1,10}$")

SynchronizerLookup = Callable[[str, Optional[Filter]], Optional[CollectionSynchronizer]]


def file_extension(file_name: str) -> Optional[str]:
    """Lower-cased extension of a file name if it is short and alphanumeric."""
    if "." not in file_name:
        return None
    ext = file_name.rsplit(".", 1)[1]
    if not _EXTENSION_RE.match(ext):
        return None
    return ext.lower()


def object_path(task_id: str, file_name: str) -> str:
    """Collision-free storage path; nothing of the untrusted name but a safe extension survives."""
    ext = file_extension(file_name)
    name = uuid.uuid4().hex
    return f"{task_id}/{name}.{ext}" if ext else f"{task_id}/{name}"


class AttachmentManager:
    """Attach and detach task files."""

    def __init__(
        self,
        gateway,
        storage: Optional[StorageConfig] = None,
        lookup: Optional[SynchronizerLookup] = None,
    ):
        """
        Initialize attachment manager.

        Args:
            gateway: Remote store gateway for rows and objects
            storage: Bucket and size limit
            lookup: Finds the mounted synchronizer for a (collection, filter)
        """
        self.gateway = gateway
        self.storage = storage or StorageConfig()
        self._lookup = lookup

    @property
    def bucket(self) -> str:
        return self.storage.attachments_bucket

    async def attach(
        self,
        task_id: str,
        data: bytes,
        file_name: str,
        content_type: Optional[str] = None,
    ) -> TaskAttachmentRecord:
        """
        Upload a file and record it against a task.

        Raises:
            QuotaError: File is larger than the upload limit (nothing is sent)
            ValidationError: Empty file, empty name or unsafe task id
            TeamSyncError: Upload or row insert failed
        """
        limit = self.storage.max_upload_bytes
        if len(data) > limit:
            raise QuotaError(len(data), limit)
        if not file_name or not file_name.strip():
            raise ValidationError("file_name", file_name, "must not be empty")
        if not data:
            raise ValidationError("data", len(data), "file must not be empty")
        if not isinstance(task_id, str) or not _SEGMENT_RE.match(task_id):
            raise ValidationError("task_id", task_id, "must contain only letters, digits, '-' or '_'")

        path = object_path(task_id, file_name)
        file_url = await self.gateway.upload_object(self.bucket, path, data, content_type)

        try:
            record = await self.gateway.insert(TASK_ATTACHMENTS, {
                "task_id": task_id,
                "name": file_name,
                "file_url": file_url,
                "file_type": file_extension(file_name) or "unknown",
            })
        except TeamSyncError as e:
            logger.error(
                "attachment_object_orphaned",
                bucket=self.bucket,
                path=path,
                task_id=task_id,
                error=str(e),
            )
            raise

        logger.info("attachment_added", task_id=task_id, id=record.id, size=len(data))
        await self._refresh(task_id)
        return record

    async def detach(self, record: TaskAttachmentRecord) -> None:
        """
        Remove an attachment row, then its object. Safe to call repeatedly.

        Object removal is best effort: failures are logged, never raised.
        """
        try:
            await self.gateway.remove(TASK_ATTACHMENTS, record.id)
        except NotFoundError:
            logger.debug("attachment_row_already_removed", id=record.id)

        path = self.gateway.object_path_from_url(self.bucket, record.file_url)
        if path is None:
            logger.warning("attachment_url_outside_bucket", id=record.id, url=record.file_url)
        else:
            try:
                await self.gateway.remove_object(self.bucket, path)
            except NotFoundError:
                logger.debug("attachment_object_already_removed", path=path)
            except TeamSyncError as e:
                logger.warning("attachment_object_remove_failed", path=path, error=str(e))

        logger.info("attachment_removed", task_id=record.task_id, id=record.id)
        await self._refresh(record.task_id)

    async def _refresh(self, task_id: str) -> None:
        if self._lookup is None:
            return
        synchronizer = self._lookup(TASK_ATTACHMENTS.name, {"task_id": task_id})
        if synchronizer is not None:
            await synchronizer.refresh()


__all__ = [
    'AttachmentManager',
    'file_extension',
    'object_path',
]
