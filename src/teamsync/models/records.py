"""
Record models for teamsync.

Rows arrive from the remote store as loosely-typed JSON objects. This module
maps them at the boundary into closed, immutable record types with exhaustive
enumerations; anything that does not fit is rejected as a data error.
"""

import re
from dataclasses import dataclass, asdict
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Mapping, Optional, Type, Union

from ..utils.errors import RecordDecodeError


class TaskStatus(Enum):
    """Workflow status shared by tasks and projects."""
    TODO = "todo"
    IN_PROGRESS = "in_progress"
    REVIEW = "review"
    COMPLETED = "completed"


class TaskPriority(Enum):
    """Task priority levels."""
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    URGENT = "urgent"


class MemberRole(Enum):
    """Workspace membership roles."""
    OWNER = "owner"
    ADMIN = "admin"
    MEMBER = "member"
    GUEST = "guest"


class _RowReader:
    """Typed accessors over one raw row, raising RecordDecodeError on mismatch."""

    def __init__(self, collection: str, row: Mapping[str, Any]):
        if not isinstance(row, Mapping):
            raise RecordDecodeError(collection, "<row>", row, "expected an object")
        self.collection = collection
        self.row = row

    def _fail(self, field: str, reason: str) -> RecordDecodeError:
        return RecordDecodeError(self.collection, field, self.row.get(field), reason)

    def identifier(self, field: str = "id") -> str:
        value = self.row.get(field)
        if isinstance(value, bool) or not isinstance(value, (str, int)) or value == "":
            raise self._fail(field, "missing or invalid identifier")
        return str(value)

    def text(self, field: str, default: Optional[str] = None) -> str:
        value = self.row.get(field, default)
        if value is None and default is not None:
            return default
        if not isinstance(value, str):
            raise self._fail(field, "expected a string")
        return value

    def flag(self, field: str, default: Optional[bool] = None) -> bool:
        value = self.row.get(field)
        if value is None and default is not None:
            return default
        if not isinstance(value, bool):
            raise self._fail(field, "expected a boolean")
        return value

    def timestamp(self, field: str) -> datetime:
        value = self.optional_timestamp(field)
        if value is None:
            raise self._fail(field, "missing timestamp")
        return value

    def optional_timestamp(self, field: str) -> Optional[datetime]:
        value = self.row.get(field)
        if value is None:
            return None
        if not isinstance(value, str):
            raise self._fail(field, "expected an ISO-8601 string")
        try:
            return parse_timestamp(value)
        except ValueError:
            raise self._fail(field, "unparseable timestamp") from None

    def choice(self, field: str, enum_type: Type[Enum]) -> Any:
        value = self.row.get(field)
        try:
            return enum_type(value)
        except (ValueError, TypeError):
            allowed = ", ".join(m.value for m in enum_type)
            raise self._fail(field, f"expected one of: {allowed}") from None


_TIMESTAMP_RE = re.compile(
    r"^(?P<base>\d{4}-\d{2}-\d{2}[T ]\d{2}:\d{2}(?::\d{2})?)"
    r"(?:\.(?P<fraction>\d+))?"
    r"(?P<offset>[+-]\d{2}(?::?\d{2})?)?$"
)


def parse_timestamp(value: str) -> datetime:
    """
    Parse an ISO-8601 timestamp; naive values are taken as UTC.

    Fractions of any length are cut or padded to microseconds, and short
    offsets such as `+05` or `+0530` are accepted.
    """
    text = value.strip()
    if text.endswith(("Z", "z")):
        text = text[:-1] + "+00:00"

    match = _TIMESTAMP_RE.match(text)
    if match:
        text = match.group("base")
        fraction = match.group("fraction")
        if fraction:
            text += "." + fraction[:6].ljust(6, "0")
        offset = match.group("offset")
        if offset:
            digits = offset[1:].replace(":", "")
            text += f"{offset[0]}{digits[:2]}:{digits[2:] or '00'}"

    parsed = datetime.fromisoformat(text)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def _serialize(value: Any) -> Any:
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, datetime):
        return value.isoformat()
    return value


class BaseRecord:
    """Shared behaviour of all record types."""

    collection_name = "records"

    @property
    def key(self) -> str:
        return self.id  # type: ignore[attr-defined]

    def to_dict(self) -> Dict[str, Any]:
        """Convert to a JSON-compatible dictionary."""
        return {k: _serialize(v) for k, v in asdict(self).items()}  # type: ignore[call-overload]


@dataclass(frozen=True)
class NotificationRecord(BaseRecord):
    """Server-delivered notification; the client only toggles `read`."""
    id: str
    title: str
    content: str
    read: bool
    created_at: datetime

    collection_name = "notifications"

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> 'NotificationRecord':
        r = _RowReader(cls.collection_name, row)
        return cls(
            id=r.identifier(),
            title=r.text("title"),
            content=r.text("content", default=""),
            read=r.flag("read", default=False),
            created_at=r.timestamp("created_at"),
        )


@dataclass(frozen=True)
class MessageRecord(BaseRecord):
    """Direct message between two workspace members."""
    id: str
    content: str
    sender_id: str
    recipient_id: str
    created_at: datetime
    read: bool

    collection_name = "messages"

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> 'MessageRecord':
        r = _RowReader(cls.collection_name, row)
        return cls(
            id=r.identifier(),
            content=r.text("content"),
            sender_id=r.identifier("sender_id"),
            recipient_id=r.identifier("recipient_id"),
            created_at=r.timestamp("created_at"),
            read=r.flag("read", default=False),
        )


@dataclass(frozen=True)
class TaskRecord(BaseRecord):
    """Task row. Created and mutated outside this package."""
    id: str
    title: str
    description: str
    status: TaskStatus
    priority: TaskPriority
    due_date: Optional[datetime] = None
    created_at: Optional[datetime] = None

    collection_name = "tasks"

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> 'TaskRecord':
        r = _RowReader(cls.collection_name, row)
        return cls(
            id=r.identifier(),
            title=r.text("title"),
            description=r.text("description", default=""),
            status=r.choice("status", TaskStatus),
            priority=r.choice("priority", TaskPriority),
            due_date=r.optional_timestamp("due_date"),
            created_at=r.optional_timestamp("created_at"),
        )


@dataclass(frozen=True)
class TaskAttachmentRecord(BaseRecord):
    """Row referencing an uploaded object by its public URL."""
    id: str
    task_id: str
    name: str
    file_url: str
    file_type: str
    created_at: Optional[datetime] = None

    collection_name = "task_attachments"

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> 'TaskAttachmentRecord':
        r = _RowReader(cls.collection_name, row)
        return cls(
            id=r.identifier(),
            task_id=r.identifier("task_id"),
            name=r.text("name"),
            file_url=r.text("file_url"),
            file_type=r.text("file_type", default="unknown"),
            created_at=r.optional_timestamp("created_at"),
        )


@dataclass(frozen=True)
class ProjectRecord(BaseRecord):
    """Workspace project."""
    id: str
    name: str
    description: str
    status: TaskStatus
    start_date: Optional[datetime] = None
    due_date: Optional[datetime] = None
    created_at: Optional[datetime] = None

    collection_name = "projects"

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> 'ProjectRecord':
        r = _RowReader(cls.collection_name, row)
        return cls(
            id=r.identifier(),
            name=r.text("name"),
            description=r.text("description", default=""),
            status=r.choice("status", TaskStatus),
            start_date=r.optional_timestamp("start_date"),
            due_date=r.optional_timestamp("due_date"),
            created_at=r.optional_timestamp("created_at"),
        )


@dataclass(frozen=True)
class TeamMemberRecord(BaseRecord):
    """Roster entry joining workspace membership to user identity."""
    user_id: str
    role: MemberRole
    email: str
    joined_at: Optional[datetime] = None

    collection_name = "workspace_members"

    @property
    def id(self) -> str:
        return self.user_id

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> 'TeamMemberRecord':
        r = _RowReader(cls.collection_name, row)
        return cls(
            user_id=r.identifier("user_id"),
            role=r.choice("role", MemberRole),
            email=r.text("email"),
            joined_at=r.optional_timestamp("joined_at"),
        )


Record = Union[
    NotificationRecord,
    MessageRecord,
    TaskRecord,
    TaskAttachmentRecord,
    ProjectRecord,
    TeamMemberRecord,
]


__all__ = [
    'TaskStatus',
    'TaskPriority',
    'MemberRole',
    'BaseRecord',
    'NotificationRecord',
    'MessageRecord',
    'TaskRecord',
    'TaskAttachmentRecord',
    'ProjectRecord',
    'TeamMemberRecord',
    'Record',
    'parse_timestamp',
]
