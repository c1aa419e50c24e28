"""
Collection descriptors.

A collection names the remote table (or row procedure) a synchronizer mirrors,
the record type its rows decode into, and its default ordering.
"""

from dataclasses import dataclass
from typing import Any, Iterable, List, Mapping, Optional, Tuple, Type

from .records import (
    Record,
    NotificationRecord,
    MessageRecord,
    TaskRecord,
    TaskAttachmentRecord,
    ProjectRecord,
    TeamMemberRecord,
)
from ..utils.errors import RecordDecodeError


# Equality filter, column -> value
Filter = Mapping[str, Any]
FilterKey = Tuple[Tuple[str, str], ...]


def normalize_filter(filter: Optional[Filter]) -> FilterKey:
    """Canonical hashable form of an equality filter."""
    if not filter:
        return ()
    return tuple(sorted((str(k), str(v)) for k, v in filter.items()))


@dataclass(frozen=True)
class OrderBy:
    """Single-column ordering."""
    column: str
    descending: bool = False

    def to_param(self) -> str:
        """Render as a PostgREST `order` parameter."""
        return f"{self.column}.{'desc' if self.descending else 'asc'}"


@dataclass(frozen=True)
class Collection:
    """Remote collection descriptor."""
    name: str
    table: str
    record_type: Type[Any]
    order: OrderBy
    procedure: Optional[str] = None

    def decode(self, rows: Iterable[Any]) -> List[Record]:
        """Decode raw rows, rejecting anything that is not a list of objects."""
        if not isinstance(rows, list):
            raise RecordDecodeError(self.name, "<rows>", rows, "expected a list")
        return [self.record_type.from_row(row) for row in rows]


NOTIFICATIONS = Collection(
    name="notifications",
    table="notifications",
    record_type=NotificationRecord,
    order=OrderBy("created_at", descending=True),
)

MESSAGES = Collection(
    name="messages",
    table="messages",
    record_type=MessageRecord,
    order=OrderBy("created_at", descending=True),
)

TASKS = Collection(
    name="tasks",
    table="tasks",
    record_type=TaskRecord,
    order=OrderBy("due_date"),
)

TASK_ATTACHMENTS = Collection(
    name="task_attachments",
    table="task_attachments",
    record_type=TaskAttachmentRecord,
    order=OrderBy("created_at"),
)

PROJECTS = Collection(
    name="projects",
    table="projects",
    record_type=ProjectRecord,
    order=OrderBy("created_at", descending=True),
)

# Roster is read through a row procedure; changes arrive on the membership table
TEAM_MEMBERS = Collection(
    name="team_members",
    table="workspace_members",
    record_type=TeamMemberRecord,
    order=OrderBy("joined_at"),
    procedure="get_workspace_members",
)

ALL_COLLECTIONS = (
    NOTIFICATIONS,
    MESSAGES,
    TASKS,
    TASK_ATTACHMENTS,
    PROJECTS,
    TEAM_MEMBERS,
)


def order_snapshot(records: Iterable[Record], order: OrderBy) -> Tuple[Tuple[Record, ...], int]:
    """
    Build a snapshot: unique ids in a total order.

    Records sort by the order column, ties broken by ascending id; records
    without a value for the column go last. The first occurrence of a
    duplicate id wins.

    Returns:
        The ordered snapshot and the number of duplicates dropped
    """
    seen = set()
    unique: List[Record] = []
    dropped = 0
    for record in records:
        if record.id in seen:
            dropped += 1
            continue
        seen.add(record.id)
        unique.append(record)

    present = [r for r in unique if getattr(r, order.column, None) is not None]
    missing = [r for r in unique if getattr(r, order.column, None) is None]

    # Two stable passes: id first, then the column (reverse keeps stability)
    present.sort(key=lambda r: r.id)
    present.sort(key=lambda r: getattr(r, order.column), reverse=order.descending)
    missing.sort(key=lambda r: r.id)

    return tuple(present + missing), dropped


__all__ = [
    'Filter',
    'FilterKey',
    'normalize_filter',
    'OrderBy',
    'Collection',
    'NOTIFICATIONS',
    'MESSAGES',
    'TASKS',
    'TASK_ATTACHMENTS',
    'PROJECTS',
    'TEAM_MEMBERS',
    'ALL_COLLECTIONS',
    'order_snapshot',
]
