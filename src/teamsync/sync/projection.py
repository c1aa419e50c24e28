"""
Read-model projections.

Pure functions deriving presentation data from snapshots. Inputs are never
mutated; results are tuples or read-only mappings.
"""

from enum import Enum
from types import MappingProxyType
from typing import Dict, Iterable, List, Mapping, Optional, Sequence, Tuple, TypeVar

from ..models.records import MessageRecord, TaskRecord, TaskStatus
from .synchronizer import CollectionView, SyncState


T = TypeVar("T")


class DisplayMode(Enum):
    """How a view should be rendered."""
    LOADING = "loading"   # nothing to show yet
    LIVE = "live"
    STALE = "stale"       # last good data, with a warning
    FAILED = "failed"     # failed before any data arrived


def unread(records: Iterable[T]) -> Tuple[T, ...]:
    return tuple(r for r in records if not getattr(r, "read"))


def unread_count(records: Iterable[object]) -> int:
    return sum(1 for r in records if not getattr(r, "read"))


def group_by_parent(records: Iterable[T], key: str = "task_id") -> Mapping[str, Tuple[T, ...]]:
    """Group records by a parent id, keeping snapshot order within each group."""
    groups: Dict[str, List[T]] = {}
    for record in records:
        groups.setdefault(getattr(record, key), []).append(record)
    return MappingProxyType({parent: tuple(items) for parent, items in groups.items()})


def search_tasks(tasks: Iterable[TaskRecord], query: Optional[str]) -> Tuple[TaskRecord, ...]:
    """Case-insensitive substring match over title and description."""
    needle = (query or "").strip().lower()
    if not needle:
        return tuple(tasks)
    return tuple(
        t for t in tasks
        if needle in t.title.lower() or needle in t.description.lower()
    )


def filter_by_status(records: Iterable[T], *statuses: TaskStatus) -> Tuple[T, ...]:
    wanted = set(statuses)
    return tuple(r for r in records if getattr(r, "status") in wanted)


def count_by_status(records: Iterable[object]) -> Mapping[TaskStatus, int]:
    """Per-status counts, including statuses with no records."""
    counts = {status: 0 for status in TaskStatus}
    for record in records:
        counts[getattr(record, "status")] += 1
    return MappingProxyType(counts)


def is_outgoing(message: MessageRecord, user_id: str) -> bool:
    """True when the message was sent by the given user."""
    return message.sender_id == user_id


def conversation_with(
    messages: Sequence[MessageRecord],
    user_id: str,
    partner_id: str,
) -> Tuple[MessageRecord, ...]:
    """Messages exchanged between two users, in snapshot order."""
    pair = {user_id, partner_id}
    return tuple(
        m for m in messages
        if {m.sender_id, m.recipient_id} == pair
    )


def display_mode(view: CollectionView) -> DisplayMode:
    """Prefer stale data with a warning over blanking the view."""
    if view.error is not None:
        return DisplayMode.STALE if view.has_data else DisplayMode.FAILED
    if not view.has_data and view.state in (SyncState.IDLE, SyncState.LOADING):
        return DisplayMode.LOADING
    return DisplayMode.LIVE


__all__ = [
    'DisplayMode',
    'unread',
    'unread_count',
    'group_by_parent',
    'search_tasks',
    'filter_by_status',
    'count_by_status',
    'is_outgoing',
    'conversation_with',
    'display_mode',
]
