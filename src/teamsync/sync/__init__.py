"""Collection synchronization, attachments and projections."""

from .synchronizer import (
    SyncState,
    SyncTrigger,
    transition,
    CollectionView,
    CollectionSynchronizer,
)
from .attachments import AttachmentManager
from .projection import DisplayMode

__all__ = [
    'SyncState',
    'SyncTrigger',
    'transition',
    'CollectionView',
    'CollectionSynchronizer',
    'AttachmentManager',
    'DisplayMode',
]
