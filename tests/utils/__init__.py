"""
Test utilities for teamsync.
"""

from .async_helpers import AsyncTestHelper, wait_for_condition, settle
from .mock_helpers import (
    FakeGateway,
    FakeHub,
    FakeSubscription,
    FakeSocket,
    notification_row,
    message_row,
    task_row,
    attachment_row,
    ts,
)

__all__ = [
    "AsyncTestHelper",
    "wait_for_condition",
    "settle",
    "FakeGateway",
    "FakeHub",
    "FakeSubscription",
    "FakeSocket",
    "notification_row",
    "message_row",
    "task_row",
    "attachment_row",
    "ts",
]
