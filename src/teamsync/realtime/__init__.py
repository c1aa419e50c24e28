"""Realtime change channel and shared subscriptions."""

from .socket import PhoenixSocket, ConnectionState, SubscriptionStatus, JoinRejected
from .hub import SubscriptionHub, ChangeSubscription, filter_expression, get_hub, set_hub

__all__ = [
    'PhoenixSocket',
    'ConnectionState',
    'SubscriptionStatus',
    'JoinRejected',
    'SubscriptionHub',
    'ChangeSubscription',
    'filter_expression',
    'get_hub',
    'set_hub',
]
