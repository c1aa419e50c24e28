"""
teamsync - realtime synchronization core for a team collaboration dashboard.

This package keeps local read-models of remote collections consistent with
a managed backend, including:
- Row fetches and writes through a PostgREST-style gateway
- Shared realtime change subscriptions with reconnect and polling fallback
- Per-collection synchronizers with coalesced, ordered re-fetches
- Task attachment upload and removal
"""

__version__ = "0.1.0"
__author__ = "teamsync developers"

from .dashboard import DashboardSession, ActionOutcome

__all__ = [
    'DashboardSession',
    'ActionOutcome',
]
