"""
Entitlement resolver package.

The resolver is built per identity session over interchangeable cache,
remote source and channel collaborators (see ``protocols``).
"""

from .engine import EntitlementResolver, ResyncTicket, SessionState
from .protocols import ChannelAPI, EntitlementCacheAPI, RemoteSourceAPI

__all__ = [
    "EntitlementResolver",
    "ResyncTicket",
    "SessionState",
    "ChannelAPI",
    "EntitlementCacheAPI",
    "RemoteSourceAPI",
]
