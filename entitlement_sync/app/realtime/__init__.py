"""
Realtime update channel package.

Transports deliver ``(event, data)`` pairs; the channel parses them into
access updates and handles authentication and reconnection.
"""

from .channel import ChannelEvent, ChannelSubscription, RealtimeChannel
from .transport import WebSocketTransport

__all__ = [
    "ChannelEvent",
    "ChannelSubscription",
    "RealtimeChannel",
    "WebSocketTransport",
]
