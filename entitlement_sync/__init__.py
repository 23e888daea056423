"""
Entitlement resolution and cross-session sync client.

Structure:
- entitlement_sync.app: the subsystem (request layer, remote source, local
  cache, resolver, realtime channel, session manager) and the CLI entrypoint.
"""

__version__ = "1.0.0"
