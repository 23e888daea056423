"""
Local entitlement cache package.

Provides the storage backends (memory, JSON files, Redis), the per-identity
entitlement cache and the redemption ledger. Only the resolver writes
entitlement records.
"""

from .local_cache import LocalEntitlementCache, RedemptionLedger
from .store import InMemoryStore, JsonFileStore, KeyValueStore, RedisStore

__all__ = [
    "LocalEntitlementCache",
    "RedemptionLedger",
    "InMemoryStore",
    "JsonFileStore",
    "KeyValueStore",
    "RedisStore",
]
