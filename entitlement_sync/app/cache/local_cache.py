"""
Per-identity entitlement cache and redemption ledger.
"""

from datetime import datetime, timedelta
from typing import Callable, Dict, List, Optional

from pydantic import ValidationError

from shared.logging import get_logger
from shared.metrics import MetricsCollector
from ..ids import normalize_content_id, require_identity
from ..models import EntitlementRecord, RedemptionRecord, utcnow
from .store import KeyValueStore


def entitlement_namespace(identity_id: str) -> str:
    return f"entitlements:{identity_id}"


def redemption_namespace(identity_id: str) -> str:
    return f"redemptions:{identity_id}"


class LocalEntitlementCache:
    """Typed cache of entitlement records keyed by ``(identity, content_id)``.

    Records live in one namespace per identity. A record younger than the
    staleness threshold that grants access is trusted without a remote
    check; anything else falls through to verification.
    """

    def __init__(self,
                 store: KeyValueStore,
                 *,
                 staleness_threshold: float = 1800.0,
                 metrics: Optional[MetricsCollector] = None,
                 clock: Callable[[], datetime] = utcnow):
        self.store = store
        self.staleness_threshold = timedelta(seconds=staleness_threshold)
        self.metrics = metrics
        self.logger = get_logger("sync.cache.entitlements")
        self._clock = clock

    async def get(self, identity_id: str, content_id) -> Optional[EntitlementRecord]:
        identity = require_identity(identity_id)
        cid = normalize_content_id(content_id)
        namespace = entitlement_namespace(identity)

        raw = await self.store.get(namespace, cid)
        if raw is None:
            return None

        try:
            return EntitlementRecord.model_validate_json(raw)
        except ValidationError as e:
            self.logger.warning("Discarding corrupt cache entry", identity=identity, content_id=cid,
                                error=str(e))
            if self.metrics:
                self.metrics.record_corrupt_entry()
            await self.store.delete(namespace, cid)
            return None

    async def set(self, identity_id: str, content_id, record: EntitlementRecord) -> bool:
        identity = require_identity(identity_id)
        cid = normalize_content_id(content_id)
        if record.content_id != cid:
            record = record.model_copy(update={"content_id": cid})

        stored = await self.store.set(entitlement_namespace(identity), cid, record.model_dump_json())
        if not stored:
            self.logger.warning("Cache write failed", identity=identity, content_id=cid)
        return stored

    async def invalidate(self, identity_id: str, content_id) -> bool:
        identity = require_identity(identity_id)
        return await self.store.delete(entitlement_namespace(identity), normalize_content_id(content_id))

    async def clear_namespace(self, identity_id: str) -> int:
        identity = require_identity(identity_id)
        cleared = await self.store.clear(entitlement_namespace(identity))
        self.logger.info("Entitlement cache cleared", identity=identity, entries=cleared)
        return cleared

    async def entries(self, identity_id: str) -> Dict[str, EntitlementRecord]:
        identity = require_identity(identity_id)
        records = {}
        for cid in (await self.store.items(entitlement_namespace(identity))):
            record = await self.get(identity, cid)
            if record is not None:
                records[cid] = record
        return records

    def is_fresh(self, record: EntitlementRecord) -> bool:
        return self._clock() - record.cached_at < self.staleness_threshold

    def is_trusted(self, record: EntitlementRecord) -> bool:
        """Fresh, positive and not past its expiry."""
        return self.is_fresh(record) and record.is_active(self._clock())

    async def purge_expired(self, identity_id: str, max_age: float = 86400.0) -> int:
        """Remove records cached more than ``max_age`` seconds ago."""
        identity = require_identity(identity_id)
        cutoff = self._clock() - timedelta(seconds=max_age)
        purged = 0
        for cid, record in (await self.entries(identity)).items():
            if record.cached_at < cutoff:
                await self.invalidate(identity, cid)
                purged += 1

        if purged:
            self.logger.info("Purged old cache entries", identity=identity, entries=purged)
        return purged


class RedemptionLedger:
    """Persisted list of content redeemed by each identity."""

    def __init__(self, store: KeyValueStore):
        self.store = store
        self.logger = get_logger("sync.cache.redemptions")

    async def add(self, identity_id: str, redemption: RedemptionRecord) -> bool:
        identity = require_identity(identity_id)
        return await self.store.set(redemption_namespace(identity), redemption.content_id,
                                    redemption.model_dump_json())

    async def list(self, identity_id: str) -> List[RedemptionRecord]:
        identity = require_identity(identity_id)
        records = []
        for cid, raw in (await self.store.items(redemption_namespace(identity))).items():
            try:
                records.append(RedemptionRecord.model_validate_json(raw))
            except ValidationError as e:
                self.logger.warning("Skipping corrupt redemption entry", identity=identity,
                                    content_id=cid, error=str(e))
        return records

    async def clear(self, identity_id: str) -> int:
        identity = require_identity(identity_id)
        return await self.store.clear(redemption_namespace(identity))
