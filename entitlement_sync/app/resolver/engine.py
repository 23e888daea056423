"""
Entitlement resolution engine.

Answers access queries for one identity session by consulting, in order:
the catalog (free content), the local cache, the session's purchases, its
redemptions and finally the remote source. Push updates from the realtime
channel are written through the same cache API.
"""

import asyncio
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, Set, Tuple, Union

from shared.config import SyncConfig
from shared.logging import get_logger
from shared.metrics import MetricsCollector
from ..cache.local_cache import RedemptionLedger
from ..ids import is_legacy_id_match, normalize_content_id, require_identity
from ..models import (
    AccessType,
    AccessUpdate,
    Acquisition,
    ContentBundle,
    EntitlementRecord,
    PurchaseRecord,
    REDEEM_PAYMENT_METHOD,
    RedemptionRecord,
    RemoteAccess,
    ResolutionState,
    determine_access_type,
    remaining_days_until,
    utcnow,
)
from .protocols import ChannelAPI, EntitlementCacheAPI, RemoteSourceAPI, Subscription


Observer = Callable[[EntitlementRecord], Any]


@dataclass
class SessionState:
    """In-memory data of the active identity session."""
    identity_id: str
    token: Optional[str] = None
    purchases: List[PurchaseRecord] = field(default_factory=list)
    redemptions: List[RedemptionRecord] = field(default_factory=list)
    catalog: Dict[str, ContentBundle] = field(default_factory=dict)


@dataclass
class ResyncTicket:
    """Proof that a resync was issued; ``wait()`` blocks until an HTTP resync lands."""
    identity_id: str
    via: str
    issued_at: datetime
    task: Optional[asyncio.Task] = None

    async def wait(self) -> int:
        if self.task is None:
            return 0
        return await self.task


@dataclass
class _Coalesced:
    task: asyncio.Task
    started_at: datetime


class EntitlementResolver:
    """Resolves and tracks access for one identity session."""

    def __init__(self,
                 session: SessionState,
                 cache: EntitlementCacheAPI,
                 remote: RemoteSourceAPI,
                 channel: Optional[ChannelAPI] = None,
                 *,
                 ledger: Optional[RedemptionLedger] = None,
                 config: Optional[SyncConfig] = None,
                 metrics: Optional[MetricsCollector] = None,
                 clock: Callable[[], datetime] = utcnow):
        config = config or SyncConfig()
        self.session = session
        self.cache = cache
        self.remote = remote
        self.channel = channel
        self.ledger = ledger
        self.metrics = metrics or MetricsCollector("sync.resolver")
        self.logger = get_logger("sync.resolver")

        self.resolution_timeout = config.resolution_timeout
        self.debounce_window = config.debounce_window
        self.staleness_threshold = config.staleness_threshold
        self.legacy_id_matching = config.legacy_id_matching

        self._now = clock
        self._closed = False
        self._subscription: Optional[Subscription] = None
        self._observers: List[Observer] = []
        self._inflight: Dict[Tuple[str, str, bool], _Coalesced] = {}
        self._states: Dict[str, Tuple[ResolutionState, datetime]] = {}
        self._interest: Set[str] = set()
        self._background: Set[asyncio.Task] = set()

    # lifecycle

    async def open(self) -> "EntitlementResolver":
        """Acquire the push subscription for this session."""
        self._closed = False
        if self.channel is not None and self._subscription is None:
            self._subscription = self.channel.subscribe(self._on_channel_event)
            self.channel.interest_provider = self.interested_content
        return self

    async def aclose(self) -> None:
        """Release the push subscription; no cache writes happen afterwards."""
        self._closed = True
        if self._subscription is not None:
            self._subscription.close()
            self._subscription = None
        if self.channel is not None and self.channel.interest_provider == self.interested_content:
            self.channel.interest_provider = None
        for task in list(self._background):
            task.cancel()
        self._inflight.clear()

    async def __aenter__(self) -> "EntitlementResolver":
        return await self.open()

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.aclose()

    @property
    def closed(self) -> bool:
        return self._closed

    def interested_content(self) -> List[str]:
        """Content ids queried during this session."""
        return sorted(self._interest)

    def subscribe(self, observer: Observer) -> Callable[[], None]:
        """Register an observer for committed records; returns the unsubscribe callable."""
        self._observers.append(observer)

        def unsubscribe() -> None:
            if observer in self._observers:
                self._observers.remove(observer)

        return unsubscribe

    # queries

    async def has_access(self, content_id: Any, *, force_refresh: bool = False) -> bool:
        """Whether the session identity may open ``content_id``."""
        identity = require_identity(self.session.identity_id)
        cid = normalize_content_id(content_id)
        if not cid:
            self.logger.warning("Access check for empty content id")
            return False

        self._interest.add(cid)

        if not self._is_gated(cid):
            self._set_state(cid, ResolutionState.RESOLVED)
            self.metrics.record_resolution("free")
            return True

        key = (identity, cid, force_refresh)
        now = self._now()
        coalesced = self._inflight.get(key)
        if coalesced is None or (now - coalesced.started_at).total_seconds() >= self.debounce_window:
            task = asyncio.create_task(self._resolve_within_budget(identity, cid, force_refresh))
            task.add_done_callback(self._retrieve_failure)
            coalesced = _Coalesced(task, now)
            self._inflight[key] = coalesced
        else:
            self.logger.debug("Coalescing access check", content_id=cid)

        return await asyncio.shield(coalesced.task)

    async def get_remaining_days(self, content_id: Any) -> Optional[int]:
        record = await self._current_record(content_id)
        return record.remaining_days if record is not None else None

    async def get_access_type(self, content_id: Any) -> Optional[AccessType]:
        record = await self._current_record(content_id)
        return record.access_type if record is not None else None

    @staticmethod
    def determine_access_type(record: EntitlementRecord) -> AccessType:
        return determine_access_type(record)

    def resolution_state(self, content_id: Any) -> ResolutionState:
        entry = self._states.get(normalize_content_id(content_id))
        if entry is None:
            return ResolutionState.UNKNOWN
        state, changed_at = entry
        if state == ResolutionState.RESOLVED and \
                (self._now() - changed_at).total_seconds() >= self.staleness_threshold:
            return ResolutionState.UNKNOWN
        return state

    # mutations

    async def apply_update(self, update: AccessUpdate) -> Optional[EntitlementRecord]:
        """Write a pushed access change, re-checking remotely when it conflicts with the cache."""
        identity = self.session.identity_id
        if self._closed or not identity:
            return None
        if update.user_id and update.user_id != identity:
            self.logger.debug("Ignoring update for another identity", content_id=update.content_id)
            return None

        cid = update.content_id
        self._drop_coalesced(cid)
        incoming = await self._record_from_update(identity, update)
        current = await self.cache.get(identity, cid)

        if current is None or current.is_active(self._now()) == incoming.has_access:
            await self._commit(identity, incoming)
            return incoming

        self.logger.info("Push update conflicts with cache, re-checking", content_id=cid,
                         pushed=incoming.has_access, cached=current.has_access)
        try:
            access = await self.remote.check_access(identity, cid, force_refresh=True, scope=identity)
        except Exception as e:
            return await self._accept_unverified(identity, incoming, str(e))
        if access.stale:
            return await self._accept_unverified(identity, incoming, "rate limited, only a stale answer")

        record = await self._record_from_remote(identity, cid, access, None)
        await self._commit(identity, record)
        return record

    async def record_purchase(self, purchase: Union[PurchaseRecord, Dict[str, Any]]) -> Optional[EntitlementRecord]:
        """Apply a completed purchase and issue a resync before returning."""
        identity = require_identity(self.session.identity_id)
        if not isinstance(purchase, PurchaseRecord):
            purchase = PurchaseRecord.model_validate(purchase)
        if purchase.user_id and purchase.user_id != identity:
            self.logger.warning("Ignoring purchase of another identity", content_id=purchase.content_id)
            return None

        self.session.purchases = [
            p for p in self.session.purchases if not (purchase.id and p.id == purchase.id)
        ] + [purchase]

        record = self._record_from_purchase(purchase, source="purchase")
        self._drop_coalesced(record.content_id)
        await self._commit(identity, record)
        if record.has_access:
            await self._broadcast(identity, record)

        await self.resync()
        return record

    async def redeem(self, code: str) -> EntitlementRecord:
        """Redeem a code for the session identity.

        Raises ``RedemptionError`` when the backend rejects the code.
        """
        identity = require_identity(self.session.identity_id)
        redemption = await self.remote.redeem_code(code, scope=identity)

        self.session.redemptions.append(redemption)
        if self.ledger is not None:
            await self.ledger.add(identity, redemption)

        record = self._record_from_redemption(redemption, source="redemption")
        self._interest.add(record.content_id)
        self._drop_coalesced(record.content_id)
        await self._commit(identity, record)
        await self._broadcast(identity, record)

        await self.resync()
        return record

    async def refresh_catalog(self) -> List[ContentBundle]:
        """Load the catalog for gating and write through pre-annotated access flags."""
        identity = require_identity(self.session.identity_id)
        bundles = await self.remote.list_content(identity, scope=identity)
        if self._closed:
            return bundles

        self.session.catalog = {bundle.id: bundle for bundle in bundles}
        for bundle in bundles:
            if bundle.is_paid and bundle.has_access is not None:
                await self.apply_update(AccessUpdate(
                    content_id=bundle.id,
                    has_access=bundle.has_access,
                    remaining_days=bundle.remaining_days,
                    source="catalog"
                ))
        return bundles

    async def resync(self, force_refresh: bool = True) -> ResyncTicket:
        """Ask for every current entitlement of the identity to be re-delivered."""
        identity = require_identity(self.session.identity_id)

        if self.channel is not None and self.channel.connected:
            if await self.channel.sync_access_rights(force_refresh=force_refresh):
                interest = self.interested_content()
                if interest:
                    await self.channel.check_access_batch(interest)
                self.logger.info("Resync issued over realtime channel", content_ids=len(interest))
                return ResyncTicket(identity, "realtime", self._now())

        task = asyncio.create_task(self._http_resync(identity))
        self._background.add(task)
        task.add_done_callback(self._background.discard)
        self.logger.info("Resync issued over HTTP")
        return ResyncTicket(identity, "http", self._now(), task)

    # resolution

    async def _resolve_within_budget(self, identity: str, cid: str, force_refresh: bool) -> bool:
        try:
            return await asyncio.wait_for(self._resolve(identity, cid, force_refresh), self.resolution_timeout)
        except asyncio.TimeoutError:
            self.logger.warning("Access resolution timed out", content_id=cid, timeout=self.resolution_timeout)
            return await self._degrade(identity, cid)

    async def _resolve(self, identity: str, cid: str, force_refresh: bool) -> bool:
        with self.metrics.time_operation("sync_resolution_duration_seconds"):
            now = self._now()
            expired_purchase = None

            if not force_refresh:
                cached = await self.cache.get(identity, cid)
                if cached is not None and self.cache.is_trusted(cached):
                    self._set_state(cid, ResolutionState.RESOLVED)
                    self.metrics.record_resolution("cache")
                    return True

                self._set_state(cid, ResolutionState.CHECKING)

                purchase, expired_purchase = self._match_purchase(cid, now)
                if purchase is not None:
                    self.metrics.record_resolution("purchase")
                    return await self._settle(identity, cid, self._record_from_purchase(purchase, source="session"))

                redemption = await self._match_redemption(identity, cid, now)
                if redemption is not None:
                    self.metrics.record_resolution("redemption")
                    return await self._settle(identity, cid, self._record_from_redemption(redemption, source="session"))
            else:
                self._set_state(cid, ResolutionState.CHECKING)

            try:
                access = await self.remote.check_access(identity, cid, force_refresh=force_refresh, scope=identity)
            except Exception as e:
                self.logger.warning("Remote access check failed", content_id=cid, error=str(e))
                return await self._degrade(identity, cid)

            if access.stale:
                self.logger.info("Remote answer is stale, not committing", content_id=cid)
                return await self._degrade(identity, cid)

            record = await self._record_from_remote(identity, cid, access, expired_purchase)
            self.metrics.record_resolution("remote")
            await self._commit(identity, record)
            if record.has_access:
                await self._broadcast(identity, record)
            return record.has_access

    async def _settle(self, identity: str, cid: str, record: EntitlementRecord) -> bool:
        # legacy matches are stored under the requested id
        if record.content_id != cid:
            record = record.model_copy(update={"content_id": cid})
        await self._commit(identity, record)
        return record.has_access

    async def _accept_unverified(self, identity: str, update: EntitlementRecord,
                                 reason: str) -> Optional[EntitlementRecord]:
        """Positive pushes are kept, revocations need a fresh remote answer."""
        if update.has_access:
            self.logger.warning("Re-check failed, accepting positive update", content_id=update.content_id,
                                error=reason)
            await self._commit(identity, update)
            return update
        self.logger.warning("Re-check failed, discarding suspect revocation", content_id=update.content_id,
                            error=reason)
        return None

    async def _degrade(self, identity: str, cid: str) -> bool:
        """Last known value, else no access."""
        cached = await self.cache.get(identity, cid)
        value = cached is not None and cached.is_active(self._now())
        self.metrics.record_resolution("degraded")
        if not self._closed:
            self._set_state(cid, ResolutionState.DEGRADED)
        self.logger.info("Access resolution degraded", content_id=cid, has_access=value,
                         cached=cached is not None)
        return value

    async def _commit(self, identity: str, record: EntitlementRecord) -> bool:
        if self._closed or identity != self.session.identity_id:
            self.logger.debug("Dropping write from closed session", content_id=record.content_id)
            return False

        await self.cache.set(identity, record.content_id, record)
        self._set_state(record.content_id, ResolutionState.RESOLVED)
        for observer in list(self._observers):
            try:
                result = observer(record)
                if asyncio.iscoroutine(result):
                    await result
            except Exception as e:
                self.logger.error("Entitlement observer failed", content_id=record.content_id, error=str(e))
        return True

    async def _broadcast(self, identity: str, record: EntitlementRecord) -> None:
        if self.channel is None or not self.channel.connected or self._closed:
            return
        update = AccessUpdate(
            content_id=record.content_id,
            has_access=record.has_access,
            remaining_days=record.remaining_days,
            expiry_date=record.expires_at,
            payment_method=REDEEM_PAYMENT_METHOD if record.acquired_via == Acquisition.REDEMPTION else None,
            source=record.source,
            user_id=identity
        )
        await self.channel.broadcast_access_update(update)

    async def _http_resync(self, identity: str) -> int:
        try:
            purchases = await self.remote.get_active_purchases(identity, scope=identity)
        except Exception as e:
            self.logger.warning("HTTP resync failed", error=str(e))
            return 0

        if self._closed or identity != self.session.identity_id:
            return 0

        self.session.purchases = purchases
        written = 0
        for purchase in purchases:
            if not purchase.has_valid_status():
                continue
            record = self._record_from_purchase(purchase, source="resync")
            if await self._commit(identity, record):
                self._drop_coalesced(record.content_id)
                written += 1

        self.logger.info("HTTP resync completed", purchases=len(purchases), written=written)
        return written

    # matching

    def _is_gated(self, cid: str) -> bool:
        bundle = self.session.catalog.get(cid)
        return bundle is None or bundle.is_paid

    def _candidates(self, items, cid: str):
        exact = [item for item in items if item.content_id == cid]
        if exact or not self.legacy_id_matching:
            return exact
        return [item for item in items if is_legacy_id_match(item.content_id, cid)]

    def _match_purchase(self, cid: str, now: datetime) -> Tuple[Optional[PurchaseRecord], Optional[PurchaseRecord]]:
        expired = None
        for purchase in self._candidates(self.session.purchases, cid):
            if not purchase.has_valid_status():
                continue
            if purchase.is_expired(now):
                expired = expired or purchase
                continue
            return purchase, None
        return None, expired

    async def _match_redemption(self, identity: str, cid: str, now: datetime) -> Optional[RedemptionRecord]:
        redemptions = list(self.session.redemptions)
        if self.ledger is not None:
            redemptions.extend(await self.ledger.list(identity))
        for redemption in self._candidates(redemptions, cid):
            if not redemption.is_expired(now):
                return redemption
        return None

    # record builders

    def _days_left(self, expiry: Optional[datetime], fallback: Optional[int] = None) -> Optional[int]:
        if expiry is None:
            return fallback
        return remaining_days_until(expiry, self._now())

    def _record_from_purchase(self, purchase: PurchaseRecord, source: str) -> EntitlementRecord:
        return EntitlementRecord(
            content_id=purchase.content_id,
            has_access=purchase.has_valid_status(),
            remaining_days=self._days_left(purchase.expiry_date),
            acquired_via=purchase.acquisition,
            expires_at=purchase.expiry_date,
            cached_at=self._now(),
            source=source
        )

    def _record_from_redemption(self, redemption: RedemptionRecord, source: str) -> EntitlementRecord:
        return EntitlementRecord(
            content_id=redemption.content_id,
            has_access=True,
            remaining_days=self._days_left(redemption.expiry_date),
            acquired_via=Acquisition.REDEMPTION,
            expires_at=redemption.expiry_date,
            cached_at=self._now(),
            source=source
        )

    async def _record_from_update(self, identity: str, update: AccessUpdate) -> EntitlementRecord:
        if update.payment_method == REDEEM_PAYMENT_METHOD or \
                (update.has_access and await self._was_redeemed(identity, update.content_id)):
            acquired = Acquisition.REDEMPTION
        else:
            acquired = Acquisition.PURCHASE if update.has_access else Acquisition.NONE
        return EntitlementRecord(
            content_id=update.content_id,
            has_access=update.has_access,
            remaining_days=self._days_left(update.expiry_date, update.remaining_days),
            acquired_via=acquired,
            expires_at=update.expiry_date,
            cached_at=self._now(),
            source=update.source or "push"
        )

    async def _record_from_remote(self, identity: str, cid: str, access: RemoteAccess,
                                  expired_purchase: Optional[PurchaseRecord]) -> EntitlementRecord:
        if not access.has_access and expired_purchase is not None:
            return self._record_from_purchase(expired_purchase, source="remote")

        if access.payment_method == REDEEM_PAYMENT_METHOD or await self._was_redeemed(identity, cid):
            acquired = Acquisition.REDEMPTION
        else:
            acquired = Acquisition.PURCHASE if access.has_access else Acquisition.NONE

        return EntitlementRecord(
            content_id=cid,
            has_access=access.has_access,
            remaining_days=self._days_left(access.expiry_date, access.remaining_days),
            acquired_via=acquired,
            expires_at=access.expiry_date,
            cached_at=self._now(),
            source="remote"
        )

    async def _was_redeemed(self, identity: str, cid: str) -> bool:
        if any(r.content_id == cid for r in self.session.redemptions):
            return True
        if self.ledger is None:
            return False
        return any(r.content_id == cid for r in await self.ledger.list(identity))

    # helpers

    async def _current_record(self, content_id: Any) -> Optional[EntitlementRecord]:
        identity = require_identity(self.session.identity_id)
        cid = normalize_content_id(content_id)
        if not cid or not self._is_gated(cid):
            return None

        record = await self.cache.get(identity, cid)
        if record is None:
            await self.has_access(cid)
            record = await self.cache.get(identity, cid)
        if record is None:
            return None
        return record.at(self._now())

    def _set_state(self, cid: str, state: ResolutionState) -> None:
        self._states[cid] = (state, self._now())

    def _drop_coalesced(self, cid: str) -> None:
        for key in [key for key in self._inflight if key[1] == cid]:
            del self._inflight[key]

    @staticmethod
    def _retrieve_failure(task: asyncio.Task) -> None:
        if not task.cancelled():
            task.exception()

    async def _on_channel_event(self, event) -> None:
        for update in event.updates:
            await self.apply_update(update)
