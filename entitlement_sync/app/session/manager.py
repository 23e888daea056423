"""
Session / account switch manager.
"""

import asyncio
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable, Optional

from shared.config import SyncConfig
from shared.errors import AuthenticationError
from shared.logging import clear_context, get_logger, set_identity_context
from shared.metrics import MetricsCollector
from ..cache.local_cache import LocalEntitlementCache, RedemptionLedger
from ..http.request_executor import RequestExecutor
from ..ids import require_identity
from ..models import utcnow
from ..realtime.channel import RealtimeChannel
from ..remote.entitlements_client import RemoteEntitlementSource
from ..resolver.engine import EntitlementResolver, ResyncTicket, SessionState
from .accounts import AccountStore


@dataclass
class SwitchResult:
    """Outcome of an identity change."""
    previous: Optional[str]
    current: Optional[str]
    aborted_requests: int = 0
    cleared_entries: int = 0
    resync: Optional[ResyncTicket] = None


class SessionManager:
    """Owns the active resolver and tears state down on identity changes.

    Switches are serialized. The prior identity's in-flight requests are
    aborted and its cached entitlements cleared before the new identity is
    resolved, and a resync for the new identity is issued before the switch
    returns.
    """

    def __init__(self,
                 executor: RequestExecutor,
                 remote: RemoteEntitlementSource,
                 cache: LocalEntitlementCache,
                 channel: Optional[RealtimeChannel] = None,
                 *,
                 accounts: AccountStore,
                 ledger: Optional[RedemptionLedger] = None,
                 config: Optional[SyncConfig] = None,
                 metrics: Optional[MetricsCollector] = None,
                 clock: Callable[[], datetime] = utcnow):
        self.executor = executor
        self.remote = remote
        self.cache = cache
        self.channel = channel
        self.accounts = accounts
        self.ledger = ledger
        self.config = config or SyncConfig()
        self.metrics = metrics
        self.logger = get_logger("sync.session.manager")
        self._clock = clock

        self.resolver: Optional[EntitlementResolver] = None
        self._lock = asyncio.Lock()

    @property
    def current_identity(self) -> Optional[str]:
        return self.resolver.session.identity_id if self.resolver is not None else None

    def require_resolver(self) -> EntitlementResolver:
        if self.resolver is None:
            raise AuthenticationError()
        return self.resolver

    async def has_access(self, content_id: Any, *, force_refresh: bool = False) -> bool:
        return await self.require_resolver().has_access(content_id, force_refresh=force_refresh)

    async def login(self, user_id: str, token: str, *, username: Optional[str] = None,
                    auto_login: Optional[bool] = None) -> SwitchResult:
        identity = require_identity(user_id)
        return await self._switch(identity, token, username=username, auto_login=auto_login)

    async def switch_account(self, user_id: str) -> SwitchResult:
        """Switch to a stored account using its persisted credential."""
        identity = require_identity(user_id)
        token = await self.accounts.credential_for(identity)
        if token is None:
            raise AuthenticationError("No valid stored credential", details={"user_id": identity})
        return await self._switch(identity, token)

    async def logout(self) -> SwitchResult:
        return await self._switch(None, None)

    async def forget_account(self, user_id: str) -> None:
        identity = require_identity(user_id)
        if self.current_identity == identity:
            await self.logout()
        await self.accounts.forget(identity)

    async def _switch(self, user_id: Optional[str], token: Optional[str], *,
                      username: Optional[str] = None, auto_login: Optional[bool] = None) -> SwitchResult:
        async with self._lock:
            previous = self.current_identity
            result = SwitchResult(previous=previous, current=user_id)

            if self.resolver is not None:
                await self.resolver.aclose()
                self.resolver = None

            if previous:
                result.aborted_requests = self.executor.abort(previous)
                result.cleared_entries = await self.cache.clear_namespace(previous)
                self.executor.clear_cache(previous)

            self.executor.set_auth_token(token)
            set_identity_context(user_id)

            if self.channel is not None:
                try:
                    if user_id:
                        await self.channel.reset(user_id, token)
                    else:
                        await self.channel.disconnect()
                except Exception as e:
                    self.logger.warning("Realtime channel unavailable, continuing over HTTP", error=str(e))

            if user_id is None:
                self.logger.info("Logged out", previous=previous, aborted_requests=result.aborted_requests)
                return result

            self.resolver = EntitlementResolver(
                SessionState(identity_id=user_id, token=token),
                self.cache,
                self.remote,
                self.channel,
                ledger=self.ledger,
                config=self.config,
                metrics=self.metrics,
                clock=self._clock
            )
            await self.resolver.open()
            await self.accounts.remember(user_id, token, username=username, auto_login=auto_login)
            await self.cache.purge_expired(user_id, self.config.cache_retention)

            result.resync = await self.resolver.resync()
            self.logger.info(
                "Identity switched",
                previous=previous,
                current=user_id,
                aborted_requests=result.aborted_requests,
                cleared_entries=result.cleared_entries,
                resync_via=result.resync.via
            )
            return result

    async def aclose(self) -> None:
        if self.resolver is not None:
            await self.resolver.aclose()
            self.resolver = None
        if self.channel is not None:
            await self.channel.disconnect()
        await self.executor.aclose()
        clear_context()
