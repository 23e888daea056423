"""
Collaborator interfaces of the entitlement resolver.
"""

from typing import Any, Awaitable, Callable, Iterable, List, Optional, Protocol

from ..models import AccessUpdate, ContentBundle, EntitlementRecord, PurchaseRecord, RedemptionRecord, RemoteAccess


class EntitlementCacheAPI(Protocol):
    async def get(self, identity_id: str, content_id: Any) -> Optional[EntitlementRecord]:
        ...

    async def set(self, identity_id: str, content_id: Any, record: EntitlementRecord) -> bool:
        ...

    async def invalidate(self, identity_id: str, content_id: Any) -> bool:
        ...

    async def clear_namespace(self, identity_id: str) -> int:
        ...

    def is_trusted(self, record: EntitlementRecord) -> bool:
        ...


class RemoteSourceAPI(Protocol):
    async def check_access(self, user_id: str, content_id: Any, *, force_refresh: bool = False,
                           scope: Optional[str] = None) -> RemoteAccess:
        ...

    async def list_content(self, user_id: str, *, scope: Optional[str] = None) -> List[ContentBundle]:
        ...

    async def get_active_purchases(self, user_id: str, *, scope: Optional[str] = None) -> List[PurchaseRecord]:
        ...

    async def redeem_code(self, code: str, *, scope: Optional[str] = None) -> RedemptionRecord:
        ...


class Subscription(Protocol):
    def close(self) -> None:
        ...


class ChannelAPI(Protocol):
    interest_provider: Optional[Callable[[], Iterable[str]]]

    @property
    def connected(self) -> bool:
        ...

    def subscribe(self, listener: Callable[[Any], Awaitable[None]]) -> Subscription:
        ...

    async def broadcast_access_update(self, update: AccessUpdate) -> bool:
        ...

    async def sync_access_rights(self, force_refresh: bool = True) -> bool:
        ...

    async def check_access_batch(self, content_ids: Iterable[str]) -> bool:
        ...
