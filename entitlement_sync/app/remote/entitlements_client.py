"""
Remote entitlement source.
"""

import time
from typing import Any, Dict, List, Optional
from urllib.parse import quote

import httpx
from pydantic import ValidationError

from shared.circuit_breaker import CircuitBreaker, CircuitBreakerOpenError
from shared.errors import RedemptionError, RequestFailedError
from shared.logging import get_logger
from shared.retry import RetryError
from ..http.request_executor import ApiResult, RequestExecutor, RequestOptions
from ..ids import normalize_content_id
from ..models import ContentBundle, PurchaseRecord, RedemptionRecord, RemoteAccess, utcnow


class RemoteEntitlementSource:
    """Client for the purchases / redeem-codes backend.

    The backend is the system of record: whenever this source is asked, its
    answer overrides anything cached locally.
    """

    def __init__(self,
                 executor: RequestExecutor,
                 *,
                 cache_ttl: float = 60.0,
                 retries: int = 3,
                 retry_delay: float = 0.3,
                 circuit_breaker: Optional[CircuitBreaker] = None):
        self.executor = executor
        self.cache_ttl = cache_ttl
        self.retries = retries
        self.retry_delay = retry_delay
        self.logger = get_logger("sync.remote.entitlements")
        self.circuit_breaker = circuit_breaker or CircuitBreaker(
            failure_threshold=5,
            recovery_timeout=30.0,
            expected_exception=(httpx.TransportError, RetryError),
            name="entitlements_backend"
        )

    def _check_url(self, content_id: str) -> str:
        return f"/purchases/check/{quote(content_id, safe='')}"

    async def _call(self, method: str, url: str, **kwargs) -> ApiResult:
        return await self.circuit_breaker.call(self.executor.request, url, method=method, **kwargs)

    async def check_access(self, user_id: str, content_id: Any, *, force_refresh: bool = False,
                           scope: Optional[str] = None) -> RemoteAccess:
        """Authoritative access check for one content bundle."""
        cid = normalize_content_id(content_id)
        options = RequestOptions(
            cache_duration=self.cache_ttl,
            retries=self.retries,
            retry_delay=self.retry_delay,
            force_refresh=force_refresh
        )

        result = await self._call("GET", self._check_url(cid), params={"userId": user_id},
                                  options=options, scope=scope or user_id)

        payload = result.data
        if not isinstance(payload, dict) or not payload.get("success") or not isinstance(payload.get("data"), dict):
            self.logger.info("Access check returned no grant", content_id=cid, stale=result.stale)
            return RemoteAccess(content_id=cid, has_access=False, stale=result.stale)

        try:
            access = RemoteAccess.model_validate({**payload["data"], "content_id": cid, "stale": result.stale})
        except ValidationError as e:
            self.logger.error("Malformed access check payload", content_id=cid, error=str(e))
            raise RequestFailedError(None, "Malformed access check payload", details={"content_id": cid})

        self.logger.debug("Access check completed", content_id=cid, has_access=access.has_access,
                          from_cache=result.from_cache)
        return access

    async def list_content(self, user_id: str, *, scope: Optional[str] = None) -> List[ContentBundle]:
        """Catalog listing, never served from cache."""
        result = await self._call(
            "GET",
            "/question-sets",
            params={"userId": user_id, "_t": int(time.time() * 1000)},
            options=RequestOptions(skip_cache=True, retries=self.retries, retry_delay=self.retry_delay),
            scope=scope or user_id
        )
        return self._parse_list(result.data, ContentBundle, "catalog entry")

    async def get_active_purchases(self, user_id: str, *, scope: Optional[str] = None) -> List[PurchaseRecord]:
        """Active purchases of ``user_id``, never served from cache."""
        result = await self._call(
            "GET",
            "/purchases/active",
            params={"userId": user_id},
            options=RequestOptions(skip_cache=True, retries=self.retries, retry_delay=self.retry_delay),
            scope=scope or user_id
        )
        return self._parse_list(result.data, PurchaseRecord, "purchase")

    async def redeem_code(self, code: str, *, scope: Optional[str] = None) -> RedemptionRecord:
        """Redeem ``code`` for the authenticated identity. Never retried."""
        code = (code or "").strip()
        if not code:
            raise RedemptionError("Redeem code is empty")

        try:
            result = await self._call(
                "POST",
                "/redeem-codes/redeem",
                json={"code": code},
                options=RequestOptions(skip_cache=True, cache_duration=0, retries=0),
                scope=scope
            )
        except RequestFailedError as e:
            self.logger.warning("Redeem code rejected", status_code=e.status_code, error=e.message)
            raise RedemptionError(e.message, details={"status_code": e.status_code})
        except RetryError as e:
            self.logger.warning("Redeem request failed", error=str(e.last_exception))
            raise RedemptionError("Redemption service unavailable", details={"error": str(e.last_exception)})
        except CircuitBreakerOpenError as e:
            self.logger.warning("Redeem blocked by open circuit", error=str(e))
            raise RedemptionError("Redemption service unavailable", details={"error": str(e)})

        payload = result.data if isinstance(result.data, dict) else {}
        if not payload.get("success"):
            raise RedemptionError(payload.get("message") or "Redemption failed")

        data = payload.get("data") or {}
        purchase_data = data.get("purchase") or {}
        bundle_data = data.get("questionSet") or {}
        content_id = normalize_content_id(
            bundle_data.get("id") or bundle_data.get("_id")
            or purchase_data.get("questionSetId") or purchase_data.get("contentId")
        )
        if not content_id:
            raise RedemptionError("Redemption response names no content", details={"payload": payload})

        try:
            redemption = RedemptionRecord(
                code=code,
                content_id=content_id,
                redeemed_at=utcnow(),
                expiry_date=purchase_data.get("expiryDate") or purchase_data.get("expiry_date")
            )
        except ValidationError as e:
            raise RedemptionError("Malformed redemption response", details={"error": str(e)})

        if scope:
            self.executor.invalidate(self._check_url(content_id), params={"userId": scope})

        self.logger.info("Redeem code accepted", content_id=content_id, expiry_date=str(redemption.expiry_date))
        return redemption

    def _parse_list(self, payload: Any, model, label: str) -> List:
        if isinstance(payload, dict):
            items = payload.get("data") if payload.get("success", True) else []
        else:
            items = payload
        if not isinstance(items, list):
            self.logger.warning("Unexpected list payload", kind=label)
            return []

        parsed = []
        for item in items:
            try:
                parsed.append(model.model_validate(item))
            except ValidationError as e:
                self.logger.warning("Dropping malformed item", kind=label, error=str(e))
        return parsed

    def get_state(self) -> Dict[str, Any]:
        return self.circuit_breaker.get_state()
