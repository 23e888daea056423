"""
Wiring and command line entrypoint for the entitlement sync client.
"""

import argparse
import asyncio
import json
import sys
from datetime import datetime
from typing import Callable, List, Optional

import httpx

from shared.circuit_breaker import CircuitBreaker
from shared.config import SyncConfig, get_config
from shared.errors import SyncLayerException
from shared.logging import configure_logging, get_logger
from shared.metrics import MetricsCollector
from shared.retry import RetryError
from .cache.local_cache import LocalEntitlementCache, RedemptionLedger
from .cache.store import InMemoryStore, JsonFileStore, KeyValueStore, RedisStore
from .http.request_executor import RequestExecutor, RequestOptions
from .models import utcnow
from .realtime.channel import RealtimeChannel
from .realtime.transport import WebSocketTransport
from .remote.entitlements_client import RemoteEntitlementSource
from .session.accounts import AccountStore
from .session.manager import SessionManager


logger = get_logger("sync.main")


def build_store(config: SyncConfig) -> KeyValueStore:
    """Storage backend selected by ``cache_backend``."""
    if config.cache_backend == "redis":
        return RedisStore(config.redis_url)
    if config.cache_backend == "file":
        return JsonFileStore(config.cache_directory)
    return InMemoryStore()


def build_session_manager(config: Optional[SyncConfig] = None,
                          *,
                          transport: Optional[httpx.AsyncBaseTransport] = None,
                          transport_factory: Optional[Callable[[], object]] = None,
                          store: Optional[KeyValueStore] = None,
                          metrics: Optional[MetricsCollector] = None,
                          realtime: bool = True,
                          clock: Callable[[], datetime] = utcnow) -> SessionManager:
    """Assemble the full client from configuration."""
    config = config or get_config()
    metrics = metrics or MetricsCollector("entitlement_sync")

    executor = RequestExecutor(
        config.api_base_url,
        transport=transport,
        timeout=config.request_timeout,
        max_requests_per_minute=config.max_requests_per_minute,
        rate_limit_window=config.rate_limit_window,
        rate_limit_delay=config.rate_limit_delay,
        dedup_timeout=config.dedup_timeout,
        max_retry_delay=config.max_retry_delay,
        default_options=RequestOptions(
            cache_duration=config.default_cache_duration,
            retries=config.max_retries,
            retry_delay=config.retry_base_delay
        ),
        metrics=metrics
    )

    remote = RemoteEntitlementSource(
        executor,
        cache_ttl=config.remote_check_ttl,
        retries=config.max_retries,
        retry_delay=config.retry_base_delay,
        circuit_breaker=CircuitBreaker(
            failure_threshold=config.circuit_failure_threshold,
            recovery_timeout=config.circuit_recovery_timeout,
            expected_exception=(httpx.TransportError, RetryError),
            name="entitlements_backend"
        )
    )

    store = store or build_store(config)
    cache = LocalEntitlementCache(store, staleness_threshold=config.staleness_threshold, metrics=metrics,
                                  clock=clock)

    channel = None
    if realtime:
        channel = RealtimeChannel(
            transport_factory or (lambda: WebSocketTransport(config.realtime_url, open_timeout=config.request_timeout)),
            metrics=metrics,
            reconnect_attempts=config.reconnect_attempts,
            reconnect_base_delay=config.reconnect_base_delay,
            reconnect_max_delay=config.reconnect_max_delay
        )

    return SessionManager(
        executor,
        remote,
        cache,
        channel,
        accounts=AccountStore(store, clock=clock),
        ledger=RedemptionLedger(store),
        config=config,
        metrics=metrics,
        clock=clock
    )


async def resolve_report(manager: SessionManager, user_id: str, token: str,
                         content_ids: List[str], force_refresh: bool = False) -> dict:
    """Log in, resolve each content id and collect a JSON-ready report."""
    await manager.login(user_id, token)
    resolver = manager.require_resolver()

    try:
        await resolver.refresh_catalog()
    except Exception as e:
        logger.warning("Catalog unavailable, treating all content as gated", error=str(e))

    results = []
    for content_id in content_ids:
        has_access = await resolver.has_access(content_id, force_refresh=force_refresh)
        access_type = await resolver.get_access_type(content_id)
        results.append({
            "content_id": content_id,
            "has_access": has_access,
            "remaining_days": await resolver.get_remaining_days(content_id),
            "access_type": access_type.value if access_type else None,
            "state": resolver.resolution_state(content_id).value,
        })

    return {"user_id": user_id, "results": results, "backend": manager.remote.get_state()}


async def _run(args: argparse.Namespace, config: SyncConfig) -> int:
    manager = build_session_manager(config, realtime=not args.no_realtime)
    try:
        report = await resolve_report(manager, args.user, args.token, args.content_ids, args.force)
    except SyncLayerException as e:
        print(e.to_response().model_dump_json(), file=sys.stderr)
        return 2
    finally:
        await manager.aclose()

    print(json.dumps(report, indent=2))
    return 0


def main(argv: Optional[List[str]] = None) -> int:
    parser = argparse.ArgumentParser(
        prog="entitlement-sync",
        description="Resolve content access for an identity and print a JSON report."
    )
    parser.add_argument("--user", required=True, help="identity to resolve for")
    parser.add_argument("--token", required=True, help="session token of the identity")
    parser.add_argument("--force", action="store_true", help="verify every id against the backend")
    parser.add_argument("--no-realtime", action="store_true", help="skip the realtime channel")
    parser.add_argument("content_ids", nargs="+", metavar="CONTENT_ID")
    args = parser.parse_args(argv)

    config = get_config()
    configure_logging("entitlement_sync", config.log_level, config.log_format)
    return asyncio.run(_run(args, config))


if __name__ == "__main__":
    sys.exit(main())
