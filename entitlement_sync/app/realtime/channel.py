"""
Realtime update channel.

Pushes access changes to the other sessions of the same account and feeds
pushed changes to subscribers (the resolver) as typed ``ChannelEvent``s.
"""

import asyncio
import functools
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional

from pydantic import ValidationError

from shared.errors import ChannelError
from shared.logging import get_logger
from shared.metrics import MetricsCollector
from shared.retry import RetryConfig, RetryError, retry_call
from ..ids import normalize_content_id, require_identity
from ..models import AccessUpdate


@dataclass
class ChannelEvent:
    """Inbound push event with its parsed access updates."""
    name: str
    updates: List[AccessUpdate] = field(default_factory=list)
    user_id: Optional[str] = None
    payload: Dict[str, Any] = field(default_factory=dict)


Listener = Callable[[ChannelEvent], Awaitable[None]]


class ChannelSubscription:
    """Handle returned by :meth:`RealtimeChannel.subscribe`."""

    def __init__(self, channel: "RealtimeChannel", listener: Listener):
        self._channel = channel
        self._listener = listener
        self.active = True

    def close(self) -> None:
        if self.active:
            self._channel._unsubscribe(self._listener)
            self.active = False


class RealtimeChannel:
    """Push channel bound to the active identity."""

    def __init__(self,
                 transport_factory: Callable[[], Any],
                 *,
                 metrics: Optional[MetricsCollector] = None,
                 reconnect_attempts: int = 5,
                 reconnect_base_delay: float = 1.0,
                 reconnect_max_delay: float = 5.0):
        self._transport_factory = transport_factory
        self.metrics = metrics or MetricsCollector("sync.realtime")
        self.logger = get_logger("sync.realtime.channel")
        self.reconnect_config = RetryConfig(
            max_attempts=reconnect_attempts,
            base_delay=reconnect_base_delay,
            max_delay=reconnect_max_delay
        )

        self.user_id: Optional[str] = None
        self.token: Optional[str] = None
        self.interest_provider: Optional[Callable[[], Iterable[str]]] = None

        self._transport: Optional[Any] = None
        self._receiver: Optional[asyncio.Task] = None
        self._listeners: List[Listener] = []
        self._closing = False

    @property
    def connected(self) -> bool:
        return self._transport is not None and not getattr(self._transport, "closed", False)

    # connection lifecycle

    async def connect(self, user_id: str, token: Optional[str] = None) -> None:
        """Open a connection and authenticate as ``user_id``."""
        if self._transport is not None:
            await self._close_transport()

        self.user_id = require_identity(user_id)
        self.token = token
        self._closing = False
        try:
            await self._establish()
        except Exception as e:
            self.logger.error("Failed to connect realtime channel", error=str(e))
            raise ChannelError("Failed to connect realtime channel", details={"error": str(e)}) from e

    async def reset(self, user_id: str, token: Optional[str] = None) -> None:
        """Re-authenticate the channel for a new identity."""
        self.logger.info("Resetting realtime channel", previous=self.user_id, current=user_id)
        await self.connect(user_id, token)

    async def disconnect(self) -> None:
        """Close without reconnecting."""
        await self._close_transport()
        self.user_id = None
        self.token = None
        self.logger.info("Realtime channel disconnected")

    async def _establish(self) -> None:
        transport = self._transport_factory()
        await transport.open()
        await transport.send("authenticate", {"userId": self.user_id, "token": self.token})
        self._transport = transport
        self._receiver = asyncio.create_task(self._receive_loop(transport))
        self.logger.info("Realtime channel connected", user_id=self.user_id)

    async def _close_transport(self) -> None:
        self._closing = True
        transport, self._transport = self._transport, None
        receiver, self._receiver = self._receiver, None

        if transport is not None:
            try:
                await transport.close()
            except Exception as e:
                self.logger.warning("Error closing realtime transport", error=str(e))

        if receiver is not None and receiver is not asyncio.current_task():
            receiver.cancel()
            try:
                await receiver
            except asyncio.CancelledError:
                pass

    async def _receive_loop(self, transport: Any) -> None:
        try:
            async for event, data in transport:
                await self._dispatch(event, data)
        except Exception as e:
            self.logger.error("Realtime receive loop failed", error=str(e))

        if self._closing or transport is not self._transport:
            return

        self.logger.warning("Realtime connection lost, reconnecting", user_id=self.user_id)
        self._transport = None
        await self._reconnect()

    async def _reconnect(self) -> None:
        try:
            await retry_call(self._establish, self.reconnect_config, name="realtime_reconnect")
        except RetryError as e:
            self.logger.error("Realtime reconnect failed", attempts=e.attempts, error=str(e.last_exception))
            return

        # the server forgets session state on reconnect
        await self.sync_access_rights(force_refresh=True)
        interest = list(self.interest_provider()) if self.interest_provider else []
        if interest:
            await self.check_access_batch(interest)

    # inbound

    def subscribe(self, listener: Listener) -> ChannelSubscription:
        self._listeners.append(listener)
        return ChannelSubscription(self, listener)

    def _unsubscribe(self, listener: Listener) -> None:
        if listener in self._listeners:
            self._listeners.remove(listener)

    async def _dispatch(self, event: str, data: Any) -> None:
        handlers = {
            "questionSet:accessUpdate": self._parse_single,
            "questionSet:accessResult": self._parse_single,
            "questionSet:batchAccessUpdate": functools.partial(self._parse_batch, "updates"),
            "questionSet:batchAccessResult": functools.partial(self._parse_batch, "results"),
            "purchase:success": functools.partial(self._parse_grant, None, event),
            "redeem:success": functools.partial(self._parse_grant, "redeem", event),
            "user:syncComplete": self._parse_none,
        }

        handler = handlers.get(event)
        if handler is None:
            self.logger.debug("Ignoring unknown realtime event", event_name=event)
            return

        self.metrics.record_push_event(event)

        if not isinstance(data, dict):
            self.logger.warning("Dropping malformed push payload", event_name=event)
            return

        target = normalize_content_id(data.get("userId"))
        if target and target != self.user_id:
            self.logger.debug("Ignoring push for another identity", event_name=event)
            return

        try:
            updates = handler(data)
        except (ValidationError, ValueError, TypeError) as e:
            self.logger.warning("Dropping malformed push payload", event_name=event, error=str(e))
            return

        channel_event = ChannelEvent(event, updates, self.user_id, data)
        for listener in list(self._listeners):
            try:
                await listener(channel_event)
            except Exception as e:
                self.logger.error("Channel listener failed", event_name=event, error=str(e))

    def _parse_single(self, data: Dict[str, Any]) -> List[AccessUpdate]:
        return [AccessUpdate.model_validate(data)]

    def _parse_batch(self, key: str, data: Dict[str, Any]) -> List[AccessUpdate]:
        items = data.get(key) or []
        if not isinstance(items, list):
            raise ValueError(f"'{key}' is not a list")

        updates = []
        for item in items:
            try:
                updates.append(AccessUpdate.model_validate(item))
            except ValidationError as e:
                self.logger.warning("Dropping malformed batch item", error=str(e))
        return updates

    def _parse_grant(self, payment_method: Optional[str], event: str,
                     data: Dict[str, Any]) -> List[AccessUpdate]:
        payload = {"hasAccess": True, "source": event, **data}
        if payment_method:
            payload["paymentMethod"] = payment_method
        return [AccessUpdate.model_validate(payload)]

    def _parse_none(self, data: Dict[str, Any]) -> List[AccessUpdate]:
        return []

    # outbound

    async def emit(self, event: str, data: Dict[str, Any]) -> bool:
        transport = self._transport
        if transport is None or not self.connected:
            self.logger.debug("Realtime channel not connected, event not sent", event_name=event)
            return False
        try:
            await transport.send(event, data)
            return True
        except Exception as e:
            self.logger.warning("Failed to send realtime event", event_name=event, error=str(e))
            return False

    async def check_access(self, content_id: Any) -> bool:
        return await self.emit("questionSet:checkAccess", {
            "userId": self.user_id,
            "contentId": normalize_content_id(content_id),
        })

    async def check_access_batch(self, content_ids: Iterable[Any]) -> bool:
        return await self.emit("questionSet:checkAccessBatch", {
            "userId": self.user_id,
            "contentIds": [normalize_content_id(cid) for cid in content_ids],
        })

    async def sync_access_rights(self, force_refresh: bool = True) -> bool:
        return await self.emit("user:syncAccessRights", {
            "userId": self.user_id,
            "forceRefresh": force_refresh,
        })

    async def broadcast_access_update(self, update: AccessUpdate) -> bool:
        """Tell the account's other sessions about an access change."""
        payload = update.to_wire()
        payload["userId"] = payload.get("userId") or self.user_id
        return await self.emit("questionSet:accessUpdate", payload)
