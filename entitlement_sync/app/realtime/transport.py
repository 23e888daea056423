"""
WebSocket transport for the realtime channel.

Messages are JSON envelopes ``{"event": name, "data": {...}}``.
"""

import asyncio
import json
from typing import Any, AsyncIterator, Dict, Optional, Tuple

import websockets
from websockets.exceptions import ConnectionClosed, InvalidHandshake

from shared.errors import ChannelError
from shared.logging import get_logger
from shared.retry import RetryConfig, retry_on_exception


_OPEN_RETRY = RetryConfig(max_attempts=3, base_delay=0.5, max_delay=5.0)


class WebSocketTransport:
    """One websocket connection to the realtime endpoint."""

    def __init__(self, url: str, open_timeout: float = 10.0):
        self.url = url
        self.open_timeout = open_timeout
        self.logger = get_logger("sync.realtime.transport")
        self._websocket: Optional[Any] = None
        self._closed = False

    @retry_on_exception((OSError, asyncio.TimeoutError, InvalidHandshake), config=_OPEN_RETRY)
    async def open(self) -> None:
        self._websocket = await websockets.connect(self.url, open_timeout=self.open_timeout)
        self._closed = False
        self.logger.info("Websocket connected", url=self.url)

    async def send(self, event: str, data: Dict[str, Any]) -> None:
        if self._websocket is None or self._closed:
            raise ChannelError("Websocket is not open", details={"event": event})
        await self._websocket.send(json.dumps({"event": event, "data": data}, default=str))

    def __aiter__(self) -> AsyncIterator[Tuple[str, Dict[str, Any]]]:
        return self._messages()

    async def _messages(self) -> AsyncIterator[Tuple[str, Dict[str, Any]]]:
        if self._websocket is None:
            return
        try:
            async for raw in self._websocket:
                try:
                    message = json.loads(raw)
                except json.JSONDecodeError as e:
                    self.logger.error("Invalid JSON message", error=str(e))
                    continue

                if not isinstance(message, dict) or not message.get("event"):
                    self.logger.error("Invalid message format", message_type=type(message).__name__)
                    continue

                yield message["event"], message.get("data") or {}
        except ConnectionClosed as e:
            self.logger.info("Websocket closed by server", code=e.rcvd.code if e.rcvd else None)
        finally:
            self._closed = True

    @property
    def closed(self) -> bool:
        return self._closed

    async def close(self) -> None:
        self._closed = True
        if self._websocket is not None:
            await self._websocket.close()
            self._websocket = None
