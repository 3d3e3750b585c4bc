import asyncio
import json
import logging
import time
from collections import deque
from enum import Enum
from typing import Callable

import websockets
from websockets.exceptions import ConnectionClosed

from .protocol import Envelope, MessageType

logger = logging.getLogger(__name__)

MAX_BACKOFF_MS = 30000


class ConnectionState(str, Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    RECONNECTING = "reconnecting"
    FAILED = "failed"


def backoff_ms(attempt: int) -> int:
    """Delay before reconnect attempt number `attempt` (1-based)."""
    return min(1000 * 2 ** (attempt - 1), MAX_BACKOFF_MS)


class ReconnectingClient:
    """
    Client for the chat socket that survives dropped connections.

    Frames sent while offline are queued and flushed once the connection is back. Callbacks
    registered with on_message, on_connect and on_disconnect return a function that removes them.
    """

    def __init__(
        self,
        url: str,
        auto_reconnect: bool = True,
        max_reconnect_attempts: int = 5,
        connect_timeout: float = 10.0,
        heartbeat_interval: float = 30.0,
        max_queue_size: int = 50,
        rate_limit_per_second: int = 10,
        client_id: str | None = None,
    ):
        self.url = url
        self.auto_reconnect = auto_reconnect
        self.max_reconnect_attempts = max_reconnect_attempts
        self.connect_timeout = connect_timeout
        self.heartbeat_interval = heartbeat_interval
        self.max_queue_size = max_queue_size
        self.rate_limit_per_second = rate_limit_per_second
        self.client_id = client_id

        self.state = ConnectionState.DISCONNECTED
        self.reconnect_attempts = 0
        self.latency_ms: float | None = None
        self.queue: deque = deque()
        self._sent: deque = deque()
        self._websocket = None
        self._closing = False
        self._message_callbacks: list[Callable] = []
        self._connect_callbacks: list[Callable] = []
        self._disconnect_callbacks: list[Callable] = []

    # -------------------------------------------------------------------------
    # Callbacks
    # -------------------------------------------------------------------------

    @staticmethod
    def _subscribe(callbacks: list, callback: Callable) -> Callable[[], None]:
        callbacks.append(callback)

        def unsubscribe():
            if callback in callbacks:
                callbacks.remove(callback)

        return unsubscribe

    def on_message(self, callback: Callable[[dict], None]) -> Callable[[], None]:
        return self._subscribe(self._message_callbacks, callback)

    def on_connect(self, callback: Callable[[], None]) -> Callable[[], None]:
        return self._subscribe(self._connect_callbacks, callback)

    def on_disconnect(self, callback: Callable[[], None]) -> Callable[[], None]:
        return self._subscribe(self._disconnect_callbacks, callback)

    def _notify(self, callbacks: list, *args):
        for callback in list(callbacks):
            try:
                callback(*args)
            except Exception:
                logger.exception(f"WebSocket callback {callback!r} failed")

    # -------------------------------------------------------------------------
    # Sending
    # -------------------------------------------------------------------------

    @property
    def is_connected(self) -> bool:
        return self.state == ConnectionState.CONNECTED and self._websocket is not None

    def message_rate(self, now: float | None = None) -> int:
        """Frames sent during the last minute."""
        now = time.monotonic() if now is None else now
        while self._sent and now - self._sent[0] >= 60:
            self._sent.popleft()
        return len(self._sent)

    def enqueue(self, message: dict) -> bool:
        if len(self.queue) >= self.max_queue_size:
            logger.warning(f"Outgoing queue full, dropping {message.get('type')} message")
            return False
        self.queue.append(message)
        return True

    async def send(self, message: dict) -> bool:
        """Send `message` now, or queue it when offline. Returns True when it went out."""
        if self.message_rate() >= self.rate_limit_per_second * 60:
            logger.warning("WebSocket message rate limit exceeded")
            return False
        if not self.is_connected:
            self.enqueue(message)
            return False
        try:
            await self._websocket.send(json.dumps(message))
        except ConnectionClosed:
            self.enqueue(message)
            return False
        self._sent.append(time.monotonic())
        return True

    async def flush_queue(self) -> int:
        pending = list(self.queue)
        self.queue.clear()
        for message in pending:
            await self.send(message)
        return len(pending)

    # -------------------------------------------------------------------------
    # Connection lifecycle
    # -------------------------------------------------------------------------

    async def connect(self) -> bool:
        self._closing = False
        self.state = ConnectionState.CONNECTING
        try:
            self._websocket = await asyncio.wait_for(websockets.connect(self.url), timeout=self.connect_timeout)
        except (OSError, asyncio.TimeoutError, websockets.InvalidHandshake) as exc:
            logger.error(f"Error connecting to {self.url}: {exc}")
            self._websocket = None
            self.state = ConnectionState.DISCONNECTED
            return False

        self.state = ConnectionState.CONNECTED
        self.reconnect_attempts = 0
        logger.info(f"Connected to {self.url}")
        await self.flush_queue()
        self._notify(self._connect_callbacks)
        return True

    async def reconnect(self) -> bool:
        """Retry with exponential backoff until connected or out of attempts."""
        while self.auto_reconnect and self.reconnect_attempts < self.max_reconnect_attempts:
            self.reconnect_attempts += 1
            self.state = ConnectionState.RECONNECTING
            delay = backoff_ms(self.reconnect_attempts)
            logger.info(
                f"Reconnecting in {delay}ms (attempt {self.reconnect_attempts}/{self.max_reconnect_attempts})"
            )
            await asyncio.sleep(delay / 1000)
            if await self.connect():
                return True
        self.state = ConnectionState.FAILED
        logger.error(f"WebSocket reconnection failed after {self.reconnect_attempts} attempts")
        return False

    def _handle_frame(self, raw):
        try:
            data = json.loads(raw)
        except ValueError:
            logger.error(f"Error parsing WebSocket message: {raw!r}")
            return
        if not isinstance(data, dict):
            logger.error(f"Ignoring WebSocket message that is not an object: {raw!r}")
            return
        if data.get("type") == MessageType.PONG and data.get("sentAt") is not None:
            self.latency_ms = time.time() * 1000 - data["sentAt"]
        self._notify(self._message_callbacks, data)

    async def _heartbeat(self):
        while self.is_connected:
            await asyncio.sleep(self.heartbeat_interval)
            if self.is_connected:
                ping = Envelope(MessageType.PING, sent_at=time.time() * 1000, client_id=self.client_id)
                await self.send(ping.to_dict())

    async def run(self):
        """Connect and dispatch incoming frames, reconnecting whenever the link drops."""
        if not await self.connect() and not await self.reconnect():
            return
        while True:
            heartbeat = asyncio.create_task(self._heartbeat())
            try:
                async for raw in self._websocket:
                    self._handle_frame(raw)
            except ConnectionClosed as exc:
                logger.warning(f"Connection to {self.url} lost: {exc}")
            finally:
                heartbeat.cancel()
            self._websocket = None
            if self.state != ConnectionState.FAILED:
                self.state = ConnectionState.DISCONNECTED
            self._notify(self._disconnect_callbacks)
            if self._closing or not await self.reconnect():
                return

    async def disconnect(self):
        self._closing = True
        if self._websocket is not None:
            await self._websocket.close()
            self._websocket = None
        self.state = ConnectionState.DISCONNECTED

    def stats(self) -> dict:
        return {
            "connection_state": self.state.value,
            "queued_messages": len(self.queue),
            "reconnect_attempts": self.reconnect_attempts,
            "max_reconnect_attempts": self.max_reconnect_attempts,
            "is_connected": self.is_connected,
            "message_rate_per_minute": self.message_rate(),
            "latency_ms": self.latency_ms,
        }
