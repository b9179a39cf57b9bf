"""Solana program log subscription (``logsSubscribe``).

Keeps a standing websocket subscription to transactions that mention the
program and hands each notification to an async callback. The connection is
re-established with exponential delay after transient failures.
"""

from __future__ import annotations

import asyncio
import contextlib
import json
import logging
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from enum import Enum
from typing import Any

import websockets
from websockets.asyncio.client import ClientConnection

from burn_sync.ingestor.models import LogNotification

logger = logging.getLogger(__name__)

DEFAULT_PING_INTERVAL = 30  # seconds
DEFAULT_MAX_RECONNECT_DELAY = 30  # seconds
DEFAULT_INITIAL_RECONNECT_DELAY = 1  # seconds
DEFAULT_SUBSCRIBE_TIMEOUT = 10  # seconds

_SUBSCRIBE_REQUEST_ID = 1
_UNSUBSCRIBE_REQUEST_ID = 2


class ConnectionState(Enum):
    DISCONNECTED = "disconnected"
    SUBSCRIBING = "subscribing"
    SUBSCRIBED = "subscribed"
    RECONNECTING = "reconnecting"


@dataclass
class StreamStats:
    notifications_received: int = 0
    malformed_messages: int = 0
    reconnect_count: int = 0
    last_message_time: float | None = None
    subscribed_since: float | None = None
    last_error: str | None = None


class LogStreamError(Exception):
    """Base exception for log stream errors."""


class LogStreamConnectionError(LogStreamError):
    """Raised when connecting or subscribing fails."""


NotificationCallback = Callable[[LogNotification], Awaitable[None]]
StateCallback = Callable[[ConnectionState], Awaitable[None]]


class LogSubscriptionHandler:
    """Websocket client for a program's ``logsSubscribe`` feed."""

    def __init__(
        self,
        *,
        ws_url: str,
        program_id: str,
        on_notification: NotificationCallback,
        commitment: str = "confirmed",
        on_state_change: StateCallback | None = None,
        ping_interval: int = DEFAULT_PING_INTERVAL,
        max_reconnect_delay: int = DEFAULT_MAX_RECONNECT_DELAY,
        initial_reconnect_delay: int = DEFAULT_INITIAL_RECONNECT_DELAY,
        subscribe_timeout: float = DEFAULT_SUBSCRIBE_TIMEOUT,
    ) -> None:
        self._ws_url = ws_url
        self._program_id = program_id
        self._commitment = commitment
        self._on_notification = on_notification
        self._on_state_change = on_state_change
        self._ping_interval = ping_interval
        self._max_reconnect_delay = max_reconnect_delay
        self._initial_reconnect_delay = initial_reconnect_delay
        self._subscribe_timeout = subscribe_timeout

        self._state = ConnectionState.DISCONNECTED
        self._stats = StreamStats()

        self._ws: ClientConnection | None = None
        self._subscription_id: int | None = None
        self._running = False
        self._stop_event: asyncio.Event | None = None

    @property
    def state(self) -> ConnectionState:
        return self._state

    @property
    def stats(self) -> StreamStats:
        return self._stats

    @property
    def subscription_id(self) -> int | None:
        return self._subscription_id

    def subscribe_request(self) -> dict[str, Any]:
        return {
            "jsonrpc": "2.0",
            "id": _SUBSCRIBE_REQUEST_ID,
            "method": "logsSubscribe",
            "params": [
                {"mentions": [self._program_id]},
                {"commitment": self._commitment},
            ],
        }

    async def _set_state(self, new_state: ConnectionState) -> None:
        if self._state != new_state:
            old = self._state
            self._state = new_state
            logger.info("Log stream state: %s -> %s", old.value, new_state.value)
            if self._on_state_change:
                try:
                    await self._on_state_change(new_state)
                except Exception as e:  # pragma: no cover
                    logger.error("Error in state change callback: %s", e)

    async def _connect(self) -> ClientConnection:
        await self._set_state(ConnectionState.SUBSCRIBING)
        try:
            ws = await websockets.connect(
                self._ws_url,
                ping_interval=self._ping_interval,
                ping_timeout=self._ping_interval * 2,
            )
        except Exception as e:
            self._stats.last_error = str(e)
            raise LogStreamConnectionError(f"Failed to connect to {self._ws_url}: {e}") from e

        try:
            await ws.send(json.dumps(self.subscribe_request()))
            self._subscription_id = await self._await_subscription_ack(ws)
        except Exception:
            with contextlib.suppress(Exception):
                await ws.close()
            raise

        await self._set_state(ConnectionState.SUBSCRIBED)
        self._stats.subscribed_since = time.time()
        logger.info(
            "Subscribed to logs of %s (subscription=%s)", self._program_id, self._subscription_id
        )
        return ws

    async def _await_subscription_ack(self, ws: ClientConnection) -> int:
        deadline = time.monotonic() + self._subscribe_timeout
        while True:
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                raise LogStreamConnectionError("Timed out waiting for logsSubscribe acknowledgement")
            message = await asyncio.wait_for(ws.recv(), timeout=remaining)
            if not isinstance(message, str):
                continue
            try:
                data = json.loads(message)
            except json.JSONDecodeError:
                continue
            if data.get("id") != _SUBSCRIBE_REQUEST_ID:
                # A notification may race the ack on a fast node.
                await self._handle_message(message)
                continue
            if "error" in data:
                raise LogStreamConnectionError(f"logsSubscribe rejected: {data['error']}")
            return int(data["result"])

    async def _handle_message(self, message: str) -> None:
        try:
            data = json.loads(message)
        except json.JSONDecodeError:
            self._stats.malformed_messages += 1
            logger.warning("Invalid JSON message on log stream")
            return

        if data.get("method") != "logsNotification":
            logger.debug("Ignoring log stream message: %s", data.get("method") or data.get("id"))
            return

        try:
            notification = LogNotification.from_websocket_message(data)
        except (KeyError, TypeError, ValueError) as e:
            self._stats.malformed_messages += 1
            logger.warning("Failed to parse logsNotification: %s", e)
            return

        self._stats.notifications_received += 1
        self._stats.last_message_time = time.time()
        await self._on_notification(notification)

    async def _listen(self, ws: ClientConnection) -> None:
        try:
            while self._running:
                try:
                    message = await asyncio.wait_for(ws.recv(), timeout=1.0)
                except TimeoutError:
                    continue

                if isinstance(message, str):
                    await self._handle_message(message)
                else:
                    logger.debug("Ignoring non-text log stream message")
        except websockets.ConnectionClosed as e:
            logger.warning("Log stream connection closed: %s", e)
            raise

    async def _unsubscribe(self, ws: ClientConnection) -> None:
        if self._subscription_id is None:
            return
        msg = {
            "jsonrpc": "2.0",
            "id": _UNSUBSCRIBE_REQUEST_ID,
            "method": "logsUnsubscribe",
            "params": [self._subscription_id],
        }
        with contextlib.suppress(Exception):
            await ws.send(json.dumps(msg))
        self._subscription_id = None

    async def start(self) -> None:
        """Run the subscription until ``stop()`` is called."""
        if self._running:
            raise RuntimeError("Log stream already running")
        self._running = True
        self._stop_event = asyncio.Event()

        delay = self._initial_reconnect_delay
        while self._running and self._stop_event and not self._stop_event.is_set():
            try:
                self._ws = await self._connect()
                delay = self._initial_reconnect_delay
                await self._listen(self._ws)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                if not self._running:
                    break
                self._stats.reconnect_count += 1
                self._stats.last_error = str(e)
                await self._set_state(ConnectionState.RECONNECTING)
                logger.warning("Log stream error, reconnecting in %ss: %s", delay, e)
                with contextlib.suppress(TimeoutError):
                    await asyncio.wait_for(self._stop_event.wait(), timeout=delay)
                delay = min(self._max_reconnect_delay, delay * 2)
            finally:
                if self._ws:
                    await self._unsubscribe(self._ws)
                    with contextlib.suppress(Exception):
                        await self._ws.close()
                self._ws = None

        self._running = False
        await self._set_state(ConnectionState.DISCONNECTED)

    async def stop(self) -> None:
        """Stop accepting notifications.

        The listen loop exits after the notification currently being handed
        off (if any) returns; it is never interrupted mid-callback.
        """
        self._running = False
        if self._stop_event:
            self._stop_event.set()
