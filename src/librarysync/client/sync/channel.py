"""Realtime change channel.

This module provides:
- ChannelState: Connection state machine
- RealtimeChannel: WebSocket client that receives server push notifications
  and sends best-effort notifications for local changes

Architecture:
    Server ─push─► RealtimeChannel ─on_change─► EventQueue ─► SyncCoordinator
                          │
                   (on every connect: on_connected → full reconciliation)

The channel runs its own asyncio loop on a daemon thread so that it can be
started and stopped from synchronous code.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import ssl
import threading
from collections.abc import Callable
from enum import Enum
from typing import TYPE_CHECKING, Any

from websockets.asyncio.client import connect
from websockets.exceptions import ConnectionClosed, WebSocketException

from librarysync.client.sync.retry import backoff_delay
from librarysync.core.types import ChangeEvent

if TYPE_CHECKING:
    from websockets.asyncio.client import ClientConnection

    from librarysync.core.config import ServerConfig

logger = logging.getLogger(__name__)


class ChannelState(Enum):
    """Connection state of the realtime channel."""

    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    GAVE_UP = "gave_up"


class RealtimeChannel:
    """WebSocket client for the server's change notifications.

    On every successful connect the attempt counter is reset and
    ``on_connected`` is called, so the owner can reconcile whatever was
    missed. After ``max_attempts`` consecutive failed connects the channel
    gives up until ``start()`` is called again.

    Usage:
        channel = RealtimeChannel(
            config=server_config,
            on_change=handle_change,
            on_connected=request_resync,
        )
        channel.start()

        # Changes are delivered to on_change from the channel thread
        # ...

        channel.stop()
    """

    def __init__(
        self,
        config: ServerConfig,
        on_change: Callable[[ChangeEvent], None],
        on_connected: Callable[[], None] | None = None,
        on_disconnected: Callable[[str], None] | None = None,
        on_gave_up: Callable[[str], None] | None = None,
        max_attempts: int = 10,
        initial_delay: float = 1.0,
        max_delay: float = 30.0,
        open_timeout: float = 10.0,
    ) -> None:
        """Initialize the channel.

        Args:
            config: Server configuration with URL and credentials.
            on_change: Called for every valid change notification.
            on_connected: Called after each successful connect.
            on_disconnected: Called with a reason when a connection drops.
            on_gave_up: Called with the last error after max_attempts failures.
            max_attempts: Consecutive failed connects before giving up.
            initial_delay: First reconnect delay in seconds.
            max_delay: Reconnect delay cap in seconds.
            open_timeout: Handshake timeout in seconds.
        """
        self._config = config
        self._on_change = on_change
        self._on_connected = on_connected
        self._on_disconnected = on_disconnected
        self._on_gave_up = on_gave_up
        self._max_attempts = max_attempts
        self._initial_delay = initial_delay
        self._max_delay = max_delay
        self._open_timeout = open_timeout

        # Connection state
        self._ws: ClientConnection | None = None
        self._state = ChannelState.DISCONNECTED
        self._state_lock = threading.Lock()
        self._should_run = False
        self._attempts = 0

        # Thread and loop
        self._thread: threading.Thread | None = None
        self._loop: asyncio.AbstractEventLoop | None = None
        self._stop_event: asyncio.Event | None = None  # For interruptible sleep

    @property
    def state(self) -> ChannelState:
        """Current connection state."""
        return self._state

    @property
    def connected(self) -> bool:
        """Check if currently connected."""
        return self._state == ChannelState.CONNECTED

    @property
    def attempts(self) -> int:
        """Consecutive failed connection attempts."""
        return self._attempts

    @property
    def ws_url(self) -> str:
        """Get the WebSocket URL."""
        return self._config.ws_url

    def start(self) -> None:
        """Start the channel in a background thread."""
        if self._thread and self._thread.is_alive():
            logger.warning("Realtime channel already running")
            return

        self._should_run = True
        self._attempts = 0
        self._set_state(ChannelState.DISCONNECTED)
        self._thread = threading.Thread(
            target=self._run_loop,
            name="RealtimeChannel",
            daemon=True,
        )
        self._thread.start()
        logger.info("Realtime channel started (%s)", self.ws_url)

    def stop(self) -> None:
        """Stop the channel and close the connection."""
        self._should_run = False

        loop = self._loop
        if loop is not None and not loop.is_closed():
            with contextlib.suppress(RuntimeError, TimeoutError):
                asyncio.run_coroutine_threadsafe(self._shutdown(), loop).result(timeout=2.0)

        if self._thread:
            self._thread.join(timeout=5.0)
            self._thread = None

        if self._state != ChannelState.GAVE_UP:
            self._set_state(ChannelState.DISCONNECTED)
        logger.info("Realtime channel stopped")

    def send(self, event: ChangeEvent, timeout: float = 5.0) -> bool:
        """Send a change notification, best-effort.

        Must not be called from the channel's own thread.

        Returns:
            True if the message was written to the socket.
        """
        loop, ws = self._loop, self._ws
        if not self.connected or loop is None or ws is None:
            logger.debug("Not connected, dropping outbound %s %s", event.kind.value, event.path)
            return False

        future = asyncio.run_coroutine_threadsafe(ws.send(event.to_message()), loop)
        try:
            future.result(timeout=timeout)
        except Exception as e:
            future.cancel()
            logger.warning("Failed to send change notification for %s: %s", event.path, e)
            return False
        logger.debug("Sent %s notification for %s", event.kind.value, event.path)
        return True

    def _set_state(self, state: ChannelState) -> None:
        with self._state_lock:
            if self._state != state:
                logger.debug("Channel state %s -> %s", self._state.value, state.value)
            self._state = state

    def _notify(self, callback: Callable[..., None] | None, *args: Any) -> None:
        """Invoke an owner callback, never letting it break the loop."""
        if callback is None:
            return
        try:
            callback(*args)
        except Exception:
            logger.exception("Channel callback failed")

    async def _shutdown(self) -> None:
        """Interrupt sleeps and close the socket."""
        if self._stop_event:
            self._stop_event.set()
        await self._close_connection()

    def _run_loop(self) -> None:
        """Run the async event loop in a thread."""
        self._loop = asyncio.new_event_loop()
        asyncio.set_event_loop(self._loop)
        self._stop_event = asyncio.Event()

        try:
            self._loop.run_until_complete(self._connection_loop())
        finally:
            self._loop.close()
            self._loop = None
            self._stop_event = None

    async def _connection_loop(self) -> None:
        """Main connection loop with exponential backoff reconnection."""
        while self._should_run:
            self._set_state(ChannelState.CONNECTING)
            try:
                await self._connect()
            except (WebSocketException, OSError, TimeoutError) as e:
                self._attempts += 1
                logger.debug("Connection attempt %d failed: %s", self._attempts, e)
                if self._attempts >= self._max_attempts:
                    logger.error(
                        "Realtime channel giving up after %d attempts: %s", self._attempts, e
                    )
                    self._set_state(ChannelState.GAVE_UP)
                    self._notify(self._on_gave_up, str(e) or type(e).__name__)
                    break
                self._set_state(ChannelState.DISCONNECTED)
                delay = backoff_delay(self._attempts, self._initial_delay, self._max_delay)
                logger.info("Realtime channel reconnecting in %.0fs...", delay)
                if await self._sleep(delay):
                    break
                continue

            self._attempts = 0
            self._set_state(ChannelState.CONNECTED)
            logger.info("Realtime channel connected")
            self._notify(self._on_connected)

            reason = await self._listen_for_messages()
            await self._close_connection()
            if not self._should_run:
                break

            logger.warning("Realtime channel disconnected: %s", reason)
            self._set_state(ChannelState.DISCONNECTED)
            self._notify(self._on_disconnected, reason)
            if await self._sleep(self._initial_delay):
                break

    async def _sleep(self, delay: float) -> bool:
        """Interruptible sleep.

        Returns:
            True if stop was requested during the sleep.
        """
        assert self._stop_event is not None
        try:
            await asyncio.wait_for(self._stop_event.wait(), timeout=delay)
        except TimeoutError:
            return not self._should_run
        return True

    async def _connect(self) -> None:
        """Establish the WebSocket connection."""
        ssl_context: ssl.SSLContext | None = None
        if self.ws_url.startswith("wss://"):
            ssl_context = ssl.create_default_context()
            if not self._config.verify_ssl:
                ssl_context.check_hostname = False
                ssl_context.verify_mode = ssl.CERT_NONE

        headers = {}
        if self._config.username:
            headers["Authorization"] = self._config.authorization_header

        self._ws = await connect(
            self.ws_url,
            additional_headers=headers,
            ssl=ssl_context,
            open_timeout=self._open_timeout,
            close_timeout=5,
        )

    async def _listen_for_messages(self) -> str:
        """Receive messages until the connection ends.

        Returns:
            Why the loop ended.
        """
        ws = self._ws
        if ws is None:
            return "no connection"
        try:
            async for message in ws:
                self._handle_message(message)
        except ConnectionClosed as e:
            return str(e) or "connection closed"
        except WebSocketException as e:
            return str(e)
        except OSError as e:
            return str(e)
        return "connection closed by server"

    def _handle_message(self, message: str | bytes) -> None:
        """Decode one message and deliver it to on_change.

        Malformed messages are logged and skipped.
        """
        try:
            event = ChangeEvent.from_message(message)
        except ValueError as e:
            logger.warning("Ignoring invalid change message: %s", e)
            return
        logger.info("Received remote %s: %s", event.kind.value, event.path)
        self._notify(self._on_change, event)

    async def _close_connection(self) -> None:
        """Close the WebSocket connection."""
        if self._ws:
            with contextlib.suppress(WebSocketException, OSError):
                await self._ws.close()
            self._ws = None
