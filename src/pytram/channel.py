"""Push-channel client.

Owns:
- the transport handle and its connection state
- the reconnect policy (bounded retries, single retry after a server close)
- translating inbound frames into location updates and error events
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
from collections.abc import Callable
from datetime import UTC, datetime
from typing import Any

import aiohttp

from pytram._constants import (
    EVENT_GPS_ERROR,
    EVENT_PING,
    EVENT_PONG,
    EVENT_REQUEST_GPS_DATA,
    EVENT_WELCOME,
    LOCATION_EVENT_SOURCES,
)
from pytram._observers import ObserverRegistry, Subscription
from pytram._redact import redact_for_log, redact_url
from pytram._transport import ChannelTransport, DisconnectReason, TransportFrame, WebSocketTransport
from pytram.config import TramConfig
from pytram.exceptions import ExhaustedRetriesError, InvalidDataError, TramError, TransportError
from pytram.ingestion.messages import error_message_from_payload, parse_location_payload
from pytram.ingestion.normalize import safe_float, to_epoch_ms
from pytram.models.location import LocationUpdate
from pytram.models.status import ConnectionPhase, ConnectionState

_logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(UTC)


class ChannelClient:
    """Client for the location push channel.

    Usage::

        async with ChannelClient(config) as channel:
            channel.on_update(print)
            ...

    All callbacks run on the event loop, synchronously, in frame-arrival
    order. Transport failures never raise out of the public methods; they
    are reported through :meth:`on_error` and :meth:`on_connection_change`.
    """

    def __init__(
        self,
        config: TramConfig,
        *,
        transport_factory: Callable[[], ChannelTransport] | None = None,
        http_session: aiohttp.ClientSession | None = None,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._config = config
        self._http_session = http_session
        self._transport_factory = transport_factory or self._default_transport
        self._clock = clock
        self._transport: ChannelTransport | None = None
        self._phase = ConnectionPhase.DISCONNECTED
        self._attempt_count = 0
        self._last_loss_at: datetime | None = None
        self._exhausted = False
        # Bumped by disconnect() so in-flight connects know they were superseded.
        self._generation = 0
        self._reader_task: asyncio.Task[None] | None = None
        self._retry_task: asyncio.Task[None] | None = None
        self._pending_sends: set[asyncio.Task[None]] = set()
        self._requested_since_connect = False

        self._updates: ObserverRegistry[LocationUpdate] = ObserverRegistry("update", logger=_logger)
        self._connection_changes: ObserverRegistry[bool] = ObserverRegistry("connection change", logger=_logger)
        self._errors: ObserverRegistry[TramError] = ObserverRegistry("error", logger=_logger)

    # ------------------------------------------------------------------
    # Context manager lifecycle
    # ------------------------------------------------------------------

    async def __aenter__(self) -> ChannelClient:
        await self.connect()
        return self

    async def __aexit__(self, *exc: Any) -> None:
        await self.disconnect()

    # ------------------------------------------------------------------
    # Subscriptions
    # ------------------------------------------------------------------

    def on_update(self, callback: Callable[[LocationUpdate], None]) -> Subscription:
        """Register for parsed location updates."""
        return self._updates.subscribe(callback)

    def on_connection_change(self, callback: Callable[[bool], None]) -> Subscription:
        """Register for transitions into (``True``) and out of (``False``) connected."""
        return self._connection_changes.subscribe(callback)

    def on_error(self, callback: Callable[[TramError], None]) -> Subscription:
        """Register for channel errors; an error does not imply disconnection."""
        return self._errors.subscribe(callback)

    # ------------------------------------------------------------------
    # State
    # ------------------------------------------------------------------

    @property
    def config(self) -> TramConfig:
        return self._config

    @property
    def connection_state(self) -> ConnectionState:
        return ConnectionState(
            phase=self._phase,
            attempt_count=self._attempt_count,
            last_loss_at=self._last_loss_at,
        )

    def is_healthy(self) -> bool:
        """Whether the transport is up and the channel considers itself connected."""
        transport = self._transport
        return transport is not None and transport.connected and self._phase == ConnectionPhase.CONNECTED

    # ------------------------------------------------------------------
    # Connection management
    # ------------------------------------------------------------------

    async def connect(self) -> bool:
        """Connect if not already connected or connecting.

        Returns whether the channel is connected afterwards. Failures are
        reported through the error event and handled by the reconnect
        policy.
        """
        if self._phase == ConnectionPhase.CONNECTED:
            return True
        if self._phase == ConnectionPhase.CONNECTING:
            return False
        self._cancel_retry()
        if self._exhausted:
            # Manual reconnect after exhaustion starts a fresh retry budget.
            self._exhausted = False
            self._attempt_count = 0
        return await self._attempt_connect()

    async def disconnect(self) -> None:
        """Tear down the transport and stop any retry or pending send."""
        self._generation += 1
        self._cancel_retry()
        self._cancel_pending_sends()

        transport = self._transport
        reader = self._reader_task
        was_connected = self._phase == ConnectionPhase.CONNECTED
        self._transport = None
        self._reader_task = None
        self._phase = ConnectionPhase.DISCONNECTED

        if reader is not None and reader is not asyncio.current_task():
            reader.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await reader
        if transport is not None:
            try:
                await transport.close()
            except TransportError:
                _logger.debug("Transport close failed", exc_info=True)

        if was_connected:
            _logger.debug("Channel disconnected by client")
            self._connection_changes.emit(False)

    def request_update(self) -> bool:
        """Ask the server for the latest location.

        Returns ``False`` (after logging) when not connected.
        """
        if self._transport is None or self._phase != ConnectionPhase.CONNECTED:
            _logger.warning("Cannot request GPS data - not connected")
            return False
        self._requested_since_connect = True
        self._spawn_send(EVENT_REQUEST_GPS_DATA)
        return True

    def ping(self) -> bool:
        """Send an application-level keepalive; the pong is logged with latency."""
        if self._transport is None or self._phase != ConnectionPhase.CONNECTED:
            return False
        self._spawn_send(EVENT_PING, {"timestamp": to_epoch_ms(self._clock())})
        return True

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _default_transport(self) -> ChannelTransport:
        return WebSocketTransport(
            self._config.server_address,
            http_session=self._http_session,
            heartbeat=self._config.keepalive_seconds,
        )

    async def _attempt_connect(self) -> bool:
        generation = self._generation
        self._phase = ConnectionPhase.CONNECTING
        transport = self._transport_factory()
        _logger.debug("Attempting connection to %s", redact_url(self._config.server_address))

        try:
            await transport.open(self._config.connect_timeout)
        except TransportError as exc:
            if generation != self._generation:
                return False
            self._phase = ConnectionPhase.DISCONNECTED
            self._attempt_count += 1
            _logger.warning(
                "Connection attempt %d/%d failed: %s",
                self._attempt_count,
                self._config.max_reconnect_attempts,
                exc,
            )
            self._errors.emit(exc)
            self._after_failed_attempt()
            return False
        except asyncio.CancelledError:
            if generation == self._generation:
                self._phase = ConnectionPhase.DISCONNECTED
            raise

        if generation != self._generation:
            # disconnect() ran while we were connecting.
            await transport.close()
            return False

        self._transport = transport
        self._phase = ConnectionPhase.CONNECTED
        self._attempt_count = 0
        self._exhausted = False
        self._requested_since_connect = False
        self._reader_task = asyncio.get_running_loop().create_task(self._read_loop(transport))
        _logger.debug("Channel connected to %s", redact_url(self._config.server_address))
        self._connection_changes.emit(True)
        # One request per connection; an observer may already have sent it.
        if not self._requested_since_connect:
            self.request_update()
        return True

    def _after_failed_attempt(self) -> None:
        ceiling = self._config.max_reconnect_attempts
        if self._attempt_count >= ceiling:
            self._exhausted = True
            _logger.warning("Max connection attempts reached (%d); automatic reconnection stopped", ceiling)
            self._errors.emit(
                ExhaustedRetriesError(
                    f"Connection failed after {self._attempt_count} attempts",
                    attempts=self._attempt_count,
                )
            )
            return
        if self._config.reconnect_enabled:
            self._schedule_retry(self._config.reconnect_delay)

    def _schedule_retry(self, delay: float) -> None:
        self._cancel_retry()
        self._retry_task = asyncio.get_running_loop().create_task(self._retry_after(delay))

    async def _retry_after(self, delay: float) -> None:
        await asyncio.sleep(delay)
        self._retry_task = None
        if self._phase != ConnectionPhase.DISCONNECTED:
            return
        await self._attempt_connect()

    def _cancel_retry(self) -> None:
        task = self._retry_task
        self._retry_task = None
        if task is not None and task is not asyncio.current_task() and not task.done():
            task.cancel()

    def _spawn_send(self, event: str, data: Any = None) -> None:
        transport = self._transport
        if transport is None:
            return
        task = asyncio.get_running_loop().create_task(self._send(transport, event, data))
        self._pending_sends.add(task)
        task.add_done_callback(self._pending_sends.discard)

    async def _send(self, transport: ChannelTransport, event: str, data: Any) -> None:
        try:
            await transport.send(event, data)
        except TransportError as exc:
            _logger.warning("Send failed: %s", exc)
            self._errors.emit(exc)

    def _cancel_pending_sends(self) -> None:
        pending = list(self._pending_sends)
        self._pending_sends.clear()
        for task in pending:
            if not task.done():
                task.cancel()

    async def _read_loop(self, transport: ChannelTransport) -> None:
        while True:
            try:
                frame = await transport.receive()
            except InvalidDataError as exc:
                _logger.debug("Dropping malformed frame: %s", exc)
                self._errors.emit(exc)
                continue
            if frame is None:
                break
            if transport is not self._transport:
                return
            self._dispatch(frame)

        if transport is not self._transport:
            return
        reason = transport.close_reason or DisconnectReason.TRANSPORT_ERROR
        # The transport owns its HTTP session; release it before reconnecting.
        try:
            await transport.close()
        except TransportError:
            _logger.debug("Transport close failed", exc_info=True)
        if transport is not self._transport:
            return
        self._on_transport_closed(reason)

    def _on_transport_closed(self, reason: DisconnectReason) -> None:
        self._transport = None
        self._reader_task = None
        self._cancel_pending_sends()
        self._phase = ConnectionPhase.DISCONNECTED
        self._last_loss_at = self._clock()
        _logger.warning("Channel disconnected: %s", reason)
        self._connection_changes.emit(False)

        if reason == DisconnectReason.CLIENT:
            return
        if reason == DisconnectReason.SERVER:
            # Server-initiated close: exactly one retry, then the standard policy.
            self._schedule_retry(self._config.server_disconnect_retry_delay)
            return

        self._errors.emit(TransportError(f"Connection lost: {reason}", reason=str(reason)))
        if self._config.reconnect_enabled:
            self._schedule_retry(self._config.reconnect_delay)

    def _dispatch(self, frame: TransportFrame) -> None:
        source = LOCATION_EVENT_SOURCES.get(frame.event)
        if source is not None:
            result = parse_location_payload(frame.data, source=source, received_at=self._clock())
            if result.update is not None:
                self._updates.emit(result.update)
            elif result.error is not None:
                _logger.warning("Invalid GPS data received: %s", result.error)
                _logger.debug("Invalid GPS payload: %s", redact_for_log(frame.data))
                self._errors.emit(result.error)
            return

        if frame.event == EVENT_GPS_ERROR:
            message = error_message_from_payload(frame.data)
            _logger.warning("GPS data error from server: %s", message)
            self._errors.emit(TransportError(message, reason="server_error"))
            return

        if frame.event == EVENT_WELCOME:
            welcome = frame.data.get("message") if isinstance(frame.data, dict) else frame.data
            _logger.debug("Server welcome: %s", redact_for_log(welcome))
            return

        if frame.event == EVENT_PONG:
            sent_ms = safe_float(frame.data.get("timestamp")) if isinstance(frame.data, dict) else None
            if sent_ms is not None:
                _logger.debug("Pong received, latency=%dms", to_epoch_ms(self._clock()) - int(sent_ms))
            return

        _logger.debug("Ignoring unknown event %s", frame.event)
