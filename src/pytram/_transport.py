"""Push-channel transport: JSON event frames over an aiohttp WebSocket."""

from __future__ import annotations

import asyncio
import enum
import json
import logging
from dataclasses import dataclass
from typing import Any, Protocol

import aiohttp

from pytram._redact import redact_for_log, redact_url
from pytram.exceptions import InvalidDataError, TransportError

_logger = logging.getLogger(__name__)


class DisconnectReason(enum.StrEnum):
    CLIENT = "client disconnect"
    SERVER = "server disconnect"
    TRANSPORT_ERROR = "transport error"


@dataclass(frozen=True, slots=True)
class TransportFrame:
    """One decoded event frame (``{"event": ..., "data": ...}``)."""

    event: str
    data: Any = None


def encode_frame(event: str, data: Any = None) -> str:
    body: dict[str, Any] = {"event": event}
    if data is not None:
        body["data"] = data
    return json.dumps(body, separators=(",", ":"))


def decode_frame(text: str | bytes) -> TransportFrame:
    """Decode a text frame.

    Raises :class:`InvalidDataError` for anything that is not a JSON object
    with a string ``event`` member.
    """
    if isinstance(text, bytes):
        try:
            text = text.decode("utf-8")
        except UnicodeDecodeError as exc:
            raise InvalidDataError("frame is not valid UTF-8", payload=text) from exc
    try:
        body = json.loads(text)
    except json.JSONDecodeError as exc:
        raise InvalidDataError(f"frame is not JSON: {text[:64]}", payload=text) from exc
    if not isinstance(body, dict):
        raise InvalidDataError("frame is not a JSON object", payload=body)
    event = body.get("event")
    if not isinstance(event, str) or not event:
        raise InvalidDataError("frame has no event name", payload=body)
    return TransportFrame(event=event, data=body.get("data"))


class ChannelTransport(Protocol):
    """Structural transport interface used by :class:`pytram.channel.ChannelClient`.

    Having a protocol here makes it easy to pass test doubles while keeping
    the production implementation (`WebSocketTransport`) concrete.
    """

    @property
    def connected(self) -> bool: ...

    @property
    def close_reason(self) -> DisconnectReason | None: ...

    async def open(self, timeout: float) -> None: ...

    async def send(self, event: str, data: Any = None) -> None: ...

    async def receive(self) -> TransportFrame | None: ...

    async def close(self) -> None: ...


class WebSocketTransport:
    """aiohttp WebSocket transport.

    ``receive()`` returns ``None`` once the socket is closed; the reason is
    then available from :attr:`close_reason`. Undecodable frames raise
    :class:`InvalidDataError` without closing the socket.
    """

    def __init__(
        self,
        url: str,
        *,
        http_session: aiohttp.ClientSession | None = None,
        heartbeat: float | None = None,
    ) -> None:
        self._url = url
        self._http = http_session
        self._owns_http = http_session is None
        self._heartbeat = heartbeat if heartbeat else None
        self._ws: aiohttp.ClientWebSocketResponse | None = None
        self._closing = False
        self._close_reason: DisconnectReason | None = None

    @property
    def connected(self) -> bool:
        ws = self._ws
        return ws is not None and not ws.closed

    @property
    def close_reason(self) -> DisconnectReason | None:
        return self._close_reason

    async def open(self, timeout: float) -> None:
        self._closing = False
        self._close_reason = None
        if self._http is None:
            self._http = aiohttp.ClientSession()
            self._owns_http = True

        safe_url = redact_url(self._url)
        _logger.debug("Opening WebSocket %s", safe_url)
        try:
            self._ws = await asyncio.wait_for(
                self._http.ws_connect(self._url, heartbeat=self._heartbeat),
                timeout,
            )
        except TimeoutError as exc:
            await self._release_http()
            raise TransportError(
                f"Connection to {safe_url} timed out after {timeout:g}s",
                reason="timeout",
            ) from exc
        except (aiohttp.ClientError, OSError) as exc:
            await self._release_http()
            raise TransportError(
                f"Connection to {safe_url} failed: {exc}",
                reason="connect_error",
            ) from exc

    async def send(self, event: str, data: Any = None) -> None:
        ws = self._ws
        if ws is None or ws.closed:
            raise TransportError(f"Cannot send {event!r}: socket is not open", reason="not_connected")
        try:
            await ws.send_str(encode_frame(event, data))
        except (aiohttp.ClientError, ConnectionError) as exc:
            raise TransportError(f"Sending {event!r} failed: {exc}", reason="send_error") from exc

    async def receive(self) -> TransportFrame | None:
        while True:
            ws = self._ws
            if ws is None:
                return None
            msg = await ws.receive()

            if msg.type in (aiohttp.WSMsgType.TEXT, aiohttp.WSMsgType.BINARY):
                frame = decode_frame(msg.data)
                _logger.debug("Received frame event=%s data=%s", frame.event, redact_for_log(frame.data))
                return frame

            if msg.type in (aiohttp.WSMsgType.CLOSE, aiohttp.WSMsgType.CLOSING):
                self._mark_closed(DisconnectReason.CLIENT if self._closing else DisconnectReason.SERVER)
                _logger.debug("WebSocket closed by peer code=%s", ws.close_code)
                return None

            if msg.type == aiohttp.WSMsgType.CLOSED:
                self._mark_closed(DisconnectReason.CLIENT if self._closing else DisconnectReason.TRANSPORT_ERROR)
                return None

            if msg.type == aiohttp.WSMsgType.ERROR:
                _logger.debug("WebSocket error: %s", ws.exception())
                self._mark_closed(DisconnectReason.TRANSPORT_ERROR)
                return None

            # PING/PONG are answered by aiohttp itself.

    async def close(self) -> None:
        self._closing = True
        ws = self._ws
        self._ws = None
        try:
            if ws is not None and not ws.closed:
                await ws.close()
        finally:
            if self._close_reason is None:
                self._close_reason = DisconnectReason.CLIENT
            await self._release_http()

    def _mark_closed(self, reason: DisconnectReason) -> None:
        if self._close_reason is None:
            self._close_reason = reason

    async def _release_http(self) -> None:
        http = self._http
        if self._owns_http and http is not None:
            self._http = None
            await http.close()
