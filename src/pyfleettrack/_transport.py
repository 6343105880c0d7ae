"""Push channel transport over aiohttp WebSockets."""

from __future__ import annotations

import json
import logging
from typing import Any, Protocol

import aiohttp

from pyfleettrack._constants import USER_AGENT
from pyfleettrack.exceptions import TrackingConnectionError

_logger = logging.getLogger(__name__)


class PushConnection(Protocol):
    """One established push connection."""

    async def send_json(self, message: dict[str, Any]) -> None:
        ...

    async def receive_json(self) -> Any | None:
        """Next decoded frame, or ``None`` once the connection has closed."""
        ...

    async def close(self) -> None:
        ...


class PushTransport(Protocol):
    """Structural interface the subscription hub dials through.

    Having a protocol here makes it easy to pass test doubles while
    keeping the production implementation (:class:`WebSocketPushTransport`)
    concrete.
    """

    async def connect(self) -> PushConnection:
        ...


class _WebSocketConnection:
    def __init__(self, ws: aiohttp.ClientWebSocketResponse, url: str) -> None:
        self._ws = ws
        self._url = url

    async def send_json(self, message: dict[str, Any]) -> None:
        _logger.debug("WS send %s", message)
        try:
            await self._ws.send_str(json.dumps(message, separators=(",", ":")))
        except (aiohttp.ClientError, ConnectionResetError) as exc:
            raise TrackingConnectionError(f"Send on {self._url} failed: {exc}", endpoint=self._url) from exc

    async def receive_json(self) -> Any | None:
        while True:
            msg = await self._ws.receive()
            if msg.type == aiohttp.WSMsgType.TEXT:
                try:
                    return json.loads(msg.data)
                except json.JSONDecodeError:
                    _logger.debug("Dropping non-JSON frame from %s: %.200s", self._url, msg.data)
                    continue
            if msg.type == aiohttp.WSMsgType.BINARY:
                try:
                    return json.loads(msg.data.decode("utf-8"))
                except (UnicodeDecodeError, json.JSONDecodeError):
                    _logger.debug("Dropping undecodable binary frame from %s", self._url)
                    continue
            if msg.type == aiohttp.WSMsgType.ERROR:
                _logger.debug("WS error on %s: %s", self._url, self._ws.exception())
                return None
            # CLOSE / CLOSING / CLOSED
            return None

    async def close(self) -> None:
        if not self._ws.closed:
            await self._ws.close()


class WebSocketPushTransport:
    """Dial the upstream push endpoint with an aiohttp session.

    The session is owned by the caller.
    """

    def __init__(
        self,
        url: str,
        http_session: aiohttp.ClientSession,
        *,
        heartbeat: float | None = 30.0,
        headers: dict[str, str] | None = None,
    ) -> None:
        self._url = url
        self._http = http_session
        self._heartbeat = heartbeat
        self._headers = {"user-agent": USER_AGENT, **(headers or {})}

    async def connect(self) -> PushConnection:
        _logger.debug("WS connect %s", self._url)
        try:
            ws = await self._http.ws_connect(self._url, heartbeat=self._heartbeat, headers=self._headers)
        except (aiohttp.ClientError, OSError) as exc:
            raise TrackingConnectionError(f"Connect to {self._url} failed: {exc}", endpoint=self._url) from exc
        return _WebSocketConnection(ws, self._url)
