"""Event-feed transports: the structural interface and the websocket client."""

from __future__ import annotations

import asyncio
import json
import logging
from collections.abc import Mapping, MutableMapping
from typing import Any, Protocol

import aiohttp
from pydantic import ValidationError

from pyhassd._constants import EVENT_STATE_CHANGED, RECONNECT_INITIAL_DELAY
from pyhassd._redact import redact_for_log
from pyhassd.config import HassConfig
from pyhassd.exceptions import (
    HassAuthenticationError,
    HassCommandError,
    HassConnectionClosedError,
    HassTransportError,
)
from pyhassd.models.events import HassEvent
from pyhassd.models.state import EntityState

_logger = logging.getLogger(__name__)


class Transport(Protocol):
    """Event feed consumed by :class:`~pyhassd.daemon.HassDaemon`.

    ``states`` is the live state table; the daemon's mirror writes into it.
    ``read_event`` returns ``None`` when idle and raises
    :class:`~pyhassd.exceptions.HassConnectionClosedError` once the feed is gone.
    """

    states: MutableMapping[str, EntityState]

    async def connect(self, host: str, port: int, ssl: bool, token: str, auto_reconnect: bool) -> bool:
        ...

    async def subscribe_events(self, event_type: str = EVENT_STATE_CHANGED) -> None:
        ...

    async def read_event(self) -> HassEvent | None:
        ...

    async def call_service(self, domain: str, service: str, service_data: Mapping[str, Any]) -> Any:
        ...

    async def close(self) -> None:
        ...


def build_ws_url(host: str, port: int, ssl: bool) -> str:
    scheme = "wss" if ssl else "ws"
    return f"{scheme}://{host}:{port}/api/websocket"


class WebSocketTransport:
    """Home Assistant ``/api/websocket`` client.

    Handshake::

        server: {"type": "auth_required"}
        client: {"type": "auth", "access_token": "..."}
        server: {"type": "auth_ok"} | {"type": "auth_invalid"}

    After ``auth_ok`` the full state table is fetched with ``get_states``
    and a background reader routes ``result`` frames to pending commands
    and ``event`` frames onto a queue drained by :meth:`read_event`.
    """

    def __init__(
        self,
        config: HassConfig | None = None,
        *,
        session: aiohttp.ClientSession | None = None,
        logger: logging.Logger | None = None,
    ) -> None:
        self._config = config or HassConfig()
        self._external_session = session is not None
        self._http = session
        self._logger = logger or _logger
        self.states: dict[str, EntityState] = {}
        self._ws: aiohttp.ClientWebSocketResponse | None = None
        self._events: asyncio.Queue[HassEvent] = asyncio.Queue()
        self._pending: dict[int, asyncio.Future[Any]] = {}
        self._subscriptions: list[str] = []
        self._reader: asyncio.Task[None] | None = None
        self._next_id = 0
        self._url = ""
        self._token = ""
        self._auto_reconnect = False
        self._closing = False
        self._feed_closed = True

    @property
    def is_connected(self) -> bool:
        return self._ws is not None and not self._ws.closed

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def connect(self, host: str, port: int, ssl: bool, token: str, auto_reconnect: bool) -> bool:
        """Open the socket and authenticate. Returns ``False`` on failure."""
        self._url = build_ws_url(host, port, ssl)
        self._token = token
        self._auto_reconnect = auto_reconnect
        self._closing = False

        try:
            await self._open()
        except HassAuthenticationError as exc:
            self._logger.error("Home Assistant rejected the access token: %s", exc)
            return False
        except HassTransportError as exc:
            self._logger.warning("Failed to connect to %s: %s", self._url, exc)
            return False

        self._feed_closed = False
        self._reader = asyncio.create_task(self._run_reader(), name="pyhassd-ws-reader")
        return True

    async def close(self) -> None:
        """Close the socket and the owned HTTP session. Safe to call twice."""
        self._closing = True
        self._feed_closed = True

        reader = self._reader
        self._reader = None
        if reader is not None and not reader.done():
            reader.cancel()
            await asyncio.wait([reader])

        ws = self._ws
        self._ws = None
        if ws is not None and not ws.closed:
            self._logger.debug("Closing websocket %s", self._url)
            await ws.close()
        self._fail_pending(HassConnectionClosedError("Connection closed", endpoint=self._url))

        if not self._external_session and self._http is not None:
            await self._http.close()
            self._http = None

    async def _open(self) -> None:
        if self._http is None:
            self._http = aiohttp.ClientSession()

        self._logger.debug("Connecting to %s", self._url)
        try:
            ws = await self._http.ws_connect(self._url, heartbeat=30.0)
        except (aiohttp.ClientError, OSError) as exc:
            raise HassTransportError(f"Websocket connect failed: {exc}", endpoint=self._url) from exc

        try:
            await self._authenticate(ws)
            states = await self._handshake_command(ws, {"type": "get_states"})
            self._seed_states(states)
            for event_type in self._subscriptions:
                await self._handshake_command(ws, {"type": "subscribe_events", "event_type": event_type})
        except BaseException:
            await ws.close()
            raise
        self._ws = ws

    async def _authenticate(self, ws: aiohttp.ClientWebSocketResponse) -> None:
        message = await self._receive_json(ws)
        if message.get("type") != "auth_required":
            raise HassTransportError(
                f"Expected auth_required, got {message.get('type')!r}",
                endpoint=self._url,
            )

        await self._send(ws, {"type": "auth", "access_token": self._token})

        message = await self._receive_json(ws)
        msg_type = message.get("type")
        if msg_type == "auth_invalid":
            raise HassAuthenticationError(
                str(message.get("message") or "auth_invalid"),
                endpoint=self._url,
            )
        if msg_type != "auth_ok":
            raise HassTransportError(f"Unexpected auth response {msg_type!r}", endpoint=self._url)
        self._logger.info("Connected to Home Assistant %s", message.get("ha_version", "unknown"))

    def _seed_states(self, raw_states: Any) -> None:
        if not isinstance(raw_states, list):
            raise HassTransportError("get_states did not return a list", endpoint=self._url)
        fresh: dict[str, EntityState] = {}
        for raw in raw_states:
            try:
                state = EntityState.model_validate(raw)
            except ValidationError:
                self._logger.debug("Skipping unparsable state %s", redact_for_log(raw), exc_info=True)
                continue
            fresh[state.entity_id] = state
        for entity_id in [key for key in self.states if key not in fresh]:
            del self.states[entity_id]
        self.states.update(fresh)
        self._logger.debug("Seeded %d entity states", len(fresh))

    # ------------------------------------------------------------------
    # Event feed
    # ------------------------------------------------------------------

    async def subscribe_events(self, event_type: str = EVENT_STATE_CHANGED) -> None:
        await self._command({"type": "subscribe_events", "event_type": event_type})
        if event_type not in self._subscriptions:
            self._subscriptions.append(event_type)

    async def read_event(self) -> HassEvent | None:
        """Return the next event, or ``None`` if none arrived within ``read_timeout``.

        Raises
        ------
        HassConnectionClosedError
            Once the connection is gone and no reconnect will happen.
        """
        if self._feed_closed and self._events.empty():
            raise HassConnectionClosedError("Event feed closed", endpoint=self._url)
        try:
            return await asyncio.wait_for(self._events.get(), timeout=self._config.read_timeout)
        except TimeoutError:
            if self._feed_closed:
                raise HassConnectionClosedError("Event feed closed", endpoint=self._url) from None
            return None

    async def _run_reader(self) -> None:
        while not self._closing:
            ws = self._ws
            if ws is not None:
                await self._receive_loop(ws)
            self._fail_pending(HassConnectionClosedError("Connection lost", endpoint=self._url))
            if self._closing:
                return
            self._logger.warning("Lost connection to %s", self._url)
            if not self._auto_reconnect or not await self._reconnect():
                self._feed_closed = True
                return

    async def _receive_loop(self, ws: aiohttp.ClientWebSocketResponse) -> None:
        async for msg in ws:
            if msg.type == aiohttp.WSMsgType.TEXT:
                try:
                    payload = json.loads(msg.data)
                except json.JSONDecodeError:
                    self._logger.warning("Invalid JSON from websocket: %r", msg.data[:200])
                    continue
                # Coalesced frames arrive as a list of messages.
                for message in payload if isinstance(payload, list) else [payload]:
                    if isinstance(message, dict):
                        self._route(message)
            elif msg.type == aiohttp.WSMsgType.ERROR:
                self._logger.debug("Websocket error: %s", ws.exception())
                break

    async def _reconnect(self) -> bool:
        delay = RECONNECT_INITIAL_DELAY
        while not self._closing:
            await asyncio.sleep(delay)
            try:
                await self._open()
            except HassAuthenticationError as exc:
                self._logger.error("Reconnect rejected by Home Assistant: %s", exc)
                return False
            except HassTransportError as exc:
                delay = min(self._config.reconnect_max_delay, delay * 2.0)
                self._logger.warning("Reconnect failed (%s); retrying in %.0fs", exc, delay)
                continue
            self._logger.info("Reconnected to %s", self._url)
            return True
        return False

    def _route(self, message: dict[str, Any]) -> None:
        msg_type = message.get("type")
        if msg_type == "event":
            try:
                event = HassEvent.model_validate(message.get("event"))
            except ValidationError:
                self._logger.warning("Dropping unparsable event frame %s", redact_for_log(message))
                return
            self._events.put_nowait(event)
        elif msg_type == "result":
            future = self._pending.pop(message.get("id", -1), None)
            if future is None or future.done():
                return
            try:
                future.set_result(self._result_or_raise(message, "command"))
            except HassCommandError as exc:
                future.set_exception(exc)
        elif msg_type == "pong":
            self._logger.debug("Received pong id=%s", message.get("id"))
        else:
            self._logger.debug("Unhandled websocket message type %r", msg_type)

    # ------------------------------------------------------------------
    # Commands
    # ------------------------------------------------------------------

    async def call_service(self, domain: str, service: str, service_data: Mapping[str, Any]) -> Any:
        return await self._command(
            {
                "type": "call_service",
                "domain": domain,
                "service": service,
                "service_data": dict(service_data),
            }
        )

    async def refresh_states(self) -> None:
        """Re-fetch the full state table."""
        self._seed_states(await self._command({"type": "get_states"}))

    async def _command(self, payload: dict[str, Any]) -> Any:
        ws = self._ws
        if ws is None or ws.closed:
            raise HassTransportError("Not connected", endpoint=self._url)

        self._next_id += 1
        msg_id = self._next_id
        future: asyncio.Future[Any] = asyncio.get_running_loop().create_future()
        self._pending[msg_id] = future
        try:
            await self._send(ws, {"id": msg_id, **payload})
            return await asyncio.wait_for(future, self._config.command_timeout)
        except TimeoutError as exc:
            raise HassTransportError(f"{payload['type']} timed out", endpoint=self._url) from exc
        except (aiohttp.ClientError, ConnectionResetError) as exc:
            raise HassTransportError(f"{payload['type']} failed: {exc}", endpoint=self._url) from exc
        finally:
            self._pending.pop(msg_id, None)

    async def _handshake_command(self, ws: aiohttp.ClientWebSocketResponse, payload: dict[str, Any]) -> Any:
        """Send a command and read frames inline until its result arrives.

        Used while (re)connecting, before the background reader owns the socket.
        """
        self._next_id += 1
        msg_id = self._next_id
        await self._send(ws, {"id": msg_id, **payload})
        while True:
            message = await self._receive_json(ws)
            if message.get("type") == "result" and message.get("id") == msg_id:
                return self._result_or_raise(message, payload["type"])
            self._route(message)

    def _result_or_raise(self, message: dict[str, Any], command: str) -> Any:
        if message.get("success"):
            return message.get("result")
        error = message.get("error") or {}
        raise HassCommandError(
            f"{command} failed: {error.get('message', 'unknown error')}",
            code=str(error.get("code", "")),
            endpoint=self._url,
        )

    async def _send(self, ws: aiohttp.ClientWebSocketResponse, payload: dict[str, Any]) -> None:
        self._logger.debug("WS send %s", redact_for_log(payload))
        await ws.send_json(payload)

    async def _receive_json(self, ws: aiohttp.ClientWebSocketResponse) -> dict[str, Any]:
        try:
            msg = await ws.receive(timeout=self._config.command_timeout)
        except TimeoutError as exc:
            raise HassTransportError("Timed out waiting for Home Assistant", endpoint=self._url) from exc
        if msg.type != aiohttp.WSMsgType.TEXT:
            raise HassTransportError(f"Unexpected websocket frame {msg.type!r}", endpoint=self._url)
        try:
            message = json.loads(msg.data)
        except json.JSONDecodeError as exc:
            raise HassTransportError(f"Invalid JSON: {msg.data[:200]}", endpoint=self._url) from exc
        if not isinstance(message, dict):
            raise HassTransportError("Websocket message is not an object", endpoint=self._url)
        return message

    def _fail_pending(self, exc: Exception) -> None:
        pending = list(self._pending.values())
        self._pending.clear()
        for future in pending:
            if not future.done():
                future.set_exception(exc)
