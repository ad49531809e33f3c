"""Read-only transport over Home Assistant's ``mqtt_statestream`` topics.

``mqtt_statestream`` publishes every entity as::

    <base_topic>/<domain>/<object_id>/state          raw state string
    <base_topic>/<domain>/<object_id>/<attribute>    JSON-encoded value
    <base_topic>/<domain>/<object_id>/last_changed   JSON-encoded ISO time
    <base_topic>/<domain>/<object_id>/last_updated   JSON-encoded ISO time

A threaded paho-mqtt client hands each message to the asyncio loop, where
it is folded into the entity's snapshot and turned into a synthetic
``state_changed`` event.
"""

from __future__ import annotations

import asyncio
import json
import logging
import secrets
from collections.abc import Mapping
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Any, cast

import paho.mqtt.client as mqtt

from pyhassd._constants import EVENT_STATE_CHANGED
from pyhassd.config import HassConfig
from pyhassd.exceptions import HassConnectionClosedError, HassTransportError
from pyhassd.models._base import parse_hass_timestamp
from pyhassd.models.events import HassEvent
from pyhassd.models.state import EntityState

_TIMESTAMP_LEAVES = frozenset({"last_changed", "last_updated"})


@dataclass(frozen=True)
class StateStreamMessage:
    """One statestream publish, split into its topic parts."""

    entity_id: str
    leaf: str
    payload: bytes


def parse_statestream_topic(base_topic: str, topic: str) -> tuple[str, str] | None:
    """Split ``<base>/<domain>/<object_id>/<leaf>`` into ``(entity_id, leaf)``."""
    prefix = f"{base_topic.rstrip('/')}/"
    if not topic.startswith(prefix):
        return None
    parts = topic[len(prefix) :].split("/")
    if len(parts) != 3 or not all(parts):
        return None
    domain, object_id, leaf = parts
    return f"{domain}.{object_id}", leaf


def _decode_value(payload: bytes) -> Any:
    text = payload.decode("utf-8", errors="replace")
    try:
        return json.loads(text)
    except json.JSONDecodeError:
        return text


class MqttStateStreamTransport:
    """Event feed built from ``mqtt_statestream`` publishes.

    ``connect`` treats *token* as the broker password. The feed carries
    state only, so :meth:`call_service` always raises.
    """

    def __init__(
        self,
        config: HassConfig | None = None,
        *,
        logger: logging.Logger | None = None,
    ) -> None:
        self._config = config or HassConfig()
        self._logger = logger or logging.getLogger(__name__)
        self.states: dict[str, EntityState] = {}
        self._latest: dict[str, EntityState] = {}
        self._held: dict[str, dict[str, bytes]] = {}
        self._events: asyncio.Queue[HassEvent] = asyncio.Queue()
        self._loop: asyncio.AbstractEventLoop | None = None
        self._client: mqtt.Client | None = None
        self._connected: asyncio.Future[bool] | None = None
        self._subscribed = False
        self._auto_reconnect = True
        self._feed_closed = True

    @property
    def topic_filter(self) -> str:
        return f"{self._config.mqtt_base_topic.rstrip('/')}/#"

    async def connect(self, host: str, port: int, ssl: bool, token: str, auto_reconnect: bool) -> bool:
        loop = asyncio.get_running_loop()
        self._loop = loop
        self._auto_reconnect = auto_reconnect
        self._connected = loop.create_future()

        client = mqtt.Client(
            callback_api_version=cast(Any, mqtt).CallbackAPIVersion.VERSION2,
            client_id=f"pyhassd-{secrets.token_hex(4)}",
        )
        client.enable_logger(self._logger)
        if self._config.mqtt_username or token:
            client.username_pw_set(self._config.mqtt_username or None, token or None)
        if ssl:
            client.tls_set()
        if auto_reconnect:
            client.reconnect_delay_set(min_delay=1, max_delay=max(1, int(self._config.reconnect_max_delay)))

        client.on_connect = self._on_connect
        client.on_message = self._on_message
        client.on_disconnect = self._on_disconnect

        self._logger.debug("MQTT connect requested host=%s port=%s", host, port)
        try:
            await loop.run_in_executor(None, lambda: client.connect(host, port, keepalive=self._config.mqtt_keepalive))
        except (OSError, ValueError) as exc:
            self._logger.warning("MQTT connect to %s:%s failed: %s", host, port, exc)
            return False
        client.loop_start()
        self._client = client

        try:
            ok = await asyncio.wait_for(asyncio.shield(self._connected), self._config.command_timeout)
        except TimeoutError:
            ok = False
        if not ok:
            self._logger.warning("MQTT broker %s:%s did not accept the connection", host, port)
            await self._shutdown_client()
            return False

        self._feed_closed = False
        return True

    async def subscribe_events(self, event_type: str = EVENT_STATE_CHANGED) -> None:
        if event_type != EVENT_STATE_CHANGED:
            raise HassTransportError(f"mqtt_statestream does not carry {event_type!r} events")
        client = self._client
        if client is None:
            raise HassTransportError("Not connected")
        self._subscribed = True
        client.subscribe(self.topic_filter, qos=0)
        self._logger.debug("MQTT subscribed topic=%s", self.topic_filter)

    async def read_event(self) -> HassEvent | None:
        if self._feed_closed and self._events.empty():
            raise HassConnectionClosedError("MQTT feed closed")
        try:
            return await asyncio.wait_for(self._events.get(), timeout=self._config.read_timeout)
        except TimeoutError:
            if self._feed_closed:
                raise HassConnectionClosedError("MQTT feed closed") from None
            return None

    async def call_service(self, domain: str, service: str, service_data: Mapping[str, Any]) -> Any:
        raise HassTransportError(
            f"Cannot call {domain}.{service}: mqtt_statestream is a read-only feed",
            endpoint=self.topic_filter,
        )

    async def close(self) -> None:
        self._feed_closed = True
        await self._shutdown_client()

    async def _shutdown_client(self) -> None:
        client = self._client
        self._client = None
        if client is None:
            return
        loop = self._loop or asyncio.get_running_loop()

        def _stop() -> None:
            try:
                client.disconnect()
            finally:
                client.loop_stop()

        await loop.run_in_executor(None, _stop)
        self._logger.debug("MQTT network loop stopped")

    # ------------------------------------------------------------------
    # paho callbacks (network thread)
    # ------------------------------------------------------------------

    def _on_connect(self, c: mqtt.Client, _userdata: Any, _flags: Any, reason_code: Any, _properties: Any) -> None:
        ok = reason_code.value == 0
        if ok and self._subscribed:
            c.subscribe(self.topic_filter, qos=0)
        if self._loop is not None:
            self._loop.call_soon_threadsafe(self._resolve_connected, ok)

    def _on_message(self, _c: mqtt.Client, _userdata: Any, msg: mqtt.MQTTMessage) -> None:
        parsed = parse_statestream_topic(self._config.mqtt_base_topic, msg.topic)
        if parsed is None or self._loop is None:
            return
        entity_id, leaf = parsed
        message = StateStreamMessage(entity_id=entity_id, leaf=leaf, payload=bytes(msg.payload))
        self._loop.call_soon_threadsafe(self._ingest, message)

    def _on_disconnect(self, _c: mqtt.Client, _userdata: Any, _flags: Any, reason_code: Any, _properties: Any) -> None:
        self._logger.debug("MQTT disconnected: %s", reason_code)
        if not self._auto_reconnect and self._loop is not None:
            self._loop.call_soon_threadsafe(self._mark_closed)

    # ------------------------------------------------------------------
    # asyncio side
    # ------------------------------------------------------------------

    def _resolve_connected(self, ok: bool) -> None:
        if self._connected is not None and not self._connected.done():
            self._connected.set_result(ok)

    def _mark_closed(self) -> None:
        self._feed_closed = True

    def _ingest(self, message: StateStreamMessage) -> None:
        """Fold one publish into the entity snapshot and queue a state change."""
        entity_id = message.entity_id
        old_state = self._latest.get(entity_id)

        if message.leaf == "state":
            if not message.payload:
                # Cleared retained state: the entity is gone.
                if old_state is None:
                    return
                del self._latest[entity_id]
                self._queue_change(entity_id, old_state, None)
                return
            value = message.payload.decode("utf-8", errors="replace")
            now = datetime.now(UTC)
            if old_state is None:
                new_state = EntityState(entity_id=entity_id, state=value, last_changed=now, last_updated=now)
                for leaf, payload in self._held.pop(entity_id, {}).items():
                    new_state = self._apply_leaf(new_state, leaf, payload)
            elif old_state.state == value:
                return
            else:
                new_state = old_state.model_copy(update={"state": value, "last_changed": now, "last_updated": now})
        elif old_state is None:
            # Attributes published before the first state are held back.
            self._held.setdefault(entity_id, {})[message.leaf] = message.payload
            return
        else:
            new_state = self._apply_leaf(old_state, message.leaf, message.payload)
            if new_state == old_state:
                return

        self._latest[entity_id] = new_state
        self._queue_change(entity_id, old_state, new_state)

    def _apply_leaf(self, state: EntityState, leaf: str, payload: bytes) -> EntityState:
        value = _decode_value(payload)
        if leaf in _TIMESTAMP_LEAVES:
            try:
                return state.model_copy(update={leaf: parse_hass_timestamp(value)})
            except (TypeError, ValueError):
                self._logger.debug("Ignoring unparsable %s=%r for %s", leaf, value, state.entity_id)
                return state
        attributes = dict(state.attributes)
        attributes[leaf] = value
        return state.model_copy(update={"attributes": attributes})

    def _queue_change(self, entity_id: str, old_state: EntityState | None, new_state: EntityState | None) -> None:
        data = {
            "entity_id": entity_id,
            "old_state": old_state.model_dump() if old_state is not None else None,
            "new_state": new_state.model_dump() if new_state is not None else None,
        }
        self._events.put_nowait(
            HassEvent(event_type=EVENT_STATE_CHANGED, data=data, origin="REMOTE", time_fired=datetime.now(UTC))
        )
