"""Host configuration for pyhassd."""

from __future__ import annotations

import dataclasses
import os
from typing import Any

from pyhassd._constants import DEFAULT_PORT
from pyhassd.exceptions import HassConfigError


def _env_bool(value: str | None, default: bool) -> bool:
    if value is None:
        return default
    normalized = value.strip().lower()
    if normalized in {"1", "true", "yes", "y", "on"}:
        return True
    if normalized in {"0", "false", "no", "n", "off"}:
        return False
    return default


@dataclasses.dataclass(frozen=True)
class HassConfig:
    """Connection and runtime settings.

    Parameters
    ----------
    host : str
        Home Assistant host name or address.
    port : int
        Home Assistant port (websocket API or MQTT broker, depending on
        the transport in use).
    ssl : bool
        Use TLS (``wss://`` for the websocket transport).
    token : str
        Long-lived access token. Used as the MQTT password by the
        statestream transport.
    auto_reconnect : bool
        Let the transport re-establish a dropped connection instead of
        ending the run.
    idle_delay : float
        Seconds the ingestion loop pauses when no event is available.
    read_timeout : float
        Seconds a transport waits for an event before reporting idle.
    command_timeout : float
        Seconds to wait for the result of a websocket command.
    reconnect_max_delay : float
        Upper bound of the exponential reconnect backoff.
    mqtt_base_topic : str
        ``base_topic`` configured for Home Assistant's ``mqtt_statestream``.
    mqtt_username : str
        Broker user name for the statestream transport.
    mqtt_keepalive : int
        MQTT keepalive in seconds.
    """

    host: str = "localhost"
    port: int = DEFAULT_PORT
    ssl: bool = False
    token: str = ""
    auto_reconnect: bool = True
    idle_delay: float = 1.0
    read_timeout: float = 1.0
    command_timeout: float = 10.0
    reconnect_max_delay: float = 30.0
    mqtt_base_topic: str = "homeassistant"
    mqtt_username: str = ""
    mqtt_keepalive: int = 60

    def __post_init__(self) -> None:
        if not self.host.strip():
            raise HassConfigError("host must be non-empty")
        if not 0 < self.port < 65536:
            raise HassConfigError(f"port out of range: {self.port}")
        if self.idle_delay < 0 or self.read_timeout < 0:
            raise HassConfigError("idle_delay and read_timeout must not be negative")

    @classmethod
    def from_env(cls, **overrides: Any) -> HassConfig:
        """Create configuration from ``HASS_*`` environment variables.

        Explicit keyword arguments override environment values.
        """
        env = os.environ

        _ENV_CONFIG_MAP = {
            "HASS_HOST": "host",
            "HASS_TOKEN": "token",
            "HASS_MQTT_BASE_TOPIC": "mqtt_base_topic",
            "HASS_MQTT_USERNAME": "mqtt_username",
        }
        config_kwargs: dict[str, Any] = {}
        for env_key, field_name in _ENV_CONFIG_MAP.items():
            val = env.get(env_key)
            if val is None or field_name in overrides:
                continue
            config_kwargs[field_name] = val

        _ENV_NUMERIC_MAP = {
            "HASS_PORT": ("port", int),
            "HASS_IDLE_DELAY": ("idle_delay", float),
            "HASS_READ_TIMEOUT": ("read_timeout", float),
            "HASS_COMMAND_TIMEOUT": ("command_timeout", float),
            "HASS_RECONNECT_MAX_DELAY": ("reconnect_max_delay", float),
            "HASS_MQTT_KEEPALIVE": ("mqtt_keepalive", int),
        }
        for env_key, (field_name, cast) in _ENV_NUMERIC_MAP.items():
            val = env.get(env_key)
            if val is None or field_name in overrides:
                continue
            try:
                config_kwargs[field_name] = cast(val)
            except ValueError as exc:
                raise HassConfigError(f"{env_key} is not a valid number: {val!r}") from exc

        if "ssl" not in overrides:
            config_kwargs["ssl"] = _env_bool(env.get("HASS_SSL"), False)

        if "auto_reconnect" not in overrides:
            config_kwargs["auto_reconnect"] = _env_bool(env.get("HASS_AUTO_RECONNECT"), True)

        config_kwargs.update(overrides)

        return cls(**config_kwargs)
