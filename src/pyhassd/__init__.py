"""pyhassd - Event-driven automation host for Home Assistant."""

from importlib.metadata import PackageNotFoundError, version

try:
    __version__ = version("pyhassd")
except PackageNotFoundError:
    __version__ = "0+local"
from pyhassd._mqtt import MqttStateStreamTransport
from pyhassd._transport import Transport, WebSocketTransport
from pyhassd.config import HassConfig
from pyhassd.daemon import DaemonStatus, HassDaemon
from pyhassd.dispatch import Subscription
from pyhassd.exceptions import (
    HassAuthenticationError,
    HassCommandError,
    HassConfigError,
    HassConnectionClosedError,
    HassEntityIdError,
    HassError,
    HassHandlerError,
    HassMalformedEventError,
    HassTransportError,
)
from pyhassd.models import ChangeNotification, EntityState, HassEvent
from pyhassd.scheduler import ScheduledJob, Scheduler
from pyhassd.state import StateMirror

__all__ = [
    "__version__",
    "ChangeNotification",
    "DaemonStatus",
    "EntityState",
    "HassAuthenticationError",
    "HassCommandError",
    "HassConfig",
    "HassConfigError",
    "HassConnectionClosedError",
    "HassDaemon",
    "HassEntityIdError",
    "HassError",
    "HassEvent",
    "HassHandlerError",
    "HassMalformedEventError",
    "HassTransportError",
    "MqttStateStreamTransport",
    "ScheduledJob",
    "Scheduler",
    "StateMirror",
    "Subscription",
    "Transport",
    "WebSocketTransport",
]
