"""Custom exception hierarchy for pyhassd."""

from __future__ import annotations

from collections.abc import Sequence
from typing import Any


class HassError(Exception):
    """Base exception for all pyhassd errors."""


class HassConfigError(HassError):
    """Invalid or missing configuration."""


class HassEntityIdError(HassError, ValueError):
    """Entity id is not shaped as ``domain.object_id``."""


class HassTransportError(HassError):
    """Connection-level failure (network, protocol, closed socket)."""

    def __init__(
        self,
        message: str,
        *,
        status_code: int | None = None,
        endpoint: str = "",
    ) -> None:
        self.status_code = status_code
        self.endpoint = endpoint
        super().__init__(message)


class HassAuthenticationError(HassTransportError):
    """Home Assistant rejected the access token (``auth_invalid``)."""


class HassConnectionClosedError(HassTransportError):
    """The event feed is gone and will not come back.

    Raised by :meth:`~pyhassd._transport.Transport.read_event` once the
    transport has lost its connection and is not going to reconnect.  The
    ingestion loop treats it as a normal end of the run.
    """


class HassCommandError(HassTransportError):
    """A websocket command returned ``success: false``."""

    def __init__(
        self,
        message: str,
        *,
        code: str = "",
        endpoint: str = "",
    ) -> None:
        self.code = code
        super().__init__(message, endpoint=endpoint)


class HassMalformedEventError(HassError):
    """An event promised a payload that is structurally missing.

    This is a contract violation by the transport and is never swallowed.
    """

    def __init__(
        self,
        message: str,
        *,
        event_type: str = "",
        payload: Any = None,
    ) -> None:
        self.event_type = event_type
        self.payload = payload
        super().__init__(message)


class HassHandlerError(HassError, ExceptionGroup):
    """One or more state handlers failed for a single notification.

    Carries every handler failure so callers can inspect them all; sibling
    handlers are never cancelled because one of them raised.
    """

    def __new__(cls, message: str, exceptions: Sequence[Exception], *, entity_id: str = "") -> HassHandlerError:
        self = super().__new__(cls, message, exceptions)
        self.entity_id = entity_id
        return self

    def __init__(self, message: str, exceptions: Sequence[Exception], *, entity_id: str = "") -> None:
        super().__init__(message, exceptions)

    def derive(self, excs: Sequence[Exception]) -> HassHandlerError:
        return HassHandlerError(self.message, excs, entity_id=self.entity_id)
