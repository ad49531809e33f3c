"""Base model and timestamp parsing for Home Assistant payloads.

Every pyhassd model inherits from :class:`HassBaseModel`, which is frozen
so that a snapshot handed to a handler can never change underneath it.
"""

from __future__ import annotations

from datetime import UTC, datetime
from typing import Annotated, Any

from pydantic import BaseModel, BeforeValidator, ConfigDict


def parse_hass_timestamp(value: Any) -> datetime | None:
    """Convert an ISO-8601 string (``Z`` suffix allowed) to an aware datetime.

    Empty strings and ``None`` become ``None``. Naive values are taken as UTC.
    """
    if value is None:
        return None
    if isinstance(value, datetime):
        dt = value
    elif isinstance(value, (int, float)):
        dt = datetime.fromtimestamp(value, tz=UTC)
    else:
        raw = str(value).strip()
        if not raw:
            return None
        if raw.endswith("Z"):
            raw = f"{raw[:-1]}+00:00"
        dt = datetime.fromisoformat(raw)
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=UTC)
    return dt


HassTimestamp = Annotated[datetime | None, BeforeValidator(parse_hass_timestamp)]
"""Annotated type that coerces Home Assistant ISO timestamps to aware datetimes."""


class HassBaseModel(BaseModel):
    """Base for Home Assistant payload models."""

    model_config = ConfigDict(
        frozen=True,
        extra="ignore",
        populate_by_name=True,
    )
