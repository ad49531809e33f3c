"""Pydantic models for Home Assistant payloads."""

from pyhassd.models._base import HassBaseModel, HassTimestamp, parse_hass_timestamp
from pyhassd.models.events import ChangeNotification, HassEvent, StateChangedData
from pyhassd.models.state import EntityState

__all__ = [
    "ChangeNotification",
    "EntityState",
    "HassBaseModel",
    "HassEvent",
    "HassTimestamp",
    "StateChangedData",
    "parse_hass_timestamp",
]
