"""Event payloads received from the transport and handed to handlers."""

from __future__ import annotations

from typing import Any

from pydantic import Field, ValidationError

from pyhassd._constants import EVENT_STATE_CHANGED
from pyhassd.exceptions import HassMalformedEventError
from pyhassd.models._base import HassBaseModel, HassTimestamp
from pyhassd.models.state import EntityState


class StateChangedData(HassBaseModel):
    """``data`` block of a ``state_changed`` event."""

    entity_id: str
    old_state: EntityState | None = None
    new_state: EntityState | None = None


class HassEvent(HassBaseModel):
    """A single event from the Home Assistant event bus."""

    event_type: str
    data: dict[str, Any] | None = None
    origin: str = "LOCAL"
    time_fired: HassTimestamp = None
    context: dict[str, Any] | None = None

    @property
    def is_state_changed(self) -> bool:
        return self.event_type == EVENT_STATE_CHANGED

    def state_changed_data(self) -> StateChangedData:
        """Parse ``data`` as a state change.

        Raises
        ------
        HassMalformedEventError
            If the payload is missing or does not have the shape a
            ``state_changed`` event promises.
        """
        if self.data is None:
            raise HassMalformedEventError(
                f"{self.event_type} event without data",
                event_type=self.event_type,
            )
        try:
            return StateChangedData.model_validate(self.data)
        except ValidationError as exc:
            raise HassMalformedEventError(
                f"{self.event_type} event data is malformed: {exc.error_count()} error(s)",
                event_type=self.event_type,
                payload=self.data,
            ) from exc


class ChangeNotification(HassBaseModel):
    """One entity transition, consumed exactly once by the dispatch engine.

    ``old_state`` is ``None`` when the entity newly appeared and
    ``new_state`` is ``None`` when it was removed.
    """

    entity_id: str
    old_state: EntityState | None = None
    new_state: EntityState | None = None
    time_fired: HassTimestamp = None
    raw: dict[str, Any] = Field(default_factory=dict, repr=False)

    @classmethod
    def from_event(cls, event: HassEvent) -> ChangeNotification:
        data = event.state_changed_data()
        return cls(
            entity_id=data.entity_id,
            old_state=data.old_state,
            new_state=data.new_state,
            time_fired=event.time_fired,
            raw=event.data or {},
        )
