"""Entity state snapshot."""

from __future__ import annotations

from typing import Any

from pydantic import Field, field_validator

from pyhassd.models._base import HassBaseModel, HassTimestamp


class EntityState(HassBaseModel):
    """Immutable snapshot of one entity as reported by Home Assistant.

    A state change never mutates an existing snapshot; the ingestion loop
    replaces it with a new one.
    """

    entity_id: str
    state: str = ""
    attributes: dict[str, Any] = Field(default_factory=dict)
    last_changed: HassTimestamp = None
    last_updated: HassTimestamp = None
    context: dict[str, Any] | None = None

    @field_validator("entity_id")
    @classmethod
    def _normalize_entity_id(cls, value: str) -> str:
        entity_id = value.strip()
        if not entity_id:
            raise ValueError("entity_id must be non-empty")
        return entity_id

    @field_validator("state", mode="before")
    @classmethod
    def _coerce_state(cls, value: Any) -> str:
        if value is None:
            return ""
        return str(value)

    @property
    def domain(self) -> str:
        """Part of the entity id before the first dot."""
        return self.entity_id.partition(".")[0]

    @property
    def object_id(self) -> str:
        return self.entity_id.partition(".")[2]

    def attribute(self, name: str, default: Any = None) -> Any:
        return self.attributes.get(name, default)
