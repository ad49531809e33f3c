"""Entity selections returned by :meth:`HassDaemon.entity` and friends."""

from __future__ import annotations

import asyncio
from collections.abc import Iterable
from typing import TYPE_CHECKING, Any

from pyhassd._client.actions import call_entity_service
from pyhassd.models.state import EntityState

if TYPE_CHECKING:
    from pyhassd.daemon import HassDaemon


def qualify_light_ids(names: Iterable[str]) -> tuple[str, ...]:
    """Prefix bare names with the ``light`` domain."""
    return tuple(name if "." in name else f"light.{name}" for name in names)


class EntitySelection:
    """A fixed set of entity ids acted on together.

    Service calls for the selected entities are issued concurrently.
    """

    def __init__(self, daemon: HassDaemon, entity_ids: Iterable[str]) -> None:
        self._daemon = daemon
        self._entity_ids = tuple(entity_ids)

    @property
    def entity_ids(self) -> tuple[str, ...]:
        return self._entity_ids

    def states(self) -> list[EntityState]:
        """Current mirrored state of every selected entity that is known."""
        found = (self._daemon.get_state(entity_id) for entity_id in self._entity_ids)
        return [state for state in found if state is not None]

    async def turn_on(self, **attributes: Any) -> None:
        await self._call("turn_on", attributes)

    async def turn_off(self, **attributes: Any) -> None:
        await self._call("turn_off", attributes)

    async def toggle(self, **attributes: Any) -> None:
        await self._call("toggle", attributes)

    async def _call(self, service: str, attributes: dict[str, Any]) -> None:
        await asyncio.gather(
            *(call_entity_service(self._daemon, service, entity_id, attributes) for entity_id in self._entity_ids)
        )

    def __len__(self) -> int:
        return len(self._entity_ids)

    def __repr__(self) -> str:
        return f"EntitySelection({list(self._entity_ids)!r})"
