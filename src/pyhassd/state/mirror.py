"""In-memory mirror of current entity state.

The ingestion loop is the only writer. Handlers and query helpers read
concurrently; since every entry is an immutable :class:`EntityState` and
each write is a single mapping assignment, a reader sees either the old
snapshot or the new one, never a mix.
"""

from __future__ import annotations

from collections.abc import Callable, Iterator, MutableMapping

from pyhassd.models.state import EntityState


class StateMirror:
    """Mapping from entity id to the latest known :class:`EntityState`.

    Parameters
    ----------
    backing
        Mapping to write into. Transports expose their own ``states``
        table; passing it here keeps the transport's view and the mirror
        identical. Defaults to a private dict.
    """

    def __init__(self, backing: MutableMapping[str, EntityState] | None = None) -> None:
        self._states: MutableMapping[str, EntityState] = backing if backing is not None else {}

    def get(self, entity_id: str) -> EntityState | None:
        return self._states.get(entity_id)

    def update(self, entity_id: str, new_state: EntityState | None) -> None:
        """Replace the entry for *entity_id*; ``None`` removes it."""
        if new_state is None:
            self._states.pop(entity_id, None)
            return
        self._states[entity_id] = new_state

    def all(self) -> list[EntityState]:
        """Snapshot of every entry, in no particular order."""
        return list(self._states.values())

    def query(self, predicate: Callable[[EntityState], bool]) -> list[EntityState]:
        return [state for state in self.all() if predicate(state)]

    def __contains__(self, entity_id: object) -> bool:
        return entity_id in self._states

    def __len__(self) -> int:
        return len(self._states)

    def __iter__(self) -> Iterator[str]:
        return iter(list(self._states))
