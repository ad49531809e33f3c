"""Pattern subscriptions for state changes."""

from __future__ import annotations

from collections.abc import Awaitable, Callable, Iterator
from dataclasses import dataclass

from pyhassd.models.state import EntityState

StateHandler = Callable[[str, EntityState | None, EntityState | None], Awaitable[None]]
"""``async handler(entity_id, new_state, old_state)``."""


def pattern_matches(pattern: str, entity_id: str) -> bool:
    """Return ``True`` when *pattern* selects *entity_id*.

    Valid patterns:

    * ``""`` - every entity
    * ``"light"`` - a domain
    * ``"light.kitchen"`` - a single entity

    Matching is a literal prefix test, so a domain pattern also selects
    ids that merely begin with the same characters (``"light"`` matches
    ``"lighthouse.x"``).
    """
    return not pattern or entity_id.startswith(pattern)


@dataclass(frozen=True, slots=True)
class Subscription:
    pattern: str
    handler: StateHandler

    def matches(self, entity_id: str) -> bool:
        return pattern_matches(self.pattern, entity_id)


class SubscriptionRegistry:
    """Ordered list of subscriptions.

    Registration order is dispatch order. Duplicate patterns and duplicate
    handlers are kept and fire independently.
    """

    def __init__(self) -> None:
        self._subscriptions: list[Subscription] = []

    def register(self, pattern: str | None, handler: StateHandler) -> Subscription:
        if not callable(handler):
            raise TypeError(f"handler must be callable, got {type(handler).__name__}")
        subscription = Subscription(pattern=pattern or "", handler=handler)
        self._subscriptions.append(subscription)
        return subscription

    def resolve(self, entity_id: str) -> list[StateHandler]:
        return [sub.handler for sub in self._subscriptions if sub.matches(entity_id)]

    def __len__(self) -> int:
        return len(self._subscriptions)

    def __iter__(self) -> Iterator[Subscription]:
        return iter(list(self._subscriptions))
