"""Turn on/off/toggle routing for :class:`pyhassd.daemon.HassDaemon`.

Lights and switches have their own services; every other entity is
switched through the generic ``homeassistant`` domain.
"""

from __future__ import annotations

from collections.abc import Mapping
from typing import TYPE_CHECKING, Any

from pyhassd._constants import DEFAULT_SERVICE_DOMAIN, TURN_ON_OFF_DOMAINS
from pyhassd.exceptions import HassEntityIdError

if TYPE_CHECKING:
    from pyhassd.daemon import HassDaemon


def domain_from_entity(entity_id: str) -> str:
    """Return the domain of ``domain.object_id``.

    Raises :class:`HassEntityIdError` unless the id has exactly one dot.
    """
    parts = entity_id.split(".")
    if len(parts) != 2 or not all(parts):
        raise HassEntityIdError(f"entity_id is malformed: {entity_id!r}")
    return parts[0]


def resolve_service_domain(entity_id: str) -> str:
    """Domain whose on/off/toggle services should handle *entity_id*."""
    domain = domain_from_entity(entity_id)
    return domain if domain in TURN_ON_OFF_DOMAINS else DEFAULT_SERVICE_DOMAIN


def build_service_data(entity_id: str, attributes: Mapping[str, Any] | None = None) -> dict[str, Any]:
    """Service data for a single-entity call; ``entity_id`` always wins."""
    data: dict[str, Any] = dict(attributes or {})
    data["entity_id"] = entity_id
    return data


async def call_entity_service(
    daemon: HassDaemon,
    service: str,
    entity_id: str,
    attributes: Mapping[str, Any] | None = None,
) -> Any:
    domain = resolve_service_domain(entity_id)
    return await daemon.call_service(domain, service, build_service_data(entity_id, attributes))
