"""Fan-out of one state change to every matching handler."""

from __future__ import annotations

import asyncio
import inspect
import logging

from pyhassd.dispatch.registry import StateHandler, SubscriptionRegistry
from pyhassd.exceptions import HassHandlerError
from pyhassd.models.events import ChangeNotification

_logger = logging.getLogger(__name__)


def _handler_name(handler: StateHandler) -> str:
    return getattr(handler, "__qualname__", None) or repr(handler)


class DispatchEngine:
    """Run the handlers matching a notification as concurrent tasks.

    Handlers for one notification never wait on each other. A failing
    handler is logged where it fails and the failures are raised together
    as one :class:`HassHandlerError` once every sibling has finished.
    """

    def __init__(self, registry: SubscriptionRegistry, *, logger: logging.Logger | None = None) -> None:
        self._registry = registry
        self._logger = logger or _logger

    async def dispatch(self, notification: ChangeNotification) -> int:
        """Invoke matching handlers and wait for them.

        Returns the number of handlers launched.
        """
        handlers = self._registry.resolve(notification.entity_id)
        if not handlers:
            return 0

        tasks = [
            asyncio.create_task(
                self._run_handler(handler, notification),
                name=f"pyhassd-handler-{notification.entity_id}",
            )
            for handler in handlers
        ]
        results = await asyncio.gather(*tasks, return_exceptions=True)

        # Cancelled handlers count as finished; only real errors are surfaced.
        failures = [result for result in results if isinstance(result, Exception)]
        if failures:
            raise HassHandlerError(
                f"{len(failures)} of {len(tasks)} handler(s) failed for {notification.entity_id}",
                failures,
                entity_id=notification.entity_id,
            )
        return len(tasks)

    async def _run_handler(self, handler: StateHandler, notification: ChangeNotification) -> None:
        try:
            result = handler(notification.entity_id, notification.new_state, notification.old_state)
            if inspect.isawaitable(result):
                await result
        except Exception:
            self._logger.exception(
                "State handler %s failed for %s",
                _handler_name(handler),
                notification.entity_id,
            )
            raise
