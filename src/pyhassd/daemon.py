"""Event-driven automation host for Home Assistant."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable, Mapping
from enum import StrEnum
from typing import Any

from pyhassd._client import actions as _actions
from pyhassd._client.entities import EntitySelection, qualify_light_ids
from pyhassd._redact import redact_for_log
from pyhassd._transport import Transport
from pyhassd.config import HassConfig
from pyhassd.dispatch.engine import DispatchEngine
from pyhassd.dispatch.registry import StateHandler, Subscription, SubscriptionRegistry
from pyhassd.dispatch.tracker import TaskTracker
from pyhassd.exceptions import HassConnectionClosedError, HassError, HassHandlerError
from pyhassd.models.events import ChangeNotification, HassEvent
from pyhassd.models.state import EntityState
from pyhassd.scheduler import Scheduler
from pyhassd.state.mirror import StateMirror

_logger = logging.getLogger(__name__)


class DaemonStatus(StrEnum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    SUBSCRIBING = "subscribing"
    RUNNING = "running"
    STOPPING = "stopping"
    STOPPED = "stopped"


class HassDaemon:
    """Mirror Home Assistant state and run automations on state changes.

    Usage::

        config = HassConfig.from_env()
        async with HassDaemon(WebSocketTransport(config), config) as daemon:
            daemon.listen_state("light", on_light_changed)
            await daemon.run()

    :meth:`run` reads events until it is cancelled or the feed closes.
    Every ``state_changed`` event updates the mirror and is dispatched to
    the matching handlers in the background, so a slow handler never holds
    up the next event.
    """

    def __init__(
        self,
        transport: Transport,
        config: HassConfig | None = None,
        *,
        scheduler: Scheduler | None = None,
        logger: logging.Logger | None = None,
    ) -> None:
        self._transport = transport
        self._config = config or HassConfig()
        self._logger = logger or _logger
        self._mirror = StateMirror(transport.states)
        self._registry = SubscriptionRegistry()
        self._dispatcher = DispatchEngine(self._registry, logger=self._logger)
        self._handlers = TaskTracker()
        self._scheduler = scheduler or Scheduler(logger=self._logger)
        self._status = DaemonStatus.DISCONNECTED
        self._run_task: asyncio.Task[Any] | None = None
        self._scheduler_stop: asyncio.Future[None] | None = None
        self._connection_close: asyncio.Future[None] | None = None
        self._shutdown: asyncio.Future[None] | None = None
        self._stop_requested = False
        self._stopped = False

    # ------------------------------------------------------------------
    # Context manager lifecycle
    # ------------------------------------------------------------------

    async def __aenter__(self) -> HassDaemon:
        return self

    async def __aexit__(self, *exc: Any) -> None:
        await self.stop()

    # ------------------------------------------------------------------
    # Properties
    # ------------------------------------------------------------------

    @property
    def status(self) -> DaemonStatus:
        return self._status

    @property
    def is_stopped(self) -> bool:
        return self._stopped

    @property
    def scheduler(self) -> Scheduler:
        return self._scheduler

    @property
    def logger(self) -> logging.Logger:
        return self._logger

    @property
    def states(self) -> list[EntityState]:
        """Every mirrored entity state, in no particular order."""
        return self._mirror.all()

    @property
    def outstanding_handlers(self) -> int:
        """Dispatches whose handlers have not all finished yet."""
        return len(self._handlers.pending)

    # ------------------------------------------------------------------
    # Subscriptions and state queries
    # ------------------------------------------------------------------

    def listen_state(self, pattern: str | None, handler: StateHandler) -> Subscription:
        """Call *handler* for every state change whose entity id matches *pattern*.

        Valid patterns:

        * ``"light.kitchen"`` - an entity id
        * ``"light"`` - a domain (no dot)
        * ``""`` - all entities

        Matching is a plain prefix test on the entity id. The handler is
        called as ``await handler(entity_id, new_state, old_state)``.
        """
        return self._registry.register(pattern, handler)

    def get_state(self, entity_id: str) -> EntityState | None:
        return self._mirror.get(entity_id)

    def query_states(self, predicate: Callable[[EntityState], bool]) -> list[EntityState]:
        return self._mirror.query(predicate)

    def entity(self, *entity_ids: str) -> EntitySelection:
        return EntitySelection(self, entity_ids)

    def entities(self, predicate: Callable[[EntityState], bool]) -> EntitySelection:
        return EntitySelection(self, [state.entity_id for state in self.query_states(predicate)])

    def light(self, *names: str) -> EntitySelection:
        """Select lights by id; bare names get the ``light.`` prefix."""
        return EntitySelection(self, qualify_light_ids(names))

    def lights(self, predicate: Callable[[EntityState], bool] | None = None) -> EntitySelection:
        return EntitySelection(
            self,
            [
                state.entity_id
                for state in self._mirror.all()
                if "light." in state.entity_id and (predicate is None or predicate(state))
            ],
        )

    # ------------------------------------------------------------------
    # Service calls
    # ------------------------------------------------------------------

    async def call_service(
        self,
        domain: str,
        service: str,
        service_data: Mapping[str, Any] | None = None,
        **data: Any,
    ) -> Any:
        payload: dict[str, Any] = dict(service_data or {})
        payload.update(data)
        self._logger.debug("Calling %s.%s %s", domain, service, redact_for_log(payload))
        return await self._transport.call_service(domain, service, payload)

    async def turn_on(self, entity_id: str, **attributes: Any) -> Any:
        """Turn on *entity_id*, passing *attributes* as service data."""
        return await _actions.call_entity_service(self, "turn_on", entity_id, attributes)

    async def turn_off(self, entity_id: str, **attributes: Any) -> Any:
        return await _actions.call_entity_service(self, "turn_off", entity_id, attributes)

    async def toggle(self, entity_id: str, **attributes: Any) -> Any:
        return await _actions.call_entity_service(self, "toggle", entity_id, attributes)

    # ------------------------------------------------------------------
    # Run / stop
    # ------------------------------------------------------------------

    async def run(
        self,
        host: str | None = None,
        port: int | None = None,
        ssl: bool | None = None,
        token: str | None = None,
        *,
        auto_reconnect: bool | None = None,
    ) -> bool:
        """Connect, subscribe and process events until cancelled or disconnected.

        Connection parameters default to the daemon's :class:`HassConfig`.

        Returns
        -------
        bool
            ``False`` if the connection could not be established (nothing
            was torn down, the caller may retry), ``True`` once the feed
            has closed and the daemon is shut down.

        Raises
        ------
        asyncio.CancelledError
            After the scheduler is stopped and the connection closed.
        """
        if self._stop_requested or self._stopped:
            raise HassError("Daemon is stopped")
        if self._run_task is not None:
            raise HassError("Daemon is already running")

        cfg = self._config
        host = host or cfg.host
        port = port or cfg.port
        self._run_task = asyncio.current_task()
        try:
            self._set_status(DaemonStatus.CONNECTING)
            connected = await self._transport.connect(
                host,
                port,
                cfg.ssl if ssl is None else ssl,
                cfg.token if token is None else token,
                cfg.auto_reconnect if auto_reconnect is None else auto_reconnect,
            )
            if not connected:
                self._logger.warning("Could not connect to Home Assistant at %s:%s", host, port)
                self._set_status(DaemonStatus.DISCONNECTED)
                return False

            self._set_status(DaemonStatus.SUBSCRIBING)
            await self._transport.subscribe_events()
            self._set_status(DaemonStatus.RUNNING)
            await self._read_events()
        except HassConnectionClosedError as exc:
            self._logger.warning("Event feed closed: %s", exc)
        except asyncio.CancelledError:
            self._logger.debug("Run cancelled, shutting down")
            await self._finish_run()
            raise
        except BaseException:
            await self._finish_run()
            raise
        finally:
            self._run_task = None

        await self._finish_run()
        return True

    async def stop(self, *, drain_timeout: float | None = 0.0) -> None:
        """Stop the scheduler, close the connection and mark the daemon stopped.

        Safe to call more than once and while :meth:`run` is active; a
        running loop is cancelled and every teardown step runs once.

        The shutdown runs in its own task, so it completes even when the
        caller is cancelled part way, e.g. a scheduled job whose own task
        is cancelled by the scheduler stop.

        Parameters
        ----------
        drain_timeout
            Seconds to wait for in-flight handlers before returning.
            ``0`` does not wait, ``None`` waits until all have finished.
            Only the first call's value is used.
        """
        if self._stopped:
            return
        self._stop_requested = True
        if self._shutdown is None:
            self._shutdown = asyncio.ensure_future(self._stop(drain_timeout))
        await asyncio.shield(self._shutdown)

    async def _stop(self, drain_timeout: float | None) -> None:
        run_task = self._run_task
        # Once teardown has begun the run loop is already unwinding on its own.
        if run_task is not None and self._scheduler_stop is None:
            run_task.cancel()

        await self._teardown()
        if run_task is not None:
            await asyncio.wait([run_task])

        if drain_timeout is None or drain_timeout > 0:
            if not await self.wait_for_handlers(drain_timeout):
                self._logger.warning("%d handler dispatch(es) still running at stop", self.outstanding_handlers)
        self._mark_stopped()

    async def wait_for_handlers(self, timeout: float | None = None) -> bool:
        """Wait for in-flight handlers. Returns ``False`` on timeout."""
        return await self._handlers.wait(timeout)

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    async def _read_events(self) -> None:
        while not self._stop_requested:
            event = await self._transport.read_event()
            if event is None:
                await asyncio.sleep(self._config.idle_delay)
                continue
            self._handle_event(event)

    def _handle_event(self, event: HassEvent) -> None:
        if not event.is_state_changed:
            self._logger.debug("Ignoring %s event", event.event_type)
            return

        notification = ChangeNotification.from_event(event)
        self._mirror.update(notification.entity_id, notification.new_state)

        self._handlers.prune()
        self._handlers.create_task(
            self._dispatch(notification),
            name=f"pyhassd-dispatch-{notification.entity_id}",
        )

    async def _dispatch(self, notification: ChangeNotification) -> None:
        try:
            await self._dispatcher.dispatch(notification)
        except HassHandlerError as exc:
            # Each failure was already logged with its traceback by the engine.
            self._logger.warning("%s", exc)

    async def _finish_run(self) -> None:
        await self._teardown()
        if not self._stop_requested:
            self._mark_stopped()

    async def _teardown(self) -> None:
        """Stop the scheduler, then close the connection; each exactly once."""
        self._set_status(DaemonStatus.STOPPING)
        if self._scheduler_stop is None:
            self._scheduler_stop = asyncio.ensure_future(self._scheduler.stop())
        try:
            await asyncio.shield(self._scheduler_stop)
        except asyncio.CancelledError:
            raise
        except Exception:
            self._logger.exception("Scheduler stop failed")

        if self._connection_close is None:
            self._connection_close = asyncio.ensure_future(self._transport.close())
        try:
            await asyncio.shield(self._connection_close)
        except asyncio.CancelledError:
            raise
        except Exception:
            self._logger.exception("Closing the connection failed")

    def _mark_stopped(self) -> None:
        self._stopped = True
        self._set_status(DaemonStatus.STOPPED)

    def _set_status(self, status: DaemonStatus) -> None:
        if status != self._status:
            self._logger.debug("Daemon %s -> %s", self._status, status)
            self._status = status
