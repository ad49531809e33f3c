"""End-to-end daemon behaviour against an in-memory transport."""

from __future__ import annotations

import asyncio
from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import Any

import pytest

from pyhassd.config import HassConfig
from pyhassd.daemon import DaemonStatus, HassDaemon
from pyhassd.exceptions import HassConnectionClosedError, HassError, HassMalformedEventError
from pyhassd.models.events import HassEvent
from pyhassd.models.state import EntityState


def _state_payload(entity_id: str, state: str, **attributes: Any) -> dict[str, Any]:
    return {"entity_id": entity_id, "state": state, "attributes": attributes}


def _state_changed(entity_id: str, old: str | None, new: str | None) -> HassEvent:
    return HassEvent(
        event_type="state_changed",
        data={
            "entity_id": entity_id,
            "old_state": _state_payload(entity_id, old) if old is not None else None,
            "new_state": _state_payload(entity_id, new) if new is not None else None,
        },
    )


@dataclass
class FakeTransport:
    """Transport double fed from a queue.

    ``None`` items are returned as idle reads; exception instances are raised.
    """

    connect_result: bool = True
    states: dict[str, EntityState] = field(default_factory=dict)
    feed: asyncio.Queue[Any] = field(default_factory=asyncio.Queue)
    calls: list[tuple[str, Any]] = field(default_factory=list)
    close_started: asyncio.Event = field(default_factory=asyncio.Event)
    close_delay: float = 0.0
    close_count: int = 0

    async def connect(self, host: str, port: int, ssl: bool, token: str, auto_reconnect: bool) -> bool:
        self.calls.append(("connect", (host, port, ssl, token, auto_reconnect)))
        return self.connect_result

    async def subscribe_events(self, event_type: str = "state_changed") -> None:
        self.calls.append(("subscribe_events", event_type))

    async def read_event(self) -> HassEvent | None:
        item = await self.feed.get()
        if isinstance(item, BaseException):
            raise item
        return item

    async def call_service(self, domain: str, service: str, service_data: Mapping[str, Any]) -> Any:
        self.calls.append(("call_service", (domain, service, dict(service_data))))
        return None

    async def close(self) -> None:
        self.close_count += 1
        self.calls.append(("close", None))
        self.close_started.set()
        if self.close_delay:
            await asyncio.sleep(self.close_delay)


def _daemon(transport: FakeTransport, **config: Any) -> HassDaemon:
    config.setdefault("idle_delay", 0.0)
    return HassDaemon(transport, HassConfig(host="hass.local", token="secret", **config))


async def _until(predicate, timeout: float = 1.0) -> None:
    async def _poll() -> None:
        while not predicate():
            await asyncio.sleep(0.001)

    await asyncio.wait_for(_poll(), timeout)


@pytest.mark.asyncio
@pytest.mark.e2e
async def test_state_changes_update_mirror_and_reach_handlers() -> None:
    transport = FakeTransport()
    daemon = _daemon(transport)
    seen: list[tuple[str, str | None, str | None]] = []

    async def on_light(entity_id, new_state, old_state) -> None:
        seen.append((entity_id, new_state.state if new_state else None, old_state.state if old_state else None))

    daemon.listen_state("light", on_light)
    run_task = asyncio.create_task(daemon.run())

    await transport.feed.put(_state_changed("light.kitchen", None, "on"))
    await transport.feed.put(_state_changed("switch.fan", "off", "on"))
    await transport.feed.put(_state_changed("light.kitchen", "on", "off"))
    await _until(lambda: len(seen) == 2)

    assert seen == [("light.kitchen", "on", None), ("light.kitchen", "off", "on")]
    kitchen = daemon.get_state("light.kitchen")
    assert kitchen is not None and kitchen.state == "off"
    assert daemon.get_state("switch.fan") is not None
    assert daemon.status is DaemonStatus.RUNNING
    assert transport.calls[0] == ("connect", ("hass.local", 8123, False, "secret", True))
    assert transport.calls[1] == ("subscribe_events", "state_changed")

    await transport.feed.put(HassConnectionClosedError("gone"))
    assert await asyncio.wait_for(run_task, 1.0) is True
    assert daemon.status is DaemonStatus.STOPPED
    assert transport.close_count == 1


@pytest.mark.asyncio
@pytest.mark.e2e
async def test_removed_entity_leaves_the_mirror() -> None:
    transport = FakeTransport()
    daemon = _daemon(transport)
    run_task = asyncio.create_task(daemon.run())

    await transport.feed.put(_state_changed("sensor.temp", None, "21"))
    await transport.feed.put(_state_changed("sensor.temp", "21", None))
    await transport.feed.put(HassConnectionClosedError("gone"))
    assert await asyncio.wait_for(run_task, 1.0) is True

    assert daemon.get_state("sensor.temp") is None


@pytest.mark.asyncio
@pytest.mark.e2e
async def test_hanging_handler_does_not_block_ingestion() -> None:
    transport = FakeTransport()
    daemon = _daemon(transport)
    release = asyncio.Event()
    fast_calls: list[str] = []

    async def hangs(entity_id, new_state, old_state) -> None:
        await release.wait()

    async def fast(entity_id, new_state, old_state) -> None:
        fast_calls.append(new_state.state)

    daemon.listen_state("light.slow", hangs)
    daemon.listen_state("light", fast)
    run_task = asyncio.create_task(daemon.run())

    await transport.feed.put(_state_changed("light.slow", None, "on"))
    await transport.feed.put(_state_changed("light.other", None, "dim"))
    await _until(lambda: fast_calls == ["on", "dim"])

    other = daemon.get_state("light.other")
    assert other is not None and other.state == "dim"
    assert daemon.outstanding_handlers == 1

    release.set()
    assert await daemon.wait_for_handlers(1.0) is True
    run_task.cancel()
    with pytest.raises(asyncio.CancelledError):
        await run_task


@pytest.mark.asyncio
@pytest.mark.e2e
async def test_handler_failure_does_not_end_the_run() -> None:
    transport = FakeTransport()
    daemon = _daemon(transport)
    later: list[str] = []

    async def broken(entity_id, new_state, old_state) -> None:
        raise RuntimeError("automation bug")

    async def record(entity_id, new_state, old_state) -> None:
        later.append(entity_id)

    daemon.listen_state("light.broken", broken)
    daemon.listen_state("", record)
    run_task = asyncio.create_task(daemon.run())

    await transport.feed.put(_state_changed("light.broken", None, "on"))
    await transport.feed.put(_state_changed("light.fine", None, "on"))
    await _until(lambda: later == ["light.broken", "light.fine"])

    assert not run_task.done()
    await daemon.stop()
    assert run_task.done()


@pytest.mark.asyncio
@pytest.mark.e2e
async def test_idle_reads_sleep_and_keep_going() -> None:
    transport = FakeTransport()
    daemon = _daemon(transport, idle_delay=0.01)
    run_task = asyncio.create_task(daemon.run())

    for _ in range(3):
        await transport.feed.put(None)
    await transport.feed.put(_state_changed("light.a", None, "on"))
    await _until(lambda: daemon.get_state("light.a") is not None)

    await transport.feed.put(HassConnectionClosedError("gone"))
    assert await asyncio.wait_for(run_task, 1.0) is True


@pytest.mark.asyncio
@pytest.mark.e2e
async def test_non_state_events_are_ignored() -> None:
    transport = FakeTransport()
    daemon = _daemon(transport)
    seen: list[str] = []

    async def anything(entity_id, new_state, old_state) -> None:
        seen.append(entity_id)

    daemon.listen_state("", anything)
    run_task = asyncio.create_task(daemon.run())

    await transport.feed.put(HassEvent(event_type="call_service", data={"domain": "light"}))
    await transport.feed.put(HassEvent(event_type="call_service", data=None))
    await transport.feed.put(HassConnectionClosedError("gone"))
    assert await asyncio.wait_for(run_task, 1.0) is True
    await daemon.wait_for_handlers(1.0)

    assert seen == []
    assert daemon.states == []


@pytest.mark.asyncio
@pytest.mark.e2e
async def test_malformed_state_changed_event_is_raised_after_teardown() -> None:
    transport = FakeTransport()
    daemon = _daemon(transport)
    run_task = asyncio.create_task(daemon.run())

    await transport.feed.put(HassEvent(event_type="state_changed", data=None))
    with pytest.raises(HassMalformedEventError):
        await asyncio.wait_for(run_task, 1.0)

    assert transport.close_count == 1
    assert not daemon.scheduler.is_running
    assert daemon.is_stopped


@pytest.mark.asyncio
@pytest.mark.e2e
async def test_failed_connect_returns_false_without_teardown() -> None:
    transport = FakeTransport(connect_result=False)
    daemon = _daemon(transport)

    assert await daemon.run() is False
    assert daemon.status is DaemonStatus.DISCONNECTED
    assert transport.close_count == 0
    assert [name for name, _ in transport.calls] == ["connect"]
    assert not daemon.is_stopped


@pytest.mark.asyncio
@pytest.mark.e2e
async def test_run_arguments_override_config() -> None:
    transport = FakeTransport(connect_result=False)
    daemon = _daemon(transport)

    await daemon.run("other.host", 443, True, "tok", auto_reconnect=False)
    assert transport.calls[0] == ("connect", ("other.host", 443, True, "tok", False))


@pytest.mark.asyncio
@pytest.mark.e2e
async def test_stop_is_idempotent() -> None:
    transport = FakeTransport()
    daemon = _daemon(transport)
    run_task = asyncio.create_task(daemon.run())
    await _until(lambda: daemon.status is DaemonStatus.RUNNING)

    await daemon.stop()
    await daemon.stop()

    assert run_task.done() and run_task.cancelled()
    assert transport.close_count == 1
    assert daemon.status is DaemonStatus.STOPPED
    with pytest.raises(HassError):
        await daemon.run()


@pytest.mark.asyncio
@pytest.mark.e2e
async def test_cancel_and_concurrent_stop_halt_scheduled_jobs() -> None:
    transport = FakeTransport(close_delay=0.02)
    daemon = _daemon(transport)
    job_calls: list[str] = []
    daemon.scheduler.run_every(0.01, lambda: job_calls.append("tick"))

    run_task = asyncio.create_task(daemon.run())
    await _until(lambda: daemon.status is DaemonStatus.RUNNING)

    run_task.cancel()
    stop_task = asyncio.create_task(daemon.stop())

    with pytest.raises(asyncio.CancelledError):
        await run_task
    await asyncio.wait_for(stop_task, 1.0)

    assert transport.close_started.is_set()
    assert not daemon.scheduler.is_running
    assert daemon.scheduler.pending_jobs == 0
    assert transport.close_count == 1
    assert daemon.is_stopped

    ticks = len(job_calls)
    await asyncio.sleep(0.03)
    assert len(job_calls) == ticks


class RecordingScheduler:
    """Scheduler double whose stop takes a while and records when it finished."""

    is_running = True

    def __init__(self, order: list[str]) -> None:
        self._order = order

    async def stop(self) -> None:
        await asyncio.sleep(0.01)
        self._order.append("scheduler")


def _recording_daemon(order: list[str]) -> tuple[HassDaemon, FakeTransport]:
    transport = FakeTransport()
    original_close = transport.close

    async def close() -> None:
        order.append("close")
        await original_close()

    transport.close = close  # type: ignore[method-assign]
    scheduler = RecordingScheduler(order)
    daemon = HassDaemon(transport, HassConfig(idle_delay=0.0), scheduler=scheduler)  # type: ignore[arg-type]
    return daemon, transport


@pytest.mark.asyncio
@pytest.mark.e2e
async def test_cancelled_run_stops_scheduler_before_close_with_concurrent_stops() -> None:
    order: list[str] = []
    daemon, transport = _recording_daemon(order)
    run_task = asyncio.create_task(daemon.run())
    await _until(lambda: daemon.status is DaemonStatus.RUNNING)

    run_task.cancel()
    stops = [asyncio.create_task(daemon.stop()) for _ in range(3)]

    with pytest.raises(asyncio.CancelledError):
        await run_task
    await asyncio.wait_for(asyncio.gather(*stops), 1.0)

    assert order == ["scheduler", "close"]
    assert transport.close_count == 1
    assert daemon.is_stopped


@pytest.mark.asyncio
@pytest.mark.e2e
async def test_concurrent_stops_keep_teardown_order() -> None:
    order: list[str] = []
    daemon, _transport = _recording_daemon(order)
    run_task = asyncio.create_task(daemon.run())
    await _until(lambda: daemon.status is DaemonStatus.RUNNING)

    await asyncio.gather(daemon.stop(), daemon.stop())
    assert run_task.done()
    assert order == ["scheduler", "close"]


@pytest.mark.asyncio
@pytest.mark.e2e
async def test_stop_from_scheduled_job_reaches_stopped() -> None:
    transport = FakeTransport()
    daemon = _daemon(transport)
    outcomes: list[str] = []

    async def shut_down() -> None:
        try:
            await daemon.stop()
        except asyncio.CancelledError:
            outcomes.append("cancelled")
            raise
        outcomes.append("returned")

    daemon.scheduler.run_in(0.01, shut_down)
    run_task = asyncio.create_task(daemon.run())

    with pytest.raises(asyncio.CancelledError):
        await asyncio.wait_for(run_task, 1.0)
    await _until(lambda: daemon.is_stopped)

    assert daemon.status is DaemonStatus.STOPPED
    assert transport.close_count == 1
    assert outcomes == ["cancelled"]
    assert daemon.scheduler.pending_jobs == 0


@pytest.mark.asyncio
@pytest.mark.e2e
async def test_stop_drains_in_flight_handlers() -> None:
    transport = FakeTransport()
    daemon = _daemon(transport)
    finished: list[str] = []

    async def slow(entity_id, new_state, old_state) -> None:
        await asyncio.sleep(0.02)
        finished.append(entity_id)

    daemon.listen_state("light", slow)
    asyncio.create_task(daemon.run())
    await transport.feed.put(_state_changed("light.a", None, "on"))
    await _until(lambda: daemon.outstanding_handlers == 1)

    await daemon.stop(drain_timeout=1.0)
    assert finished == ["light.a"]


@pytest.mark.asyncio
@pytest.mark.e2e
async def test_remote_actions_route_to_domain_services() -> None:
    transport = FakeTransport()
    daemon = _daemon(transport)
    transport.states["light.hall"] = EntityState(entity_id="light.hall", state="on")
    transport.states["light.porch"] = EntityState(entity_id="light.porch", state="off")
    transport.states["switch.fan"] = EntityState(entity_id="switch.fan", state="on")

    await daemon.turn_on("light.kitchen", brightness=255)
    await daemon.turn_off("switch.fan")
    await daemon.toggle("media_player.tv")
    await daemon.lights(lambda s: s.state == "on").turn_off()
    await daemon.light("porch").toggle()

    service_calls = [args for name, args in transport.calls if name == "call_service"]
    assert service_calls == [
        ("light", "turn_on", {"brightness": 255, "entity_id": "light.kitchen"}),
        ("switch", "turn_off", {"entity_id": "switch.fan"}),
        ("homeassistant", "toggle", {"entity_id": "media_player.tv"}),
        ("light", "turn_off", {"entity_id": "light.hall"}),
        ("light", "toggle", {"entity_id": "light.porch"}),
    ]
