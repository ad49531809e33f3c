#!/usr/bin/env python3
"""Run pyhassd against a Home Assistant instance with a demo automation.

Connection settings come from ``HASS_*`` environment variables and can be
overridden on the command line. The demo logs every state change matching
``--pattern`` and, with ``--follow``, mirrors ``--source`` onto ``--target``.

Examples:
    HASS_TOKEN=... python scripts/run_daemon.py --host hass.lan --pattern light
    python scripts/run_daemon.py --transport mqtt --port 1883 --pattern sensor
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import sys
from pathlib import Path

_repo = Path(__file__).resolve().parent.parent
_src = _repo / "src"
if _src.is_dir():
    sys.path.insert(0, str(_src))

from pyhassd import (  # noqa: E402
    EntityState,
    HassConfig,
    HassDaemon,
    MqttStateStreamTransport,
    WebSocketTransport,
)


def _parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description=__doc__, formatter_class=argparse.RawDescriptionHelpFormatter)
    parser.add_argument("--host", help="Home Assistant host (default: HASS_HOST)")
    parser.add_argument("--port", type=int, help="Port (default: HASS_PORT or 8123)")
    parser.add_argument("--ssl", action="store_true", default=None, help="Use TLS")
    parser.add_argument("--transport", choices=("ws", "mqtt"), default="ws")
    parser.add_argument("--pattern", default="", help="Entity id prefix to log (default: everything)")
    parser.add_argument("--follow", action="store_true", help="Mirror --source on/off onto --target")
    parser.add_argument("--source", default="binary_sensor.motion")
    parser.add_argument("--target", default="light.hallway")
    parser.add_argument("--heartbeat", type=float, default=0.0, help="Log mirror size every N seconds")
    parser.add_argument("-v", "--verbose", action="store_true")
    return parser.parse_args()


async def _main(args: argparse.Namespace) -> int:
    overrides = {
        key: value
        for key, value in {"host": args.host, "port": args.port, "ssl": args.ssl}.items()
        if value is not None
    }
    config = HassConfig.from_env(**overrides)
    transport = (
        MqttStateStreamTransport(config) if args.transport == "mqtt" else WebSocketTransport(config)
    )

    async with HassDaemon(transport, config) as daemon:

        async def log_change(entity_id: str, new_state: EntityState | None, old_state: EntityState | None) -> None:
            before = old_state.state if old_state else "<new>"
            after = new_state.state if new_state else "<removed>"
            print(f"{entity_id}: {before} -> {after}")

        daemon.listen_state(args.pattern, log_change)

        if args.follow:

            async def follow(entity_id: str, new_state: EntityState | None, old_state: EntityState | None) -> None:
                if new_state is None:
                    return
                if new_state.state == "on":
                    await daemon.turn_on(args.target)
                elif new_state.state == "off":
                    await daemon.turn_off(args.target)

            daemon.listen_state(args.source, follow)

        if args.heartbeat > 0:
            daemon.scheduler.run_every(
                args.heartbeat,
                lambda: print(f"[heartbeat] {len(daemon.states)} entities mirrored"),
                name="heartbeat",
            )

        if not await daemon.run():
            print(f"Could not connect to {config.host}:{config.port}", file=sys.stderr)
            return 1
    return 0


def main() -> int:
    args = _parse_args()
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    try:
        return asyncio.run(_main(args))
    except KeyboardInterrupt:
        return 130


if __name__ == "__main__":
    raise SystemExit(main())
