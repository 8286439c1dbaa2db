"""Command line interface for the erv package."""

from __future__ import annotations

import argparse
import logging
import sys
import threading
from typing import List

from .client import ERVClient
from .config import Config
from .errors import ERVError
from .models import FanSide, TelemetrySnapshot
from .poller import TelemetryService
from .registers import REGISTER_MAPS

logger = logging.getLogger(__name__)


def _parse_value(text: str) -> float:
    lowered = text.lower()
    if lowered in ("on", "true"):
        return 1
    if lowered in ("off", "false"):
        return 0
    return float(text) if "." in text else int(text, 0)


def _format_snapshot(snap: TelemetrySnapshot) -> str:
    state = "running" if snap.running else "stopped"
    link = "online" if snap.connected else "offline"
    return (
        f"[{link}] {state} "
        f"supply {snap.supply_temperature}°C/{snap.supply_humidity}% "
        f"exhaust {snap.exhaust_temperature}°C/{snap.exhaust_humidity}% "
        f"fans {snap.supply_fan_speed}%/{snap.exhaust_fan_speed}% "
        f"airflow {snap.airflow} m3/h efficiency {snap.efficiency}%"
    )


def _list_registers(client: ERVClient) -> None:
    for reg in client.registers:
        unit = reg.unit or ""
        span = f"{reg.valid_range[0]}..{reg.valid_range[1]}" if reg.valid_range else ""
        print(
            f"{reg.address:#06x}  {reg.name:<26} {reg.access.value:<2} "
            f"{reg.encoding.value:<8} {unit:<4} {span}"
        )


def _watch(client: ERVClient, cfg: Config) -> None:
    service = TelemetryService(client, cfg)
    service.subscribe(lambda snap: print(_format_snapshot(snap), flush=True))
    service.on_connectivity_change(
        lambda up: logger.info("device %s", "connected" if up else "disconnected")
    )
    done = threading.Event()
    with service:
        try:
            while not done.wait(3600):
                pass
        except KeyboardInterrupt:
            done.set()


def main(argv: List[str] | None = None) -> int:
    """Run the erv command line interface."""
    logging.basicConfig(level=logging.INFO)
    env_cfg = Config.from_env()

    parser = argparse.ArgumentParser(description="Interact with an ERV over Modbus TCP")
    parser.add_argument("--host", default=env_cfg.host, help="device address [env ERV_HOST]")
    parser.add_argument("--port", type=int, default=env_cfg.port, help="TCP port [env ERV_PORT]")
    parser.add_argument(
        "--unit", type=int, default=env_cfg.unit_id, help="modbus unit id [env ERV_UNIT_ID]"
    )
    parser.add_argument(
        "--timeout",
        type=float,
        default=env_cfg.timeout,
        help="per request timeout in seconds [env ERV_TIMEOUT]",
    )
    parser.add_argument(
        "--interval",
        type=float,
        default=env_cfg.poll_interval,
        help="poll interval in seconds [env ERV_POLL_INTERVAL]",
    )
    parser.add_argument(
        "--map", choices=sorted(REGISTER_MAPS), default="gateway", help="register table"
    )
    parser.add_argument("-v", "--verbose", action="store_true", help="log frames")

    sub = parser.add_subparsers(dest="cmd", required=True)

    read = sub.add_parser("read", help="read a register or a telemetry snapshot")
    read.add_argument("what", help="register name or 'telemetry'")

    setp = sub.add_parser("set", help="set values")
    setp.add_argument("what", help="'fan', 'power' or a register name")
    setp.add_argument("args", nargs="+", help="value, or side and percentage for 'fan'")

    sub.add_parser("registers", help="list the register table")
    sub.add_parser("watch", help="poll continuously and print snapshots")

    args = parser.parse_args(argv)
    if args.verbose:
        logging.getLogger("erv").setLevel(logging.DEBUG)

    cfg = Config(
        host=args.host,
        port=args.port,
        unit_id=args.unit,
        timeout=args.timeout,
        poll_interval=args.interval,
    )
    client = ERVClient(cfg, registers=REGISTER_MAPS[args.map])

    if args.cmd == "registers":
        _list_registers(client)
        return 0

    client.connect()
    try:
        if args.cmd == "read":
            if args.what == "telemetry":
                service = TelemetryService(client, cfg)
                service.poll_once()
                print(_format_snapshot(service.get_snapshot()))
            else:
                print(client.read(args.what))
        elif args.cmd == "set":
            if args.what == "fan":
                if len(args.args) != 2:
                    parser.error("usage: set fan <supply|exhaust> <percent>")
                code = client.set_fan_speed(FanSide(args.args[0]), float(args.args[1]))
                print(f"fan step {code}")
            elif args.what == "power":
                client.set_power(_parse_value(args.args[0]) == 1)
            else:
                client.write(args.what, _parse_value(args.args[0]))
        else:
            _watch(client, cfg)
    except (ERVError, KeyError, ValueError) as exc:
        logger.error("%s", exc)
        return 1
    finally:
        client.close()
    return 0


if __name__ == "__main__":
    sys.exit(main())
