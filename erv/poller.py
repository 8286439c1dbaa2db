"""Periodic telemetry polling and the command path for an ERV."""

from __future__ import annotations

import contextlib
import logging
import threading
from dataclasses import replace
from datetime import datetime, timezone
from typing import Callable, List, Optional, Union

from . import codec
from .client import ERVClient
from .config import Config
from .errors import ERVError
from .models import ErrorFlags, FanSide, PollerState, StatusFlags, TelemetrySnapshot

logger = logging.getLogger(__name__)

SnapshotListener = Callable[[TelemetrySnapshot], None]
ConnectivityListener = Callable[[bool], None]

# Registers read on every cycle, one request each
POLL_SET = (
    "system_power",
    "supply_temperature",
    "exhaust_temperature",
    "supply_humidity",
    "exhaust_humidity",
    "supply_fan_speed",
    "exhaust_fan_speed",
)

# Read as well when the register map has them and cfg.read_status_bits is set
STATUS_SET = (
    "system_status_bits",
    "error_bits",
)


def _remover(items: list, item: object) -> Callable[[], None]:
    def remove() -> None:
        with contextlib.suppress(ValueError):
            items.remove(item)

    return remove


class TelemetryService:
    """Poll an ERV on a fixed interval and publish immutable snapshots.

    The service owns a background thread that runs :meth:`poll_once` every
    ``cfg.poll_interval`` seconds. A cycle either succeeds as a whole and
    publishes a new snapshot, or fails and leaves every measured value of the
    previous snapshot in place, only clearing its ``connected`` flag. Failed
    cycles are retried on the next tick.

    Commands (:meth:`set_fan_speed`, :meth:`set_system_power`) go through the
    same client, whose transport serialises them with the poll requests.
    Their errors propagate to the caller. A command that completes while a
    cycle is in flight wins over the values that cycle read.
    """

    def __init__(self, client: ERVClient, cfg: Optional[Config] = None) -> None:
        self.client = client
        self.cfg = cfg or client.cfg
        missing = [name for name in POLL_SET if name not in client.registers]
        if missing:
            raise ValueError(f"register map lacks polled registers: {', '.join(missing)}")
        self.poll_set = POLL_SET
        if self.cfg.read_status_bits:
            self.poll_set += tuple(name for name in STATUS_SET if name in client.registers)
        self._snapshot = TelemetrySnapshot()
        self._snapshot_lock = threading.Lock()
        # fields set by commands since the running cycle started
        self._commanded: dict[str, object] = {}
        self._state = PollerState.DISCONNECTED
        self._stop_event = threading.Event()
        self._thread: Optional[threading.Thread] = None
        self._listeners: List[SnapshotListener] = []
        self._connectivity_listeners: List[ConnectivityListener] = []

    # ---- Observation ----
    @property
    def state(self) -> PollerState:
        return self._state

    @property
    def connected(self) -> bool:
        return self._snapshot.connected

    def get_snapshot(self) -> TelemetrySnapshot:
        return self._snapshot

    def subscribe(self, listener: SnapshotListener) -> Callable[[], None]:
        """Call ``listener`` with every published snapshot.

        Returns a function that removes the listener again.
        """
        self._listeners.append(listener)
        return _remover(self._listeners, listener)

    def on_connectivity_change(self, listener: ConnectivityListener) -> Callable[[], None]:
        self._connectivity_listeners.append(listener)
        return _remover(self._connectivity_listeners, listener)

    def _publish(self, snapshot: TelemetrySnapshot, connectivity_changed: bool) -> None:
        for listener in list(self._listeners):
            try:
                listener(snapshot)
            except Exception:
                logger.exception("telemetry listener failed")
        if not connectivity_changed:
            return
        for conn_listener in list(self._connectivity_listeners):
            try:
                conn_listener(snapshot.connected)
            except Exception:
                logger.exception("connectivity listener failed")

    # ---- Polling ----
    def _derive(self, supply_pct: float, exhaust_pct: float) -> tuple[float, float]:
        """Return (airflow, efficiency) for the given fan percentages."""
        avg = (supply_pct + exhaust_pct) / 2
        airflow = avg / 100 * self.cfg.max_airflow
        efficiency = min(
            self.cfg.efficiency_cap,
            self.cfg.efficiency_base + avg / 100 * self.cfg.efficiency_span,
        )
        return round(airflow, 1), round(efficiency, 1)

    def _with_derived(self, snapshot: TelemetrySnapshot) -> TelemetrySnapshot:
        airflow, efficiency = self._derive(snapshot.supply_fan_speed, snapshot.exhaust_fan_speed)
        return replace(snapshot, airflow=airflow, efficiency=efficiency)

    def _build_snapshot(self, raw: dict[str, int]) -> TelemetrySnapshot:
        regs = self.client.registers
        values = {name: codec.decode(regs[name], value) for name, value in raw.items()}
        status = StatusFlags(**values.get("system_status_bits", {}))
        errors = ErrorFlags(**values.get("error_bits", {}))
        snapshot = TelemetrySnapshot(
            supply_temperature=values["supply_temperature"],
            exhaust_temperature=values["exhaust_temperature"],
            supply_humidity=values["supply_humidity"],
            exhaust_humidity=values["exhaust_humidity"],
            supply_fan_speed=codec.step_to_percentage(raw["supply_fan_speed"]),
            exhaust_fan_speed=codec.step_to_percentage(raw["exhaust_fan_speed"]),
            running=bool(values["system_power"]),
            status=status,
            errors=errors,
            connected=True,
            timestamp=datetime.now(timezone.utc),
        )
        return self._with_derived(snapshot)

    def _cycle_failed(self) -> None:
        self._state = PollerState.DISCONNECTED
        with self._snapshot_lock:
            previous = self._snapshot
            if previous.connected:
                self._snapshot = replace(previous, connected=False)
        if previous.connected:
            self._publish(self._snapshot, connectivity_changed=True)

    def poll_once(self) -> bool:
        """Run a single poll cycle; returns whether it succeeded."""
        if self._state is not PollerState.POLLING:
            self._state = PollerState.CONNECTING
            logger.debug("connecting to %s:%s", self.cfg.host, self.cfg.port)
        regs = self.client.registers
        with self._snapshot_lock:
            self._commanded = {}
        try:
            self.client.connect()
            raw = {name: self.client.read_raw(regs[name].address, 1)[0] for name in self.poll_set}
            snapshot = self._build_snapshot(raw)
        except ERVError as exc:
            if self._stop_event.is_set():
                logger.debug("poll aborted during shutdown: %s", exc)
            else:
                logger.warning("poll cycle failed: %s", exc)
            self._cycle_failed()
            return False
        except Exception:
            logger.exception("unexpected error in poll cycle")
            self._cycle_failed()
            return False

        with self._snapshot_lock:
            if self._commanded:
                snapshot = self._with_derived(replace(snapshot, **self._commanded))
                self._commanded = {}
            was_connected = self._snapshot.connected
            self._snapshot = snapshot
        if self._state is not PollerState.POLLING:
            logger.info("polling %s:%s", self.cfg.host, self.cfg.port)
        self._state = PollerState.POLLING
        self._publish(snapshot, connectivity_changed=not was_connected)
        return True

    def _run(self) -> None:
        while not self._stop_event.is_set():
            self.poll_once()
            self._stop_event.wait(self.cfg.poll_interval)

    def start(self) -> None:
        """Start the background poll thread."""
        if self._thread is not None and self._thread.is_alive():
            return
        self._stop_event.clear()
        self._thread = threading.Thread(target=self._run, name="erv-poller", daemon=True)
        self._thread.start()

    def stop(self) -> None:
        """Stop polling, abort in-flight I/O and wait for the thread to exit."""
        self._stop_event.set()
        self.client.close()
        thread, self._thread = self._thread, None
        if thread is not None:
            thread.join()
        # the thread may have reconnected between close() and noticing the stop
        self.client.close()
        self._state = PollerState.DISCONNECTED

    def __enter__(self) -> "TelemetryService":
        self.start()
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.stop()

    # ---- Commands ----
    def _apply(self, **changes: object) -> TelemetrySnapshot:
        with self._snapshot_lock:
            snapshot = self._with_derived(replace(self._snapshot, **changes))
            self._snapshot = snapshot
            self._commanded.update(changes)
        self._publish(snapshot, connectivity_changed=False)
        return snapshot

    def set_fan_speed(self, side: Union[FanSide, str], percentage: float) -> int:
        """Write the fan step nearest to ``percentage``; returns the step code.

        On success the published snapshot shows the step's percentage right
        away. Errors propagate and leave the snapshot unchanged.
        """
        side = FanSide(side)
        code = self.client.set_fan_speed(side, percentage)
        self._apply(**{side.register: codec.step_to_percentage(code)})
        return code

    def set_system_power(self, on: bool) -> None:
        self.client.set_power(on)
        self._apply(running=bool(on))
