from __future__ import annotations

import threading
import time
from dataclasses import replace

import pytest

from erv.client import ERVClient
from erv.config import Config
from erv.errors import ConnectionError, ProtocolException, TimeoutError
from erv.models import FanSide, PollerState, StatusFlags
from erv.poller import POLL_SET, STATUS_SET, TelemetryService
from erv.registers import GATEWAY_REGISTERS, HOLTOP_REGISTERS, RegisterMap
from erv.transport import Transport

from conftest import reply_for

ADDR = {reg.name: reg.address for reg in GATEWAY_REGISTERS}


class DeviceTransport(Transport):
    def __init__(self) -> None:
        self.regs: dict[int, int] = {
            ADDR["system_power"]: 1,
            ADDR["system_status_bits"]: 0x0009,
            ADDR["error_bits"]: 0x0020,
            ADDR["supply_temperature"]: 230,
            ADDR["exhaust_temperature"]: 0xFFF6,
            ADDR["supply_humidity"]: 45,
            ADDR["exhaust_humidity"]: 55,
            ADDR["supply_fan_speed"]: 9,
            ADDR["exhaust_fan_speed"]: 9,
        }
        self.fail_reads: dict[int, Exception] = {}
        self.fail_writes: Exception | None = None
        self.writes: list[tuple[int, int]] = []
        self.closed = 0

    def read_holding_registers(self, address: int, count: int) -> list[int]:
        if address in self.fail_reads:
            raise self.fail_reads[address]
        return [self.regs.get(address + i, 0) for i in range(count)]

    def write_register(self, address: int, value: int) -> None:
        if self.fail_writes is not None:
            raise self.fail_writes
        self.writes.append((address, value))
        self.regs[address] = value

    def close(self) -> None:
        self.closed += 1


@pytest.fixture
def device() -> DeviceTransport:
    return DeviceTransport()


@pytest.fixture
def service(device: DeviceTransport) -> TelemetryService:
    cfg = Config(poll_interval=0.01)
    return TelemetryService(ERVClient(cfg, transport=device), cfg)


def test_initial_snapshot_is_disconnected(service: TelemetryService) -> None:
    snap = service.get_snapshot()
    assert not snap.connected
    assert service.state is PollerState.DISCONNECTED


def test_successful_cycle(service: TelemetryService) -> None:
    assert service.poll_once()
    snap = service.get_snapshot()
    assert snap.connected
    assert snap.running
    assert snap.supply_temperature == 23.0
    assert snap.exhaust_temperature == -1.0
    assert snap.supply_humidity == 45
    assert snap.exhaust_humidity == 55
    assert snap.supply_fan_speed == 50
    assert snap.exhaust_fan_speed == 50
    assert snap.airflow == 750.0
    assert snap.efficiency == 80.0
    assert snap.status == StatusFlags(fire_alarm=True, defrosting=True)
    assert snap.errors.eeprom_error
    assert snap.timestamp is not None
    assert service.state is PollerState.POLLING


def test_efficiency_is_capped(device: DeviceTransport) -> None:
    cfg = Config(poll_interval=0.01, efficiency_cap=85.0)
    device.regs[ADDR["supply_fan_speed"]] = 14
    device.regs[ADDR["exhaust_fan_speed"]] = 14
    service = TelemetryService(ERVClient(cfg, transport=device), cfg)
    service.poll_once()
    assert service.get_snapshot().efficiency == 85.0
    assert service.get_snapshot().airflow == 1500.0


@pytest.mark.parametrize("name", POLL_SET + STATUS_SET)
def test_one_failed_read_keeps_previous_snapshot(
    service: TelemetryService, device: DeviceTransport, name: str
) -> None:
    service.poll_once()
    before = service.get_snapshot()
    device.regs = {addr: 0 for addr in device.regs}
    device.fail_reads[ADDR[name]] = TimeoutError("no answer")
    assert not service.poll_once()
    after = service.get_snapshot()
    assert not after.connected
    assert replace(after, connected=True) == before
    assert service.state is PollerState.DISCONNECTED


def test_recovers_on_next_tick(service: TelemetryService, device: DeviceTransport) -> None:
    device.fail_reads[ADDR["supply_humidity"]] = ConnectionError("reset")
    assert not service.poll_once()
    device.fail_reads.clear()
    assert service.poll_once()
    assert service.connected


def test_unexpected_error_does_not_escape(service: TelemetryService, device: DeviceTransport) -> None:
    device.fail_reads[ADDR["error_bits"]] = RuntimeError("bug")
    assert not service.poll_once()


def test_connectivity_listener(service: TelemetryService, device: DeviceTransport) -> None:
    changes: list[bool] = []
    service.on_connectivity_change(changes.append)
    service.poll_once()
    service.poll_once()
    device.fail_reads[ADDR["system_power"]] = ConnectionError("reset")
    service.poll_once()
    service.poll_once()
    device.fail_reads.clear()
    service.poll_once()
    assert changes == [True, False, True]


def test_snapshot_listener_and_unsubscribe(service: TelemetryService) -> None:
    seen = []
    unsubscribe = service.subscribe(seen.append)
    service.poll_once()
    unsubscribe()
    service.poll_once()
    assert len(seen) == 1


def test_failing_listener_is_isolated(service: TelemetryService) -> None:
    def broken(snapshot) -> None:
        raise RuntimeError("listener bug")

    service.subscribe(broken)
    assert service.poll_once()
    assert service.connected


def test_set_fan_speed_updates_snapshot(service: TelemetryService, device: DeviceTransport) -> None:
    service.poll_once()
    seen = []
    service.subscribe(seen.append)
    assert service.set_fan_speed(FanSide.SUPPLY, 45) == 8
    assert device.writes == [(ADDR["supply_fan_speed"], 8)]
    snap = service.get_snapshot()
    assert snap.supply_fan_speed == 40
    assert snap.exhaust_fan_speed == 50
    assert snap.airflow == 675.0
    assert seen == [snap]


def test_set_fan_speed_failure_leaves_snapshot(
    service: TelemetryService, device: DeviceTransport
) -> None:
    service.poll_once()
    before = service.get_snapshot()
    device.fail_writes = ProtocolException(3)
    with pytest.raises(ProtocolException):
        service.set_fan_speed("exhaust", 100)
    assert service.get_snapshot() is before


def test_set_system_power(service: TelemetryService, device: DeviceTransport) -> None:
    service.poll_once()
    service.set_system_power(False)
    assert device.writes == [(ADDR["system_power"], 0)]
    assert service.get_snapshot().running is False


def test_register_map_must_cover_poll_set(device: DeviceTransport) -> None:
    with pytest.raises(ValueError):
        TelemetryService(ERVClient(Config(), transport=device, registers=HOLTOP_REGISTERS))


def test_background_thread(service: TelemetryService, device: DeviceTransport) -> None:
    published = threading.Event()
    service.subscribe(lambda snap: published.set())
    with service:
        assert published.wait(2)
    assert service._thread is None
    assert device.closed >= 1
    assert service.state is PollerState.DISCONNECTED


def test_stop_is_idempotent(service: TelemetryService) -> None:
    service.start()
    service.stop()
    service.stop()


def test_end_to_end_over_tcp(serve, tcp_config) -> None:
    regs = {
        ADDR["system_power"]: 1,
        ADDR["supply_temperature"]: 230,
        ADDR["supply_fan_speed"]: 8,
        ADDR["exhaust_fan_speed"]: 8,
    }
    server = serve(lambda req: reply_for(req, regs))
    cfg = tcp_config(server.port, poll_interval=0.01)
    client = ERVClient(cfg)
    client.connect()
    service = TelemetryService(client, cfg)
    assert service.poll_once()
    assert service.get_snapshot().supply_temperature == 23.0
    service.set_fan_speed("exhaust", 45)
    assert regs[ADDR["exhaust_fan_speed"]] == 8
    service.set_fan_speed("exhaust", 100)
    assert regs[ADDR["exhaust_fan_speed"]] == 14
    service.stop()
    assert len(server.requests) == len(service.poll_set) + 2


class GatedDevice(DeviceTransport):
    """Blocks the read of one address until released."""

    def __init__(self, address: int) -> None:
        super().__init__()
        self.address = address
        self.gate = threading.Event()
        self.reached = threading.Event()
        self.armed = False

    def read_holding_registers(self, address: int, count: int) -> list[int]:
        values = super().read_holding_registers(address, count)
        if self.armed and address == self.address:
            self.reached.set()
            assert self.gate.wait(2)
        return values


def test_command_during_cycle_survives_the_cycle() -> None:
    device = GatedDevice(ADDR["exhaust_fan_speed"])
    cfg = Config(poll_interval=0.01)
    service = TelemetryService(ERVClient(cfg, transport=device), cfg)
    service.poll_once()
    assert service.get_snapshot().supply_fan_speed == 50

    device.armed = True
    cycle = threading.Thread(target=service.poll_once)
    cycle.start()
    assert device.reached.wait(2)
    assert service.set_fan_speed("supply", 100) == 14
    service.set_system_power(False)
    device.gate.set()
    cycle.join(2)

    snap = service.get_snapshot()
    assert snap.connected
    assert snap.supply_fan_speed == 100
    assert snap.running is False
    assert snap.airflow == 1125.0
    assert device.regs[ADDR["supply_fan_speed"]] == 14

    device.armed = False
    service.poll_once()
    assert service.get_snapshot().supply_fan_speed == 100


def test_command_before_cycle_is_not_replayed(service: TelemetryService, device: DeviceTransport) -> None:
    service.set_fan_speed("supply", 100)
    device.regs[ADDR["supply_fan_speed"]] = 2
    service.poll_once()
    assert service.get_snapshot().supply_fan_speed == 10


def test_map_without_status_registers(device: DeviceTransport) -> None:
    registers = RegisterMap(reg for reg in GATEWAY_REGISTERS if reg.name not in STATUS_SET)
    for name in STATUS_SET:
        device.fail_reads[ADDR[name]] = ProtocolException(2)
    cfg = Config(poll_interval=0.01)
    service = TelemetryService(ERVClient(cfg, transport=device, registers=registers), cfg)
    assert service.poll_set == POLL_SET
    assert service.poll_once()
    snap = service.get_snapshot()
    assert snap.connected
    assert snap.status == StatusFlags()
    assert not snap.errors.any


def test_status_registers_can_be_switched_off(device: DeviceTransport) -> None:
    for name in STATUS_SET:
        device.fail_reads[ADDR[name]] = ProtocolException(2)
    cfg = Config(poll_interval=0.01, read_status_bits=False)
    service = TelemetryService(ERVClient(cfg, transport=device), cfg)
    assert service.poll_once()
    assert service.get_snapshot().status == StatusFlags()


def test_unsubscribe_twice(service: TelemetryService) -> None:
    unsubscribe = service.subscribe(lambda snap: None)
    unsubscribe()
    unsubscribe()
    off = service.on_connectivity_change(lambda up: None)
    off()
    off()


def test_stop_aborts_request_in_flight(serve, tcp_config) -> None:
    server = serve(lambda req: None)
    cfg = tcp_config(server.port, timeout=10.0, poll_interval=0.01)
    client = ERVClient(cfg)
    service = TelemetryService(client, cfg)
    service.start()
    deadline = time.monotonic() + 2
    while not server.requests and time.monotonic() < deadline:
        time.sleep(0.01)
    assert server.requests

    started = time.monotonic()
    service.stop()
    assert time.monotonic() - started < 2
    assert service._thread is None
    assert not any(t.name == "erv-poller" and t.is_alive() for t in threading.enumerate())
    assert not client.transport.connected
