"""Register definitions for Holtop ERV controllers (0-based Modbus addresses)."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import FrozenSet, Iterable, Iterator, Mapping, Optional, Tuple


class Access(Enum):
    READ = "r"
    WRITE = "w"
    READ_WRITE = "rw"

    @property
    def readable(self) -> bool:
        return self is not Access.WRITE

    @property
    def writable(self) -> bool:
        return self is not Access.READ


class Encoding(Enum):
    UINT16 = "uint16"
    INT16 = "int16"
    BOOL = "bool"
    BITFIELD = "bitfield"


# Bit position -> flag name
STATUS_BITS: Mapping[int, str] = {
    0: "fire_alarm",
    1: "bypass_on",
    2: "bypass_off",
    3: "defrosting",
}

ERROR_BITS: Mapping[int, str] = {
    2: "oa_temperature_error",
    3: "fr_temperature_error",
    4: "ra_temperature_error",
    5: "eeprom_error",
}


@dataclass(frozen=True)
class RegisterDef:
    """Description of a single holding register."""

    address: int
    name: str
    access: Access
    encoding: Encoding
    scale: float = 1
    unit: Optional[str] = None
    valid_range: Optional[Tuple[float, float]] = None
    bits: Mapping[int, str] = field(default_factory=dict)
    description: str = ""
    default: Optional[float] = None
    # Allowed raw values for enumerated registers
    choices: Optional[FrozenSet[int]] = None

    def __post_init__(self) -> None:
        if not 0 <= self.address <= 0xFFFF:
            raise ValueError(f"{self.name}: address out of range: {self.address}")
        if self.scale == 0:
            raise ValueError(f"{self.name}: scale must not be zero")
        if self.encoding is Encoding.BITFIELD and not self.bits:
            raise ValueError(f"{self.name}: bitfield register needs a bit table")
        if self.valid_range is not None and self.valid_range[0] > self.valid_range[1]:
            raise ValueError(f"{self.name}: empty valid range {self.valid_range}")


class RegisterMap:
    """Name indexed table of :class:`RegisterDef` with unique addresses."""

    def __init__(self, registers: Iterable[RegisterDef]) -> None:
        self._by_name: dict[str, RegisterDef] = {}
        self._by_address: dict[int, RegisterDef] = {}
        for reg in registers:
            if reg.name in self._by_name:
                raise ValueError(f"duplicate register name: {reg.name}")
            if reg.address in self._by_address:
                other = self._by_address[reg.address]
                raise ValueError(
                    f"duplicate register address {reg.address:#06x}: {reg.name} and {other.name}"
                )
            self._by_name[reg.name] = reg
            self._by_address[reg.address] = reg

    def __getitem__(self, name: str) -> RegisterDef:
        try:
            return self._by_name[name]
        except KeyError:
            raise KeyError(f"unknown register: {name}") from None

    def __contains__(self, name: object) -> bool:
        return name in self._by_name

    def __iter__(self) -> Iterator[RegisterDef]:
        return iter(self._by_name.values())

    def __len__(self) -> int:
        return len(self._by_name)

    def by_address(self, address: int) -> RegisterDef:
        try:
            return self._by_address[address]
        except KeyError:
            raise KeyError(f"no register at address {address:#06x}") from None

    def names(self) -> list[str]:
        return list(self._by_name)


FAN_SPEED_RANGE = (0, 14)
# Device step codes, see codec.FAN_SPEED_STEPS
FAN_SPEED_CODES = frozenset((0, 2, 3, 5, 8, 9, 10, 11, 12, 13, 14))

# Layout served by the site's Modbus TCP gateway; this is what the poller reads.
GATEWAY_REGISTERS = RegisterMap(
    [
        RegisterDef(0x0000, "system_power", Access.READ_WRITE, Encoding.BOOL,
                    valid_range=(0, 1), description="ERV on/off"),
        RegisterDef(0x0001, "supply_fan_speed", Access.READ_WRITE, Encoding.UINT16,
                    valid_range=FAN_SPEED_RANGE, choices=FAN_SPEED_CODES,
                    description="Supply fan speed step code"),
        RegisterDef(0x0002, "exhaust_fan_speed", Access.READ_WRITE, Encoding.UINT16,
                    valid_range=FAN_SPEED_RANGE, choices=FAN_SPEED_CODES,
                    description="Exhaust fan speed step code"),
        RegisterDef(0x0012, "system_status_bits", Access.READ, Encoding.BITFIELD,
                    bits=STATUS_BITS, description="Fire alarm/bypass/defrosting signals"),
        RegisterDef(0x0014, "error_bits", Access.READ, Encoding.BITFIELD,
                    bits=ERROR_BITS, description="Sensor and EEPROM errors"),
        RegisterDef(0x0064, "supply_temperature", Access.READ, Encoding.INT16,
                    scale=0.1, unit="°C", description="Supply air temperature"),
        RegisterDef(0x0065, "exhaust_temperature", Access.READ, Encoding.INT16,
                    scale=0.1, unit="°C", description="Exhaust air temperature"),
        RegisterDef(0x0066, "supply_humidity", Access.READ, Encoding.UINT16,
                    unit="%", valid_range=(0, 100), description="Supply air relative humidity"),
        RegisterDef(0x0067, "exhaust_humidity", Access.READ, Encoding.UINT16,
                    unit="%", valid_range=(0, 100), description="Exhaust air relative humidity"),
    ]
)

# Native controller table, Holtop manual p. 25
HOLTOP_REGISTERS = RegisterMap(
    [
        RegisterDef(2, "bypass_opening_temp", Access.READ_WRITE, Encoding.UINT16,
                    unit="°C", valid_range=(5, 30), default=19,
                    description="Bypass opening temperature X"),
        RegisterDef(3, "bypass_temp_range", Access.READ_WRITE, Encoding.UINT16,
                    unit="°C", valid_range=(2, 15), default=3,
                    description="Bypass opening temperature range Y"),
        RegisterDef(4, "defrosting_interval", Access.READ_WRITE, Encoding.UINT16,
                    unit="min", valid_range=(15, 99), default=30,
                    description="Defrosting interval"),
        RegisterDef(5, "defrosting_enter_temp", Access.READ_WRITE, Encoding.INT16,
                    unit="°C", valid_range=(-9, 5), default=-1,
                    description="Defrosting enter temperature"),
        RegisterDef(6, "defrost_duration", Access.READ_WRITE, Encoding.UINT16,
                    unit="min", valid_range=(2, 20), default=10,
                    description="Defrost duration time"),
        RegisterDef(7, "co2_sensor_threshold", Access.READ_WRITE, Encoding.UINT16,
                    valid_range=(0x28, 0xC8), default=0x66,
                    description="CO2 sensor threshold (raw)"),
        RegisterDef(8, "modbus_address", Access.READ_WRITE, Encoding.UINT16,
                    valid_range=(1, 16), default=1, description="Modbus address"),
        RegisterDef(9, "system_power", Access.READ_WRITE, Encoding.BOOL,
                    valid_range=(0, 1), description="ERV on/off"),
        RegisterDef(10, "supply_fan_speed", Access.READ_WRITE, Encoding.UINT16,
                    valid_range=FAN_SPEED_RANGE, choices=FAN_SPEED_CODES,
                    description="Supply fan speed step code"),
        RegisterDef(11, "exhaust_fan_speed", Access.READ_WRITE, Encoding.UINT16,
                    valid_range=FAN_SPEED_RANGE, choices=FAN_SPEED_CODES,
                    description="Exhaust fan speed step code"),
        RegisterDef(12, "room_temperature", Access.READ, Encoding.INT16,
                    unit="°C", description="Room temperature"),
        RegisterDef(13, "outdoor_temperature", Access.READ, Encoding.INT16,
                    unit="°C", description="Outdoor temperature"),
        RegisterDef(14, "exhaust_air_temperature", Access.READ, Encoding.INT16,
                    unit="°C", description="Exhaust air temperature"),
        RegisterDef(15, "defrosting_temperature", Access.READ, Encoding.INT16,
                    unit="°C", description="Defrosting temperature"),
        RegisterDef(16, "external_on_off_signal", Access.READ, Encoding.BOOL,
                    description="External ON/OFF signal"),
        RegisterDef(17, "co2_on_off_signal", Access.READ, Encoding.BOOL,
                    description="CO2 ON/OFF signal"),
        RegisterDef(18, "system_status_bits", Access.READ, Encoding.BITFIELD,
                    bits=STATUS_BITS, description="Fire alarm/bypass/defrosting signals"),
        RegisterDef(19, "electrical_heater_stage", Access.READ, Encoding.UINT16,
                    description="Electrical heater stage"),
        RegisterDef(20, "error_bits", Access.READ, Encoding.BITFIELD,
                    bits=ERROR_BITS, description="Error symbol"),
    ]
)

REGISTER_MAPS: Mapping[str, RegisterMap] = {
    "gateway": GATEWAY_REGISTERS,
    "holtop": HOLTOP_REGISTERS,
}
