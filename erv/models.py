"""Data models for the erv API."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Optional


class FanSide(str, Enum):
    """Which fan a speed command addresses."""

    SUPPLY = "supply"
    EXHAUST = "exhaust"

    @property
    def register(self) -> str:
        return f"{self.value}_fan_speed"


class PollerState(Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    POLLING = "polling"


@dataclass(frozen=True)
class StatusFlags:
    """Decoded system status register."""

    fire_alarm: bool = False
    bypass_on: bool = False
    bypass_off: bool = False
    defrosting: bool = False


@dataclass(frozen=True)
class ErrorFlags:
    """Decoded error register."""

    oa_temperature_error: bool = False
    fr_temperature_error: bool = False
    ra_temperature_error: bool = False
    eeprom_error: bool = False

    @property
    def any(self) -> bool:
        return (
            self.oa_temperature_error
            or self.fr_temperature_error
            or self.ra_temperature_error
            or self.eeprom_error
        )


@dataclass(frozen=True)
class TelemetrySnapshot:
    """One consistent set of decoded values from a poll cycle."""

    supply_temperature: float = 0.0
    exhaust_temperature: float = 0.0
    supply_humidity: float = 0.0
    exhaust_humidity: float = 0.0
    supply_fan_speed: int = 0
    exhaust_fan_speed: int = 0
    airflow: float = 0.0
    efficiency: float = 0.0
    running: bool = False
    status: StatusFlags = field(default_factory=StatusFlags)
    errors: ErrorFlags = field(default_factory=ErrorFlags)
    connected: bool = False
    timestamp: Optional[datetime] = None
