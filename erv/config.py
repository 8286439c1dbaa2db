"""Configuration handling for erv."""

from __future__ import annotations

import os
from dataclasses import dataclass


def _get_env_int(name: str, default: int) -> int:
    try:
        return int(os.getenv(name, default))
    except Exception:
        return default


def _get_env_float(name: str, default: float) -> float:
    try:
        return float(os.getenv(name, default))
    except Exception:
        return default


def _get_env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in ("1", "true", "yes", "on")


@dataclass
class Config:
    """Runtime configuration for the ERV client and telemetry poller."""

    host: str = os.getenv("ERV_HOST", "127.0.0.1")
    port: int = _get_env_int("ERV_PORT", 502)
    unit_id: int = _get_env_int("ERV_UNIT_ID", 1)
    timeout: float = _get_env_float("ERV_TIMEOUT", 1.5)
    keep_alive: bool = _get_env_bool("ERV_KEEP_ALIVE", True)
    poll_interval: float = _get_env_float("ERV_POLL_INTERVAL", 2.0)
    # Poll the status/error bitfields too, where the register map has them
    read_status_bits: bool = _get_env_bool("ERV_READ_STATUS_BITS", True)
    # Derived telemetry: airflow in m3/h at 100 % fan, efficiency in %
    max_airflow: float = _get_env_float("ERV_MAX_AIRFLOW", 1500.0)
    efficiency_base: float = 70.0
    efficiency_span: float = 20.0
    efficiency_cap: float = 95.0
    fake: bool = _get_env_bool("ERV_FAKE", False)

    def __post_init__(self) -> None:
        if self.timeout <= 0:
            raise ValueError("timeout must be positive")
        if self.poll_interval <= 0:
            raise ValueError("poll_interval must be positive")
        if not 0 <= self.unit_id <= 255:
            raise ValueError(f"unit id out of range: {self.unit_id}")

    @classmethod
    def from_env(cls) -> "Config":
        """Create configuration from environment variables."""
        return cls()
