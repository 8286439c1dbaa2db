"""High level client for ERV controllers."""

from __future__ import annotations

import logging
from typing import Optional, Union

from . import codec
from .config import Config
from .errors import AccessError, ERVError
from .models import FanSide
from .registers import GATEWAY_REGISTERS, RegisterDef, RegisterMap
from .transport import FakeTransport, ModbusTcpTransport, Transport

logger = logging.getLogger(__name__)


class ERVClient:
    """Client providing typed, name based access to an ERV via Modbus."""

    def __init__(
        self,
        cfg: Optional[Config] = None,
        transport: Optional[Transport] = None,
        registers: RegisterMap = GATEWAY_REGISTERS,
    ) -> None:
        self.cfg = cfg or Config.from_env()
        self.transport = transport
        self.registers = registers

    def connect(self) -> None:
        """Initialise the transport lazily."""
        if self.transport is not None:
            return
        if self.cfg.fake:
            self.transport = FakeTransport(self.cfg)
        else:
            self.transport = ModbusTcpTransport(self.cfg)

    def __enter__(self) -> "ERVClient":
        self.connect()
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()

    # ---- Low level ----
    def _ensure_transport(self) -> Transport:
        if self.transport is None:
            raise ERVError("not connected")
        return self.transport

    def read_raw(self, address: int, count: int = 1) -> list[int]:
        return self._ensure_transport().read_holding_registers(address, count)

    def write_raw(self, address: int, value: int) -> None:
        self._ensure_transport().write_register(address, value)

    def _lookup(self, register: Union[str, RegisterDef]) -> RegisterDef:
        if isinstance(register, RegisterDef):
            return register
        return self.registers[register]

    # ---- Named registers ----
    def read(self, register: Union[str, RegisterDef]) -> codec.PhysicalValue:
        """Read one register and return its decoded value."""
        reg = self._lookup(register)
        if not reg.access.readable:
            raise AccessError(f"{reg.name} is write-only")
        raw = self.read_raw(reg.address, 1)[0]
        return codec.decode(reg, raw)

    def write(self, register: Union[str, RegisterDef], value: codec.PhysicalValue) -> int:
        """Encode and write a value; returns the raw register value written."""
        reg = self._lookup(register)
        if not reg.access.writable:
            raise AccessError(f"{reg.name} is read-only")
        raw = codec.encode(reg, value)
        self.write_raw(reg.address, raw)
        logger.info("wrote %s = %s (raw %s)", reg.name, value, raw)
        return raw

    # ---- Commands ----
    def read_fan_speed(self, side: Union[FanSide, str]) -> int:
        """Return the fan speed of one side in percent."""
        code = self.read(FanSide(side).register)
        return codec.step_to_percentage(int(code))

    def set_fan_speed(self, side: Union[FanSide, str], percentage: float) -> int:
        """Write the step nearest to ``percentage``; returns the step code."""
        code = codec.percentage_to_step(percentage)
        self.write(FanSide(side).register, code)
        return code

    def read_power(self) -> bool:
        return bool(self.read("system_power"))

    def set_power(self, on: bool) -> None:
        self.write("system_power", bool(on))

    def close(self) -> None:
        """Close the underlying transport."""
        if self.transport is not None:
            self.transport.close()
