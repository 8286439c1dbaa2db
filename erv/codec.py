"""Conversion between raw 16-bit register values and physical values.

Everything in this module is pure: no I/O and no state.

Conventions:

- Register values are unsigned 16-bit integers (0..65535).
- ``INT16`` registers hold a two's-complement signed value; temperatures can
  be negative.
- Scaled values are ``raw * scale``; the result is rounded to the precision
  of the scale so that ``230 * 0.1`` is exactly ``23.0``.
- Fan speed registers hold a device step code, not a percentage. The step
  table below is the only mapping between the two.
"""

from __future__ import annotations

from decimal import Decimal
from typing import Mapping, NamedTuple, Union

from .errors import RangeError
from .models import ErrorFlags, StatusFlags
from .registers import ERROR_BITS, STATUS_BITS, Encoding, RegisterDef

PhysicalValue = Union[int, float, bool, dict]


class FanSpeedStep(NamedTuple):
    code: int
    percentage: int
    name: str


FAN_SPEED_STEPS: tuple[FanSpeedStep, ...] = (
    FanSpeedStep(0, 0, "Stop"),
    FanSpeedStep(2, 10, "Speed 1"),
    FanSpeedStep(3, 20, "Speed 2"),
    FanSpeedStep(5, 30, "Speed 3"),
    FanSpeedStep(8, 40, "Speed 4"),
    FanSpeedStep(9, 50, "Speed 5"),
    FanSpeedStep(10, 60, "Speed 6"),
    FanSpeedStep(11, 70, "Speed 7"),
    FanSpeedStep(12, 80, "Speed 8"),
    FanSpeedStep(13, 90, "Speed 9"),
    FanSpeedStep(14, 100, "Speed 10"),
)

_STEP_BY_CODE = {step.code: step for step in FAN_SPEED_STEPS}


def decode_int16(raw: int) -> int:
    """Decode a signed INT16 from a register value."""
    r = int(raw) & 0xFFFF
    return r - 0x10000 if r >= 0x8000 else r


def encode_int16(value: int) -> int:
    """Encode a signed INT16 into a register value."""
    return int(value) & 0xFFFF


def _precision(scale: float) -> int:
    exponent = Decimal(str(scale)).normalize().as_tuple().exponent
    return max(0, -int(exponent))


def _apply_scale(raw: int, scale: float) -> Union[int, float]:
    if scale == 1:
        return raw
    return round(raw * scale, _precision(scale))


def decode_bits(raw: int, bits: Mapping[int, str]) -> dict[str, bool]:
    """Return ``{flag: bool}`` for every known bit; other bits are ignored."""
    r = int(raw) & 0xFFFF
    return {name: bool(r & (1 << pos)) for pos, name in sorted(bits.items())}


def encode_bits(flags: Mapping[str, bool], bits: Mapping[int, str]) -> int:
    positions = {name: pos for pos, name in bits.items()}
    raw = 0
    for name, on in flags.items():
        if name not in positions:
            raise RangeError(f"unknown flag: {name}")
        if on:
            raw |= 1 << positions[name]
    return raw


def decode(register: RegisterDef, raw: int) -> PhysicalValue:
    """Convert a raw register value into its physical value."""
    r = int(raw) & 0xFFFF
    if register.encoding is Encoding.BOOL:
        return r != 0
    if register.encoding is Encoding.BITFIELD:
        return decode_bits(r, register.bits)
    if register.encoding is Encoding.INT16:
        return _apply_scale(decode_int16(r), register.scale)
    return _apply_scale(r, register.scale)


def _check_range(register: RegisterDef, value: float) -> None:
    if register.valid_range is None:
        return
    lo, hi = register.valid_range
    if not lo <= value <= hi:
        raise RangeError(f"{register.name}: {value} outside valid range {lo}..{hi}")


def encode(register: RegisterDef, value: PhysicalValue) -> int:
    """Convert a physical value into the raw register value to write.

    Raises :class:`RangeError` when the value lies outside the register's
    valid range or cannot be represented by its encoding.
    """
    if register.encoding is Encoding.BITFIELD:
        if isinstance(value, Mapping):
            return encode_bits(value, register.bits)
        raw = int(value)
        if not 0 <= raw <= 0xFFFF:
            raise RangeError(f"{register.name}: {raw} does not fit 16 bits")
        return raw

    if register.encoding is Encoding.BOOL:
        raw = int(bool(value)) if isinstance(value, bool) else int(value)
        if raw not in (0, 1):
            raise RangeError(f"{register.name}: boolean register takes 0 or 1, got {value}")
        return raw

    if isinstance(value, (dict, Mapping)):
        raise RangeError(f"{register.name}: expected a number, got {value!r}")
    _check_range(register, value)
    raw = int(round(value / register.scale))
    if register.choices is not None and raw not in register.choices:
        allowed = ", ".join(str(c) for c in sorted(register.choices))
        raise RangeError(f"{register.name}: {value} is not one of {allowed}")
    if register.encoding is Encoding.INT16:
        if not -0x8000 <= raw <= 0x7FFF:
            raise RangeError(f"{register.name}: {value} does not fit a signed 16-bit register")
        return encode_int16(raw)
    if not 0 <= raw <= 0xFFFF:
        raise RangeError(f"{register.name}: {value} does not fit an unsigned 16-bit register")
    return raw


def percentage_to_step(pct: float) -> int:
    """Return the step code whose percentage is closest to ``pct``.

    Ties go to the lower code: 45 % gives step 8 (40 %), 5 % gives 0 (stop).
    """
    if not 0 <= pct <= 100:
        raise RangeError(f"fan speed must be 0..100 %, got {pct}")
    best = FAN_SPEED_STEPS[0]
    for step in FAN_SPEED_STEPS[1:]:
        if abs(step.percentage - pct) < abs(best.percentage - pct):
            best = step
    return best.code


def step_to_percentage(code: int) -> int:
    """Return the percentage for a step code, 0 for unknown codes."""
    step = _STEP_BY_CODE.get(code)
    return step.percentage if step is not None else 0


def step_name(code: int) -> str:
    step = _STEP_BY_CODE.get(code)
    return step.name if step is not None else f"Unknown ({code})"


def decode_status_bits(raw: int) -> StatusFlags:
    return StatusFlags(**decode_bits(raw, STATUS_BITS))


def decode_error_bits(raw: int) -> ErrorFlags:
    return ErrorFlags(**decode_bits(raw, ERROR_BITS))
