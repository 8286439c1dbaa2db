"""Custom exceptions for the erv package."""

EXCEPTION_NAMES = {
    0x01: "illegal function",
    0x02: "illegal data address",
    0x03: "illegal data value",
    0x04: "server device failure",
    0x05: "acknowledge",
    0x06: "server device busy",
    0x08: "memory parity error",
    0x0A: "gateway path unavailable",
    0x0B: "gateway target device failed to respond",
}


class ERVError(Exception):
    """Base class for all ERV related errors."""


class TransportError(ERVError):
    """Communication error in the transport layer."""


class ConnectionError(TransportError):
    """The device is unreachable or the connection was reset."""


class TimeoutError(TransportError):
    """No correctly tagged response arrived before the deadline."""


class DecodeError(ERVError):
    """A response frame was malformed or truncated."""


class ProtocolException(ERVError):
    """The device answered with a Modbus exception response."""

    def __init__(self, code: int, function_code: int | None = None) -> None:
        self.code = code
        self.function_code = function_code
        name = EXCEPTION_NAMES.get(code, "unknown exception")
        if function_code is None:
            msg = f"modbus exception {code:#04x} ({name})"
        else:
            msg = f"modbus exception {code:#04x} ({name}) for function {function_code:#04x}"
        super().__init__(msg)


class RangeError(ERVError, ValueError):
    """A value lies outside the valid range of its register."""


class AccessError(ERVError):
    """The register does not permit the requested access."""
