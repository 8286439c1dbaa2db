"""Modbus TCP (MBAP) frame encoding and decoding.

A frame is a 7 byte MBAP header followed by the PDU::

    transaction id  u16  echoed by the server
    protocol id     u16  always 0
    length          u16  byte count of unit id + PDU
    unit id         u8
    function code   u8   high bit set on exception responses
    payload         ...

All multi-byte fields are big-endian.
"""

from __future__ import annotations

import struct
from typing import List, NamedTuple

from .errors import DecodeError, ProtocolException

READ_HOLDING_REGISTERS = 0x03
WRITE_SINGLE_REGISTER = 0x06
EXCEPTION_BIT = 0x80

HEADER = struct.Struct(">HHHB")
HEADER_SIZE = HEADER.size
PROTOCOL_ID = 0
# Modbus limits: a PDU is at most 253 bytes, a read at most 125 registers
MAX_PDU_SIZE = 253
MAX_READ_COUNT = 125


class Transaction(NamedTuple):
    transaction_id: int
    function_code: int
    address: int
    value: int  # quantity for reads, register value for writes


class Header(NamedTuple):
    transaction_id: int
    protocol_id: int
    length: int
    unit_id: int

    @property
    def pdu_size(self) -> int:
        return self.length - 1


def _check_u16(name: str, value: int) -> None:
    if not 0 <= value <= 0xFFFF:
        raise ValueError(f"{name} out of range: {value}")


def encode_request(txn: Transaction, unit_id: int) -> bytes:
    """Frame a request for ``txn``; both supported functions share one layout."""
    _check_u16("transaction id", txn.transaction_id)
    _check_u16("address", txn.address)
    _check_u16("value", txn.value)
    if txn.function_code == READ_HOLDING_REGISTERS:
        if not 1 <= txn.value <= MAX_READ_COUNT:
            raise ValueError(f"register count must be 1..{MAX_READ_COUNT}, got {txn.value}")
        if txn.address + txn.value > 0x10000:
            raise ValueError("read extends past the last register address")
    elif txn.function_code != WRITE_SINGLE_REGISTER:
        raise ValueError(f"unsupported function code {txn.function_code:#04x}")
    pdu = struct.pack(">BHH", txn.function_code, txn.address, txn.value)
    return HEADER.pack(txn.transaction_id, PROTOCOL_ID, len(pdu) + 1, unit_id) + pdu


def decode_header(data: bytes) -> Header:
    if len(data) != HEADER_SIZE:
        raise DecodeError(f"MBAP header needs {HEADER_SIZE} bytes, got {len(data)}")
    header = Header(*HEADER.unpack(data))
    if header.protocol_id != PROTOCOL_ID:
        raise DecodeError(f"unexpected protocol id {header.protocol_id}")
    if not 2 <= header.length <= MAX_PDU_SIZE + 1:
        raise DecodeError(f"invalid MBAP length {header.length}")
    return header


def check_function(pdu: bytes, function_code: int) -> None:
    """Raise for exception responses and function code mismatches."""
    if not pdu:
        raise DecodeError("empty PDU")
    fc = pdu[0]
    if fc & EXCEPTION_BIT:
        if len(pdu) < 2:
            raise DecodeError("exception response without exception code")
        raise ProtocolException(pdu[1], function_code=fc & ~EXCEPTION_BIT)
    if fc != function_code:
        raise DecodeError(f"expected function {function_code:#04x}, got {fc:#04x}")


def decode_read_response(pdu: bytes, count: int) -> List[int]:
    """Return ``count`` register values from a function 0x03 response PDU."""
    check_function(pdu, READ_HOLDING_REGISTERS)
    if len(pdu) < 2:
        raise DecodeError("read response without byte count")
    byte_count = pdu[1]
    if byte_count != 2 * count:
        raise DecodeError(f"expected {2 * count} data bytes, byte count says {byte_count}")
    data = pdu[2:]
    if len(data) != byte_count:
        raise DecodeError(f"byte count {byte_count} but {len(data)} data bytes received")
    return list(struct.unpack(f">{count}H", data))


def decode_write_response(pdu: bytes, address: int, value: int) -> None:
    """Validate the echo of a function 0x06 request."""
    check_function(pdu, WRITE_SINGLE_REGISTER)
    if len(pdu) != 5:
        raise DecodeError(f"write response must be 5 bytes, got {len(pdu)}")
    echo_address, echo_value = struct.unpack(">HH", pdu[1:])
    if (echo_address, echo_value) != (address, value):
        raise DecodeError(
            f"write echo mismatch: sent {address}={value}, got {echo_address}={echo_value}"
        )
