"""Transport abstraction for Modbus communication."""

from __future__ import annotations

import contextlib
import logging
import socket
import threading
import time
from typing import List, Mapping, Optional

from . import mbap
from .config import Config
from .errors import ConnectionError, TimeoutError

logger = logging.getLogger(__name__)


class Transport:
    """Abstract base class for transport implementations."""

    def read_holding_registers(self, address: int, count: int) -> List[int]:
        raise NotImplementedError

    def write_register(self, address: int, value: int) -> None:
        raise NotImplementedError

    def close(self) -> None:  # pragma: no cover - default
        """Close transport resources."""


class ModbusTcpTransport(Transport):
    """Modbus TCP transport speaking MBAP over a plain socket.

    One exchange is in flight at a time: requests from different threads are
    serialised by an internal lock, and every response is matched to its
    request by transaction id. Frames carrying another transaction id are
    dropped.

    With ``keep_alive`` the socket is reused between requests and only torn
    down after a transport failure or on :meth:`close`. Without it a new
    connection is opened and closed around every request.
    """

    def __init__(self, cfg: Config, transaction_seed: int = 0) -> None:
        self.host = cfg.host
        self.port = cfg.port
        self.unit_id = cfg.unit_id
        self.timeout = cfg.timeout
        self.keep_alive = cfg.keep_alive
        self._sock: Optional[socket.socket] = None
        self._lock = threading.Lock()
        self._transaction_id = transaction_seed & 0xFFFF

    @property
    def transaction_id(self) -> int:
        """Id used by the most recent request."""
        return self._transaction_id

    @property
    def connected(self) -> bool:
        return self._sock is not None

    def _next_transaction_id(self) -> int:
        self._transaction_id = (self._transaction_id + 1) & 0xFFFF
        return self._transaction_id

    # ---- Socket handling ----
    def _connect(self) -> socket.socket:
        if self._sock is not None:
            return self._sock
        try:
            sock = socket.create_connection((self.host, self.port), timeout=self.timeout)
        except socket.timeout as exc:
            raise TimeoutError(f"connect to {self.host}:{self.port} timed out") from exc
        except OSError as exc:
            raise ConnectionError(f"cannot connect to {self.host}:{self.port}: {exc}") from exc
        sock.setsockopt(socket.IPPROTO_TCP, socket.TCP_NODELAY, 1)
        self._sock = sock
        logger.debug("connected to %s:%s", self.host, self.port)
        return sock

    def _drop(self, sock: socket.socket) -> None:
        if self._sock is sock:
            self._sock = None
        with contextlib.suppress(OSError):
            sock.shutdown(socket.SHUT_RDWR)
        sock.close()

    def _send(self, sock: socket.socket, frame: bytes) -> None:
        try:
            sock.settimeout(self.timeout)
            sock.sendall(frame)
        except socket.timeout as exc:
            raise TimeoutError("timed out sending request") from exc
        except OSError as exc:
            raise ConnectionError(f"send failed: {exc}") from exc

    def _recv_exact(self, sock: socket.socket, size: int, deadline: float) -> bytes:
        buf = bytearray()
        while len(buf) < size:
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                raise TimeoutError(f"no response within {self.timeout}s")
            try:
                sock.settimeout(remaining)
                chunk = sock.recv(size - len(buf))
            except socket.timeout as exc:
                raise TimeoutError(f"no response within {self.timeout}s") from exc
            except OSError as exc:
                raise ConnectionError(f"receive failed: {exc}") from exc
            if not chunk:
                raise ConnectionError("connection closed by device")
            buf += chunk
        return bytes(buf)

    def _receive(self, sock: socket.socket, transaction_id: int) -> bytes:
        deadline = time.monotonic() + self.timeout
        while True:
            header = mbap.decode_header(self._recv_exact(sock, mbap.HEADER_SIZE, deadline))
            pdu = self._recv_exact(sock, header.pdu_size, deadline)
            if header.transaction_id == transaction_id:
                logger.debug("rx %s", pdu.hex(" "))
                return pdu
            logger.warning(
                "discarding response with transaction id %s (waiting for %s)",
                header.transaction_id,
                transaction_id,
            )

    def _exchange(self, txn: mbap.Transaction) -> bytes:
        """Send one request and return the PDU of its response."""
        frame = mbap.encode_request(txn, self.unit_id)
        sock = self._connect()
        done = False
        try:
            logger.debug("tx %s", frame.hex(" "))
            self._send(sock, frame)
            pdu = self._receive(sock, txn.transaction_id)
            done = True
            return pdu
        finally:
            # a failed exchange may leave a partial frame in the stream
            if not (done and self.keep_alive):
                self._drop(sock)

    # ---- Modbus functions ----
    def read_holding_registers(self, address: int, count: int) -> List[int]:
        with self._lock:
            txn = mbap.Transaction(
                self._next_transaction_id(), mbap.READ_HOLDING_REGISTERS, address, count
            )
            pdu = self._exchange(txn)
        return mbap.decode_read_response(pdu, count)

    def write_register(self, address: int, value: int) -> None:
        with self._lock:
            txn = mbap.Transaction(
                self._next_transaction_id(), mbap.WRITE_SINGLE_REGISTER, address, value
            )
            pdu = self._exchange(txn)
        mbap.decode_write_response(pdu, address, value)

    def close(self) -> None:
        """Close the connection; safe to call while a request is in flight."""
        sock = self._sock
        if sock is not None:
            self._drop(sock)
            logger.debug("closed connection to %s:%s", self.host, self.port)


class FakeTransport(Transport):
    """In-memory register store with the same interface as a device."""

    def __init__(self, cfg: Config | None = None, registers: Mapping[int, int] | None = None) -> None:
        self._regs: dict[int, int] = dict(registers or {})

    def read_holding_registers(self, address: int, count: int) -> List[int]:
        return [self._regs.get(address + i, 0) for i in range(count)]

    def write_register(self, address: int, value: int) -> None:
        self._regs[address] = int(value) & 0xFFFF

    def close(self) -> None:  # pragma: no cover - nothing to do
        pass
