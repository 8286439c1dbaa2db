from __future__ import annotations

import socket
import struct
import threading
from typing import Callable, Iterator, Optional

import pytest

from erv.config import Config

CLOSE = object()


def _recv_exact(conn: socket.socket, size: int) -> Optional[bytes]:
    buf = b""
    while len(buf) < size:
        try:
            chunk = conn.recv(size - len(buf))
        except OSError:
            return None
        if not chunk:
            return None
        buf += chunk
    return buf


def reply_for(request: bytes, regs: dict[int, int]) -> bytes:
    """Answer a 0x03/0x06 request the way a well behaved device does."""
    tid, _, _, unit, fc = struct.unpack(">HHHBB", request[:8])
    address, value = struct.unpack(">HH", request[8:12])
    if fc == 0x03:
        values = [regs.get(address + i, 0) for i in range(value)]
        pdu = struct.pack(">BB", fc, 2 * value) + struct.pack(f">{value}H", *values)
    else:
        regs[address] = value
        pdu = request[7:12]
    return struct.pack(">HHHB", tid, 0, len(pdu) + 1, unit) + pdu


class ScriptedServer:
    """Localhost TCP server answering each request frame with ``handler``.

    The handler returns the bytes to send, ``None`` to stay silent or
    ``CLOSE`` to drop the connection.
    """

    def __init__(self, handler: Callable[[bytes], object]) -> None:
        self.handler = handler
        self.requests: list[bytes] = []
        self.connections = 0
        self._stopped = threading.Event()
        self._sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
        self._sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
        self._sock.bind(("127.0.0.1", 0))
        self._sock.listen(8)
        self._sock.settimeout(0.05)
        self.port = self._sock.getsockname()[1]
        self._thread = threading.Thread(target=self._serve, daemon=True)
        self._thread.start()

    def _serve(self) -> None:
        while not self._stopped.is_set():
            try:
                conn, _ = self._sock.accept()
            except socket.timeout:
                continue
            except OSError:
                return
            self.connections += 1
            threading.Thread(target=self._handle, args=(conn,), daemon=True).start()

    def _handle(self, conn: socket.socket) -> None:
        conn.settimeout(5)
        with conn:
            while not self._stopped.is_set():
                header = _recv_exact(conn, 7)
                if header is None:
                    return
                length = struct.unpack(">H", header[4:6])[0]
                body = _recv_exact(conn, length - 1)
                if body is None:
                    return
                request = header + body
                self.requests.append(request)
                reply = self.handler(request)
                if reply is CLOSE:
                    return
                if reply:
                    conn.sendall(reply)

    def close(self) -> None:
        self._stopped.set()
        self._thread.join(1)
        self._sock.close()


@pytest.fixture
def serve() -> Iterator[Callable[[Callable[[bytes], object]], ScriptedServer]]:
    servers: list[ScriptedServer] = []

    def _start(handler: Callable[[bytes], object]) -> ScriptedServer:
        server = ScriptedServer(handler)
        servers.append(server)
        return server

    yield _start
    for server in servers:
        server.close()


@pytest.fixture
def tcp_config() -> Callable[..., Config]:
    def _make(port: int, **kwargs) -> Config:
        kwargs.setdefault("timeout", 0.5)
        return Config(host="127.0.0.1", port=port, unit_id=1, fake=False, **kwargs)

    return _make
