"""Several TCP streams presented as one packet connection (RFC 4571 framing)."""

from __future__ import annotations

import logging
import socket
import struct
import threading
from collections import deque
from typing import Any, Callable, Optional

from .udp_muxed_conn import RECEIVE_MTU
from .url import ICEError

STREAMING_PACKET_HEADER_LEN = 2

_Packet = tuple[Optional[bytes], Any, Optional[BaseException]]


def _recv_exact(conn: socket.socket, size: int) -> bytes:
    chunks = []
    remaining = size
    while remaining > 0:
        chunk = conn.recv(remaining)
        if not chunk:
            raise EOFError("EOF")
        chunks.append(chunk)
        remaining -= len(chunk)
    return b"".join(chunks)


def read_streaming_packet(conn: socket.socket, max_size: int = RECEIVE_MTU) -> bytes:
    """Read one packet prefixed by a 2-byte big-endian length from ``conn``.

    Raises ``EOFError`` when the stream ends and ``ICEError`` when the packet
    is larger than ``max_size``.
    """
    (length,) = struct.unpack("!H", _recv_exact(conn, STREAMING_PACKET_HEADER_LEN))
    if length > max_size:
        raise ICEError("short buffer")
    return _recv_exact(conn, length)


def write_streaming_packet(conn: socket.socket, data: bytes) -> int:
    """Write ``data`` to ``conn`` with its 2-byte length header; return len(data)."""
    conn.sendall(struct.pack("!H", len(data)) + bytes(data))
    return len(data)


def _addr_key(addr: Any) -> str:
    if isinstance(addr, tuple) and len(addr) >= 2:
        host, port = str(addr[0]), addr[1]
        if ":" in host:
            return "[%s]:%s" % (host, port)
        return "%s:%s" % (host, port)
    return str(addr)


class TCPPacketConn:
    """Packet connection over the TCP streams accepted for one ufrag."""

    def __init__(
        self,
        local_addr: Any,
        read_buffer: int = 0,
        logger: Optional[logging.Logger] = None,
        on_close: Optional[Callable[[], None]] = None,
    ) -> None:
        self.local_addr = local_addr
        self._log = logger or logging.getLogger("iceconn")
        self._on_close = on_close
        self._capacity = max(read_buffer, 1)
        self._queue: deque[_Packet] = deque()
        self._cond = threading.Condition()
        self._closed = False
        self._lock = threading.Lock()
        self._conns: dict[str, socket.socket] = {}
        self._threads: list[threading.Thread] = []

    def __str__(self) -> str:
        return "TCPPacketConn{LocalAddr: %s}" % (self.local_addr,)

    @property
    def closed(self) -> bool:
        with self._cond:
            return self._closed

    def add_conn(self, conn: socket.socket, first_packet: Optional[bytes] = None) -> None:
        """Start reading packets from ``conn``, queueing ``first_packet`` first."""
        remote = conn.getpeername()
        key = _addr_key(remote)
        self._log.info("AddConn: tcp %s", key)
        with self._lock:
            if self.closed:
                raise BrokenPipeError("io: read/write on closed pipe")
            if key in self._conns:
                raise ICEError("connection with same remote address already exists: %s" % key)
            self._conns[key] = conn
            thread = threading.Thread(
                target=self._start_reading, args=(conn, remote, first_packet), daemon=True
            )
            self._threads.append(thread)
            thread.start()

    def _start_reading(self, conn: socket.socket, remote: Any, first_packet: Optional[bytes]) -> None:
        if first_packet is not None:
            self._handle_recv((bytes(first_packet), remote, None))
        while True:
            try:
                data = read_streaming_packet(conn, RECEIVE_MTU)
            except (OSError, EOFError, ICEError) as err:
                self._log.info("failed to read streaming packet: %s", err)
                self._handle_recv((None, remote, err))
                self._remove_conn(conn, remote)
                return
            self._handle_recv((data, remote, None))

    def _handle_recv(self, packet: _Packet) -> None:
        with self._cond:
            while len(self._queue) >= self._capacity and not self._closed:
                self._cond.wait()
            if self._closed:
                return
            self._queue.append(packet)
            self._cond.notify_all()

    def read_from(self, bufsize: int = RECEIVE_MTU) -> tuple[bytes, Any]:
        """Block for the next packet and return its data and remote address."""
        with self._cond:
            while not self._queue and not self._closed:
                self._cond.wait()
            if not self._queue:
                raise BrokenPipeError("io: read/write on closed pipe")
            data, remote, err = self._queue.popleft()
            self._cond.notify_all()
        if err is not None:
            raise err
        assert data is not None
        if len(data) > bufsize:
            raise ICEError("short buffer")
        return data, remote

    def write_to(self, data: bytes, addr: Any) -> int:
        """Send ``data`` over the stream whose remote address is ``addr``."""
        key = _addr_key(addr)
        with self._lock:
            conn = self._conns.get(key)
        if conn is None:
            raise BrokenPipeError("io: read/write on closed pipe")
        try:
            return write_streaming_packet(conn, data)
        except OSError as err:
            self._log.debug("error writing to %s: %s", key, err)
            raise

    def _close_socket(self, conn: socket.socket) -> None:
        try:
            conn.shutdown(socket.SHUT_RDWR)
        except OSError:
            pass
        try:
            conn.close()
        except OSError as err:
            self._log.warning("failed to close connection: %s", err)

    def _remove_conn(self, conn: socket.socket, remote: Any) -> None:
        key = _addr_key(remote)
        with self._lock:
            self._close_socket(conn)
            if self._conns.get(key) is conn:
                del self._conns[key]

    def close(self) -> None:
        """Close every stream; reads end once queued packets are drained."""
        with self._lock:
            with self._cond:
                first = not self._closed
                self._closed = True
                self._cond.notify_all()
            conns = list(self._conns.values())
            self._conns.clear()
            threads = list(self._threads)
        for conn in conns:
            self._close_socket(conn)
        current = threading.current_thread()
        for thread in threads:
            if thread is not current:
                thread.join()
        if first and self._on_close is not None:
            self._on_close()