"""A logical packet connection for one ufrag, fed by a UDP mux."""

from __future__ import annotations

import ipaddress
import logging
import struct
import threading
from collections import deque
from dataclasses import dataclass
from typing import Any, Callable, Optional, Union

from .url import ICEError

RECEIVE_MTU = 8192
MAX_ADDR_SIZE = 512

IPAddress = Union[ipaddress.IPv4Address, ipaddress.IPv6Address]


@dataclass(frozen=True)
class UDPAddr:
    """A UDP address: IP (``None`` when unspecified), port and IPv6 zone."""

    ip: Optional[IPAddress] = None
    port: int = 0
    zone: str = ""

    def __post_init__(self) -> None:
        if self.ip is not None and not isinstance(
            self.ip, (ipaddress.IPv4Address, ipaddress.IPv6Address)
        ):
            object.__setattr__(self, "ip", ipaddress.ip_address(self.ip))

    def __str__(self) -> str:
        host = "" if self.ip is None else str(self.ip)
        if self.zone:
            host += "%" + self.zone
        if ":" in host:
            return "[%s]:%d" % (host, self.port)
        return "%s:%d" % (host, self.port)


def _as_udp_addr(value: Any) -> UDPAddr:
    """Turn a socket address tuple (or a ``UDPAddr``) into a ``UDPAddr``."""
    if isinstance(value, UDPAddr):
        return value
    host, port = value[0], value[1]
    ip_text, _, zone = str(host).partition("%")
    return UDPAddr(ipaddress.ip_address(ip_text) if ip_text else None, int(port), zone)


def _sockaddr(addr: UDPAddr) -> tuple[str, int]:
    host = "" if addr.ip is None else str(addr.ip)
    if addr.zone:
        host += "%" + addr.zone
    return host, addr.port


def _is_ipv6(addr: UDPAddr) -> bool:
    ip = addr.ip
    if isinstance(ip, ipaddress.IPv4Address):
        return False
    return ip is None or ip.ipv4_mapped is None


def encode_udp_addr(addr: UDPAddr) -> bytes:
    """Encode ``addr`` as | ip len | ip text | port | zone |, little endian."""
    ip_data = b"" if addr.ip is None else str(addr.ip).encode()
    zone = addr.zone.encode()
    if 2 + len(ip_data) + 2 + len(zone) > MAX_ADDR_SIZE:
        raise ICEError("short buffer")
    return (
        struct.pack("<H", len(ip_data))
        + ip_data
        + struct.pack("<H", addr.port & 0xFFFF)
        + zone
    )


def decode_udp_addr(buf: bytes) -> UDPAddr:
    """Decode an address written by ``encode_udp_addr``."""
    if len(buf) < 2:
        raise ICEError("short buffer")
    (ip_len,) = struct.unpack_from("<H", buf)
    offset = 2
    if offset + ip_len > len(buf):
        raise ICEError("short buffer")
    ip_text = bytes(buf[offset : offset + ip_len]).decode(errors="replace")
    offset += ip_len
    if offset + 2 > len(buf):
        raise ICEError("short buffer")
    try:
        ip = ipaddress.ip_address(ip_text) if ip_text else None
    except ValueError as err:
        raise ICEError("invalid IP address %r" % ip_text) from err
    (port,) = struct.unpack_from("<H", buf, offset)
    offset += 2
    return UDPAddr(ip, port, bytes(buf[offset:]).decode(errors="replace"))


class UDPMuxedConn:
    """Packet connection for one remote peer, identified by its ufrag."""

    def __init__(
        self,
        mux: Any,
        key: str,
        local_addr: UDPAddr,
        logger: Optional[logging.Logger] = None,
        on_close: Optional[Callable[[], None]] = None,
    ) -> None:
        self.key = key
        self.local_addr = local_addr
        self._mux = mux
        self._log = logger or logging.getLogger("iceconn")
        self._on_close = on_close
        self._packets: deque[bytes] = deque()
        self._cond = threading.Condition()
        self._closed = False
        self._addresses: list[str] = []
        self._lock = threading.Lock()

    @property
    def closed(self) -> bool:
        with self._cond:
            return self._closed

    def read_from(self, bufsize: int = RECEIVE_MTU) -> tuple[bytes, UDPAddr]:
        """Block for the next packet and return its data and sender."""
        with self._cond:
            while not self._packets and not self._closed:
                self._cond.wait()
            if not self._packets:
                raise EOFError("connection closed")
            packet = self._packets.popleft()

        (data_len,) = struct.unpack_from("<H", packet)
        if data_len > len(packet) or data_len > bufsize:
            raise ICEError("short buffer")
        offset = 2
        data = packet[offset : offset + data_len]
        offset += data_len
        (addr_len,) = struct.unpack_from("<H", packet, offset)
        offset += 2
        return data, decode_udp_addr(packet[offset : offset + addr_len])

    def write_to(self, data: bytes, addr: Any) -> int:
        """Send ``data`` to ``addr`` through the mux, registering the address."""
        if self.closed:
            raise BrokenPipeError("io: read/write on closed pipe")
        addr = _as_udp_addr(addr)
        key = str(addr)
        if not self._contains_address(key):
            self._add_address(key)
        return self._mux._write_to(data, addr)

    def close(self) -> None:
        """Close the connection; pending and later reads end with EOFError."""
        with self._cond:
            first = not self._closed
            self._closed = True
            self._cond.notify_all()
        with self._lock:
            self._addresses = []
        if first and self._on_close is not None:
            self._on_close()

    def _get_addresses(self) -> list[str]:
        with self._lock:
            return list(self._addresses)

    def _add_address(self, addr: str) -> None:
        with self._lock:
            self._addresses.append(addr)
        self._mux._register_conn_for_address(self, addr)

    def _remove_address(self, addr: str) -> None:
        with self._lock:
            self._addresses = [a for a in self._addresses if a != addr]

    def _contains_address(self, addr: str) -> bool:
        with self._lock:
            return addr in self._addresses

    def _write_packet(self, data: bytes, addr: UDPAddr) -> None:
        if len(data) > RECEIVE_MTU:
            raise ICEError("short buffer")
        encoded = encode_udp_addr(addr)
        packet = (
            struct.pack("<H", len(data))
            + bytes(data)
            + struct.pack("<H", len(encoded))
            + encoded
        )
        with self._cond:
            if self._closed:
                raise BrokenPipeError("buffer: closed")
            self._packets.append(packet)
            self._cond.notify()