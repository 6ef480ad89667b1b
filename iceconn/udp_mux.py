"""Many ICE connections sharing one UDP socket, told apart by ufrag."""

from __future__ import annotations

import abc
import logging
import select
import socket
import threading
from typing import Any, Optional

from .stun import ATTR_USERNAME, Message, is_message
from .udp_muxed_conn import (
    RECEIVE_MTU,
    UDPAddr,
    UDPMuxedConn,
    _as_udp_addr,
    _is_ipv6,
    _sockaddr,
)
from .url import ICEError

_POLL_INTERVAL = 0.05


class UDPMux(abc.ABC):
    """Lets several connections go over a single UDP port."""

    @abc.abstractmethod
    def get_conn(self, ufrag: str, is_ipv6: bool) -> UDPMuxedConn:
        """Return the connection for ``ufrag``, creating it if needed."""

    @abc.abstractmethod
    def remove_conn_by_ufrag(self, ufrag: str) -> None:
        """Forget the connections for ``ufrag``."""

    @abc.abstractmethod
    def close(self) -> None:
        """Close the mux."""


class UDPMuxDefault(UDPMux):
    """Default UDP mux: a worker thread reads the socket and dispatches packets."""

    def __init__(self, sock: socket.socket, logger: Optional[logging.Logger] = None) -> None:
        self._sock = sock
        self._log = logger or logging.getLogger("iceconn")
        self._closed = threading.Event()
        self._lock = threading.RLock()
        self._conns_ipv4: dict[str, UDPMuxedConn] = {}
        self._conns_ipv6: dict[str, UDPMuxedConn] = {}
        self._address_lock = threading.Lock()
        self._address_map: dict[str, UDPMuxedConn] = {}
        self._worker = threading.Thread(target=self._conn_worker, daemon=True)
        self._worker.start()

    @property
    def local_addr(self) -> UDPAddr:
        return _as_udp_addr(self._sock.getsockname())

    @property
    def is_closed(self) -> bool:
        return self._closed.is_set()

    def get_conn(self, ufrag: str, is_ipv6: bool) -> UDPMuxedConn:
        """Return the connection for ``ufrag``, creating it if there is none."""
        with self._lock:
            if self.is_closed:
                raise BrokenPipeError("io: read/write on closed pipe")
            conn = self._get(ufrag, is_ipv6)
            if conn is not None:
                return conn
            conn = UDPMuxedConn(
                self,
                ufrag,
                self.local_addr,
                self._log,
                on_close=lambda: self._remove_conn(ufrag),
            )
            (self._conns_ipv6 if is_ipv6 else self._conns_ipv4)[ufrag] = conn
            return conn

    def remove_conn_by_ufrag(self, ufrag: str) -> None:
        """Drop both connections for ``ufrag`` and their address mappings."""
        with self._lock:
            removed = [
                c
                for c in (self._conns_ipv4.pop(ufrag, None), self._conns_ipv6.pop(ufrag, None))
                if c is not None
            ]
        with self._address_lock:
            for conn in removed:
                for addr in conn._get_addresses():
                    self._address_map.pop(addr, None)

    def close(self) -> None:
        """Close every connection; no further connections can be created."""
        with self._lock:
            if self.is_closed:
                return
            conns = [*self._conns_ipv4.values(), *self._conns_ipv6.values()]
            self._conns_ipv4 = {}
            self._conns_ipv6 = {}
            for conn in conns:
                conn.close()
            self._closed.set()

    def _get(self, ufrag: str, is_ipv6: bool) -> Optional[UDPMuxedConn]:
        return (self._conns_ipv6 if is_ipv6 else self._conns_ipv4).get(ufrag)

    def _remove_conn(self, key: str) -> None:
        with self._lock:
            conn = self._conns_ipv4.pop(key, None)
            if conn is None:
                conn = self._conns_ipv6.pop(key, None)
        if conn is None:
            return
        with self._address_lock:
            for addr in conn._get_addresses():
                self._address_map.pop(addr, None)

    def _write_to(self, data: bytes, addr: UDPAddr) -> int:
        return self._sock.sendto(data, _sockaddr(addr))

    def _register_conn_for_address(self, conn: UDPMuxedConn, addr: str) -> None:
        if self.is_closed:
            return
        with self._address_lock:
            existing = self._address_map.get(addr)
            if existing is not None:
                existing._remove_address(addr)
            self._address_map[addr] = conn
        self._log.debug("Registered %s for %s", addr, conn.key)

    def _read_packet(self) -> Optional[tuple[bytes, UDPAddr]]:
        """Read one datagram, or return None when none arrived in time."""
        ready, _, _ = select.select([self._sock], [], [], _POLL_INTERVAL)
        if not ready:
            return None
        data, sockaddr = self._sock.recvfrom(RECEIVE_MTU)
        return data, _as_udp_addr(sockaddr)

    def _conn_worker(self) -> None:
        try:
            while not self.is_closed:
                try:
                    packet = self._read_packet()
                except (OSError, ValueError) as err:
                    if not self.is_closed:
                        self._log.error("could not read udp packet: %s", err)
                    return
                if self.is_closed:
                    return
                if packet is not None:
                    self._dispatch(*packet)
        finally:
            self.close()

    def _dispatch(self, data: bytes, addr: UDPAddr) -> None:
        with self._address_lock:
            destination = self._address_map.get(str(addr))

        if destination is None and is_message(data):
            try:
                message = Message(raw=bytes(data)).decode()
            except ICEError as err:
                self._log.warning("Failed to handle decode ICE from %s: %s", addr, err)
                return
            try:
                username = message.get(ATTR_USERNAME)
            except KeyError:
                self._log.warning("No Username attribute in STUN message from %s", addr)
                return
            ufrag = username.decode(errors="replace").split(":")[0]
            with self._lock:
                destination = self._get(ufrag, _is_ipv6(addr))

        if destination is None:
            self._log.debug("dropping packet from %s", addr)
            return
        try:
            destination._write_packet(data, addr)
        except (ICEError, BrokenPipeError) as err:
            self._log.error("could not write packet: %s", err)


def _unused(_: Any) -> None:  # pragma: no cover
    pass