"""Group TCP connections by ICE ufrag and use them as packet connections."""

from __future__ import annotations

import abc
import ipaddress
import logging
import select
import socket
import threading
from typing import Any, Optional

from .stun import ATTR_USERNAME, METHOD_BINDING, Message
from .tcp_packet_conn import TCPPacketConn, read_streaming_packet
from .udp_muxed_conn import RECEIVE_MTU
from .url import ICEError

_POLL_INTERVAL = 0.05


class TCPMux(abc.ABC):
    """Groups TCP connections by ufrag into packet connections."""

    @abc.abstractmethod
    def get_conn_by_ufrag(self, ufrag: str, is_ipv6: bool) -> TCPPacketConn:
        """Return the packet connection for ``ufrag``, creating it if needed."""

    @abc.abstractmethod
    def remove_conn_by_ufrag(self, ufrag: str) -> None:
        """Close and forget the packet connections for ``ufrag``."""

    @abc.abstractmethod
    def close(self) -> None:
        """Close the mux."""


class InvalidTCPMux(TCPMux):
    """A mux that is not initialised: every operation fails."""

    def get_conn_by_ufrag(self, ufrag: str, is_ipv6: bool) -> TCPPacketConn:
        raise ICEError("TCPMux is not initialized")

    def remove_conn_by_ufrag(self, ufrag: str) -> None:
        return None

    def close(self) -> None:
        raise ICEError("TCPMux is not initialized")


def _is_ipv6_host(host: str) -> bool:
    try:
        ip = ipaddress.ip_address(host.partition("%")[0])
    except ValueError:
        return True
    if isinstance(ip, ipaddress.IPv4Address):
        return False
    return ip.ipv4_mapped is None


class TCPMuxDefault(TCPMux):
    """Accepts TCP connections and routes them by the ufrag of their first STUN packet."""

    def __init__(
        self,
        listener: socket.socket,
        read_buffer_size: int = 0,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        self._listener = listener
        self._read_buffer_size = read_buffer_size
        self._log = logger or logging.getLogger("iceconn")
        self._lock = threading.RLock()
        self._closed = False
        self._conns_ipv4: dict[str, TCPPacketConn] = {}
        self._conns_ipv6: dict[str, TCPPacketConn] = {}
        self._pending: set[socket.socket] = set()
        self._threads: list[threading.Thread] = []
        self._accept_thread = threading.Thread(target=self._accept_loop, daemon=True)
        self._accept_thread.start()

    @property
    def local_addr(self) -> Any:
        return self._listener.getsockname()

    @property
    def is_closed(self) -> bool:
        with self._lock:
            return self._closed

    def get_conn_by_ufrag(self, ufrag: str, is_ipv6: bool) -> TCPPacketConn:
        """Return the packet connection for ``ufrag``, creating it if there is none."""
        with self._lock:
            if self._closed:
                raise BrokenPipeError("io: read/write on closed pipe")
            conn = self._get(ufrag, is_ipv6)
            if conn is not None:
                return conn
            return self._create(ufrag, self.local_addr, is_ipv6)

    def remove_conn_by_ufrag(self, ufrag: str) -> None:
        """Close and drop both packet connections for ``ufrag``."""
        with self._lock:
            removed = [
                c
                for c in (self._conns_ipv4.pop(ufrag, None), self._conns_ipv6.pop(ufrag, None))
                if c is not None
            ]
            for conn in removed:
                conn.close()

    def close(self) -> None:
        """Close the listener and every connection, and wait for the workers."""
        with self._lock:
            self._closed = True
            conns = [*self._conns_ipv4.values(), *self._conns_ipv6.values()]
            self._conns_ipv4 = {}
            self._conns_ipv6 = {}
            for conn in conns:
                conn.close()
            for pending in list(self._pending):
                try:
                    pending.shutdown(socket.SHUT_RDWR)
                except OSError:
                    pass
            threads = list(self._threads)
        self._accept_thread.join()
        try:
            self._listener.close()
        finally:
            for thread in threads:
                if thread is not threading.current_thread():
                    thread.join()

    def _get(self, ufrag: str, is_ipv6: bool) -> Optional[TCPPacketConn]:
        return (self._conns_ipv6 if is_ipv6 else self._conns_ipv4).get(ufrag)

    def _create(self, ufrag: str, local_addr: Any, is_ipv6: bool) -> TCPPacketConn:
        conn = TCPPacketConn(
            local_addr,
            self._read_buffer_size,
            self._log,
            on_close=lambda: self.remove_conn_by_ufrag(ufrag),
        )
        (self._conns_ipv6 if is_ipv6 else self._conns_ipv4)[ufrag] = conn
        return conn

    def _accept_loop(self) -> None:
        self._log.info("Listening TCP on %s", self.local_addr)
        while not self.is_closed:
            try:
                ready, _, _ = select.select([self._listener], [], [], _POLL_INTERVAL)
                if not ready:
                    continue
                conn, remote = self._listener.accept()
            except (OSError, ValueError) as err:
                self._log.info("Error accepting connection: %s", err)
                return
            self._log.debug("Accepted connection from: %s", remote)
            with self._lock:
                if self._closed:
                    conn.close()
                    return
                self._pending.add(conn)
                thread = threading.Thread(target=self._handle_conn, args=(conn,), daemon=True)
                self._threads.append(thread)
                thread.start()

    def _reject(self, conn: socket.socket, reason: str, *args: Any) -> None:
        try:
            conn.close()
        except OSError as err:
            self._log.warning("Error closing connection: %s", err)
        self._log.warning(reason, *args)

    def _handle_conn(self, conn: socket.socket) -> None:
        try:
            remote = conn.getpeername()
            data = read_streaming_packet(conn, RECEIVE_MTU)
        except (OSError, EOFError, ICEError) as err:
            with self._lock:
                self._pending.discard(conn)
            self._reject(conn, "Error reading first packet: %s", err)
            return
        with self._lock:
            self._pending.discard(conn)

        try:
            message = Message(raw=data).decode()
        except ICEError as err:
            self._reject(conn, "Failed to handle decode ICE from %s: %s", remote, err)
            return
        if message.method != METHOD_BINDING:
            self._reject(conn, "Not a STUN message from %s", remote)
            return
        for kind, value in message.attributes:
            self._log.debug("msg attr: 0x%04x %r", kind, value)
        try:
            username = message.get(ATTR_USERNAME)
        except KeyError:
            self._reject(conn, "No Username attribute in STUN message from %s", remote)
            return
        ufrag = username.decode(errors="replace").split(":")[0]
        self._log.debug("Ufrag: %s", ufrag)

        with self._lock:
            if self._closed:
                self._reject(conn, "Mux closed, dropping connection from %s", remote)
                return
            is_ipv6 = _is_ipv6_host(str(remote[0]))
            packet_conn = self._get(ufrag, is_ipv6)
            if packet_conn is None:
                packet_conn = self._create(ufrag, conn.getsockname(), is_ipv6)
            try:
                packet_conn.add_conn(conn, data)
            except (ICEError, BrokenPipeError, OSError) as err:
                self._reject(conn, "Error adding conn to TCPPacketConn from %s: %s", remote, err)