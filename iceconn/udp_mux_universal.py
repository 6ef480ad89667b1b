"""UDP mux that also learns server reflexive addresses from STUN servers."""

from __future__ import annotations

import logging
import socket
import threading
import time
from typing import Any, Optional

from .stun import (
    ATTR_XOR_MAPPED_ADDRESS,
    Message,
    XORMappedAddress,
    build_binding_request,
    is_message,
    parse_xor_mapped_address,
)
from .udp_mux import UDPMuxDefault
from .udp_muxed_conn import UDPAddr, UDPMuxedConn, _as_udp_addr
from .url import ICEError

DEFAULT_XOR_MAPPED_ADDR_CACHE_TTL = 25.0


class _XORMapped:
    def __init__(self, ttl: float) -> None:
        self.addr: Optional[XORMappedAddress] = None
        self.received = threading.Event()
        self.expires_at = time.monotonic() + ttl

    @property
    def pending(self) -> bool:
        return self.addr is None

    @property
    def expired(self) -> bool:
        return self.expires_at < time.monotonic()

    def set_addr(self, addr: XORMappedAddress) -> None:
        self.addr = addr
        self.received.set()


class UniversalUDPMuxDefault(UDPMuxDefault):
    """UDP mux handling host candidates and server reflexive discovery on one socket."""

    def __init__(
        self,
        sock: socket.socket,
        logger: Optional[logging.Logger] = None,
        xor_mapped_addr_cache_ttl: float = DEFAULT_XOR_MAPPED_ADDR_CACHE_TTL,
    ) -> None:
        self.xor_mapped_addr_cache_ttl = xor_mapped_addr_cache_ttl or DEFAULT_XOR_MAPPED_ADDR_CACHE_TTL
        self._xor_lock = threading.Lock()
        self._xor_mapped: dict[str, _XORMapped] = {}
        super().__init__(sock, logger)

    def get_relayed_addr(self, turn_addr: Any, deadline: float) -> UDPAddr:
        """Relayed candidates over the shared socket are unsupported; always raises."""
        raise ICEError("relayed addresses are not supported by this mux")

    def get_conn_for_url(self, ufrag: str, url: str, is_ipv6: bool) -> UDPMuxedConn:
        """Return a connection unique to the pair of ``ufrag`` and server ``url``."""
        return self.get_conn("%s%s" % (ufrag, url), is_ipv6)

    def get_xor_mapped_addr(self, server_addr: Any, deadline: float) -> XORMappedAddress:
        """Return this socket's mapped address as seen by a STUN server.

        A fresh cached answer is returned at once; otherwise a binding request is
        sent and the call waits up to ``deadline`` seconds for the reply.
        """
        server = _as_udp_addr(server_addr)
        key = str(server)
        with self._xor_lock:
            mapped = self._xor_mapped.get(key)
            usable = mapped is not None
            if mapped is not None:
                if mapped.expired:
                    mapped.received.set()
                    del self._xor_mapped[key]
                    usable = False
                elif mapped.pending:
                    usable = False
        if usable and mapped is not None and mapped.addr is not None:
            return mapped.addr

        try:
            received = self._send_stun(server, key)
        except OSError as err:
            raise ICEError("failed to send STUN packet: %s" % err) from err

        if not received.wait(deadline):
            raise ICEError("timeout while waiting for XORMappedAddr")
        with self._xor_lock:
            mapped = self._xor_mapped.get(key)
        if mapped is None or mapped.addr is None:
            raise ICEError("no XOR address mapping")
        return mapped.addr

    def _send_stun(self, server: UDPAddr, key: str) -> threading.Event:
        with self._xor_lock:
            mapped = self._xor_mapped.get(key)
            if mapped is None:
                mapped = _XORMapped(self.xor_mapped_addr_cache_ttl)
                self._xor_mapped[key] = mapped
            self._write_to(build_binding_request().raw, server)
            return mapped.received

    def _read_packet(self) -> Optional[tuple[bytes, UDPAddr]]:
        packet = super()._read_packet()
        if packet is None:
            return None
        data, addr = packet
        if is_message(data):
            try:
                message = Message(raw=bytes(data)).decode()
            except ICEError as err:
                self._log.warning("Failed to handle decode ICE from %s: %s", addr, err)
                return packet
            if self._is_xor_mapped_response(message, str(addr)):
                try:
                    self._handle_xor_mapped_response(str(addr), message)
                except (ICEError, KeyError) as err:
                    self._log.debug("failed to get XOR-MAPPED-ADDRESS response: %s", err)
        return packet

    def _is_xor_mapped_response(self, message: Message, server_key: str) -> bool:
        with self._xor_lock:
            known = server_key in self._xor_mapped
        return known and message.contains(ATTR_XOR_MAPPED_ADDRESS)

    def _handle_xor_mapped_response(self, server_key: str, message: Message) -> None:
        with self._xor_lock:
            mapped = self._xor_mapped.get(server_key)
            if mapped is None:
                raise ICEError("no XOR address mapping")
            mapped.set_addr(parse_xor_mapped_address(message))