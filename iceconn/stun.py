"""Minimal STUN message encoding and decoding (RFC 5389) for ICE."""

from __future__ import annotations

import ipaddress
import os
import struct
from dataclasses import dataclass, field

from .url import ICEError

MAGIC_COOKIE = 0x2112A442
HEADER_SIZE = 20
TRANSACTION_ID_SIZE = 12

METHOD_BINDING = 0x001

CLASS_REQUEST = 0
CLASS_INDICATION = 1
CLASS_SUCCESS_RESPONSE = 2
CLASS_ERROR_RESPONSE = 3

ATTR_USERNAME = 0x0006
ATTR_XOR_MAPPED_ADDRESS = 0x0020
ATTR_USE_CANDIDATE = 0x0025

_FAMILY_IPV4 = 0x01
_FAMILY_IPV6 = 0x02


def _encode_type(method: int, message_class: int) -> int:
    value = (method & 0xF) | ((method & 0x70) << 1) | ((method & 0xF80) << 2)
    return value | ((message_class & 1) << 4) | ((message_class & 2) << 7)


def _decode_type(value: int) -> tuple[int, int]:
    message_class = ((value >> 4) & 1) | ((value >> 7) & 2)
    method = (value & 0xF) | ((value >> 1) & 0x70) | ((value >> 2) & 0xF80)
    return method, message_class


def _new_transaction_id() -> bytes:
    return os.urandom(TRANSACTION_ID_SIZE)


def is_message(data: bytes) -> bool:
    """Whether ``data`` looks like a STUN message."""
    return len(data) >= HEADER_SIZE and struct.unpack_from("!I", data, 4)[0] == MAGIC_COOKIE


@dataclass
class Message:
    """A STUN message: header fields, attributes and the raw encoding."""

    method: int = METHOD_BINDING
    message_class: int = CLASS_REQUEST
    transaction_id: bytes = field(default_factory=_new_transaction_id)
    attributes: list[tuple[int, bytes]] = field(default_factory=list)
    raw: bytes = b""

    def add(self, attr_type: int, value: bytes | None) -> None:
        """Append an attribute."""
        self.attributes.append((attr_type, bytes(value or b"")))

    def get(self, attr_type: int) -> bytes:
        """Return the value of the first attribute of ``attr_type``."""
        for kind, value in self.attributes:
            if kind == attr_type:
                return value
        raise KeyError(attr_type)

    def contains(self, attr_type: int) -> bool:
        """Whether an attribute of ``attr_type`` is present."""
        return any(kind == attr_type for kind, _ in self.attributes)

    def encode(self) -> bytes:
        """Encode the message into ``raw`` and return it."""
        if len(self.transaction_id) != TRANSACTION_ID_SIZE:
            raise ValueError("transaction id must be 12 bytes")
        body = b"".join(
            struct.pack("!HH", kind, len(value)) + value + b"\x00" * (-len(value) % 4)
            for kind, value in self.attributes
        )
        header = struct.pack(
            "!HHI", _encode_type(self.method, self.message_class), len(body), MAGIC_COOKIE
        )
        self.raw = header + self.transaction_id + body
        return self.raw

    def decode(self) -> Message:
        """Parse ``raw`` into the header fields and attributes."""
        raw = self.raw
        if len(raw) < HEADER_SIZE:
            raise ICEError("unexpected EOF: not enough bytes to read header")
        message_type, size, cookie = struct.unpack_from("!HHI", raw)
        if cookie != MAGIC_COOKIE:
            raise ICEError("%x is invalid magic cookie (should be %x)" % (cookie, MAGIC_COOKIE))
        full_size = HEADER_SIZE + size
        if len(raw) < full_size:
            raise ICEError("buffer length %d is less than %d (expected message size)" % (len(raw), full_size))

        attributes = []
        offset = HEADER_SIZE
        while offset < full_size:
            if full_size - offset < 4:
                raise ICEError("unexpected EOF: not enough bytes to read attribute header")
            kind, length = struct.unpack_from("!HH", raw, offset)
            offset += 4
            padded = length + (-length % 4)
            if full_size - offset < padded:
                raise ICEError("unexpected EOF: not enough bytes to read attribute value")
            attributes.append((kind, bytes(raw[offset : offset + length])))
            offset += padded

        self.method, self.message_class = _decode_type(message_type)
        self.transaction_id = bytes(raw[8:HEADER_SIZE])
        self.attributes = attributes
        return self


IPAddress = ipaddress.IPv4Address | ipaddress.IPv6Address


def _normalise_ip(ip) -> IPAddress:
    if not isinstance(ip, (ipaddress.IPv4Address, ipaddress.IPv6Address)):
        ip = ipaddress.ip_address(ip)
    if isinstance(ip, ipaddress.IPv6Address) and ip.ipv4_mapped is not None:
        return ip.ipv4_mapped
    return ip


def _xor_key(message: Message) -> bytes:
    return struct.pack("!I", MAGIC_COOKIE) + message.transaction_id


@dataclass
class XORMappedAddress:
    """The XOR-MAPPED-ADDRESS attribute: an IP address and port."""

    ip: IPAddress
    port: int

    def __post_init__(self) -> None:
        self.ip = _normalise_ip(self.ip)

    def add_to(self, message: Message) -> None:
        """Add this address as an attribute of ``message``."""
        packed = self.ip.packed
        family = _FAMILY_IPV4 if len(packed) == 4 else _FAMILY_IPV6
        xored = bytes(a ^ b for a, b in zip(packed, _xor_key(message)))
        value = struct.pack("!BBH", 0, family, (self.port ^ (MAGIC_COOKIE >> 16)) & 0xFFFF)
        message.add(ATTR_XOR_MAPPED_ADDRESS, value + xored)


def parse_xor_mapped_address(message: Message) -> XORMappedAddress:
    """Read the XOR-MAPPED-ADDRESS attribute from ``message``."""
    value = message.get(ATTR_XOR_MAPPED_ADDRESS)
    if len(value) < 4:
        raise ICEError("XOR-MAPPED-ADDRESS too short")
    _, family, xored_port = struct.unpack_from("!BBH", value)
    ip_len = {_FAMILY_IPV4: 4, _FAMILY_IPV6: 16}.get(family)
    if ip_len is None:
        raise ICEError("bad value %d for address family" % family)
    ip_bytes = value[4 : 4 + ip_len]
    if len(ip_bytes) != ip_len:
        raise ICEError("XOR-MAPPED-ADDRESS too short")
    ip = bytes(a ^ b for a, b in zip(ip_bytes, _xor_key(message)))
    return XORMappedAddress(ipaddress.ip_address(ip), xored_port ^ (MAGIC_COOKIE >> 16))


def build_binding_request() -> Message:
    """Return an encoded binding request with a fresh transaction id."""
    message = Message(method=METHOD_BINDING, message_class=CLASS_REQUEST)
    message.encode()
    return message


@dataclass(frozen=True)
class UseCandidateAttr:
    """The USE-CANDIDATE attribute."""

    def add_to(self, message: Message) -> None:
        """Add USE-CANDIDATE to ``message``."""
        message.add(ATTR_USE_CANDIDATE, b"")

    def is_set(self, message: Message) -> bool:
        """Whether ``message`` carries USE-CANDIDATE."""
        return message.contains(ATTR_USE_CANDIDATE)


def use_candidate() -> UseCandidateAttr:
    """Shorthand for ``UseCandidateAttr()``."""
    return UseCandidateAttr()