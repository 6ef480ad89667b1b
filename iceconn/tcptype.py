"""ICE TCP candidate types as described in RFC 6544, section 4.5."""

from __future__ import annotations

import enum


class TCPType(enum.IntEnum):
    """Type of an ICE TCP candidate."""

    UNSPECIFIED = 0
    ACTIVE = 1
    PASSIVE = 2
    SIMULTANEOUS_OPEN = 3

    def __str__(self) -> str:
        return _NAMES[self]


_NAMES = {
    TCPType.UNSPECIFIED: "",
    TCPType.ACTIVE: "active",
    TCPType.PASSIVE: "passive",
    TCPType.SIMULTANEOUS_OPEN: "so",
}

_BY_NAME = {
    "active": TCPType.ACTIVE,
    "passive": TCPType.PASSIVE,
    "so": TCPType.SIMULTANEOUS_OPEN,
}


def new_tcp_type(value: str) -> TCPType:
    """Return the TCP type named by ``value`` (case-insensitive)."""
    return _BY_NAME.get(value.lower(), TCPType.UNSPECIFIED)