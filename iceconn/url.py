"""STUN (RFC 7064) and TURN (RFC 7065) URLs."""

from __future__ import annotations

import enum
import re
import urllib.parse
from dataclasses import dataclass, field

UNKNOWN_TYPE = "Unknown"


class ICEError(Exception):
    """Base class of errors raised by this package."""


class SchemeTypeError(ICEError):
    """The URL scheme is not one of stun, stuns, turn or turns."""


class HostError(ICEError):
    """The URL has no host."""


class PortError(ICEError):
    """The port is missing, malformed or no port could be used."""


class STUNQueryError(ICEError):
    """A STUN URL carries a query."""


class InvalidQueryError(ICEError):
    """A TURN URL carries an unsupported query."""


class ProtoTypeError(ICEError):
    """The transport named in the query is unknown."""


class _MissingPortError(ICEError):
    pass


class SchemeType(enum.IntEnum):
    """Type of server a URL refers to."""

    UNKNOWN = 0
    STUN = 1
    STUNS = 2
    TURN = 3
    TURNS = 4

    def __str__(self) -> str:
        if self is SchemeType.UNKNOWN:
            return UNKNOWN_TYPE
        return self.name.lower()


class ProtoType(enum.IntEnum):
    """Transport protocol a URL uses."""

    UNKNOWN = 0
    UDP = 1
    TCP = 2

    def __str__(self) -> str:
        if self is ProtoType.UNKNOWN:
            return UNKNOWN_TYPE
        return self.name.lower()


_SCHEMES = {
    "stun": SchemeType.STUN,
    "stuns": SchemeType.STUNS,
    "turn": SchemeType.TURN,
    "turns": SchemeType.TURNS,
}

_PROTOS = {"udp": ProtoType.UDP, "tcp": ProtoType.TCP}

_DEFAULT_PORTS = {
    SchemeType.STUN: 3478,
    SchemeType.TURN: 3478,
    SchemeType.STUNS: 5349,
    SchemeType.TURNS: 5349,
}

_PORT_RE = re.compile(r"[+-]?[0-9]+")
_BAD_ESCAPE = re.compile(r"%(?![0-9A-Fa-f]{2})")


def new_scheme_type(raw: str) -> SchemeType:
    """Return the scheme type named by ``raw`` or ``SchemeType.UNKNOWN``."""
    return _SCHEMES.get(raw, SchemeType.UNKNOWN)


def new_proto_type(raw: str) -> ProtoType:
    """Return the protocol type named by ``raw`` or ``ProtoType.UNKNOWN``."""
    return _PROTOS.get(raw, ProtoType.UNKNOWN)


@dataclass
class URL:
    """A STUN or TURN server URL."""

    scheme: SchemeType
    host: str = ""
    port: int = 0
    username: str = ""
    password: str = field(default="", repr=False)
    proto: ProtoType = ProtoType.UNKNOWN

    def __str__(self) -> str:
        text = str(self.scheme) + ":" + _join_host_port(self.host, self.port)
        if self.scheme in (SchemeType.TURN, SchemeType.TURNS):
            text += "?transport=" + str(self.proto)
        return text

    def is_secure(self) -> bool:
        """Whether the scheme is a secure one."""
        return self.scheme in (SchemeType.STUNS, SchemeType.TURNS)


def parse_url(raw: str) -> URL:
    """Parse a STUN or TURN URL, filling in the default port and transport."""
    scheme_text, opaque, raw_query = _split_url(raw)
    scheme = new_scheme_type(scheme_text)
    if scheme is SchemeType.UNKNOWN:
        raise SchemeTypeError("unknown scheme type")

    try:
        host, raw_port = _split_host_port(opaque)
    except _MissingPortError:
        next_raw = str(scheme) + ":" + opaque + ":" + str(_DEFAULT_PORTS[scheme])
        if raw_query:
            next_raw += "?" + raw_query
        return parse_url(next_raw)

    if not host:
        raise HostError("invalid hostname")
    if not _PORT_RE.fullmatch(raw_port):
        raise PortError("invalid port")
    port = int(raw_port)

    if scheme in (SchemeType.STUN, SchemeType.STUNS):
        try:
            args = _parse_query(raw_query)
        except ValueError as err:
            raise STUNQueryError("queries not supported in stun address") from err
        if args:
            raise STUNQueryError("queries not supported in stun address")
        proto = ProtoType.UDP if scheme is SchemeType.STUN else ProtoType.TCP
    else:
        proto = _parse_proto(raw_query)
        if proto is ProtoType.UNKNOWN:
            proto = ProtoType.UDP if scheme is SchemeType.TURN else ProtoType.TCP

    return URL(scheme=scheme, host=host, port=port, proto=proto)


def _parse_proto(raw: str) -> ProtoType:
    try:
        args = _parse_query(raw)
    except ValueError as err:
        raise InvalidQueryError("invalid query") from err
    if len(args) > 1:
        raise InvalidQueryError("invalid query")

    transport = args.get("transport", [""])[0]
    if transport:
        proto = new_proto_type(transport)
        if proto is ProtoType.UNKNOWN:
            raise ProtoTypeError("invalid transport protocol type")
        return proto

    if args:
        raise InvalidQueryError("invalid query")
    return ProtoType.UNKNOWN


def _split_url(raw: str) -> tuple[str, str, str]:
    """Split a URL into its lower-cased scheme, opaque part and raw query."""
    if any(ord(c) < 0x20 or ord(c) == 0x7F for c in raw):
        raise ICEError("invalid control character in URL")
    raw = raw.partition("#")[0]
    scheme, rest = _get_scheme(raw)
    rest, _, query = rest.partition("?")
    if rest.startswith("/"):
        opaque = ""
    elif scheme:
        opaque = rest
    else:
        if ":" in rest.partition("/")[0]:
            raise ICEError("first path segment in URL cannot contain colon")
        opaque = ""
    return scheme.lower(), opaque, query


def _get_scheme(raw: str) -> tuple[str, str]:
    for i, c in enumerate(raw):
        if c.isascii() and c.isalpha():
            continue
        if c.isascii() and (c.isdigit() or c in "+-."):
            if i == 0:
                return "", raw
            continue
        if c == ":":
            if i == 0:
                raise ICEError("missing protocol scheme")
            return raw[:i], raw[i + 1 :]
        return "", raw
    return "", raw


def _split_host_port(hostport: str) -> tuple[str, str]:
    i = hostport.rfind(":")
    if i < 0:
        raise _MissingPortError("missing port in address")

    start, end_check = 0, 0
    if hostport.startswith("["):
        end = hostport.find("]")
        if end < 0:
            raise ICEError("missing ']' in address")
        if end + 1 == len(hostport):
            raise _MissingPortError("missing port in address")
        if end + 1 != i:
            if hostport[end + 1] == ":":
                raise ICEError("too many colons in address")
            raise _MissingPortError("missing port in address")
        host = hostport[1:end]
        start, end_check = 1, end + 1
    else:
        host = hostport[:i]
        if ":" in host:
            raise ICEError("too many colons in address")

    if "[" in hostport[start:]:
        raise ICEError("unexpected '[' in address")
    if "]" in hostport[end_check:]:
        raise ICEError("unexpected ']' in address")
    return host, hostport[i + 1 :]


def _join_host_port(host: str, port: int) -> str:
    if ":" in host:
        return "[" + host + "]:" + str(port)
    return host + ":" + str(port)


def _query_unescape(text: str) -> str:
    if _BAD_ESCAPE.search(text):
        raise ValueError("invalid URL escape in " + repr(text))
    return urllib.parse.unquote_plus(text)


def _parse_query(raw: str) -> dict[str, list[str]]:
    args: dict[str, list[str]] = {}
    for part in raw.split("&"):
        if ";" in part:
            raise ValueError("invalid semicolon separator in query")
        if not part:
            continue
        key, _, value = part.partition("=")
        args.setdefault(_query_unescape(key), []).append(_query_unescape(value))
    return args