"""Address helpers, STUN requests and UDP listening in a port range."""

from __future__ import annotations

import ipaddress
import logging
import random
import socket
from typing import Any, Callable

from .stun import Message, XORMappedAddress, build_binding_request, parse_xor_mapped_address
from .url import ICEError, PortError

_log = logging.getLogger(__name__)

_MAX_MESSAGE_SIZE = 1280


def _to_ip(ip: Any) -> ipaddress.IPv4Address | ipaddress.IPv6Address:
    if isinstance(ip, (ipaddress.IPv4Address, ipaddress.IPv6Address)):
        return ip
    return ipaddress.ip_address(ip)


def is_supported_ipv6(ip: Any) -> bool:
    """Whether ``ip`` is an IPv6 address usable as an ICE candidate (RFC 8445, 5.1.1.1)."""
    address = _to_ip(ip)
    if not isinstance(address, ipaddress.IPv6Address):
        return False
    packed = address.packed
    if not any(packed[:12]):
        return False  # IPv4-compatible IPv6
    if packed[0] == 0xFE and packed[1] & 0xC0 == 0xC0:
        return False  # site-local unicast
    mapped = address.ipv4_mapped
    if mapped is not None:
        if mapped in ipaddress.ip_network("169.254.0.0/16"):
            return False
        if mapped in ipaddress.ip_network("224.0.0.0/24"):
            return False
        return True
    if packed[0] == 0xFE and packed[1] & 0xC0 == 0x80:
        return False  # link-local unicast
    if packed[0] == 0xFF and packed[1] & 0x0F == 0x02:
        return False  # link-local multicast
    return True


def _parse_addr(addr: Any):
    if isinstance(addr, tuple):
        if len(addr) != 3:
            return None
        network, host, port = addr
    else:
        host = getattr(addr, "ip", None)
        port = getattr(addr, "port", None)
        network = getattr(addr, "network", "udp")
    if host is None or not isinstance(port, int) or not isinstance(network, str):
        return None
    network = network.lower()
    if network.startswith("tcp"):
        kind = "tcp"
    elif network.startswith("udp"):
        kind = "udp"
    else:
        return None
    try:
        ip = _to_ip(host)
    except ValueError:
        return None
    if isinstance(ip, ipaddress.IPv6Address) and ip.ipv4_mapped is not None:
        ip = ip.ipv4_mapped
    return kind, ip, port


def addr_equal(a: Any, b: Any) -> bool:
    """Whether two addresses share transport, IP and port.

    An address is a ``(network, host, port)`` tuple such as ``("udp", "10.0.0.1", 5000)``
    or an object with ``ip``, ``port`` and optionally ``network`` attributes.
    """
    parsed_a = _parse_addr(a)
    if parsed_a is None:
        return False
    parsed_b = _parse_addr(b)
    if parsed_b is None:
        return False
    return parsed_a == parsed_b


def stun_request(read: Callable[[int], bytes], write: Callable[[bytes], Any]) -> Message:
    """Send a binding request with ``write`` and decode the reply from ``read``.

    ``read`` receives the maximum message size and returns the bytes read.
    """
    request = build_binding_request()
    write(request.raw)
    data = read(_MAX_MESSAGE_SIZE)
    return Message(raw=bytes(data)).decode()


def get_xor_mapped_addr(sock: socket.socket, server_addr, deadline: float) -> XORMappedAddress:
    """Ask the STUN server at ``server_addr`` for this socket's mapped address.

    ``deadline`` is a timeout in seconds; zero or less means none is set.
    """
    previous = sock.gettimeout()
    if deadline > 0:
        sock.settimeout(deadline)
    try:
        response = stun_request(
            lambda size: sock.recvfrom(size)[0],
            lambda data: sock.sendto(data, server_addr),
        )
    finally:
        if deadline > 0:
            sock.settimeout(previous)
    try:
        return parse_xor_mapped_address(response)
    except (KeyError, ICEError) as err:
        raise ICEError("failed to get XOR-MAPPED-ADDRESS response: %s" % err) from err


def _bind_udp(host: str, port: int) -> socket.socket:
    family = socket.AF_INET
    if host:
        try:
            if isinstance(ipaddress.ip_address(host.partition("%")[0]), ipaddress.IPv6Address):
                family = socket.AF_INET6
        except ValueError:
            pass
    sock = socket.socket(family, socket.SOCK_DGRAM)
    try:
        sock.bind((host, port))
    except OSError:
        sock.close()
        raise
    return sock


def listen_udp_in_port_range(port_max: int, port_min: int, host: str = "", port: int = 0) -> socket.socket:
    """Bind a UDP socket on ``host``, within ``[port_min, port_max]`` unless ``port`` is given.

    A zero bound means 1 for the minimum and 65535 for the maximum; the search
    starts at a random port in the range and wraps around.
    """
    if port != 0 or (port_min == 0 and port_max == 0):
        return _bind_udp(host, port)
    low = port_min or 1
    high = port_max or 0xFFFF
    if low > high:
        raise PortError("invalid port")

    start = random.randint(low, high)
    current = start
    while True:
        try:
            return _bind_udp(host, current)
        except OSError as err:
            _log.debug("failed to listen %s:%d: %s", host, current, err)
        current += 1
        if current > high:
            current = low
        if current == start:
            break
    raise PortError("invalid port")