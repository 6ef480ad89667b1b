import ipaddress
import socket
import threading

import pytest

from iceconn.stun import (
    CLASS_SUCCESS_RESPONSE,
    METHOD_BINDING,
    Message,
    XORMappedAddress,
    is_message,
    parse_xor_mapped_address,
)
from iceconn.url import ICEError, PortError
from iceconn.util import (
    addr_equal,
    get_xor_mapped_addr,
    is_supported_ipv6,
    listen_udp_in_port_range,
    stun_request,
)


def test_is_supported_ipv6():
    assert not is_supported_ipv6(bytes([0] * 12 + [1, 1, 1, 1]))
    assert not is_supported_ipv6("fec0::2333")
    assert not is_supported_ipv6("fe80::2333")
    assert not is_supported_ipv6("ff02::2333")
    assert is_supported_ipv6("2001::1")


def test_is_supported_ipv6_rejects_ipv4():
    assert not is_supported_ipv6("10.0.0.1")


def test_addr_equal():
    assert addr_equal(("udp", "10.0.0.1", 5000), ("udp4", "10.0.0.1", 5000))
    assert addr_equal(("udp", "10.0.0.1", 5000), ("udp", "::ffff:10.0.0.1", 5000))
    assert not addr_equal(("udp", "10.0.0.1", 5000), ("udp", "10.0.0.1", 5001))
    assert not addr_equal(("udp", "10.0.0.1", 5000), ("tcp", "10.0.0.1", 5000))
    assert not addr_equal(("udp", "10.0.0.1", 5000), ("udp", "10.0.0.2", 5000))
    assert not addr_equal(("ip", "10.0.0.1", 5000), ("ip", "10.0.0.1", 5000))
    assert not addr_equal("10.0.0.1:5000", ("udp", "10.0.0.1", 5000))


def _response_for(request_raw, ip, port, with_address=True):
    request = Message(raw=request_raw).decode()
    response = Message(
        method=request.method,
        message_class=CLASS_SUCCESS_RESPONSE,
        transaction_id=request.transaction_id,
    )
    if with_address:
        XORMappedAddress(ip, port).add_to(response)
    return response.encode()


def test_stun_request_with_callbacks():
    sent = []

    def write(data):
        sent.append(data)
        return len(data)

    def read(size):
        assert size == 1280
        return _response_for(sent[0], "203.0.113.7", 4444)

    response = stun_request(read, write)
    assert is_message(sent[0])
    assert response.method == METHOD_BINDING
    assert response.message_class == CLASS_SUCCESS_RESPONSE
    address = parse_xor_mapped_address(response)
    assert address.ip == ipaddress.ip_address("203.0.113.7")
    assert address.port == 4444


@pytest.fixture
def sockets():
    server = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
    server.bind(("127.0.0.1", 0))
    server.settimeout(5)
    client = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
    client.bind(("127.0.0.1", 0))
    yield server, client
    server.close()
    client.close()


def _serve_once(server, with_address=True):
    data, peer = server.recvfrom(2048)
    server.sendto(_response_for(data, peer[0], peer[1], with_address), peer)


def test_get_xor_mapped_addr(sockets):
    server, client = sockets
    worker = threading.Thread(target=_serve_once, args=(server,))
    worker.start()
    address = get_xor_mapped_addr(client, server.getsockname(), 2.0)
    worker.join()
    assert address.ip == ipaddress.ip_address("127.0.0.1")
    assert address.port == client.getsockname()[1]
    assert client.gettimeout() is None


def test_get_xor_mapped_addr_missing_attribute(sockets):
    server, client = sockets
    worker = threading.Thread(target=_serve_once, args=(server, False))
    worker.start()
    with pytest.raises(ICEError, match="XOR-MAPPED-ADDRESS"):
        get_xor_mapped_addr(client, server.getsockname(), 2.0)
    worker.join()


def test_get_xor_mapped_addr_timeout(sockets):
    server, client = sockets
    with pytest.raises(TimeoutError):
        get_xor_mapped_addr(client, server.getsockname(), 0.05)
    assert client.gettimeout() is None


def _free_port():
    probe = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
    probe.bind(("127.0.0.1", 0))
    port = probe.getsockname()[1]
    probe.close()
    return port


def test_listen_without_restriction():
    sock = listen_udp_in_port_range(0, 0, "127.0.0.1", 0)
    try:
        assert sock.getsockname()[0] == "127.0.0.1"
        assert sock.getsockname()[1] > 0
    finally:
        sock.close()


def test_listen_invalid_range():
    with pytest.raises(PortError):
        listen_udp_in_port_range(4999, 5000, "127.0.0.1", 0)


def test_listen_single_port_range():
    port = _free_port()
    sock = listen_udp_in_port_range(port, port, "127.0.0.1", 0)
    try:
        assert sock.getsockname()[1] == port
    finally:
        sock.close()


def test_listen_range_exhausted():
    busy = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
    busy.bind(("127.0.0.1", 0))
    port = busy.getsockname()[1]
    try:
        with pytest.raises(PortError):
            listen_udp_in_port_range(port, port, "127.0.0.1", 0)
    finally:
        busy.close()