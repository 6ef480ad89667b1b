import ipaddress
import socket
import threading
import time

import pytest

from iceconn.stun import ATTR_USERNAME, METHOD_BINDING, Message, XORMappedAddress, is_message
from iceconn.udp_mux_universal import UniversalUDPMuxDefault
from iceconn.udp_muxed_conn import RECEIVE_MTU
from iceconn.url import ICEError

XOR_IP = "213.141.156.236"
XOR_PORT = 21254


def udp_socket():
    sock = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
    sock.bind(("127.0.0.1", 0))
    sock.settimeout(2.0)
    return sock


def make_mux(ttl=25.0):
    sock = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
    sock.bind(("127.0.0.1", 0))
    return sock, UniversalUDPMuxDefault(sock, xor_mapped_addr_cache_ttl=ttl)


def discover(mux, remote):
    result = {}
    thread = threading.Thread(
        target=lambda: result.update(addr=mux.get_xor_mapped_addr(remote.getsockname(), 2.0))
    )
    thread.start()
    request, source = remote.recvfrom(RECEIVE_MTU)
    assert Message(raw=request).decode().method == METHOD_BINDING

    reply = Message()
    reply.add(ATTR_USERNAME, b"ufrag4:otherufrag")
    XORMappedAddress(XOR_IP, XOR_PORT).add_to(reply)
    remote.sendto(reply.encode(), source)
    thread.join(3)
    return result["addr"]


def test_discovers_and_caches_mapped_address():
    sock, mux = make_mux()
    remote = udp_socket()
    try:
        expected = XORMappedAddress(ipaddress.ip_address(XOR_IP), XOR_PORT)
        assert discover(mux, remote) == expected

        remote.settimeout(0.2)
        assert mux.get_xor_mapped_addr(remote.getsockname(), 1.0) == expected
        with pytest.raises(socket.timeout):
            remote.recvfrom(RECEIVE_MTU)
    finally:
        mux.close()
        sock.close()
        remote.close()


def test_expired_mapping_is_requested_again():
    sock, mux = make_mux(ttl=0.05)
    remote = udp_socket()
    try:
        assert discover(mux, remote).port == XOR_PORT
        time.sleep(0.1)
        with pytest.raises(ICEError):
            mux.get_xor_mapped_addr(remote.getsockname(), 0.05)
        request, _ = remote.recvfrom(RECEIVE_MTU)
        assert is_message(request)
    finally:
        mux.close()
        sock.close()
        remote.close()


def test_relayed_addr_unsupported():
    sock, mux = make_mux()
    try:
        with pytest.raises(ICEError):
            mux.get_relayed_addr(("127.0.0.1", 3478), 1.0)
    finally:
        mux.close()
        sock.close()


def test_conn_for_url():
    sock, mux = make_mux()
    try:
        conn = mux.get_conn_for_url("ufrag", "stun:example.com:3478", False)
        assert conn is mux.get_conn("ufragstun:example.com:3478", False)
        assert conn.key == "ufragstun:example.com:3478"
    finally:
        mux.close()
        sock.close()