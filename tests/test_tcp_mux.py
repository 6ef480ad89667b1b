import socket

import pytest

from iceconn.stun import ATTR_USERNAME, CLASS_REQUEST, METHOD_BINDING, Message
from iceconn.tcp_mux import InvalidTCPMux, TCPMux, TCPMuxDefault
from iceconn.tcp_packet_conn import read_streaming_packet, write_streaming_packet
from iceconn.url import ICEError


@pytest.fixture
def mux():
    listener = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
    listener.bind(("127.0.0.1", 0))
    listener.listen(8)
    tcp_mux = TCPMuxDefault(listener, read_buffer_size=20)
    yield tcp_mux
    tcp_mux.close()


def _binding(username: bytes) -> bytes:
    message = Message(method=METHOD_BINDING, message_class=CLASS_REQUEST)
    message.add(ATTR_USERNAME, username)
    return message.encode()


def test_mux_types_implement_interface(mux):
    muxes: list[TCPMux] = [mux, InvalidTCPMux()]
    conn = muxes[0].get_conn_by_ufrag("iface", False)
    assert conn.closed is False
    with pytest.raises(ICEError):
        muxes[1].get_conn_by_ufrag("iface", False)


def test_recv(mux):
    assert mux.local_addr[0] == "127.0.0.1"
    client = socket.create_connection(mux.local_addr, timeout=5)
    try:
        raw = _binding(b"myufrag:otherufrag")
        n = write_streaming_packet(client, raw)
        pkt_conn = mux.get_conn_by_ufrag("myufrag", False)
        try:
            data, raddr = pkt_conn.read_from(n)
            assert raddr == client.getsockname()
            assert len(data) == n
            assert data == raw
        finally:
            pkt_conn.close()
    finally:
        client.close()


def test_reply_goes_back_over_stream(mux):
    client = socket.create_connection(mux.local_addr, timeout=5)
    try:
        write_streaming_packet(client, _binding(b"replyufrag:other"))
        pkt_conn = mux.get_conn_by_ufrag("replyufrag", False)
        _, raddr = pkt_conn.read_from()
        pkt_conn.write_to(b"answer", raddr)
        assert read_streaming_packet(client) == b"answer"
    finally:
        client.close()


def test_no_deadlock_when_closing_unused_packet_conn(mux):
    first = mux.get_conn_by_ufrag("test", False)
    assert mux.get_conn_by_ufrag("test", False) is first
    mux.close()
    assert first.closed is True
    with pytest.raises(BrokenPipeError):
        mux.get_conn_by_ufrag("test", False)


def test_ipv4_and_ipv6_conns_are_separate(mux):
    v4 = mux.get_conn_by_ufrag("same", False)
    v6 = mux.get_conn_by_ufrag("same", True)
    assert v4 is not v6
    mux.remove_conn_by_ufrag("same")
    assert v4.closed is True
    assert v6.closed is True
    assert mux.get_conn_by_ufrag("same", False) is not v4


def test_closing_packet_conn_removes_it(mux):
    conn = mux.get_conn_by_ufrag("gone", False)
    conn.close()
    assert mux.get_conn_by_ufrag("gone", False) is not conn


def test_non_stun_first_packet_closes_connection(mux):
    client = socket.create_connection(mux.local_addr, timeout=5)
    try:
        write_streaming_packet(client, b"not a stun message at all")
        assert client.recv(16) == b""
    finally:
        client.close()


def test_stun_without_username_closes_connection(mux):
    client = socket.create_connection(mux.local_addr, timeout=5)
    try:
        message = Message(method=METHOD_BINDING, message_class=CLASS_REQUEST)
        write_streaming_packet(client, message.encode())
        assert client.recv(16) == b""
    finally:
        client.close()


def test_invalid_mux_fails():
    invalid = InvalidTCPMux()
    with pytest.raises(ICEError):
        invalid.get_conn_by_ufrag("ufrag", False)
    with pytest.raises(ICEError):
        invalid.close()
    assert invalid.remove_conn_by_ufrag("ufrag") is None