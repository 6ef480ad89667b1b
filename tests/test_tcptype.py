import pytest

from iceconn.tcptype import TCPType, new_tcp_type


def test_default_value_is_unspecified():
    assert TCPType(0) is TCPType.UNSPECIFIED


@pytest.mark.parametrize(
    "text, expected",
    [
        ("active", TCPType.ACTIVE),
        ("passive", TCPType.PASSIVE),
        ("so", TCPType.SIMULTANEOUS_OPEN),
        ("something else", TCPType.UNSPECIFIED),
        ("ACTIVE", TCPType.ACTIVE),
        ("So", TCPType.SIMULTANEOUS_OPEN),
    ],
)
def test_new_tcp_type(text, expected):
    assert new_tcp_type(text) is expected


@pytest.mark.parametrize(
    "tcp_type, expected",
    [
        (TCPType.UNSPECIFIED, ""),
        (TCPType.ACTIVE, "active"),
        (TCPType.PASSIVE, "passive"),
        (TCPType.SIMULTANEOUS_OPEN, "so"),
    ],
)
def test_str(tcp_type, expected):
    assert str(tcp_type) == expected


def test_unknown_value_rejected():
    with pytest.raises(ValueError):
        TCPType(-1)


def test_round_trip_through_name():
    for tcp_type in (TCPType.ACTIVE, TCPType.PASSIVE, TCPType.SIMULTANEOUS_OPEN):
        assert new_tcp_type(str(tcp_type)) is tcp_type