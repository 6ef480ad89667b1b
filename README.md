# iceconn

Building blocks for the transport side of Interactive Connectivity
Establishment (ICE), using only the standard library:

- `iceconn.url`: parse and format STUN/TURN server URLs (`parse_url`,
  `URL`, `SchemeType`, `ProtoType`, `new_scheme_type`, `new_proto_type`).
  Errors are subclasses of `ICEError` (`SchemeTypeError`, `HostError`,
  `PortError`, `STUNQueryError`, `InvalidQueryError`, `ProtoTypeError`).
- `iceconn.tcptype`: the ICE TCP candidate type (`TCPType`, `new_tcp_type`).
- `iceconn.stun`: a small STUN message codec (`Message`,
  `XORMappedAddress`, `parse_xor_mapped_address`, `build_binding_request`,
  `is_message`, `UseCandidateAttr`, `use_candidate`).
- `iceconn.util`: address helpers and a one-shot STUN binding request
  (`is_supported_ipv6`, `addr_equal`, `stun_request`,
  `get_xor_mapped_addr`, `listen_udp_in_port_range`).
- `iceconn.udp_muxed_conn`: `UDPAddr`, `UDPMuxedConn` and the address
  codec `encode_udp_addr` / `decode_udp_addr`.
- `iceconn.udp_mux` / `iceconn.udp_mux_universal`: share one UDP socket
  between many logical connections, each keyed by its ICE username
  fragment (ufrag). `UniversalUDPMuxDefault` also asks STUN servers for
  the socket's mapped address and caches the answer.
- `iceconn.tcp_packet_conn` / `iceconn.tcp_mux`: accept ICE-TCP
  connections framed with a 2-byte length prefix (RFC 4571) and group
  them by ufrag into packet-style connections.

## Installation

```
pip install iceconn
```

## Parsing a server URL

```python
from iceconn.url import parse_url

url = parse_url("turns:turn.example.com")
print(url)              # turns:turn.example.com:5349?transport=tcp
print(url.is_secure())  # True
```

When no port is given, 3478 is used for `stun`/`turn` and 5349 for
`stuns`/`turns`. STUN URLs reject any query string; TURN URLs accept only
`?transport=udp` or `?transport=tcp`.

## Multiplexing UDP

```python
import socket
from iceconn.udp_mux import UDPMuxDefault

sock = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
sock.bind(("0.0.0.0", 0))
mux = UDPMuxDefault(sock)

conn = mux.get_conn("myufrag", False)
data, addr = conn.read_from(1500)
conn.write_to(b"reply", addr)

mux.close()
```

A worker thread reads the socket. A packet from an address the mux has not
seen is delivered only if it is a STUN message whose USERNAME attribute
begins with `myufrag:`; once `conn` has written to an address, everything
from that address goes to `conn`. Other packets are dropped. `read_from`
blocks and raises `EOFError` after the connection is closed; `get_conn`
on a closed mux raises `BrokenPipeError`.

## Server reflexive addresses

```python
from iceconn.udp_mux_universal import UniversalUDPMuxDefault

mux = UniversalUDPMuxDefault(sock, xor_mapped_addr_cache_ttl=25.0)
mapped = mux.get_xor_mapped_addr(("192.0.2.1", 3478), deadline=1.0)
print(mapped.ip, mapped.port)
```

A cached answer younger than the TTL is returned at once; otherwise a
binding request is sent and the call waits up to `deadline` seconds,
raising `ICEError` on timeout. `get_conn_for_url(ufrag, url, is_ipv6)`
gives a separate connection per ufrag and server URL.

## Multiplexing TCP

```python
import socket
from iceconn.tcp_mux import TCPMuxDefault

listener = socket.create_server(("127.0.0.1", 0))
mux = TCPMuxDefault(listener, read_buffer_size=20)
conn = mux.get_conn_by_ufrag("myufrag", False)
data, remote = conn.read_from()
conn.write_to(b"reply", remote)
mux.close()
```

Each accepted stream must start with a STUN binding message carrying a
USERNAME; its ufrag decides which `TCPPacketConn` the stream joins.
`read_streaming_packet` and `write_streaming_packet` handle the framing
directly. `InvalidTCPMux` is a stand-in whose operations raise `ICEError`.

## What is not included

There is no ICE agent: no candidate gathering, connectivity checks,
pair selection or connection state. There is no TURN client;
`UniversalUDPMuxDefault.get_relayed_addr` always raises `ICEError`.
The package has no command-line program.

## Running the tests

```
pip install -e ".[test]"
pytest
```