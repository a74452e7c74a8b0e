# icemux

`icemux` runs many ICE sessions over a few shared sockets. Each session is
identified by its ufrag, the username fragment. The package uses only the
standard library. It provides:

- **TCP muxing** (`icemux.tcp_mux`). Connections carry RFC 4571 framing: a
  2-byte big-endian length comes before each packet. The USERNAME of the first
  STUN Binding request on a connection decides which session it joins.
- **UDP muxing** (`icemux.udp_mux`). Packets go to a session by remote address.
  A packet from an address not yet seen is routed by the USERNAME attribute of
  its STUN message. Anything else from an unknown address is dropped.
- **A small STUN codec** (`icemux.stun`).
- **TCP candidate types** (`icemux.tcptype`).

## TCP

```python
import socket
from icemux.tcp_mux import TCPMuxDefault, TCPMuxParams

listener = socket.create_server(("127.0.0.1", 0))
mux = TCPMuxDefault(TCPMuxParams(listener=listener, read_buffer_size=20))

conn = mux.get_conn_by_ufrag("myufrag", False, "127.0.0.1")
data, remote = conn.read_from()   # first STUN packet from the peer
conn.write_to(data, remote)       # echo it back, framed

mux.close()
```

### `TCPMuxParams` fields

- `listener`: the listening socket.
- `logger`: the logger to use. If not set, the `icemux` logger is used.
- `read_buffer_size`: how many received packets may wait in a queue.
- `write_buffer_size`: how writes are sent.
  - `0`, the default, sends straight to the socket.
  - A positive value queues writes for a background thread. Writes fail with
    `BufferError` once more than that many bytes are waiting.
- `first_stun_bind_timeout`: how long, in seconds, an accepted connection has to
  send its first packet before it is closed.
- `alive_duration_for_conn_from_stun`: how long, in seconds, a packet connection
  created from an incoming STUN request lives. Calling `get_conn_by_ufrag` for it
  stops the timer.

For both timeouts, `0` selects 30 seconds and a negative value turns the timeout
off.

### `TCPPacketConn`

`get_conn_by_ufrag` returns a `TCPPacketConn` (`icemux.tcp_packet_conn`). It
offers:

- `read_from()`
- `write_to(data, addr)`
- `close()`
- `is_closed()`
- `wait_closed(timeout)`

The module also has `read_streaming_packet(sock, max_size)` and
`write_streaming_packet(sock, data)` for RFC 4571 framing.

### Several TCP listeners

`icemux.tcp_mux_multi.MultiTCPMuxDefault(mux_a, mux_b, ...)` combines several
TCP muxes:

- `get_all_conns(ufrag, is_ipv6, local)` returns one packet connection per mux.
  If any mux fails, the whole call fails.
- `get_conn_by_ufrag` always uses the first mux.

## UDP

```python
import socket
from icemux.udp_mux import UDPMuxDefault, UDPMuxParams

sock = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
sock.bind(("127.0.0.1", 0))
mux = UDPMuxDefault(UDPMuxParams(udp_conn=sock))

conn = mux.get_conn("ufrag1", mux.local_addr())
conn.write_to(b"...", ("127.0.0.1", 5000))  # registers the remote address
data, remote = conn.read_from()
mux.close()
```

### Address checks

`get_conn` only accepts the mux's own local address. There is one exception: a
socket bound to an unspecified address such as `0.0.0.0` or `::`. For such a
socket:

- `get_listen_addresses()` lists local addresses with the socket's port.
- Those addresses come from `UDPMuxParams.local_addresses` when it is given.
- Otherwise they are found from the loopback addresses and the host name.

### `UDPMuxedConn`

Connections are `icemux.udp_muxed_conn.UDPMuxedConn` objects.

- `read_from(max_size)` raises `EOFError` once the connection is closed.
- `read_from` raises `ShortBufferError` for a packet larger than `max_size`, and
  that packet is dropped.

### Server-reflexive discovery

`icemux.udp_mux_universal.UniversalUDPMuxDefault` does server-reflexive
discovery on the shared socket.

- `get_xor_mapped_addr(server_addr, deadline)` sends a STUN Binding request and
  waits up to `deadline` seconds for the XOR-MAPPED-ADDRESS in the reply.
- The result is cached for `xor_mapped_addr_cache_ttl` seconds, 25 by default.
- `get_conn_for_url(ufrag, url, addr)` gives a connection unique to each
  ufrag/server pair.

### Several UDP sockets

`icemux.udp_mux_multi.MultiUDPMuxDefault(mux_a, mux_b, ...)` routes `get_conn`
to the mux that listens on the given address.

## STUN

`icemux.stun` provides:

- `Message`
- `decode_message`
- `is_message`
- `build_binding_request`
- `XORMappedAddress` with `xor_mapped_address_from`
- the USE-CANDIDATE attribute, through `use_candidate()`

## Errors

Failures raise subclasses of `icemux.errors.IceError`, for example:

- `ClosedPipeError` when a mux or connection is closed.
- `ShortBufferError` for packets that are too large.
- `InvalidAddressError` when an address does not belong to the mux.
- `NoTCPMuxAvailableError` and `NoUDPMuxAvailableError` when no mux can serve a
  request.
- `XORMappedAddrTimeoutError` when no STUN reply arrives in time.

STUN parsing errors raise `icemux.stun.StunError`, a `ValueError`.

## TCP candidate types

```python
from icemux.tcptype import TCPType, new_tcp_type

assert new_tcp_type("so") is TCPType.SIMULTANEOUS_OPEN
assert str(TCPType.PASSIVE) == "passive"
assert new_tcp_type("something else") is TCPType.UNSPECIFIED
```

## What this package does not do

The package only shares sockets between sessions. It does not provide:

- an ICE agent
- candidate gathering
- connectivity checks
- pair selection

It cannot obtain relayed (TURN) addresses:
`UniversalUDPMuxDefault.get_relayed_addr` always raises `RelayNotSupportedError`.

The STUN codec neither computes nor checks MESSAGE-INTEGRITY or FINGERPRINT.

There is no command-line tool.