import socket
import time

import pytest

from icemux.errors import ClosedPipeError
from icemux.stun import ATTR_USERNAME, Message
from icemux.tcp_mux import TCPMuxDefault, TCPMuxParams
from icemux.tcp_packet_conn import read_streaming_packet, write_streaming_packet


def _binding(username: str) -> bytes:
    msg = Message()
    msg.add(ATTR_USERNAME, username.encode())
    return msg.encode()


@pytest.fixture
def make_mux():
    muxes = []

    def factory(**kwargs):
        listener = socket.create_server(("127.0.0.1", 0))
        mux = TCPMuxDefault(TCPMuxParams(listener=listener, read_buffer_size=20, **kwargs))
        muxes.append(mux)
        return mux

    yield factory
    for mux in muxes:
        mux.close()


@pytest.fixture
def dial():
    clients = []

    def factory(addr):
        client = socket.create_connection(addr[:2], timeout=5)
        clients.append(client)
        return client

    yield factory
    for client in clients:
        client.close()


@pytest.mark.parametrize("buf_size", [0, 4 * 1024 * 1024])
def test_recv_and_echo(make_mux, dial, buf_size):
    mux = make_mux(write_buffer_size=buf_size)
    client = dial(mux.local_addr())
    raw = _binding("myufrag:otherufrag")
    n = write_streaming_packet(client, raw)
    assert n == len(raw)

    pkt_conn = mux.get_conn_by_ufrag("myufrag", False, "127.0.0.1")
    data, addr = pkt_conn.read_from()
    assert addr == client.getsockname()
    assert data == raw

    assert pkt_conn.write_to(data, client.getsockname()) == len(raw)
    echo = read_streaming_packet(client, len(raw))
    assert echo == raw
    pkt_conn.close()


def test_local_addr_is_listener_address(make_mux):
    mux = make_mux()
    host, port = mux.local_addr()
    assert host == "127.0.0.1"
    assert port > 0


def test_no_deadlock_when_closing_unused_packet_conn(make_mux):
    mux = make_mux()
    conn = mux.get_conn_by_ufrag("test", False, "127.0.0.1")
    assert conn.local_addr == ("127.0.0.1", mux.local_addr()[1])
    mux.close()
    assert conn.is_closed()
    with pytest.raises(ClosedPipeError):
        mux.get_conn_by_ufrag("test", False, "127.0.0.1")


def test_same_ufrag_returns_same_conn(make_mux):
    mux = make_mux()
    first = mux.get_conn_by_ufrag("abc", False, "127.0.0.1")
    second = mux.get_conn_by_ufrag("abc", False, "127.0.0.1")
    other = mux.get_conn_by_ufrag("abc", True, "127.0.0.1")
    assert first is second
    assert other is not first


def test_remove_conn_by_ufrag_closes_conn(make_mux):
    mux = make_mux()
    conn = mux.get_conn_by_ufrag("gone", False, "127.0.0.1")
    mux.remove_conn_by_ufrag("gone")
    assert conn.is_closed()
    fresh = mux.get_conn_by_ufrag("gone", False, "127.0.0.1")
    assert fresh is not conn
    assert not fresh.is_closed()


def test_closed_packet_conn_is_forgotten(make_mux):
    mux = make_mux()
    conn = mux.get_conn_by_ufrag("self", False, "127.0.0.1")
    conn.close()
    deadline = time.monotonic() + 5
    fresh = conn
    while fresh is conn and time.monotonic() < deadline:
        time.sleep(0.02)
        fresh = mux.get_conn_by_ufrag("self", False, "127.0.0.1")
    assert fresh is not conn


def test_first_packet_timeout(make_mux, dial):
    mux = make_mux(first_stun_bind_timeout=0.3)
    client = dial(mux.local_addr())
    client.settimeout(3)
    time.sleep(0.5)
    assert client.recv(1) == b""


def test_non_stun_first_packet_closes_connection(make_mux, dial):
    mux = make_mux()
    client = dial(mux.local_addr())
    write_streaming_packet(client, b"definitely not a stun message")
    client.settimeout(3)
    assert client.recv(1) == b""


def test_stun_without_username_closes_connection(make_mux, dial):
    mux = make_mux()
    client = dial(mux.local_addr())
    write_streaming_packet(client, Message().encode())
    client.settimeout(3)
    assert client.recv(1) == b""


def test_close_connection_from_stun_after_alive_timeout(make_mux, dial):
    mux = make_mux(alive_duration_for_conn_from_stun=0.5)
    client = dial(mux.local_addr())
    write_streaming_packet(client, _binding("myufrag:otherufrag"))
    time.sleep(0.8)
    client.settimeout(3)
    assert client.recv(1) == b""


def test_connection_kept_alive_when_used(make_mux, dial):
    mux = make_mux(alive_duration_for_conn_from_stun=0.5)
    client = dial(mux.local_addr())
    raw = _binding("myufrag2:otherufrag2")
    write_streaming_packet(client, raw)
    time.sleep(0.2)

    pkt_conn = mux.get_conn_by_ufrag("myufrag2", False, "127.0.0.1")
    time.sleep(1.0)

    client.settimeout(0.1)
    with pytest.raises(TimeoutError):
        client.recv(1024)

    data, addr = pkt_conn.read_from()
    assert addr == client.getsockname()
    assert data == raw
    pkt_conn.close()