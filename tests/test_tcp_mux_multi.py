import socket

import pytest

from icemux.errors import ClosedPipeError, NoTCPMuxAvailableError
from icemux.stun import ATTR_USERNAME, Message
from icemux.tcp_mux import TCPMuxDefault, TCPMuxParams
from icemux.tcp_mux_multi import MultiTCPMuxDefault
from icemux.tcp_packet_conn import read_streaming_packet, write_streaming_packet


def _binding(username: str) -> bytes:
    msg = Message()
    msg.add(ATTR_USERNAME, username.encode())
    return msg.encode()


@pytest.fixture
def make_multi():
    multis = []

    def factory(count=3, **kwargs):
        muxes = [
            TCPMuxDefault(
                TCPMuxParams(
                    listener=socket.create_server(("127.0.0.1", 0)),
                    read_buffer_size=20,
                    **kwargs,
                )
            )
            for _ in range(count)
        ]
        multi = MultiTCPMuxDefault(*muxes)
        multis.append(multi)
        return multi, muxes

    yield factory
    for multi in multis:
        multi.close()


@pytest.mark.parametrize("buf_size", [0, 4 * 1024 * 1024])
def test_recv_on_every_mux(make_multi, buf_size):
    multi, muxes = make_multi(write_buffer_size=buf_size)
    pkt_conns = multi.get_all_conns("myufrag", False, "127.0.0.1")
    assert len(pkt_conns) == 3
    assert sorted(c.local_addr[1] for c in pkt_conns) == sorted(m.local_addr()[1] for m in muxes)

    raw = _binding("myufrag:otherufrag")
    for pkt_conn in pkt_conns:
        with socket.create_connection(pkt_conn.local_addr, timeout=5) as client:
            n = write_streaming_packet(client, raw)
            data, addr = pkt_conn.read_from()
            assert addr == client.getsockname()
            assert len(data) == n
            assert data == raw

            assert pkt_conn.write_to(data, client.getsockname()) == n
            assert read_streaming_packet(client, n) == raw
        pkt_conn.close()


def test_no_deadlock_when_closing_unused_packet_conn(make_multi):
    multi, _ = make_multi()
    conns = multi.get_all_conns("test", False, "127.0.0.1")
    assert len(conns) == 3
    multi.close()
    assert all(conn.is_closed() for conn in conns)
    with pytest.raises(ClosedPipeError):
        multi.get_all_conns("test", False, "127.0.0.1")


def test_get_conn_by_ufrag_uses_first_mux(make_multi):
    multi, muxes = make_multi()
    conn = multi.get_conn_by_ufrag("first", False, "127.0.0.1")
    assert conn.local_addr[1] == muxes[0].local_addr()[1]
    assert conn is muxes[0].get_conn_by_ufrag("first", False, "127.0.0.1")


def test_remove_conn_by_ufrag_removes_from_all(make_multi):
    multi, _ = make_multi()
    conns = multi.get_all_conns("drop", False, "127.0.0.1")
    multi.remove_conn_by_ufrag("drop")
    assert all(conn.is_closed() for conn in conns)


def test_empty_multi_mux_raises():
    multi = MultiTCPMuxDefault()
    with pytest.raises(NoTCPMuxAvailableError):
        multi.get_conn_by_ufrag("x", False, "127.0.0.1")
    with pytest.raises(NoTCPMuxAvailableError):
        multi.get_all_conns("x", False, "127.0.0.1")


def test_close_reraises_last_error():
    class Failing:
        def __init__(self, message):
            self.message = message
            self.closed = False

        def close(self):
            self.closed = True
            raise OSError(self.message)

    first, second = Failing("first"), Failing("second")
    multi = MultiTCPMuxDefault(first, second)
    with pytest.raises(OSError, match="second"):
        multi.close()
    assert first.closed and second.closed