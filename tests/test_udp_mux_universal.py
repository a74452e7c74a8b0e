import socket
import threading
import time

import pytest

from icemux.errors import RelayNotSupportedError, XORMappedAddrTimeoutError
from icemux.stun import (
    ATTR_USERNAME,
    CLASS_REQUEST,
    METHOD_BINDING,
    Message,
    XORMappedAddress,
    decode_message,
)
from icemux.udp_mux_universal import UniversalUDPMuxDefault, UniversalUDPMuxParams

TEST_XOR_IP = "213.141.156.236"
TEST_XOR_PORT = 21254


@pytest.fixture
def mux():
    sock = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
    sock.bind(("127.0.0.1", 0))
    udp_mux = UniversalUDPMuxDefault(
        UniversalUDPMuxParams(udp_conn=sock, xor_mapped_addr_cache_ttl=0.5)
    )
    yield udp_mux
    udp_mux.close()


@pytest.fixture
def remote():
    sock = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
    sock.bind(("127.0.0.1", 0))
    sock.settimeout(2.0)
    yield sock
    sock.close()


def _answer(remote, mux, ufrag):
    msg = Message(method=METHOD_BINDING, message_class=CLASS_REQUEST)
    msg.add(ATTR_USERNAME, f"{ufrag}:otherufrag".encode())
    XORMappedAddress(TEST_XOR_IP, TEST_XOR_PORT).add_to(msg)
    remote.sendto(msg.encode(), mux.local_addr())


def test_default_cache_ttl_is_applied():
    sock = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
    sock.bind(("127.0.0.1", 0))
    with UniversalUDPMuxDefault(UniversalUDPMuxParams(udp_conn=sock)) as udp_mux:
        assert udp_mux.universal_params.xor_mapped_addr_cache_ttl == 25.0
        assert udp_mux.local_addr() == sock.getsockname()


def test_relayed_addr_is_not_supported(mux):
    with pytest.raises(RelayNotSupportedError):
        mux.get_relayed_addr(("127.0.0.1", 3478), 1.0)


def test_conn_for_url_is_keyed_by_ufrag_and_url(mux):
    url = "stun:stun.example.com:3478"
    conn = mux.get_conn_for_url("ufrag4", url, mux.local_addr())
    assert conn.key == "ufrag4" + url
    assert mux.get_conn("ufrag4" + url, mux.local_addr()) is conn
    assert mux.get_conn("ufrag4", mux.local_addr()) is not conn


def test_xor_mapped_address_discovery_cache_and_expiry(mux, remote):
    pkt_conn = mux.get_conn("ufrag4", mux.local_addr())
    result = {}

    def discover():
        try:
            result["addr"] = mux.get_xor_mapped_addr(remote.getsockname(), 2.0)
        except Exception as err:  # noqa: BLE001
            result["error"] = err

    worker = threading.Thread(target=discover)
    worker.start()

    request, sender = remote.recvfrom(8192)
    decoded = decode_message(request)
    assert decoded.method == METHOD_BINDING
    assert decoded.message_class == CLASS_REQUEST
    assert sender[1] == mux.local_addr()[1]

    _answer(remote, mux, "ufrag4")
    worker.join(3.0)
    assert result == {"addr": XORMappedAddress(TEST_XOR_IP, TEST_XOR_PORT)}

    # The cached address is returned without a new request.
    cached = mux.get_xor_mapped_addr(remote.getsockname(), 1.0)
    assert cached == XORMappedAddress(TEST_XOR_IP, TEST_XOR_PORT)
    remote.settimeout(0.2)
    with pytest.raises(TimeoutError):
        remote.recvfrom(8192)

    time.sleep(0.6)
    with pytest.raises(XORMappedAddrTimeoutError):
        mux.get_xor_mapped_addr(remote.getsockname(), 0.05)
    remote.settimeout(2.0)
    again, _ = remote.recvfrom(8192)
    assert decode_message(again).method == METHOD_BINDING
    pkt_conn.close()