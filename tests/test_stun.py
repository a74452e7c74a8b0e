import pytest

from icemux.stun import (
    ATTR_USERNAME,
    ATTR_XOR_MAPPED_ADDRESS,
    CLASS_SUCCESS_RESPONSE,
    METHOD_BINDING,
    Message,
    StunError,
    XORMappedAddress,
    build_binding_request,
    decode_message,
    is_message,
    use_candidate,
    xor_mapped_address_from,
)


def test_use_candidate_add_to():
    message = Message()
    assert not use_candidate().is_set(message)

    request = build_binding_request()
    use_candidate().add_to(request)
    decoded = decode_message(request.encode())
    assert use_candidate().is_set(decoded)


def test_binding_request_header_bytes():
    raw = build_binding_request().encode()
    assert raw[:2] == b"\x00\x01"
    assert raw[2:4] == b"\x00\x00"
    assert raw[4:8] == b"\x21\x12\xa4\x42"
    assert len(raw) == 20


def test_success_response_type_bytes():
    raw = Message(message_class=CLASS_SUCCESS_RESPONSE).encode()
    assert raw[:2] == b"\x01\x01"


def test_is_message():
    raw = build_binding_request().encode()
    assert is_message(raw)
    assert not is_message(b"x" * 20)
    assert not is_message(raw[:19])


def test_username_round_trip_with_padding():
    message = build_binding_request()
    message.add(ATTR_USERNAME, b"myufrag:otherufrag")
    raw = message.encode()
    assert len(raw) % 4 == 0
    decoded = decode_message(raw)
    assert decoded.method == METHOD_BINDING
    assert decoded.transaction_id == message.transaction_id
    assert decoded.get(ATTR_USERNAME) == b"myufrag:otherufrag"
    assert decoded.contains(ATTR_USERNAME)


def test_get_missing_attribute_raises():
    with pytest.raises(StunError):
        Message().get(ATTR_USERNAME)


def test_decode_rejects_short_and_truncated():
    with pytest.raises(StunError):
        decode_message(b"\x00\x01")
    message = build_binding_request()
    message.add(ATTR_USERNAME, b"abcd")
    raw = message.encode()
    with pytest.raises(StunError):
        decode_message(raw[:-2])


def test_decode_rejects_bad_cookie():
    raw = bytearray(build_binding_request().encode())
    raw[4] = 0
    with pytest.raises(StunError):
        decode_message(bytes(raw))


def test_xor_mapped_address_rfc5769_ipv4_value():
    message = Message(
        message_class=CLASS_SUCCESS_RESPONSE,
        transaction_id=bytes.fromhex("b7e7a701bc34d686fa87dfae"),
    )
    XORMappedAddress("192.0.2.1", 32853).add_to(message)
    assert message.get(ATTR_XOR_MAPPED_ADDRESS) == bytes.fromhex("0001a147e112a643")


@pytest.mark.parametrize(
    "ip, port",
    [("213.141.156.236", 21254), ("2001:db8::1", 40000)],
)
def test_xor_mapped_address_round_trip(ip, port):
    message = build_binding_request()
    XORMappedAddress(ip, port).add_to(message)
    decoded = decode_message(message.encode())
    assert xor_mapped_address_from(decoded) == XORMappedAddress(ip, port)


def test_xor_mapped_address_missing():
    with pytest.raises(StunError):
        xor_mapped_address_from(build_binding_request())