"""A small STUN (RFC 5389) message codec with the attributes ICE needs."""

from __future__ import annotations

import ipaddress
import os
import struct
from dataclasses import dataclass, field

MAGIC_COOKIE = 0x2112A442
HEADER_SIZE = 20
TRANSACTION_ID_SIZE = 12

METHOD_BINDING = 0x001

CLASS_REQUEST = 0
CLASS_INDICATION = 1
CLASS_SUCCESS_RESPONSE = 2
CLASS_ERROR_RESPONSE = 3

ATTR_USERNAME = 0x0006
ATTR_MESSAGE_INTEGRITY = 0x0008
ATTR_XOR_MAPPED_ADDRESS = 0x0020
ATTR_USE_CANDIDATE = 0x0025
ATTR_FINGERPRINT = 0x8028

_FAMILY_IPV4 = 0x01
_FAMILY_IPV6 = 0x02
_COOKIE_BYTES = struct.pack(">I", MAGIC_COOKIE)


class StunError(ValueError):
    """A STUN message is malformed or lacks a required attribute."""


def _pack_type(method: int, message_class: int) -> int:
    return (
        (method & 0x000F)
        | ((method & 0x0070) << 1)
        | ((method & 0x0F80) << 2)
        | ((message_class & 0x1) << 4)
        | ((message_class & 0x2) << 7)
    )


def _unpack_type(value: int) -> tuple[int, int]:
    method = (value & 0x000F) | ((value >> 1) & 0x0070) | ((value >> 2) & 0x0F80)
    message_class = ((value >> 4) & 0x1) | ((value >> 7) & 0x2)
    return method, message_class


def _padding(length: int) -> int:
    return (4 - length % 4) % 4


def _new_transaction_id() -> bytes:
    return os.urandom(TRANSACTION_ID_SIZE)


@dataclass
class Message:
    """A STUN message: method, class, transaction id and ordered attributes."""

    method: int = METHOD_BINDING
    message_class: int = CLASS_REQUEST
    transaction_id: bytes = field(default_factory=_new_transaction_id)
    attributes: list[tuple[int, bytes]] = field(default_factory=list)

    def add(self, attr_type: int, value: bytes | None) -> None:
        """Append an attribute."""
        self.attributes.append((attr_type, bytes(value or b"")))

    def get(self, attr_type: int) -> bytes:
        """Return the value of the first attribute of this type."""
        for current, value in self.attributes:
            if current == attr_type:
                return value
        raise StunError(f"attribute 0x{attr_type:04x} not found")

    def contains(self, attr_type: int) -> bool:
        """Tell whether an attribute of this type is present."""
        return any(current == attr_type for current, _ in self.attributes)

    def encode(self) -> bytes:
        """Serialise the message to its wire form."""
        if len(self.transaction_id) != TRANSACTION_ID_SIZE:
            raise StunError("transaction id must be 12 bytes")
        body = b"".join(
            struct.pack(">HH", attr_type, len(value)) + value + b"\x00" * _padding(len(value))
            for attr_type, value in self.attributes
        )
        header = struct.pack(
            ">HHI", _pack_type(self.method, self.message_class), len(body), MAGIC_COOKIE
        )
        return header + bytes(self.transaction_id) + body


def is_message(data: bytes) -> bool:
    """Tell whether the bytes look like a STUN message."""
    return len(data) >= HEADER_SIZE and bytes(data[4:8]) == _COOKIE_BYTES


def decode_message(raw: bytes) -> Message:
    """Parse a STUN message, raising StunError if it is malformed."""
    raw = bytes(raw)
    if len(raw) < HEADER_SIZE:
        raise StunError("message is shorter than a STUN header")
    msg_type, length, cookie = struct.unpack_from(">HHI", raw)
    if cookie != MAGIC_COOKIE:
        raise StunError(f"magic cookie 0x{cookie:08x} is invalid")
    end = HEADER_SIZE + length
    if len(raw) < end:
        raise StunError("message is truncated")
    attributes = []
    offset = HEADER_SIZE
    while offset < end:
        if end - offset < 4:
            raise StunError("attribute header is truncated")
        attr_type, attr_len = struct.unpack_from(">HH", raw, offset)
        offset += 4
        if offset + attr_len > end:
            raise StunError("attribute value is truncated")
        attributes.append((attr_type, raw[offset : offset + attr_len]))
        offset += attr_len + _padding(attr_len)
    method, message_class = _unpack_type(msg_type)
    return Message(method, message_class, raw[8:HEADER_SIZE], attributes)


def build_binding_request() -> Message:
    """Create a binding request with a fresh random transaction id."""
    return Message(method=METHOD_BINDING, message_class=CLASS_REQUEST)


@dataclass(frozen=True)
class XORMappedAddress:
    """The XOR-MAPPED-ADDRESS attribute value."""

    ip: str
    port: int

    def add_to(self, message: Message) -> None:
        """Append this address to a message, XOR-encoded."""
        address = ipaddress.ip_address(self.ip)
        family = _FAMILY_IPV4 if address.version == 4 else _FAMILY_IPV6
        key = _COOKIE_BYTES + bytes(message.transaction_id)
        xored = bytes(a ^ b for a, b in zip(address.packed, key))
        value = struct.pack(">BBH", 0, family, self.port ^ (MAGIC_COOKIE >> 16)) + xored
        message.add(ATTR_XOR_MAPPED_ADDRESS, value)


def xor_mapped_address_from(message: Message) -> XORMappedAddress:
    """Read the XOR-MAPPED-ADDRESS attribute of a message."""
    value = message.get(ATTR_XOR_MAPPED_ADDRESS)
    if len(value) < 4:
        raise StunError("XOR-MAPPED-ADDRESS is too short")
    _, family, xport = struct.unpack_from(">BBH", value)
    size = {_FAMILY_IPV4: 4, _FAMILY_IPV6: 16}.get(family)
    if size is None:
        raise StunError(f"unknown address family {family}")
    if len(value) < 4 + size:
        raise StunError("XOR-MAPPED-ADDRESS is too short")
    key = _COOKIE_BYTES + bytes(message.transaction_id)
    packed = bytes(a ^ b for a, b in zip(value[4 : 4 + size], key))
    return XORMappedAddress(str(ipaddress.ip_address(packed)), xport ^ (MAGIC_COOKIE >> 16))


class UseCandidateAttr:
    """The USE-CANDIDATE attribute, which carries no value."""

    def add_to(self, message: Message) -> None:
        """Add USE-CANDIDATE to the message."""
        message.add(ATTR_USE_CANDIDATE, None)

    def is_set(self, message: Message) -> bool:
        """Tell whether the message carries USE-CANDIDATE."""
        return message.contains(ATTR_USE_CANDIDATE)


def use_candidate() -> UseCandidateAttr:
    """Shorthand for UseCandidateAttr()."""
    return UseCandidateAttr()