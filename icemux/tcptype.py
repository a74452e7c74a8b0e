"""TCP candidate types as described in RFC 6544, section 4.5."""

from __future__ import annotations

import enum

_UNKNOWN = "Unknown"


class TCPType(enum.IntEnum):
    """Type of an ICE TCP candidate."""

    UNSPECIFIED = 0
    ACTIVE = 1
    PASSIVE = 2
    SIMULTANEOUS_OPEN = 3

    @classmethod
    def _missing_(cls, value):
        if isinstance(value, int):
            member = int.__new__(cls, value)
            member._name_ = "UNKNOWN"
            member._value_ = value
            return member
        return None

    def __str__(self) -> str:
        return _NAMES.get(int(self), _UNKNOWN)


_NAMES = {
    int(TCPType.UNSPECIFIED): "",
    int(TCPType.ACTIVE): "active",
    int(TCPType.PASSIVE): "passive",
    int(TCPType.SIMULTANEOUS_OPEN): "so",
}

_BY_NAME = {
    "active": TCPType.ACTIVE,
    "passive": TCPType.PASSIVE,
    "so": TCPType.SIMULTANEOUS_OPEN,
}


def new_tcp_type(value: str) -> TCPType:
    """Parse a TCP type name; unknown names give ``TCPType.UNSPECIFIED``."""
    return _BY_NAME.get(value.lower(), TCPType.UNSPECIFIED)