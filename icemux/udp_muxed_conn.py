"""A logical packet connection on a shared UDP socket, selected by ufrag."""

from __future__ import annotations

import ipaddress
import logging
import threading
from collections import deque

from .errors import ClosedPipeError, InvalidAddressError, ShortBufferError
from .tcp_packet_conn import RECEIVE_MTU


def ip_port(host, port) -> tuple[ipaddress.IPv6Address, int]:
    """Build a hashable address key; IPv4 hosts are mapped into IPv6 form."""
    try:
        address = ipaddress.ip_address(str(host))
    except ValueError as err:
        raise InvalidAddressError(f"invalid IP address: {host!r}") from err
    if address.version == 4:
        address = ipaddress.IPv6Address(f"::ffff:{address}")
    try:
        port = int(port)
    except (TypeError, ValueError) as err:
        raise InvalidAddressError(f"invalid port: {port!r}") from err
    if not 0 <= port <= 0xFFFF:
        raise InvalidAddressError(f"port {port} is out of range")
    return address, port


class UDPMuxedConn:
    """Packets of one remote peer, as identified by its ufrag, on a shared UDP socket."""

    def __init__(self, mux, key: str, local_addr, logger: logging.Logger | None = None):
        self.key = key
        self._mux = mux
        self._local_addr = local_addr
        self._logger = logger or logging.getLogger("icemux")
        self._addresses: list[tuple[ipaddress.IPv6Address, int]] = []
        self._packets: deque[tuple[bytes, tuple]] = deque()
        self._cond = threading.Condition()
        self._closed = threading.Event()

    def __repr__(self) -> str:
        return f"UDPMuxedConn(key={self.key!r}, local_addr={self._local_addr!r})"

    def __enter__(self) -> UDPMuxedConn:
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()

    def read_from(self, max_size: int = RECEIVE_MTU) -> tuple[bytes, tuple]:
        """Block for the next packet; returns ``(data, remote_address)``.

        Raises EOFError once the connection is closed, and ShortBufferError
        (dropping the packet) when it is larger than ``max_size``.
        """
        with self._cond:
            while not self._packets:
                if self._closed.is_set():
                    raise EOFError("muxed connection is closed")
                self._cond.wait()
            data, addr = self._packets.popleft()
        if len(data) > max_size:
            raise ShortBufferError(f"packet of {len(data)} bytes exceeds limit of {max_size}")
        return data, addr

    def write_to(self, data: bytes, addr) -> int:
        """Send a packet through the mux, registering the remote address on first use."""
        if self.is_closed():
            raise ClosedPipeError("muxed connection is closed")
        try:
            host, port = addr[0], addr[1]
        except (TypeError, IndexError, KeyError) as err:
            raise InvalidAddressError(f"not a UDP address: {addr!r}") from err
        key = ip_port(host, port)
        if not self._contains_address(key):
            self._add_address(key)
        return self._mux._write_to(data, addr)

    def local_addr(self):
        """Return the local address of the shared socket."""
        return self._local_addr

    def close(self) -> None:
        """Close the connection and drop every queued packet."""
        with self._cond:
            if self._closed.is_set():
                return
            self._packets.clear()
            self._closed.set()
            self._cond.notify_all()

    def is_closed(self) -> bool:
        """Tell whether close() has been called."""
        return self._closed.is_set()

    def wait_closed(self, timeout: float | None = None) -> bool:
        """Wait until the connection is closed; returns whether it is."""
        return self._closed.wait(timeout)

    def addresses(self) -> list[tuple[ipaddress.IPv6Address, int]]:
        """Remote addresses this connection has written to."""
        with self._cond:
            return list(self._addresses)

    def write_packet(self, data: bytes, addr) -> None:
        """Queue an incoming packet for read_from()."""
        if len(data) > RECEIVE_MTU:
            raise ShortBufferError(f"packet of {len(data)} bytes exceeds {RECEIVE_MTU}")
        with self._cond:
            if self._closed.is_set():
                raise ClosedPipeError("muxed connection is closed")
            self._packets.append((bytes(data), addr))
            self._cond.notify_all()

    def remove_address(self, addr) -> None:
        """Forget a remote address."""
        with self._cond:
            self._addresses = [current for current in self._addresses if current != addr]

    def _contains_address(self, addr) -> bool:
        with self._cond:
            return addr in self._addresses

    def _add_address(self, addr) -> None:
        with self._cond:
            self._addresses.append(addr)
        self._mux._register_conn_for_address(self, addr)