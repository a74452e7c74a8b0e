"""UDP mux that also resolves server reflexive addresses over the shared socket."""

from __future__ import annotations

import dataclasses
import logging
import threading
import time
from dataclasses import dataclass, field

from .errors import (
    IceError,
    InvalidAddressError,
    NoXorAddrMappingError,
    RelayNotSupportedError,
    XORMappedAddrTimeoutError,
)
from .stun import (
    ATTR_XOR_MAPPED_ADDRESS,
    Message,
    StunError,
    XORMappedAddress,
    build_binding_request,
    decode_message,
    is_message,
    xor_mapped_address_from,
)
from .udp_mux import UDPMuxDefault, UDPMuxParams
from .udp_muxed_conn import UDPMuxedConn, ip_port

DEFAULT_XOR_MAPPED_ADDR_CACHE_TTL = 25.0


@dataclass
class UniversalUDPMuxParams:
    """Settings for UniversalUDPMuxDefault.

    A cache TTL of 0 selects the 25 second default.
    """

    udp_conn: object
    logger: logging.Logger | None = None
    xor_mapped_addr_cache_ttl: float = 0.0
    local_addresses: list[str] | None = None


@dataclass
class _XORMapped:
    expires_at: float
    addr: XORMappedAddress | None = None
    received: threading.Event = field(default_factory=threading.Event)

    def close_waiters(self) -> None:
        self.received.set()

    def pending(self) -> bool:
        return self.addr is None

    def expired(self) -> bool:
        return self.expires_at < time.monotonic()

    def set_addr(self, addr: XORMappedAddress) -> None:
        self.addr = addr
        self.close_waiters()


def _server_key(addr):
    try:
        return ip_port(str(addr[0]).split("%", 1)[0], addr[1])
    except (TypeError, IndexError) as err:
        raise InvalidAddressError(f"not a UDP address: {addr!r}") from err


class _STUNInspectingSocket:
    """Socket wrapper that records STUN server answers before the mux sees them."""

    def __init__(self, sock, mux: UniversalUDPMuxDefault, logger: logging.Logger):
        self._sock = sock
        self._mux = mux
        self._logger = logger

    @property
    def family(self):
        return getattr(self._sock, "family", None)

    def getsockname(self):
        return self._sock.getsockname()

    def settimeout(self, value) -> None:
        self._sock.settimeout(value)

    def sendto(self, data: bytes, addr) -> int:
        return self._sock.sendto(data, addr)

    def close(self) -> None:
        self._sock.close()

    def recvfrom(self, size: int):
        data, addr = self._sock.recvfrom(size)
        if is_message(data):
            self._inspect(data, addr)
        return data, addr

    def _inspect(self, data: bytes, addr) -> None:
        try:
            msg = decode_message(data)
        except StunError as err:
            self._logger.warning("failed to decode ICE from %s: %s", addr, err)
            return
        try:
            key = _server_key(addr)
        except InvalidAddressError:
            return
        if self._mux._is_xor_mapped_response(msg, key):
            try:
                self._mux._handle_xor_mapped_response(key, msg)
            except (IceError, StunError) as err:
                self._logger.debug("failed to get XOR-MAPPED-ADDRESS response: %s", err)


class UniversalUDPMuxDefault(UDPMuxDefault):
    """UDP mux for host and server reflexive candidates sharing one socket."""

    def __init__(self, params: UniversalUDPMuxParams):
        if params.xor_mapped_addr_cache_ttl == 0:
            params = dataclasses.replace(
                params, xor_mapped_addr_cache_ttl=DEFAULT_XOR_MAPPED_ADDR_CACHE_TTL
            )
        self.universal_params = params
        logger = params.logger or logging.getLogger("icemux")
        # One mapped address per STUN server, shared by every agent on the socket.
        self._xor_mapped: dict[tuple, _XORMapped] = {}
        self._xor_lock = threading.Lock()
        wrapped = _STUNInspectingSocket(params.udp_conn, self, logger)
        super().__init__(
            UDPMuxParams(
                udp_conn=wrapped, logger=logger, local_addresses=params.local_addresses
            )
        )

    def get_relayed_addr(self, turn_addr, deadline: float):
        """Relayed addresses are not supported by this mux."""
        raise RelayNotSupportedError("relayed addresses are not supported")

    def get_conn_for_url(self, ufrag: str, url: str, addr) -> UDPMuxedConn:
        """Return a packet connection unique to a ufrag and a STUN/TURN server URL."""
        return self.get_conn(f"{ufrag}{url}", addr)

    def _is_xor_mapped_response(self, msg: Message, key) -> bool:
        with self._xor_lock:
            known = key in self._xor_mapped
        return known and msg.contains(ATTR_XOR_MAPPED_ADDRESS)

    def _handle_xor_mapped_response(self, key, msg: Message) -> None:
        with self._xor_lock:
            entry = self._xor_mapped.get(key)
            if entry is None:
                raise NoXorAddrMappingError("no XOR address mapping for server")
            entry.set_addr(xor_mapped_address_from(msg))

    def get_xor_mapped_addr(self, server_addr, deadline: float) -> XORMappedAddress:
        """Return the mapped address seen by a STUN server, asking it if needed.

        Blocks for at most ``deadline`` seconds waiting for the answer.
        """
        key = _server_key(server_addr)
        with self._xor_lock:
            entry = self._xor_mapped.get(key)
            if entry is not None:
                if entry.expired():
                    entry.close_waiters()
                    del self._xor_mapped[key]
                elif not entry.pending():
                    return entry.addr

        try:
            received = self._write_stun(server_addr, key)
        except (OSError, StunError) as err:
            raise IceError(f"failed to send STUN message: {err}") from err

        if not received.wait(deadline):
            raise XORMappedAddrTimeoutError("timed out waiting for XOR-MAPPED-ADDRESS")
        with self._xor_lock:
            entry = self._xor_mapped.get(key)
            if entry is None or entry.addr is None:
                raise NoXorAddrMappingError("no XOR address mapping for server")
            return entry.addr

    def _write_stun(self, server_addr, key) -> threading.Event:
        with self._xor_lock:
            entry = self._xor_mapped.get(key)
            if entry is None:
                entry = _XORMapped(
                    expires_at=time.monotonic() + self.universal_params.xor_mapped_addr_cache_ttl
                )
                self._xor_mapped[key] = entry
            request = build_binding_request().encode()
            self._write_to(request, server_addr)
            return entry.received