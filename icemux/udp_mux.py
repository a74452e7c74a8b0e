"""Many ICE connections over a single UDP socket, told apart by ufrag."""

from __future__ import annotations

import ipaddress
import logging
import socket
import threading
from dataclasses import dataclass

from .errors import ClosedPipeError, InvalidAddressError, ShortBufferError
from .stun import ATTR_USERNAME, StunError, decode_message, is_message
from .tcp_packet_conn import RECEIVE_MTU
from .udp_muxed_conn import UDPMuxedConn, ip_port

_POLL_INTERVAL = 0.1


@dataclass
class UDPMuxParams:
    """Settings for UDPMuxDefault.

    ``local_addresses`` lists the IPs reported as listen addresses when the
    socket is bound to an unspecified address; by default they are discovered.
    """

    udp_conn: object
    logger: logging.Logger | None = None
    local_addresses: list[str] | None = None


def _addr_str(addr) -> str:
    host, port = str(addr[0]), addr[1]
    return f"[{host}]:{port}" if ":" in host else f"{host}:{port}"


def _strip_zone(host) -> str:
    return str(host).split("%", 1)[0]


def _is_ipv6_host(host) -> bool:
    address = ipaddress.ip_address(_strip_zone(host))
    return address.version == 6 and address.ipv4_mapped is None


def _discover_local_addresses() -> list[str]:
    found = ["127.0.0.1"]
    if socket.has_ipv6:
        found.append("::1")
    try:
        infos = socket.getaddrinfo(socket.gethostname(), None, 0, socket.SOCK_DGRAM)
    except OSError:
        infos = []
    for info in infos:
        host = str(info[4][0])
        if host not in found:
            found.append(host)
    return found


class UDPMuxDefault:
    """Dispatches packets of a shared UDP socket to per-ufrag packet connections."""

    def __init__(self, params: UDPMuxParams):
        self._params = params
        self._logger = params.logger or logging.getLogger("icemux")
        conn = params.udp_conn
        local = conn.getsockname()
        self._local_addr = (local[0], local[1]) if isinstance(local, tuple) else local
        self._local_addrs_for_unspecified: list[tuple[str, int]] = []
        if not isinstance(local, tuple) or len(local) < 2:
            self._logger.error("local address is not a UDP address, got %r", local)
        else:
            self._collect_unspecified_addresses(local)
        self._conn_string = (
            _addr_str(self._local_addr) if isinstance(local, tuple) else str(local)
        )

        self._conns_ipv4: dict[str, UDPMuxedConn] = {}
        self._conns_ipv6: dict[str, UDPMuxedConn] = {}
        self._lock = threading.RLock()
        self._address_map: dict[tuple, UDPMuxedConn] = {}
        self._address_lock = threading.Lock()
        self._closed = threading.Event()
        self._close_lock = threading.Lock()

        try:
            conn.settimeout(_POLL_INTERVAL)
        except (AttributeError, OSError) as err:
            self._logger.debug("could not set socket timeout: %s", err)
        threading.Thread(target=self._conn_worker, daemon=True).start()

    def _collect_unspecified_addresses(self, local) -> None:
        try:
            address = ipaddress.ip_address(_strip_zone(local[0]))
        except ValueError:
            self._logger.error("local address expected IPv4 or IPv6, got %r", local)
            return
        if not address.is_unspecified:
            return
        # Listening on an unspecified address still works, but listen addresses
        # then have to be enumerated from the local interfaces.
        self._logger.warning("UDP mux should not listen on an unspecified address")
        include_ipv6 = address.version == 6
        candidates = self._params.local_addresses
        if candidates is None:
            candidates = _discover_local_addresses()
        seen = set()
        for host in candidates:
            try:
                ip = ipaddress.ip_address(_strip_zone(host))
            except ValueError:
                self._logger.warning("ignoring invalid local address %r", host)
                continue
            if ip.version == 6 and not include_ipv6:
                continue
            entry = (str(host), local[1])
            if entry not in seen:
                seen.add(entry)
                self._local_addrs_for_unspecified.append(entry)

    def __enter__(self) -> UDPMuxDefault:
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()

    def local_addr(self):
        """Return the address the socket is bound to."""
        return self._local_addr

    def get_listen_addresses(self) -> list:
        """Return the addresses this mux listens on."""
        if self._local_addrs_for_unspecified:
            return list(self._local_addrs_for_unspecified)
        return [self._local_addr]

    def get_conn(self, ufrag: str, addr) -> UDPMuxedConn:
        """Return the packet connection for a ufrag, creating it if needed."""
        if not self._local_addrs_for_unspecified and self._conn_string != _addr_str(addr):
            raise InvalidAddressError(f"address {addr!r} does not belong to this mux")
        try:
            is_ipv6 = _is_ipv6_host(addr[0])
        except (ValueError, TypeError, IndexError):
            is_ipv6 = False
        with self._lock:
            if self.is_closed():
                raise ClosedPipeError("UDP mux is closed")
            table = self._conns_ipv6 if is_ipv6 else self._conns_ipv4
            conn = table.get(ufrag)
            if conn is not None:
                return conn
            conn = UDPMuxedConn(self, ufrag, self._local_addr, self._logger)
            table[ufrag] = conn
        threading.Thread(target=self._watch_conn, args=(conn, ufrag), daemon=True).start()
        return conn

    def _watch_conn(self, conn: UDPMuxedConn, ufrag: str) -> None:
        conn.wait_closed()
        self.remove_conn_by_ufrag(ufrag)

    def remove_conn_by_ufrag(self, ufrag: str) -> None:
        """Forget the packet connections of a ufrag and their remote addresses."""
        with self._lock:
            removed = [
                conn
                for conn in (self._conns_ipv4.pop(ufrag, None), self._conns_ipv6.pop(ufrag, None))
                if conn is not None
            ]
        if not removed:
            return
        with self._address_lock:
            for conn in removed:
                for addr in conn.addresses():
                    self._address_map.pop(addr, None)

    def is_closed(self) -> bool:
        """Tell whether the mux has been closed."""
        return self._closed.is_set()

    def close(self) -> None:
        """Close every packet connection and the socket."""
        with self._close_lock:
            if self._closed.is_set():
                return
            with self._lock:
                for conn in [*self._conns_ipv4.values(), *self._conns_ipv6.values()]:
                    conn.close()
                self._conns_ipv4 = {}
                self._conns_ipv6 = {}
                self._closed.set()
            try:
                self._params.udp_conn.close()
            except OSError as err:
                self._logger.debug("error closing UDP socket: %s", err)

    def _write_to(self, data: bytes, addr) -> int:
        host, port = str(addr[0]), int(addr[1])
        udp_conn = self._params.udp_conn
        if getattr(udp_conn, "family", None) == socket.AF_INET6:
            try:
                if ipaddress.ip_address(_strip_zone(host)).version == 4:
                    host = f"::ffff:{host}"
            except ValueError:
                pass
        return udp_conn.sendto(bytes(data), (host, port))

    def _register_conn_for_address(self, conn: UDPMuxedConn, addr) -> None:
        if self.is_closed():
            return
        with self._address_lock:
            existing = self._address_map.get(addr)
            if existing is not None:
                existing.remove_address(addr)
            self._address_map[addr] = conn
        self._logger.debug("registered %s for %s", addr, conn.key)

    def _conn_worker(self) -> None:
        udp_conn = self._params.udp_conn
        try:
            while True:
                try:
                    data, addr = udp_conn.recvfrom(RECEIVE_MTU)
                except TimeoutError:
                    if self.is_closed():
                        return
                    continue
                except OSError as err:
                    if not self.is_closed():
                        self._logger.error("failed to read UDP packet: %s", err)
                    return
                if self.is_closed() or not self._dispatch(data, addr):
                    return
        finally:
            self.close()

    def _dispatch(self, data: bytes, addr) -> bool:
        try:
            key = ip_port(addr[0], addr[1])
        except (InvalidAddressError, IndexError, TypeError):
            self._logger.error("failed to create an IP/port pair from %r", addr)
            return False
        with self._address_lock:
            destination = self._address_map.get(key)

        if destination is None and is_message(data):
            try:
                msg = decode_message(data)
            except StunError as err:
                self._logger.warning("failed to decode ICE from %s: %s", addr, err)
                return True
            try:
                username = msg.get(ATTR_USERNAME)
            except StunError:
                self._logger.warning("no username attribute in STUN message from %s", addr)
                return True
            ufrag = username.decode("utf-8", "replace").split(":")[0]
            try:
                is_ipv6 = _is_ipv6_host(addr[0])
            except ValueError:
                is_ipv6 = False
            with self._lock:
                table = self._conns_ipv6 if is_ipv6 else self._conns_ipv4
                destination = table.get(ufrag)

        if destination is None:
            self._logger.debug("dropping packet from %s", addr)
            return True
        try:
            destination.write_packet(data, (addr[0], addr[1]))
        except (ShortBufferError, ClosedPipeError) as err:
            self._logger.error("failed to write packet: %s", err)
        return True