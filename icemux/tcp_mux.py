"""Multiplexes accepted TCP connections into packet connections grouped by ufrag."""

from __future__ import annotations

import dataclasses
import ipaddress
import logging
import select
import socket
import threading
from dataclasses import dataclass

from .errors import ClosedPipeError, IceError, ShortBufferError, TransportAddressError
from .stun import ATTR_USERNAME, METHOD_BINDING, StunError, decode_message
from .tcp_packet_conn import TCPPacketConn, read_streaming_packet

DEFAULT_FIRST_STUN_BIND_TIMEOUT = 30.0
DEFAULT_ALIVE_DURATION_FOR_CONN_FROM_STUN = 30.0

_FIRST_PACKET_SIZE = 512
_POLL_INTERVAL = 0.1


@dataclass
class TCPMuxParams:
    """Settings for TCPMuxDefault.

    ``write_buffer_size`` of 0 means writes go straight to the socket.
    A timeout of 0 selects the 30 second default; a negative one disables it.
    """

    listener: socket.socket
    logger: logging.Logger | None = None
    read_buffer_size: int = 0
    write_buffer_size: int = 0
    first_stun_bind_timeout: float = 0.0
    alive_duration_for_conn_from_stun: float = 0.0


class _TaskGroup:
    """Runs daemon threads and lets a caller wait for all of them to finish."""

    def __init__(self) -> None:
        self._cond = threading.Condition()
        self._count = 0

    def spawn(self, target, *args) -> None:
        with self._cond:
            self._count += 1

        def run() -> None:
            try:
                target(*args)
            finally:
                with self._cond:
                    self._count -= 1
                    self._cond.notify_all()

        threading.Thread(target=run, daemon=True).start()

    def wait(self) -> None:
        with self._cond:
            while self._count:
                self._cond.wait()


def _parse_ip(value) -> ipaddress.IPv4Address | ipaddress.IPv6Address:
    address = ipaddress.ip_address(str(value))
    if address.version == 6 and address.ipv4_mapped is not None:
        return address.ipv4_mapped
    return address


def _ip_key(local) -> str:
    return str(_parse_ip(local))


def _is_ipv6(host: str) -> bool:
    return _parse_ip(str(host).split("%", 1)[0]).version == 6


def _close_socket(conn) -> None:
    try:
        conn.shutdown(socket.SHUT_RDWR)
    except OSError:
        pass
    conn.close()


class TCPMuxDefault:
    """Accepts TCP connections and groups them by the ufrag of their first STUN request."""

    def __init__(self, params: TCPMuxParams):
        if params.first_stun_bind_timeout == 0:
            params = dataclasses.replace(
                params, first_stun_bind_timeout=DEFAULT_FIRST_STUN_BIND_TIMEOUT
            )
        if params.alive_duration_for_conn_from_stun == 0:
            params = dataclasses.replace(
                params,
                alive_duration_for_conn_from_stun=DEFAULT_ALIVE_DURATION_FOR_CONN_FROM_STUN,
            )
        self._params = params
        self._logger = params.logger or logging.getLogger("icemux")
        self._closed = False
        self._conns_ipv4: dict[str, dict[str, TCPPacketConn]] = {}
        self._conns_ipv6: dict[str, dict[str, TCPPacketConn]] = {}
        self._lock = threading.RLock()
        self._tasks = _TaskGroup()
        self._tasks.spawn(self._accept_loop)

    def __enter__(self) -> TCPMuxDefault:
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()

    def local_addr(self):
        """Return the address the listener is bound to."""
        return self._params.listener.getsockname()

    def _accept_loop(self) -> None:
        listener = self._params.listener
        try:
            self._logger.info("listening TCP on %s", self.local_addr())
        except OSError:
            return
        while not self._closed:
            try:
                ready, _, _ = select.select([listener], [], [], _POLL_INTERVAL)
                if not ready:
                    continue
                conn, _ = listener.accept()
            except (OSError, ValueError) as err:
                if not self._closed:
                    self._logger.info("error accepting connection: %s", err)
                return
            self._tasks.spawn(self._handle_conn, conn)

    def get_conn_by_ufrag(self, ufrag: str, is_ipv6: bool, local) -> TCPPacketConn:
        """Return the packet connection for a ufrag and local IP, creating it if needed."""
        with self._lock:
            if self._closed:
                raise ClosedPipeError("TCP mux is closed")
            conn = self._get_conn(ufrag, is_ipv6, local)
            if conn is not None:
                conn.clear_alive_timer()
                return conn
            return self._create_conn(ufrag, is_ipv6, local, from_stun=False)

    def _table(self, is_ipv6: bool) -> dict[str, dict[str, TCPPacketConn]]:
        return self._conns_ipv6 if is_ipv6 else self._conns_ipv4

    def _get_conn(self, ufrag: str, is_ipv6: bool, local) -> TCPPacketConn | None:
        conns = self._table(is_ipv6).get(ufrag)
        if conns is None:
            return None
        return conns.get(_ip_key(local))

    def _create_conn(self, ufrag: str, is_ipv6: bool, local, from_stun: bool) -> TCPPacketConn:
        addr = self.local_addr()
        if not isinstance(addr, tuple) or len(addr) < 2:
            raise TransportAddressError("failed to get local transport address")
        key = _ip_key(local)
        alive = self._params.alive_duration_for_conn_from_stun if from_stun else 0.0
        conn = TCPPacketConn(
            (key, addr[1]),
            logger=self._logger,
            read_buffer=self._params.read_buffer_size,
            write_buffer=self._params.write_buffer_size,
            alive_duration=alive,
        )
        self._table(is_ipv6).setdefault(ufrag, {})[key] = conn
        self._tasks.spawn(self._watch_conn, conn, ufrag, key)
        return conn

    def _watch_conn(self, conn: TCPPacketConn, ufrag: str, key: str) -> None:
        conn.wait_closed()
        self._remove_conn_by_ufrag_and_local_host(ufrag, key)

    def _close_and_log(self, closer) -> None:
        try:
            closer.close()
        except (OSError, IceError) as err:
            self._logger.warning("error closing connection: %s", err)

    def _reject(self, conn, reason: str, *args) -> None:
        self._close_and_log(_SocketCloser(conn))
        self._logger.warning(reason, *args)

    def _handle_conn(self, conn) -> None:
        try:
            remote = conn.getpeername()
            local = conn.getsockname()
        except OSError as err:
            self._reject(conn, "failed to get addresses of accepted connection: %s", err)
            return

        timeout = self._params.first_stun_bind_timeout
        if timeout > 0:
            try:
                conn.settimeout(timeout)
            except OSError as err:
                self._logger.warning("failed to set read deadline for %s: %s", remote, err)
        try:
            data = read_streaming_packet(conn, _FIRST_PACKET_SIZE)
        except ShortBufferError as err:
            self._reject(conn, "buffer too small for first packet from %s: %s", remote, err)
            return
        except (OSError, EOFError) as err:
            self._reject(conn, "error reading first packet from %s: %s", remote, err)
            return
        try:
            conn.settimeout(None)
        except OSError as err:
            self._logger.warning("failed to reset read deadline for %s: %s", remote, err)

        try:
            msg = decode_message(data)
        except StunError as err:
            self._reject(conn, "failed to decode ICE from %s to %s: %s", remote, local, err)
            return
        if msg.method != METHOD_BINDING:
            self._reject(conn, "not a STUN message from %s to %s", remote, local)
            return
        for attr_type, value in msg.attributes:
            self._logger.debug("message attribute: 0x%04x %r", attr_type, value)
        try:
            username = msg.get(ATTR_USERNAME)
        except StunError:
            self._reject(conn, "no username attribute in STUN message from %s to %s", remote, local)
            return

        ufrag = username.decode("utf-8", "replace").split(":")[0]
        self._logger.debug("ufrag: %s", ufrag)
        try:
            is_ipv6 = _is_ipv6(remote[0])
        except ValueError:
            self._reject(conn, "failed to get host in STUN message from %s to %s", remote, local)
            return

        with self._lock:
            if self._closed:
                self._reject(conn, "TCP mux closed while handling connection from %s", remote)
                return
            packet_conn = self._get_conn(ufrag, is_ipv6, local[0])
            if packet_conn is None:
                try:
                    packet_conn = self._create_conn(ufrag, is_ipv6, local[0], from_stun=True)
                except (IceError, ValueError) as err:
                    self._reject(conn, "failed to create packet conn for %s: %s", remote, err)
                    return

        try:
            packet_conn.add_conn(conn, data)
        except IceError as err:
            self._reject(conn, "error adding conn from %s to %s: %s", remote, local, err)

    def close(self) -> None:
        """Close every packet connection and the listener, then wait for the workers."""
        with self._lock:
            self._closed = True
            conns = [
                conn
                for table in (self._conns_ipv4, self._conns_ipv6)
                for by_ip in table.values()
                for conn in by_ip.values()
            ]
            for conn in conns:
                self._close_and_log(conn)
            self._conns_ipv4 = {}
            self._conns_ipv6 = {}
            try:
                self._params.listener.close()
            finally:
                pass
        self._tasks.wait()

    def remove_conn_by_ufrag(self, ufrag: str) -> None:
        """Close and forget every packet connection of a ufrag."""
        with self._lock:
            removed = [
                conn
                for table in (self._conns_ipv4, self._conns_ipv6)
                for conn in table.pop(ufrag, {}).values()
            ]
        # Closing happens outside the lock so a blocking close cannot stall the mux.
        for conn in removed:
            self._close_and_log(conn)

    def _remove_conn_by_ufrag_and_local_host(self, ufrag: str, key: str) -> None:
        removed = []
        with self._lock:
            for table in (self._conns_ipv4, self._conns_ipv6):
                conns = table.get(ufrag)
                if conns is not None and key in conns:
                    removed.append(conns.pop(key))
                    if not conns:
                        del table[ufrag]
        for conn in removed:
            self._close_and_log(conn)


class _SocketCloser:
    def __init__(self, conn) -> None:
        self._conn = conn

    def close(self) -> None:
        _close_socket(self._conn)