"""Packet-oriented view over one or more RFC 4571 framed TCP connections."""

from __future__ import annotations

import errno
import logging
import socket
import struct
import threading
from collections import deque

from .errors import ClosedPipeError, ConnectionAddrAlreadyExistsError, ShortBufferError

RECEIVE_MTU = 8192

_HEADER = struct.Struct(">H")


def _recv_exact(sock, size: int) -> bytes:
    buf = bytearray()
    while len(buf) < size:
        chunk = sock.recv(size - len(buf))
        if not chunk:
            raise EOFError("connection closed by peer")
        buf.extend(chunk)
    return bytes(buf)


def read_streaming_packet(sock, max_size: int) -> bytes:
    """Read one length-prefixed packet (RFC 4571) from a stream socket."""
    (length,) = _HEADER.unpack(_recv_exact(sock, _HEADER.size))
    if length > max_size:
        raise ShortBufferError(f"packet of {length} bytes exceeds limit of {max_size}")
    return _recv_exact(sock, length)


def write_streaming_packet(sock, data: bytes) -> int:
    """Write one length-prefixed packet; returns the payload size."""
    if len(data) > 0xFFFF:
        raise ValueError("packet is too large for a 16-bit length header")
    sock.sendall(_HEADER.pack(len(data)) + bytes(data))
    return len(data)


def _addr_key(addr) -> tuple[str, int]:
    return str(addr[0]), int(addr[1])


def _close_conn(conn) -> None:
    try:
        conn.shutdown(socket.SHUT_RDWR)
    except OSError:
        pass
    conn.close()


def _is_closure(err: BaseException) -> bool:
    return isinstance(err, EOFError) or (
        isinstance(err, OSError) and err.errno == errno.EBADF
    )


class _BufferedConn:
    """Socket wrapper whose writes are queued and sent by a background thread."""

    def __init__(self, sock, limit: int, logger: logging.Logger):
        self._sock = sock
        self._limit = limit
        self._logger = logger
        self._queue: deque[bytes] = deque()
        self._size = 0
        self._cond = threading.Condition()
        self._closed = False
        self._thread = threading.Thread(target=self._write_loop, daemon=True)
        self._thread.start()

    def recv(self, size: int) -> bytes:
        return self._sock.recv(size)

    def getpeername(self):
        return self._sock.getpeername()

    def sendall(self, data: bytes) -> None:
        with self._cond:
            if self._closed:
                raise ClosedPipeError("buffered connection is closed")
            if self._limit > 0 and self._size + len(data) > self._limit:
                raise BufferError("write buffer is full")
            self._queue.append(bytes(data))
            self._size += len(data)
            self._cond.notify_all()

    def _write_loop(self) -> None:
        while True:
            with self._cond:
                while not self._queue and not self._closed:
                    self._cond.wait()
                if self._closed:
                    return
                data = self._queue.popleft()
                self._size -= len(data)
            try:
                self._sock.sendall(data)
            except OSError as err:
                self._logger.warning("failed to write: %s", err)

    def shutdown(self, how: int) -> None:
        self._sock.shutdown(how)

    def close(self) -> None:
        with self._cond:
            self._closed = True
            self._cond.notify_all()
        _close_conn(self._sock)


class TCPPacketConn:
    """Groups TCP connections for one ufrag and exposes them as a packet connection."""

    def __init__(
        self,
        local_addr,
        logger: logging.Logger | None = None,
        read_buffer: int = 0,
        write_buffer: int = 0,
        alive_duration: float = 0.0,
    ):
        self.local_addr = local_addr
        self._logger = logger or logging.getLogger("icemux")
        self._write_buffer = write_buffer
        self._capacity = max(1, read_buffer)
        self._conns: dict[tuple[str, int], object] = {}
        self._lock = threading.Lock()
        self._packets: deque = deque()
        self._cond = threading.Condition()
        self._closed = threading.Event()
        self._threads: list[threading.Thread] = []
        self._alive_timer: threading.Timer | None = None
        if alive_duration > 0:
            self._alive_timer = threading.Timer(alive_duration, self._expire)
            self._alive_timer.daemon = True
            self._alive_timer.start()

    def __repr__(self) -> str:
        return f"TCPPacketConn(local_addr={self.local_addr!r})"

    def __enter__(self) -> TCPPacketConn:
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()

    def _expire(self) -> None:
        self._logger.warning("closing TCP packet conn after alive timeout")
        self.close()

    def clear_alive_timer(self) -> None:
        """Stop the timer that closes an unused connection."""
        with self._lock:
            if self._alive_timer is not None:
                self._alive_timer.cancel()

    def add_conn(self, conn, first_packet: bytes | None = None) -> None:
        """Take over a TCP connection; ``first_packet`` is delivered before anything read."""
        key = _addr_key(conn.getpeername())
        self._logger.info("added connection from %s to %s", key, self.local_addr)
        with self._lock:
            if self._closed.is_set():
                raise ClosedPipeError("packet conn is closed")
            if key in self._conns:
                raise ConnectionAddrAlreadyExistsError(
                    f"connection address already exists: {key[0]}:{key[1]}"
                )
            if self._write_buffer > 0:
                conn = _BufferedConn(conn, self._write_buffer, self._logger)
            self._conns[key] = conn
            thread = threading.Thread(
                target=self._serve, args=(conn, key, first_packet), daemon=True
            )
            self._threads = [t for t in self._threads if t.is_alive()]
            self._threads.append(thread)
            thread.start()

    def _serve(self, conn, key, first_packet) -> None:
        if first_packet is not None and not self._deliver((bytes(first_packet), key, None)):
            return
        self._read_loop(conn, key)

    def _read_loop(self, conn, key) -> None:
        while True:
            try:
                data = read_streaming_packet(conn, RECEIVE_MTU)
            except (OSError, EOFError, ShortBufferError) as err:
                self._logger.warning("failed to read streaming packet: %s", err)
                last = self._remove_conn(key, conn)
                # Closure is reported only when no other connection remains.
                if last or not _is_closure(err):
                    self._deliver((b"", key, err))
                return
            self._deliver((data, key, None))

    def _deliver(self, packet) -> bool:
        with self._cond:
            while len(self._packets) >= self._capacity and not self._closed.is_set():
                self._cond.wait()
            if self._closed.is_set():
                return False
            self._packets.append(packet)
            self._cond.notify_all()
            return True

    def _close_and_log(self, conn) -> None:
        try:
            _close_conn(conn)
        except OSError as err:
            self._logger.warning("error closing connection: %s", err)

    def _remove_conn(self, key, conn) -> bool:
        with self._lock:
            self._close_and_log(conn)
            self._conns.pop(key, None)
            return not self._conns

    def read_from(self) -> tuple[bytes, tuple[str, int]]:
        """Block for the next packet; returns ``(data, remote_address)``."""
        with self._cond:
            while not self._packets:
                if self._closed.is_set():
                    raise ClosedPipeError("packet conn is closed")
                self._cond.wait()
            data, addr, error = self._packets.popleft()
            self._cond.notify_all()
        if error is not None:
            raise error
        return data, addr

    def write_to(self, data: bytes, addr) -> int:
        """Send a packet to the connection of the given remote address."""
        key = _addr_key(addr)
        with self._lock:
            conn = self._conns.get(key)
        if conn is None:
            raise ClosedPipeError(f"no connection to {key[0]}:{key[1]}")
        try:
            return write_streaming_packet(conn, data)
        except (OSError, BufferError, ClosedPipeError) as err:
            self._logger.debug("failed to write to %s: %s", key, err)
            raise

    def close(self) -> None:
        """Close every connection and wait for the reader threads to finish."""
        with self._lock:
            if not self._closed.is_set():
                self._closed.set()
                if self._alive_timer is not None:
                    self._alive_timer.cancel()
            conns = list(self._conns.values())
            self._conns.clear()
            for conn in conns:
                self._close_and_log(conn)
            threads = list(self._threads)
        with self._cond:
            self._cond.notify_all()
        current = threading.current_thread()
        for thread in threads:
            if thread is not current:
                thread.join()

    def is_closed(self) -> bool:
        """Tell whether close() has been called."""
        return self._closed.is_set()

    def wait_closed(self, timeout: float | None = None) -> bool:
        """Wait until the connection is closed; returns whether it is."""
        return self._closed.wait(timeout)