"""Several UDP multiplexers used together, one per listening address."""

from __future__ import annotations

from .errors import NoUDPMuxAvailableError


def _addr_key(addr) -> tuple[str, int]:
    return str(addr[0]), int(addr[1])


class MultiUDPMuxDefault:
    """Delegates to the UDP mux that listens on the requested local address."""

    def __init__(self, *args):
        self._muxes = list(args)
        self._local_addr_to_mux = {
            _addr_key(addr): mux for mux in self._muxes for addr in mux.get_listen_addresses()
        }

    def __enter__(self) -> MultiUDPMuxDefault:
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()

    @property
    def muxes(self) -> list:
        """The underlying muxes, in the order they were given."""
        return list(self._muxes)

    def get_conn(self, ufrag: str, addr):
        """Return the packet connection of the mux listening on ``addr``."""
        try:
            mux = self._local_addr_to_mux.get(_addr_key(addr))
        except (TypeError, ValueError, IndexError):
            mux = None
        if mux is None:
            raise NoUDPMuxAvailableError(f"no UDP mux listens on {addr!r}")
        return mux.get_conn(ufrag, addr)

    def remove_conn_by_ufrag(self, ufrag: str) -> None:
        """Remove the ufrag's connections from every mux."""
        for mux in self._muxes:
            mux.remove_conn_by_ufrag(ufrag)

    def get_listen_addresses(self) -> list:
        """Return the listen addresses of every mux."""
        return [addr for mux in self._muxes for addr in mux.get_listen_addresses()]

    def close(self) -> None:
        """Close every mux; the last error met, if any, is raised afterwards."""
        error = None
        for mux in self._muxes:
            try:
                mux.close()
            except Exception as err:  # noqa: BLE001 - every mux must be closed
                error = err
        if error is not None:
            raise error