"""Several TCP multiplexers used together, one per listening port."""

from __future__ import annotations

from .errors import NoTCPMuxAvailableError


class MultiTCPMuxDefault:
    """Delegates to several TCP muxes; single lookups use the first one."""

    def __init__(self, *args):
        self._muxes = list(args)

    def __enter__(self) -> MultiTCPMuxDefault:
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()

    @property
    def muxes(self) -> list:
        """The underlying muxes, in the order they were given."""
        return list(self._muxes)

    def get_conn_by_ufrag(self, ufrag: str, is_ipv6: bool, local):
        """Return the packet connection of the first mux."""
        if not self._muxes:
            raise NoTCPMuxAvailableError("no TCP mux is available")
        return self._muxes[0].get_conn_by_ufrag(ufrag, is_ipv6, local)

    def remove_conn_by_ufrag(self, ufrag: str) -> None:
        """Remove the ufrag's connections from every mux."""
        for mux in self._muxes:
            mux.remove_conn_by_ufrag(ufrag)

    def get_all_conns(self, ufrag: str, is_ipv6: bool, local) -> list:
        """Return one packet connection per mux; fails as a whole if any mux fails."""
        if not self._muxes:
            raise NoTCPMuxAvailableError("no TCP mux is available")
        conns = []
        for mux in self._muxes:
            conn = mux.get_conn_by_ufrag(ufrag, is_ipv6, local)
            if conn is not None:
                conns.append(conn)
        return conns

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