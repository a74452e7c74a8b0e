"""Multiplex ICE sessions, keyed by ufrag, over shared TCP and UDP sockets."""

__version__ = "0.1.0"