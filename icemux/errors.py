"""Exceptions raised by the ICE multiplexers and packet connections."""


class IceError(Exception):
    """Base class for all errors raised by this package."""


class ClosedPipeError(IceError):
    """The connection or multiplexer has been closed."""


class ShortBufferError(IceError):
    """A packet is larger than the space allowed for it."""


class TransportAddressError(IceError):
    """A local address could not be turned into a transport address."""


class ConnectionAddrAlreadyExistsError(IceError):
    """A connection from the same remote address is already registered."""


class NoTCPMuxAvailableError(IceError):
    """No TCP multiplexer has been configured."""


class NoUDPMuxAvailableError(IceError):
    """No UDP multiplexer listens on the requested address."""


class InvalidAddressError(IceError):
    """The address does not belong to this multiplexer."""


class NoXorAddrMappingError(IceError):
    """No XOR-MAPPED-ADDRESS is known for the STUN server."""


class XORMappedAddrTimeoutError(IceError):
    """The STUN server did not answer before the deadline."""


class RelayNotSupportedError(IceError):
    """Relayed addresses cannot be obtained through this multiplexer."""