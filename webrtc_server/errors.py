"""
Exception types raised by the HTTPS server core.
"""


class WebRTCServerError(Exception):
    """Base exception for all server errors."""


class ConfigError(WebRTCServerError):
    """Raised when a configuration value cannot be used."""


class IdentityError(WebRTCServerError):
    """Raised when the TLS identity bundle cannot be turned into an identity."""

    def __init__(self, message: str, path=None):
        super().__init__(message)
        self.path = path


class IdentityNotFound(IdentityError):
    """The identity bundle file does not exist."""


class IdentityDecodeError(IdentityError):
    """Wrong passphrase, malformed bundle, or a bundle without certificate/key."""


class ListenerBindError(WebRTCServerError):
    """The listening socket could not be bound (port in use, permission denied)."""

    def __init__(self, message: str, port: int):
        super().__init__(message)
        self.port = port


class ListenerTransientWait(WebRTCServerError):
    """A recoverable accept failure; the listener keeps trying."""


class ConnectionFailure(WebRTCServerError):
    """Base class for errors that end a single client connection."""

    def __init__(self, message: str, connection_id: int):
        super().__init__(message)
        self.connection_id = connection_id


class HandshakeError(ConnectionFailure):
    """The TLS layer rejected the connection.

    Routine for browsers that probe a self-signed certificate before the user
    accepts it, so these are not reported as warnings.
    """


class ConnectionOtherError(ConnectionFailure):
    """Any non-TLS connection failure: decode error, peer reset, idle timeout."""
