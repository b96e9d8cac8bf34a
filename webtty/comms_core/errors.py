"""
Error taxonomy shared by the client and the companion server.

Every fatal condition in a session is raised as one of these and ends up
recorded as the session's close reason.
"""


class WebTtyError(Exception):
    """Base class for all webtty errors."""
    pass


class TokenFetchError(WebTtyError):
    """The token request failed or returned a non-success status."""
    pass


class ConnectionFailedError(WebTtyError, ConnectionError):
    """Handshake or mid-session transport failure."""
    pass


class ConfigurationError(WebTtyError):
    """Invalid configuration, detected before any network activity."""
    pass


class ProtocolError(WebTtyError):
    """A malformed or unexpected frame was received."""
    pass


class AuthenticationError(WebTtyError):
    """The client presented a wrong or missing token."""
    pass
