"""Exception hierarchy for speechwire.

Every error carries a ``retryable`` class attribute. The session supervisor
uses it to decide between reconnecting and surfacing the error to the caller.
"""


class SpeechwireError(Exception):
    """Base exception for all speechwire errors."""

    retryable = False


class ConfigurationError(SpeechwireError):
    """Raised when a backend is unknown or its key material is missing."""


class AuthError(SpeechwireError):
    """The token endpoint or the remote service rejected the credentials."""


class CredentialRejectedError(AuthError):
    """The remote service rejected a bearer credential we presented.

    Unlike a token endpoint rejection, a fresh credential may fix this, so
    the supervisor forces exactly one refresh before giving up.
    """


class TransientAuthError(SpeechwireError):
    """Network failure while refreshing a credential."""

    retryable = True


class ConnectError(SpeechwireError):
    """Handshake, DNS or refused-connection failure."""

    retryable = True


class StreamDisconnected(ConnectError):
    """The transport dropped an established stream."""


class ProtocolError(SpeechwireError):
    """The remote sent a malformed or out-of-order frame, or rejected ours."""


class QuotaError(SpeechwireError):
    """The remote signalled rate limiting or quota exhaustion."""

    retryable = True

    def __init__(self, message: str, retry_after: float | None = None):
        self.retry_after = retry_after
        super().__init__(message)


class RetryExhaustedError(SpeechwireError):
    """Raised when reconnection attempts hit the configured cap."""

    def __init__(self, attempts: int, last_error: Exception):
        self.attempts = attempts
        self.last_error = last_error
        super().__init__(f"Giving up after {attempts} attempts: {last_error}")


class SessionStateError(SpeechwireError):
    """Raised when a session operation is invalid in its current state."""


class SessionClosedError(SpeechwireError):
    """Raised when audio is sent to a stream that no longer accepts input."""
