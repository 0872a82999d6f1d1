"""
Failure taxonomy for snapshot sources.

    AuthError           terminal; the session must be invalidated
    NetworkError        transient; the next scheduled poll retries
    FetchTimeoutError   transient; a NetworkError that ran out of time
    OtherError          non-network failure (bad status, malformed body)
"""

from enum import Enum


class SourceError(Exception):
    """Base class for snapshot source failures."""


class AuthError(SourceError):
    """The source rejected our credentials (401/403)."""


class NetworkError(SourceError):
    """The source could not be reached."""


class FetchTimeoutError(NetworkError, TimeoutError):
    """The source did not answer within the request timeout."""


class OtherError(SourceError):
    """Any failure that is neither an auth nor a network problem."""


class ErrorKind(Enum):
    AUTH = "auth"
    TRANSIENT = "transient"
    OTHER = "other"


def classify_error(error: BaseException) -> ErrorKind:
    """
    Map an exception raised by a snapshot fetch onto an ErrorKind.

    Built-in TimeoutError and ConnectionError count as transient so that
    sources which do not use this module's types are still handled.
    """
    if isinstance(error, AuthError):
        return ErrorKind.AUTH
    if isinstance(error, (NetworkError, TimeoutError, ConnectionError)):
        return ErrorKind.TRANSIENT
    return ErrorKind.OTHER
