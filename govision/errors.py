"""Exception taxonomy shared by the transport, pipeline and CLI."""


class GoVisionError(Exception):
    """Base class for client errors."""


class ValidationError(GoVisionError):
    """Bad form input or a file that fails the upload checks."""


class SessionExpired(GoVisionError):
    """A 401 could not be resolved by refreshing; the user must log in again."""


class TransportError(GoVisionError):
    """The request never produced an HTTP response (DNS, refused, timeout)."""


class ServerError(GoVisionError):
    """Non-2xx response; ``message`` is the server's text when it sent one."""

    def __init__(self, status_code: int, message: str):
        super().__init__(message)
        self.status_code = status_code
        self.message = message
