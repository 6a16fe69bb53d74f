"""Exception hierarchy for the tool protocol gateway."""


class GatewayError(Exception):
    """Base class for all gateway errors."""


class CommandRejectedError(GatewayError):
    """Raised when the launch sandbox refuses a local-process command."""

    def __init__(self, reason: str):
        super().__init__(f"Command validation failed: {reason}")
        self.reason = reason


class ServerConnectionError(GatewayError):
    """Raised when a connection to a tool server cannot be established."""


class ServerNotConnectedError(GatewayError):
    """Raised when a request targets a server that is unknown or not connected."""


class TransportError(GatewayError):
    """Raised when transport communication with a tool server fails."""


class RequestTimeoutError(TransportError):
    """Raised when a tool server does not answer within the allotted time."""


class ProxyRequestError(GatewayError):
    """Raised by the stdio proxy; carries the HTTP status to answer with."""

    def __init__(self, message: str, status_code: int = 400):
        super().__init__(message)
        self.message = message
        self.status_code = status_code
