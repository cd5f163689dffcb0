"""Typed exceptions raised by the connector and its Graph collaborators."""

from typing import Optional


class ConnectorError(Exception):
    """Base exception for all connector operations."""
    pass


class InvalidAttributeValueError(ConnectorError, ValueError):
    """A required argument is missing or empty, or an attribute value is not acceptable."""
    pass


class UnsupportedObjectClassError(ConnectorError):
    """The object class is neither __ACCOUNT__ nor __GROUP__."""
    pass


class GraphAPIError(ConnectorError):
    """
    Error returned by Microsoft Graph or raised while talking to it.

    Attributes:
        status_code: HTTP status code, or None for transport failures
        message: Error message from the response body
        endpoint: API path that failed
        request_sent: False when the connection failed before the request was written
    """

    def __init__(self, message: str, status_code: Optional[int] = None, endpoint: str = "",
                 request_sent: bool = True):
        self.status_code = status_code
        self.message = message
        self.endpoint = endpoint
        self.request_sent = request_sent
        if status_code is not None:
            super().__init__(f"[{status_code}] {endpoint}: {message}")
        else:
            super().__init__(message)


class GraphAuthenticationError(GraphAPIError):
    """Token acquisition failed or Graph rejected the token."""
    pass


class GraphObjectNotFoundError(GraphAPIError):
    """The addressed user, group or directory object does not exist."""
    pass
