"""Error taxonomy for the Cursor bridge."""

from typing import Optional


class BridgeError(Exception):
    """
    Base class for every error raised by the translation layer.

    `status_code` is the HTTP status the API layer answers with and
    `message` is the client-facing text (internal details stay in the logs).
    """

    status_code = 500
    message = "Internal server error"

    def __init__(self, detail: Optional[str] = None):
        super().__init__(detail or self.message)
        self.detail = detail or self.message


class EncodingError(BridgeError):
    """The conversation cannot be represented in the vendor framing."""

    status_code = 400
    message = "Invalid request. Messages could not be encoded"


class InvalidCredentialError(BridgeError):
    """The bearer credential is missing or malformed."""

    status_code = 401
    message = "Invalid request. Messages should be a non-empty array and authorization is required"


class StreamProtocolError(BridgeError):
    """A response frame could not be parsed. Recoverable: the frame is skipped."""

    message = "Stream processing error"


class TransportError(BridgeError):
    """The vendor call failed."""

    message = "Internal server error"

    def __init__(self, detail: Optional[str] = None, status: Optional[int] = None):
        super().__init__(detail)
        self.status = status


class UpstreamError(TransportError):
    """The vendor ended the stream with an error trailer."""


class TransportTimeoutError(TransportError):
    """Connect or read-inactivity timeout while talking to the vendor."""

    status_code = 408

    def __init__(self, phase: str = "read", detail: Optional[str] = None):
        super().__init__(detail or f"{phase} timeout")
        self.phase = phase

    @property
    def client_message(self) -> str:
        if self.phase == "connect":
            return "Request timeout"
        return "Server response timeout"


class UpstreamRejection(BridgeError):
    """The model/stream combination is not supported by the vendor."""

    status_code = 400
    message = "Model not supported stream"


class PayloadTooLargeError(BridgeError):
    """The request body exceeds the configured size limit."""

    status_code = 413
    message = "Request entity too large"
