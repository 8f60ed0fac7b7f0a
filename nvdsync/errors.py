"""Error types raised by nvdsync.

HTTP-level failures (429, 5xx, ...) are never raised; the engine records
them as state.  Everything here is fatal for the current call.
"""

from enum import Enum


class ErrorKind(str, Enum):
    """Category of a fatal NVD API error."""

    INVALID_ENDPOINT = "invalid_endpoint"
    TRANSPORT = "transport"
    CANCELLED = "cancelled"
    DECODE = "decode"
    CLOSED = "closed"


class NvdApiError(Exception):
    """Fatal error talking to the NVD CVE API.

    Attributes:
        kind: The ``ErrorKind`` so callers can branch without parsing
            the message.
    """

    def __init__(self, kind: ErrorKind, message: str):
        self.kind = kind
        super().__init__(message)

    def __str__(self) -> str:
        return f"[{self.kind.value}] {super().__str__()}"
