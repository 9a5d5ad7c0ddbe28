"""
Model backend error classification
"""
import re
from enum import Enum
from typing import Any, Dict, Optional

import httpx


class ErrorKind(str, Enum):
    """Error kinds reported by the model gateway"""
    TRANSIENT_NETWORK = "transient_network"  # Retried with backoff
    AUTHENTICATION = "authentication"
    MALFORMED_REQUEST = "malformed_request"
    UNKNOWN = "unknown"


class ModelGatewayError(Exception):
    """Error raised by the model gateway for backend responses it cannot use"""

    def __init__(
        self,
        message: str,
        kind: ErrorKind = ErrorKind.UNKNOWN,
        status_code: Optional[int] = None,
        attempts: int = 1,
    ):
        super().__init__(message)
        self.kind = kind
        self.status_code = status_code
        self.attempts = attempts

    def to_dict(self) -> Dict[str, Any]:
        return {
            "message": str(self),
            "kind": self.kind.value,
            "status_code": self.status_code,
            "attempts": self.attempts,
        }


class PipelineCancelled(Exception):
    """Raised at a suspend point once the caller cancelled the operation"""

    def __init__(self, reason: Optional[str] = None):
        super().__init__(reason or "operation cancelled")
        self.reason = reason


# Transport failures that are worth retrying
TRANSIENT_EXCEPTION_TYPES = (
    httpx.TimeoutException,
    httpx.NetworkError,
    httpx.RemoteProtocolError,
    httpx.LocalProtocolError,
    httpx.ProxyError,
    ConnectionError,
    TimeoutError,
)

# Message signatures of transient network failures
TRANSIENT_SIGNATURES = [
    r"connection reset",
    r"connection refused",
    r"connection aborted",
    r"timed? ?out",
    r"name or service not known",
    r"temporary failure in name resolution",
    r"nodename nor servname",
    r"getaddrinfo failed",
    r"econnreset",
    r"econnrefused",
    r"etimedout",
    r"enotfound",
    r"socket hang up",
    r"protocol.?error",
    r"network error",
    r"fetch failed",
    r"server disconnected",
]

_TRANSIENT_RE = re.compile("|".join(TRANSIENT_SIGNATURES), re.IGNORECASE)

TRANSIENT_STATUS_CODES = {408, 425, 429, 500, 502, 503, 504, 529}
AUTH_STATUS_CODES = {401, 403}
MALFORMED_STATUS_CODES = {400, 404, 405, 413, 415, 422}


def classify_status(status_code: int) -> ErrorKind:
    """Map an HTTP status code to an error kind"""
    if status_code in AUTH_STATUS_CODES:
        return ErrorKind.AUTHENTICATION
    if status_code in MALFORMED_STATUS_CODES:
        return ErrorKind.MALFORMED_REQUEST
    if status_code in TRANSIENT_STATUS_CODES or status_code >= 500:
        return ErrorKind.TRANSIENT_NETWORK
    return ErrorKind.UNKNOWN


def classify_error(error: BaseException) -> ErrorKind:
    """
    Classify an exception raised while talking to the model backend

    Args:
        error: Exception to classify

    Returns:
        ErrorKind; only TRANSIENT_NETWORK is retry-eligible
    """
    if isinstance(error, ModelGatewayError):
        return error.kind
    if isinstance(error, httpx.HTTPStatusError):
        return classify_status(error.response.status_code)
    if isinstance(error, TRANSIENT_EXCEPTION_TYPES):
        return ErrorKind.TRANSIENT_NETWORK
    if _TRANSIENT_RE.search(str(error)):
        return ErrorKind.TRANSIENT_NETWORK
    return ErrorKind.UNKNOWN


def is_transient(error: BaseException) -> bool:
    """Check whether an error is a retry-eligible network failure"""
    return classify_error(error) == ErrorKind.TRANSIENT_NETWORK
