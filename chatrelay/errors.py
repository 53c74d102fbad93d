from __future__ import annotations

import enum
from typing import Any, Dict, Optional


class ErrorKind(enum.Enum):
    INVALID_REQUEST = "invalid_request"
    UNAUTHORIZED = "unauthorized"
    EMPTY_INPUT = "empty_input"
    INPUT_TOO_LONG = "input_too_long"
    UNKNOWN_MODEL = "unknown_model"
    NO_CREDENTIAL = "no_credential"
    BALANCE_QUERY_DENIED = "balance_query_denied"
    TIMEOUT = "timeout"
    UPSTREAM_UNAVAILABLE = "upstream_unavailable"
    UPSTREAM_ERROR = "upstream_error"
    STREAM_DECODE_ERROR = "stream_decode_error"
    BILLING_LOOKUP_DEGRADED = "billing_lookup_degraded"


_STATUS_BY_KIND = {
    ErrorKind.INVALID_REQUEST: 400,
    ErrorKind.UNAUTHORIZED: 400,
    ErrorKind.EMPTY_INPUT: 400,
    ErrorKind.INPUT_TOO_LONG: 400,
    ErrorKind.UNKNOWN_MODEL: 400,
    ErrorKind.NO_CREDENTIAL: 400,
    ErrorKind.BALANCE_QUERY_DENIED: 400,
    ErrorKind.TIMEOUT: 500,
    ErrorKind.UPSTREAM_UNAVAILABLE: 500,
    ErrorKind.STREAM_DECODE_ERROR: 502,
}


class RelayError(Exception):
    """A request-level failure that maps onto an HTTP error envelope."""

    def __init__(self, kind: ErrorKind, message: str) -> None:
        super().__init__(message)
        self.kind = kind
        self.message = message
        self.status_code = _STATUS_BY_KIND[kind]


class StreamDecodeError(RelayError):
    """Raised when an upstream event payload cannot be decoded."""

    def __init__(self, message: str) -> None:
        super().__init__(ErrorKind.STREAM_DECODE_ERROR, message)


def build_error_payload(message: Optional[str]) -> Dict[str, Any]:
    safe_message = (message or "").strip() or "request failed"
    return {"error": {"message": safe_message}}


__all__ = ["ErrorKind", "RelayError", "StreamDecodeError", "build_error_payload"]
