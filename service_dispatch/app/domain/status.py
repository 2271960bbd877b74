"""
Interpretation of processing API responses.

The API answers ``{"success": bool, "status": str, "data": ...}``. Only a
known set of document statuses is accepted; anything else fails closed as a
permanent failure.
"""

from enum import Enum
from typing import Any, Optional

from .models import CallOutcome, ErrorKind


class InvoiceStatus(str, Enum):
    """Document states reported by the processing API."""

    NO_FIRMADO = "NO_FIRMADO"
    NO_WS1 = "NO_WS1"
    NO_WS2 = "NO_WS2"
    NO_ZIP = "NO_ZIP"
    COMPLETED = "COMPLETED"
    ERROR = "ERROR"

    @classmethod
    def parse(cls, value: Optional[str]) -> Optional["InvoiceStatus"]:
        if not value:
            return None
        try:
            return cls(value.strip().upper())
        except ValueError:
            return None


# Statuses meaning "not processed yet"
RETRYABLE_STATUSES = frozenset({
    InvoiceStatus.NO_FIRMADO,
    InvoiceStatus.NO_WS1,
    InvoiceStatus.NO_WS2,
    InvoiceStatus.NO_ZIP,
    InvoiceStatus.ERROR,
})

# Statuses selected by the pending-work query
PENDING_STATUSES = frozenset({
    InvoiceStatus.NO_FIRMADO,
    InvoiceStatus.NO_WS1,
    InvoiceStatus.NO_WS2,
    InvoiceStatus.NO_ZIP,
})

RETRYABLE_HTTP_STATUSES = frozenset({408, 425, 429})


def interpret_status(value: Optional[str]) -> CallOutcome:
    """Map a document status string to a call outcome."""
    status = InvoiceStatus.parse(value)
    if status is None:
        return CallOutcome.permanent(f"Unrecognized document status: {value!r}")
    if status in RETRYABLE_STATUSES:
        return CallOutcome.retryable(f"Document status requires retry: {status.value}")
    return CallOutcome.success()


def interpret_response(status_code: int, body: Any) -> CallOutcome:
    """Map an HTTP status and decoded JSON body to a call outcome.

    ``body`` is ``None`` when the payload was not valid JSON.
    """
    if status_code == 401:
        return CallOutcome.retryable("Processing API rejected the access token", ErrorKind.AUTH_REJECTED)
    if status_code in RETRYABLE_HTTP_STATUSES or 500 <= status_code < 600:
        return CallOutcome.retryable(f"Processing API returned HTTP {status_code}")
    if not 200 <= status_code < 300:
        return CallOutcome.permanent(f"Processing API returned HTTP {status_code}")

    if not isinstance(body, dict):
        return CallOutcome.permanent("Processing API response is not a JSON object")

    return interpret_status(body.get("status"))
