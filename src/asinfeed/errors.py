"""Exception taxonomy and error codes shared by all asinfeed stages."""
from __future__ import annotations

from typing import Optional


# Synthetic per-item error codes produced by the enrichment client.
BATCH_FAILED = "BATCH_FAILED"
NO_RESPONSE = "NO_RESPONSE"
CANCELLED = "CANCELLED"


class AsinFeedError(Exception):
    """Base class for errors raised by the feed pipeline."""


class ConfigurationError(AsinFeedError, ValueError):
    """Invalid or missing settings. Raised before any network call."""


class ReportParseError(AsinFeedError, ValueError):
    """The report file could not be read or lacks required columns."""


class TransportError(AsinFeedError):
    """Batch-level failure talking to the product API.

    Attributes:
        code: Short machine code (``TIMEOUT``, ``CONNECTION_ERROR``, ``HTTP_503``...).
        status: HTTP status when the server answered, else None.
        retryable: Whether retrying the same batch can help.
    """

    def __init__(self, code: str, message: str, status: Optional[int] = None, retryable: bool = True) -> None:
        self.code = code
        self.message = message
        self.status = status
        self.retryable = retryable
        super().__init__(f"{code}: {message}")


class ReconciliationError(AsinFeedError, AssertionError):
    """Enriched and failed counts do not add up to the requested total."""
