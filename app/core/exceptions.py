# app/core/exceptions.py

"""
Error categories surfaced at the ingestion boundary.

Callers get an error for an invalid sale amount, an unknown member or
creator, an out-of-range custom rate or a malformed webhook payload.
A replayed payment is not an error; see ``IngestionOutcome.DUPLICATE_IGNORED``.
"""

import enum
from typing import Any, Dict, Optional


class LedgerError(Exception):
    """Base class for all ledger errors."""

    def __init__(
        self,
        message: str,
        error_code: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ):
        self.message = message
        self.error_code = error_code or self.__class__.__name__
        self.details = details or {}
        super().__init__(self.message)


class InvalidAmount(LedgerError):
    """Sale amount is negative, non-finite, not a number or above the ceiling."""


class NotFound(LedgerError):
    """Unknown member, creator or commission."""


class InvalidCustomRate(LedgerError):
    """Custom commission rate outside the allowed bounds."""


class InvalidPayload(LedgerError):
    """Webhook data is missing required fields or has the wrong shape."""


class IngestionOutcome(str, enum.Enum):
    PROCESSED = "processed"
    DUPLICATE_IGNORED = "duplicate_ignored"
    SKIPPED = "skipped"
    UNMATCHED = "unmatched"
    IGNORED = "ignored"
