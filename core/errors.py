"""
Engine error taxonomy.

Every failure the engine knows how to classify carries a stable ``code`` so
that worker counters, HTTP responses and logs agree on what happened:

- INSUFFICIENT_MARGIN: business rule violation, order fails to fill
- STALE_QUOTE: no fresh price, retried on the next pass
- VALIDATION_ERROR: malformed threshold/config input, rejected at the boundary
- TRANSPORT_ERROR: market-data connection trouble
- ACCOUNT_NOT_FOUND: ledger call against an unknown trading account
- INTERNAL_ERROR: anything unexpected while processing a single order
"""

from __future__ import annotations

from typing import Any, Dict, Optional

INSUFFICIENT_MARGIN = "INSUFFICIENT_MARGIN"
STALE_QUOTE = "STALE_QUOTE"
VALIDATION_ERROR = "VALIDATION_ERROR"
TRANSPORT_ERROR = "TRANSPORT_ERROR"
ACCOUNT_NOT_FOUND = "ACCOUNT_NOT_FOUND"
INTERNAL_ERROR = "INTERNAL_ERROR"


class EngineError(Exception):
    code = INTERNAL_ERROR

    def __init__(self, message: str, *, details: Optional[Dict[str, Any]] = None) -> None:
        super().__init__(message)
        self.message = message
        self.details = dict(details or {})

    def to_dict(self) -> Dict[str, Any]:
        return {"code": self.code, "message": self.message, "details": self.details}


class InsufficientMarginError(EngineError):
    code = INSUFFICIENT_MARGIN

    def __init__(self, required: float, available: float, *, account_id: Optional[str] = None) -> None:
        super().__init__(
            f"Insufficient margin. Required: {required:.2f}, Available: {available:.2f}",
            details={"required": required, "available": available, "account_id": account_id},
        )
        self.required = required
        self.available = available


class StaleQuoteError(EngineError):
    code = STALE_QUOTE


class ThresholdValidationError(EngineError, ValueError):
    code = VALIDATION_ERROR


class TransportError(EngineError):
    code = TRANSPORT_ERROR


class AccountNotFoundError(EngineError):
    code = ACCOUNT_NOT_FOUND

    def __init__(self, account_id: str) -> None:
        super().__init__(f"Trading account not found: {account_id}", details={"account_id": account_id})
        self.account_id = account_id


class InternalEngineError(EngineError):
    code = INTERNAL_ERROR


def as_engine_error(exc: BaseException) -> EngineError:
    """Classify ``exc``; anything the engine did not raise itself becomes an InternalEngineError."""
    if isinstance(exc, EngineError):
        return exc
    return InternalEngineError(str(exc) or type(exc).__name__, details={"exception": type(exc).__name__})
