"""Ledger error taxonomy

Services raise these; API routes translate them into HTTP responses.
"""
from datetime import datetime, timezone
from typing import Optional


class LedgerError(Exception):
    """Base class for all ledger errors"""
    status_code = 500

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class ValidationError(LedgerError):
    """Bad input (amount, bank details, case state). Never retried."""
    status_code = 400


class InsufficientBalanceError(ValidationError):
    """Wallet balance does not cover the requested amount"""


class NotFoundError(LedgerError):
    status_code = 404


class RateLimitedError(LedgerError):
    """Too many requests in the rolling window"""
    status_code = 429

    def __init__(self, message: str, reset_at: Optional[datetime] = None, remaining: int = 0):
        super().__init__(message)
        self.reset_at = reset_at
        self.remaining = remaining


class RetryLimitExceededError(LedgerError):
    """Automatic retries are exhausted; a human has to look at it"""
    status_code = 409


class InvalidStateError(LedgerError):
    status_code = 409


class ProcessorError(LedgerError):
    """External payment processor call failed"""
    status_code = 502

    def __init__(self, message: str, transient: bool = False, original_error: Optional[Exception] = None):
        super().__init__(message)
        self.transient = transient
        self.original_error = original_error


class SignatureError(LedgerError):
    """Webhook could not be authenticated"""
    status_code = 400


class PersistenceError(LedgerError):
    """Database unavailable while applying a verified event"""
    status_code = 500


class JobLockedError(LedgerError):
    """Another worker holds the batch job lock"""
    status_code = 409


def http_error(error: LedgerError):
    """Translate a ledger error into the HTTPException a route raises"""
    from fastapi import HTTPException

    if isinstance(error, RateLimitedError) and error.reset_at:
        retry_after = max(0, int((error.reset_at - datetime.now(timezone.utc)).total_seconds()))
        return HTTPException(
            status_code=error.status_code,
            detail={"error": error.message, "reset_at": error.reset_at.isoformat(), "remaining": error.remaining},
            headers={"Retry-After": str(retry_after)}
        )
    return HTTPException(status_code=error.status_code, detail=error.message)
