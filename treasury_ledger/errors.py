"""
Ledger Errors

Typed failures raised by the ledger services. Each carries a short
human-readable message and a ``kind`` matching one of the error kinds the
presentation layer maps to user feedback.
"""

from typing import List, Optional


class LedgerError(Exception):
    """Base class for all ledger failures"""
    kind = "internal"

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message

    def __str__(self) -> str:
        return self.message


class ValidationError(LedgerError, ValueError):
    """Missing or invalid input (non-positive amount, mismatched currency...)"""
    kind = "validation"


class NotFoundError(LedgerError, LookupError):
    """Unknown account, box, deposit, reimbursement or schedule entry"""
    kind = "not-found"


class InvalidStateError(LedgerError):
    """Operation not allowed in the entity's current lifecycle state"""
    kind = "invalid-state"


class InsufficientFundsError(LedgerError):
    """Balance or ceiling check failed"""
    kind = "insufficient-funds"


class CompensationError(LedgerError):
    """
    A composite operation failed and at least one inverse write also failed.

    The ledger is left inconsistent and must be reconciled out-of-band.
    """

    def __init__(self, message: str, original: Optional[BaseException] = None,
                 failed_steps: Optional[List[str]] = None):
        super().__init__(message)
        self.original = original
        self.failed_steps = failed_steps or []
