"""
Ledger error taxonomy.

Every failure path surfaces as one of these. StorageError comes from the
persistence layer and is always safe to retry: the failed transaction left
no partial state behind.
"""

from persistence.database import StorageError


class LedgerError(Exception):
    """Base class for ledger errors."""
    pass


class NotFoundError(LedgerError):
    """No such grant, payment, product or event."""
    pass


class AlreadyProcessedError(LedgerError):
    """The payment has already reached a terminal status."""

    def __init__(self, payment_id: str, status: str):
        self.payment_id = payment_id
        self.status = status
        super().__init__(f"payment {payment_id} has been processed (status={status})")


class InsufficientFundsError(LedgerError):
    """
    Raised by the pre-check only. consume() never raises it: a shortfall
    there is recorded as debt.
    """

    def __init__(self, user_id: str, required: int, available: int):
        self.user_id = user_id
        self.required = required
        self.available = available
        super().__init__(f"quota not enough: required {required}, available {available}")


class InvalidAmountError(LedgerError, ValueError):
    """Amounts must be positive integers."""
    pass


__all__ = [
    "LedgerError",
    "NotFoundError",
    "AlreadyProcessedError",
    "InsufficientFundsError",
    "InvalidAmountError",
    "StorageError",
]
