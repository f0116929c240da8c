"""Typed failures raised by the credit ledger."""
from decimal import Decimal


class LedgerError(Exception):
    """Base class for every ledger failure."""


class InsufficientCreditsError(LedgerError):
    """Requested deduction exceeds the spendable balance. Expected and never retried."""

    def __init__(self, user_id: str, requested: Decimal, available: Decimal):
        self.user_id = user_id
        self.requested = requested
        self.available = available
        super().__init__(
            f"Insufficient credits for user {user_id}: requested {requested}, available {available}"
        )


class TransientStorageError(LedgerError):
    """Connection loss, timeout or lock failure. Retried internally before surfacing."""


class BatchLockConflictError(TransientStorageError):
    """A row lock could not be acquired within the lock timeout."""


class InvariantViolationError(LedgerError):
    """Data-integrity or programming error. Aborts the transaction, never clamped."""


class DuplicatePurchaseReferenceError(LedgerError):
    """A payment reference has already been allocated."""

    def __init__(self, payment_reference: str):
        self.payment_reference = payment_reference
        super().__init__(f"Payment reference {payment_reference} was already allocated")


class BatchNotFoundError(LedgerError):
    """Referenced batch does not exist."""


class InvalidAmountError(LedgerError, ValueError):
    """Amount is zero, negative or not a number."""


class AlertNotFoundError(LedgerError):
    """Referenced alert does not exist."""
