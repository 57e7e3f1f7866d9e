"""
Ledger Exceptions

Errors raised by ledger operations. Everything except OperationFailedError and
its subclass carries a message that is safe to show to the caller.
"""

from typing import Any, Dict, Optional


GENERIC_FAILURE_MESSAGE = "Operation failed, please try again."


class LedgerError(Exception):
    """Base exception for the installment ledger"""

    def __init__(self, message: str):
        self.message = message
        super().__init__(message)


class ValidationError(LedgerError, ValueError):
    """Input rejected before any write happened"""
    pass


class NotFoundError(LedgerError):
    """Referenced record does not exist"""

    def __init__(self, entity_type: str, entity_id: str, message: Optional[str] = None):
        self.entity_type = entity_type
        self.entity_id = entity_id
        super().__init__(message or f"{entity_type.capitalize()} {entity_id} not found")


class PermissionDeniedError(LedgerError):
    """The injected authorization policy refused the actor"""
    pass


class InsufficientFundsError(LedgerError):
    """A guarded balance decrement was refused"""

    def __init__(self, user_id: str, amount: Any, message: Optional[str] = None):
        self.user_id = user_id
        self.amount = amount
        super().__init__(message or "Insufficient cash balance")


class ConcurrentModificationError(LedgerError):
    """A versioned write found a different version than the one read"""

    def __init__(self, entity_type: str, entity_id: str, expected_version: int):
        self.entity_type = entity_type
        self.entity_id = entity_id
        self.expected_version = expected_version
        super().__init__(
            f"{entity_type.capitalize()} {entity_id} was modified by another operation, please retry"
        )


class OperationFailedError(LedgerError):
    """
    A multi-step mutation failed part way.

    The public message is always generic; the underlying exception is chained
    as __cause__ and logged.
    """

    def __init__(self, operation: str, context: Optional[Dict[str, Any]] = None):
        self.operation = operation
        self.context = context or {}
        super().__init__(GENERIC_FAILURE_MESSAGE)


class ReconciliationRequiredError(OperationFailedError):
    """Compensation of a partially applied mutation failed; data needs repair"""

    def __init__(
        self,
        operation: str,
        failed_step: Optional[str],
        compensation_step: str,
        context: Optional[Dict[str, Any]] = None
    ):
        self.failed_step = failed_step
        self.compensation_step = compensation_step
        super().__init__(operation, context)
