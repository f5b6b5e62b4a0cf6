"""
Ledger Error Taxonomy

Typed failures raised by the ledger service and its stores. Callers branch
on ``LedgerError.kind`` rather than on message text.
"""

from decimal import Decimal
from enum import Enum
from typing import Optional


class ErrorKind(Enum):
    """Failure categories"""
    NOT_FOUND = "not_found"
    ALREADY_EXISTS = "already_exists"
    INSUFFICIENT_FUNDS = "insufficient_funds"
    INVALID_AMOUNT = "invalid_amount"
    INVALID_TRANSFER = "invalid_transfer"
    INVALID_CREDENTIALS = "invalid_credentials"
    STORE_UNAVAILABLE = "store_unavailable"


class LedgerError(Exception):
    """Base class for all ledger failures; subclasses set ``kind``"""
    kind: ErrorKind
    retryable: bool = False

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class NotFound(LedgerError):
    """Username or account identity does not resolve"""
    kind = ErrorKind.NOT_FOUND


class AuthSubjectUnresolvable(NotFound):
    """Authentication lookup for an unknown username"""


class AlreadyExists(LedgerError):
    kind = ErrorKind.ALREADY_EXISTS


class InsufficientFunds(LedgerError):
    """Debit exceeds the current balance"""
    kind = ErrorKind.INSUFFICIENT_FUNDS

    def __init__(self, balance: Decimal, requested: Decimal, operation: str = "withdraw"):
        super().__init__(
            f"Insufficient balance, your current balance is {balance} "
            f"but you are trying to {operation} {requested}"
        )
        self.balance = balance
        self.requested = requested
        self.operation = operation


class InvalidAmount(LedgerError):
    kind = ErrorKind.INVALID_AMOUNT


class InvalidTransfer(LedgerError):
    kind = ErrorKind.INVALID_TRANSFER


class InvalidCredentials(LedgerError):
    kind = ErrorKind.INVALID_CREDENTIALS


class StoreUnavailable(LedgerError):
    """Persistence failed or timed out; safe to retry at a higher layer"""
    kind = ErrorKind.STORE_UNAVAILABLE
    retryable = True

    def __init__(self, message: str, cause: Optional[BaseException] = None):
        super().__init__(message)
        self.cause = cause
