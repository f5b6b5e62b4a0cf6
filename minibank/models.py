"""
Ledger Data Model

Accounts hold a username, a hashed credential and a Decimal balance.
Transactions are immutable audit records of single balance-affecting events,
filed against exactly one owning account.
"""

from decimal import Decimal
from datetime import datetime
from dataclasses import dataclass, field
from typing import FrozenSet, Optional
from enum import Enum

from .storage import StorageRecord


class TransactionKind(Enum):
    """Balance effect carried by a transaction record"""
    DEPOSIT = "deposit"
    WITHDRAWAL = "withdrawal"
    TRANSFER_DEBIT = "transfer_debit"    # Owned by the sender
    TRANSFER_CREDIT = "transfer_credit"  # Owned by the receiver

    @property
    def is_credit(self) -> bool:
        return self in (TransactionKind.DEPOSIT, TransactionKind.TRANSFER_CREDIT)


@dataclass
class Account(StorageRecord):
    """
    Ledger subject. ``id`` stays None until the account store assigns it
    on first save.
    """
    username: str
    password_hash: str
    balance: Decimal = Decimal("0")

    def __post_init__(self):
        if not isinstance(self.balance, Decimal):
            self.balance = Decimal(str(self.balance))

    def __repr__(self) -> str:
        # Keep the credential out of reprs and log lines
        return f"Account(id={self.id!r}, username={self.username!r}, balance={self.balance})"


@dataclass
class Transaction(StorageRecord):
    """
    Immutable record of one ledger event
    """
    account_id: str
    kind: TransactionKind
    amount: Decimal
    description: str
    timestamp: datetime
    counterparty: Optional[str] = None
    sequence: Optional[int] = None  # Assigned by the transaction store

    def __post_init__(self):
        if not self.amount > 0:
            raise ValueError("Transaction amount must be positive")

    @property
    def signed_amount(self) -> Decimal:
        """Effect of this record on the owning account's balance"""
        return self.amount if self.kind.is_credit else -self.amount


@dataclass(frozen=True)
class Principal:
    """
    Identity handed to an authentication layer. Decoupled from Account so
    that nothing outside the ledger can mutate balances through it.
    """
    username: str
    password_hash: str
    balance: Decimal
    authorities: FrozenSet[str] = field(default_factory=frozenset)

    def has_authority(self, authority: str) -> bool:
        return authority in self.authorities

    def __repr__(self) -> str:
        return f"Principal(username={self.username!r}, authorities={sorted(self.authorities)!r})"
