"""
Account and Transaction Stores

Narrow persistence interfaces used by the ledger service, implemented on
top of a StorageInterface backend.
"""

from decimal import Decimal
from datetime import datetime, timezone
from typing import Dict, List, Optional
import uuid

from .errors import AlreadyExists
from .models import Account, Transaction, TransactionKind
from .storage import StorageInterface


class AccountStore:
    """
    Lookup and insert-or-update of accounts. Usernames are unique: the
    check runs under the storage lock together with the insert.
    """

    def __init__(self, storage: StorageInterface, table: str = "accounts"):
        self.storage = storage
        self.accounts_table = table

    def find_by_username(self, username: str) -> Optional[Account]:
        """Get account by username"""
        rows = self.storage.find(self.accounts_table, {"username": username})
        if rows:
            return self._account_from_dict(rows[0])
        return None

    def find_by_id(self, account_id: str) -> Optional[Account]:
        """Get account by identity"""
        data = self.storage.load(self.accounts_table, account_id)
        if data:
            return self._account_from_dict(data)
        return None

    def save(self, account: Account) -> Account:
        """
        Insert or update an account.

        Assigns identity on first insert.

        Raises:
            AlreadyExists: inserting a username that is already taken
        """
        now = datetime.now(timezone.utc)
        account_id, created_at = account.id, account.created_at
        with self.storage.atomic():
            if account_id is None:
                if self.storage.find(self.accounts_table, {"username": account.username}):
                    raise AlreadyExists(
                        f"Account already exists with the username: {account.username}"
                    )
                account_id, created_at = str(uuid.uuid4()), now

            data = account.to_dict()
            data.update(id=account_id, created_at=created_at.isoformat(), updated_at=now.isoformat())
            self.storage.save(self.accounts_table, account_id, data)

        # Only touch the caller's object once the write went through
        account.id, account.created_at, account.updated_at = account_id, created_at, now
        return account

    def _account_from_dict(self, data: Dict) -> Account:
        """Convert dictionary to Account"""
        return Account(
            id=data['id'],
            created_at=datetime.fromisoformat(data['created_at']),
            updated_at=datetime.fromisoformat(data['updated_at']),
            username=data['username'],
            password_hash=data['password_hash'],
            balance=Decimal(data['balance']),
        )


class TransactionStore:
    """Insert-only store of transaction records"""

    def __init__(self, storage: StorageInterface, table: str = "transactions"):
        self.storage = storage
        self.transactions_table = table

    def save(self, transaction: Transaction) -> Transaction:
        """Persist a new record, assigning its identity and sequence number"""
        if transaction.id is not None:
            raise ValueError(f"Transaction {transaction.id} is already recorded")

        now = datetime.now(timezone.utc)
        transaction_id = str(uuid.uuid4())
        with self.storage.atomic():
            sequence = self.storage.count(self.transactions_table) + 1
            data = transaction.to_dict()
            data.update(
                id=transaction_id,
                sequence=sequence,
                created_at=now.isoformat(),
                updated_at=now.isoformat(),
            )
            self.storage.save(self.transactions_table, transaction_id, data)

        transaction.id, transaction.sequence = transaction_id, sequence
        transaction.created_at = transaction.updated_at = now
        return transaction

    def find_by_account_id(self, account_id: str) -> List[Transaction]:
        """All records owned by an account, oldest first"""
        rows = self.storage.find(self.transactions_table, {"account_id": account_id})
        transactions = [self._transaction_from_dict(row) for row in rows]
        transactions.sort(key=lambda t: t.sequence)
        return transactions

    def _transaction_from_dict(self, data: Dict) -> Transaction:
        return Transaction(
            id=data['id'],
            created_at=datetime.fromisoformat(data['created_at']),
            updated_at=datetime.fromisoformat(data['updated_at']),
            account_id=data['account_id'],
            kind=TransactionKind(data['kind']),
            amount=Decimal(data['amount']),
            description=data['description'],
            timestamp=datetime.fromisoformat(data['timestamp']),
            counterparty=data.get('counterparty'),
            sequence=data['sequence'],
        )
