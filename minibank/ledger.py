"""
Ledger Service

Account registration, deposits, withdrawals, transfers and history.

Each balance-changing operation runs in a single storage transaction:
the account is re-read from the store under the storage lock, the new
balance is written back and the audit record is appended, and all of it
commits together or rolls back together. Account objects passed in by
callers are only refreshed after a successful commit.
"""

from decimal import Decimal, InvalidOperation
from datetime import datetime, timezone, timedelta
from typing import Callable, FrozenSet, List, Optional, Tuple, Union
import threading

from .errors import (
    LedgerError, NotFound, AuthSubjectUnresolvable, AlreadyExists,
    InsufficientFunds, InvalidAmount, InvalidTransfer, InvalidCredentials
)
from .logging_config import get_logger, log_action
from .models import Account, Transaction, TransactionKind, Principal
from .repositories import AccountStore, TransactionStore
from .security import CredentialHasher, authorities
from .storage import StorageInterface

AmountLike = Union[Decimal, int, str]


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


class LedgerService:
    """
    Ledger operations over explicit store and hasher dependencies
    """

    def __init__(
        self,
        storage: StorageInterface,
        account_store: AccountStore,
        transaction_store: TransactionStore,
        hasher: CredentialHasher,
        clock: Optional[Callable[[], datetime]] = None,
        authority: str = "User"
    ):
        self.storage = storage
        self.account_store = account_store
        self.transaction_store = transaction_store
        self.hasher = hasher
        self.authority = authority
        self.logger = get_logger("minibank.ledger")

        self._clock = clock or _utc_now
        self._clock_lock = threading.Lock()
        self._last_timestamp: Optional[datetime] = None

    # Lookups

    def find_account_by_username(self, username: str) -> Account:
        """
        Get account by username

        Raises:
            NotFound: no account has this username
        """
        account = self.account_store.find_by_username(username)
        if account is None:
            raise NotFound(f"Account not found with the username: {username}")
        return account

    def get_balance(self, username: str) -> Decimal:
        """Committed balance of the named account"""
        return self.find_account_by_username(username).balance

    def get_transaction_history(self, account: Account) -> List[Transaction]:
        """All records owned by the account, oldest first"""
        if account.id is None:
            raise NotFound(f"Account {account.username} has not been registered")
        return self.transaction_store.find_by_account_id(account.id)

    # Registration and authentication

    def register_account(self, username: str, raw_password: str) -> Account:
        """
        Create an account with a zero balance

        Args:
            username: Unique username
            raw_password: Plaintext secret, hashed before storage

        Returns:
            The saved account with its store-assigned identity

        Raises:
            AlreadyExists: username is taken
            InvalidCredentials: blank username or empty password
        """
        if not username or not username.strip():
            raise InvalidCredentials("Username must not be blank")
        if not raw_password:
            raise InvalidCredentials("Password must not be empty")

        # Hash outside the storage lock; scrypt is deliberately slow
        password_hash = self.hasher.hash(raw_password)

        try:
            with self.storage.atomic():
                if self.account_store.find_by_username(username) is not None:
                    raise AlreadyExists(f"Account already exists with the username: {username}")
                now = self._clock()
                account = Account(
                    id=None,
                    created_at=now,
                    updated_at=now,
                    username=username,
                    password_hash=password_hash,
                    balance=Decimal("0"),
                )
                self.account_store.save(account)
        except AlreadyExists as e:
            self._log_rejection(username, "register", e)
            raise

        log_action(
            self.logger, "info", "Account registered",
            username=username, action="register", account_id=account.id
        )
        return account

    def authorities(self) -> FrozenSet[str]:
        return authorities(self.authority)

    def authentication_principal_for(self, username: str) -> Principal:
        """
        Build the principal an authentication layer checks credentials against

        Raises:
            AuthSubjectUnresolvable: no account has this username
        """
        account = self.account_store.find_by_username(username)
        if account is None:
            raise AuthSubjectUnresolvable(f"Account not found with the username: {username}")
        return Principal(
            username=account.username,
            password_hash=account.password_hash,
            balance=account.balance,
            authorities=self.authorities(),
        )

    def authenticate(self, username: str, raw_password: str) -> Principal:
        """
        Verify a username and password pair

        Unknown usernames and wrong passwords fail identically.
        """
        try:
            principal = self.authentication_principal_for(username)
        except AuthSubjectUnresolvable:
            principal = None

        if principal is None or not self.hasher.verify(raw_password, principal.password_hash):
            error = InvalidCredentials("Invalid username or password")
            self._log_rejection(username, "authenticate", error)
            raise error

        log_action(self.logger, "info", "Authenticated", username=username, action="authenticate")
        return principal

    # Balance-changing operations

    def deposit(self, account: Account, amount: AmountLike) -> Transaction:
        """Credit ``amount`` to the account and record a "Deposit" entry"""
        value = self._to_amount(amount)

        with self.storage.atomic():
            current = self._reload(account)
            current.balance += value
            self.account_store.save(current)
            transaction = self._record(current, TransactionKind.DEPOSIT, value, "Deposit")

        self._refresh(account, current)
        log_action(
            self.logger, "info", f"Deposited {value}",
            username=current.username, action="deposit", account_id=current.id,
            amount=value, balance=current.balance
        )
        return transaction

    def withdraw(self, account: Account, amount: AmountLike) -> Transaction:
        """
        Debit ``amount`` from the account

        Raises:
            InsufficientFunds: amount exceeds the committed balance
        """
        value = self._to_amount(amount)

        try:
            with self.storage.atomic():
                current = self._reload(account)
                if current.balance < value:
                    raise InsufficientFunds(current.balance, value, "withdraw")
                current.balance -= value
                self.account_store.save(current)
                transaction = self._record(
                    current, TransactionKind.WITHDRAWAL, value,
                    f"Withdrawn an amount of {value}"
                )
        except InsufficientFunds as e:
            self._log_rejection(account.username, "withdraw", e)
            raise

        self._refresh(account, current)
        log_action(
            self.logger, "info", f"Withdrew {value}",
            username=current.username, action="withdraw", account_id=current.id,
            amount=value, balance=current.balance
        )
        return transaction

    def transfer_amount(
        self,
        sender_account: Account,
        receiver_username: str,
        amount: AmountLike
    ) -> Tuple[Transaction, Transaction]:
        """
        Move ``amount`` from the sender to the named receiver

        Both balance updates and both records commit together.

        Returns:
            (debit record owned by the sender, credit record owned by the receiver)

        Raises:
            InsufficientFunds: amount exceeds the sender's committed balance
            NotFound: receiver username does not resolve
            InvalidTransfer: receiver is the sender
        """
        value = self._to_amount(amount)

        try:
            with self.storage.atomic():
                sender = self._reload(sender_account)
                if sender.balance < value:
                    raise InsufficientFunds(sender.balance, value, "transfer")

                receiver = self.account_store.find_by_username(receiver_username)
                if receiver is None:
                    raise NotFound(f"Account not found with the username: {receiver_username}")
                if receiver.id == sender.id:
                    raise InvalidTransfer("Cannot transfer to the same account")

                sender.balance -= value
                self.account_store.save(sender)

                receiver.balance += value
                self.account_store.save(receiver)

                debit = self._record(
                    sender, TransactionKind.TRANSFER_DEBIT, value,
                    f"Debited with money of {value} to {receiver.username}",
                    counterparty=receiver.username
                )
                credit = self._record(
                    receiver, TransactionKind.TRANSFER_CREDIT, value,
                    f"Credited with money of {value} from {sender.username}",
                    counterparty=sender.username
                )
        except (InsufficientFunds, NotFound, InvalidTransfer) as e:
            self._log_rejection(sender_account.username, "transfer", e)
            raise

        self._refresh(sender_account, sender)
        log_action(
            self.logger, "info", f"Transferred {value} to {receiver.username}",
            username=sender.username, action="transfer", account_id=sender.id,
            amount=value, balance=sender.balance, counterparty=receiver.username
        )
        return debit, credit

    # Helpers

    def _to_amount(self, amount: AmountLike) -> Decimal:
        """Validate and convert an amount; floats are refused outright"""
        if isinstance(amount, (bool, float)) or not isinstance(amount, (Decimal, int, str)):
            raise InvalidAmount(
                f"Amount must be a Decimal, int or str, got {type(amount).__name__}"
            )
        try:
            value = Decimal(amount.strip() if isinstance(amount, str) else amount)
        except InvalidOperation:
            raise InvalidAmount(f"Invalid amount: {amount!r}")
        if not value.is_finite() or value <= 0:
            raise InvalidAmount(f"Amount must be positive, got {amount}")
        return value

    def _reload(self, account: Account) -> Account:
        """Fresh copy of the account as currently committed"""
        if account.id is None:
            raise NotFound(f"Account {account.username} has not been registered")
        current = self.account_store.find_by_id(account.id)
        if current is None:
            raise NotFound(f"Account not found with the id: {account.id}")
        return current

    def _refresh(self, account: Account, committed: Account) -> None:
        account.balance = committed.balance
        account.updated_at = committed.updated_at

    def _record(
        self,
        owner: Account,
        kind: TransactionKind,
        amount: Decimal,
        description: str,
        counterparty: Optional[str] = None
    ) -> Transaction:
        now = self._now()
        transaction = Transaction(
            id=None,
            created_at=now,
            updated_at=now,
            account_id=owner.id,
            kind=kind,
            amount=amount,
            description=description,
            timestamp=now,
            counterparty=counterparty,
        )
        return self.transaction_store.save(transaction)

    def _now(self) -> datetime:
        """Clock reading that never goes backwards within this service"""
        with self._clock_lock:
            now = self._clock()
            if self._last_timestamp is not None and now <= self._last_timestamp:
                now = self._last_timestamp + timedelta(microseconds=1)
            self._last_timestamp = now
            return now

    def _log_rejection(self, username: str, action: str, error: LedgerError) -> None:
        log_action(
            self.logger, "warning", error.message,
            username=username, action=action, error=error.kind.value
        )
