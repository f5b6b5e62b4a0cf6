"""
Ledger system composition root
"""

from typing import Optional

from .config import LedgerConfig, get_config
from .ledger import LedgerService
from .logging_config import setup_logging
from .repositories import AccountStore, TransactionStore
from .security import ScryptCredentialHasher
from .storage import StorageInterface, InMemoryStorage, SQLiteStorage


def create_storage(config: LedgerConfig) -> StorageInterface:
    """Select a storage backend from ``database_url``"""
    url = config.database_url
    timeout = config.store_timeout_seconds

    if url.startswith("memory://"):
        return InMemoryStorage(lock_timeout=timeout)
    if url.startswith("sqlite:///"):
        return SQLiteStorage(url[len("sqlite:///"):], lock_timeout=timeout)
    if url == "sqlite://:memory:":
        return SQLiteStorage(":memory:", lock_timeout=timeout)
    raise ValueError(f"Unsupported database_url: {url}")


class LedgerSystem:
    """Ledger service with all collaborators initialized"""

    def __init__(self, config: Optional[LedgerConfig] = None):
        self.config = config or get_config()
        self.logger = setup_logging(self.config.log_level, fmt=self.config.log_format)

        self.storage = create_storage(self.config)
        self.account_store = AccountStore(self.storage)
        self.transaction_store = TransactionStore(self.storage)
        self.hasher = ScryptCredentialHasher(
            n=self.config.scrypt_n, r=self.config.scrypt_r, p=self.config.scrypt_p
        )
        self.ledger = LedgerService(
            self.storage,
            self.account_store,
            self.transaction_store,
            self.hasher,
            authority=self.config.default_authority,
        )

    def close(self) -> None:
        self.storage.close()

    def __enter__(self) -> "LedgerSystem":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()
