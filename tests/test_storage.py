"""
Tests for storage backends and transaction support
"""

import pytest
import tempfile
import threading
from datetime import datetime, timezone
from pathlib import Path

from minibank.errors import StoreUnavailable
from minibank.storage import InMemoryStorage, SQLiteStorage, StorageInterface


# Test data
test_data = {
    "id": "test_001",
    "username": "alice",
    "balance": "100.50",
    "created_at": datetime.now(timezone.utc).isoformat(),
    "updated_at": datetime.now(timezone.utc).isoformat()
}


class TestStorageInterface:
    """Test base storage interface functionality"""

    def test_backends_implement_only_the_core_operations(self):
        assert StorageInterface.__abstractmethods__ == frozenset(
            {"save", "load", "find", "count", "close"}
        )
        for backend in (InMemoryStorage, SQLiteStorage):
            assert not hasattr(backend, "exists")
            assert not hasattr(backend, "load_all")

    def test_in_memory_storage_basic_operations(self):
        """Test basic operations with InMemoryStorage"""
        storage = InMemoryStorage()

        # Test save and load
        storage.save("test_table", "record_1", test_data)
        loaded = storage.load("test_table", "record_1")
        assert loaded == test_data

        assert storage.load("test_table", "non_existent") is None
        assert storage.load("missing_table", "record_1") is None

        storage.save("test_table", "record_2", {"id": "record_2", "username": "bob"})
        assert len(storage.find("test_table", {})) == 2

        # Test find
        results = storage.find("test_table", {"username": "alice"})
        assert len(results) == 1
        assert results[0]["id"] == "test_001"
        assert storage.find("test_table", {"username": "nobody"}) == []

        assert storage.count("test_table") == 2

        storage.close()

    def test_sqlite_storage_basic_operations(self):
        """Test basic operations with SQLiteStorage"""
        with tempfile.TemporaryDirectory() as temp_dir:
            db_path = Path(temp_dir) / "test.db"
            storage = SQLiteStorage(db_path)

            storage.save("test_table", "record_1", test_data)
            loaded = storage.load("test_table", "record_1")
            assert loaded == test_data

            assert storage.load("test_table", "non_existent") is None

            storage.save("test_table", "record_2", {"id": "record_2", "username": "bob"})

            # Find goes through json_extract on the stored document
            results = storage.find("test_table", {"username": "alice"})
            assert len(results) == 1
            assert results[0]["id"] == "test_001"
            assert len(storage.find("test_table", {})) == 2

            assert storage.count("test_table") == 2

            storage.close()

    def test_load_returns_copies(self):
        """Mutating a loaded record must not change stored state"""
        storage = InMemoryStorage()
        storage.save("test_table", "record_1", test_data)

        loaded = storage.load("test_table", "record_1")
        loaded["balance"] = "0"

        assert storage.load("test_table", "record_1")["balance"] == "100.50"

    def test_sqlite_persists_across_connections(self):
        """Committed data survives reopening the database file"""
        with tempfile.TemporaryDirectory() as temp_dir:
            db_path = Path(temp_dir) / "test.db"
            storage = SQLiteStorage(db_path)
            with storage.atomic():
                storage.save("test_table", "record_1", test_data)
            storage.close()

            reopened = SQLiteStorage(db_path)
            assert reopened.load("test_table", "record_1") == test_data
            reopened.close()


class TestAtomic:
    """Test transaction scoping on every backend"""

    @pytest.fixture(params=["memory", "sqlite"])
    def storage(self, request):
        if request.param == "memory":
            backend = InMemoryStorage()
        else:
            backend = SQLiteStorage(":memory:")
        yield backend
        backend.close()

    def test_commit_on_success(self, storage):
        with storage.atomic():
            storage.save("test_table", "record_1", test_data)
            storage.save("test_table", "record_2", {"id": "record_2"})

        assert storage.count("test_table") == 2
        assert not storage.in_transaction

    def test_rollback_on_exception(self, storage):
        storage.save("test_table", "record_1", test_data)

        with pytest.raises(RuntimeError):
            with storage.atomic():
                storage.save("test_table", "record_1", {**test_data, "balance": "0.00"})
                storage.save("test_table", "record_2", {"id": "record_2"})
                raise RuntimeError("boom")

        assert storage.load("test_table", "record_1")["balance"] == "100.50"
        assert storage.load("test_table", "record_2") is None
        assert storage.count("test_table") == 1

    def test_nested_blocks_join_outer_transaction(self, storage):
        with pytest.raises(RuntimeError):
            with storage.atomic():
                with storage.atomic():
                    storage.save("test_table", "record_1", test_data)
                assert storage.in_transaction
                raise RuntimeError("outer fails after inner finished")

        assert storage.load("test_table", "record_1") is None

    def test_rollback_of_first_write_to_new_table(self, storage):
        """A table first touched inside a rolled back block is usable afterwards"""
        with pytest.raises(RuntimeError):
            with storage.atomic():
                storage.save("fresh_table", "record_1", test_data)
                raise RuntimeError("boom")

        storage.save("fresh_table", "record_2", {"id": "record_2"})
        assert storage.count("fresh_table") == 1

    def test_lock_timeout_raises_store_unavailable(self, storage):
        """A caller blocked behind another transaction gives up after the timeout"""
        storage.lock_timeout = 0.05
        entered = threading.Event()
        release = threading.Event()

        def hold_transaction():
            with storage.atomic():
                entered.set()
                release.wait(5)

        holder = threading.Thread(target=hold_transaction)
        holder.start()
        try:
            assert entered.wait(5)
            with pytest.raises(StoreUnavailable) as exc_info:
                storage.save("test_table", "record_1", test_data)
            assert exc_info.value.retryable
        finally:
            release.set()
            holder.join()

        # Lock is free again
        storage.save("test_table", "record_1", test_data)
        assert storage.load("test_table", "record_1") == test_data


class TestSQLiteFailures:
    """Test that sqlite errors surface as StoreUnavailable"""

    def test_closed_connection(self):
        storage = SQLiteStorage(":memory:")
        storage.close()

        with pytest.raises(StoreUnavailable):
            storage.load("test_table", "record_1")

    def test_unopenable_path(self):
        with tempfile.TemporaryDirectory() as temp_dir:
            missing = Path(temp_dir) / "no_such_dir" / "test.db"
            with pytest.raises(StoreUnavailable):
                SQLiteStorage(missing)


class TestInMemorySnapshots:
    """Test that rollback state is captured per table"""

    def test_only_written_tables_are_copied(self):
        storage = InMemoryStorage()
        storage.save("accounts", "ACC001", {"id": "ACC001"})
        storage.save("transactions", "TXN001", {"id": "TXN001"})

        with storage.atomic():
            storage.load("transactions", "TXN001")
            storage.save("accounts", "ACC002", {"id": "ACC002"})
            assert set(storage._snapshot) == {"accounts"}

        assert storage._snapshot is None
        assert storage.count("accounts") == 2

    def test_rollback_restores_only_touched_tables(self):
        storage = InMemoryStorage()
        storage.save("accounts", "ACC001", {"id": "ACC001", "balance": "10"})

        with pytest.raises(RuntimeError):
            with storage.atomic():
                storage.save("accounts", "ACC001", {"id": "ACC001", "balance": "0"})
                storage.save("transactions", "TXN001", {"id": "TXN001"})
                raise RuntimeError("boom")

        assert storage.load("accounts", "ACC001")["balance"] == "10"
        assert storage.count("transactions") == 0


class TestSQLiteSharedFile:
    """Two connections to one database file"""

    def setup_method(self):
        self.temp_dir = tempfile.TemporaryDirectory()
        self.db_path = Path(self.temp_dir.name) / "shared.db"
        self.first = SQLiteStorage(self.db_path)
        self.second = SQLiteStorage(self.db_path, lock_timeout=0.1)

    def teardown_method(self):
        self.first.close()
        self.second.close()
        self.temp_dir.cleanup()

    def test_atomic_block_takes_database_write_lock(self):
        """A block on one connection holds off blocks on the other"""
        self.first.save("test_table", "record_1", test_data)

        with self.first.atomic():
            self.first.load("test_table", "record_1")
            with pytest.raises(StoreUnavailable) as exc_info:
                with self.second.atomic():
                    pass
            assert exc_info.value.retryable

        # Released on commit
        with self.second.atomic():
            self.second.save("test_table", "record_2", {"id": "record_2"})
        assert self.first.count("test_table") == 2

    def test_uncommitted_writes_invisible_to_other_connection(self):
        self.first.save("test_table", "record_0", {"id": "record_0"})

        with self.first.atomic():
            self.first.save("test_table", "record_1", test_data)
            assert self.second.load("test_table", "record_1") is None

        assert self.second.load("test_table", "record_1") == test_data

    def test_rollback_discards_writes_for_other_connection(self):
        with pytest.raises(RuntimeError):
            with self.first.atomic():
                self.first.save("test_table", "record_1", test_data)
                raise RuntimeError("boom")

        assert self.second.load("test_table", "record_1") is None
