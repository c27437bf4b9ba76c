"""
Tests for LocalStore.

This module covers:
- Initialization, versioning and migrations
- Table operations and index queries
- Transaction atomicity
- Error translation
- Settings, export/import
- Thread safety
"""
import sqlite3
import threading
from concurrent.futures import ThreadPoolExecutor, as_completed
from unittest.mock import Mock

import pytest

from possync.errors import (
    QuotaExceededError,
    SchemaMigrationError,
    StorageError,
    ValidationError,
)
from possync.storage.local_store import SCHEMA_VERSION, TABLES, LocalStore, translate_error


class TestLocalStoreInit:
    """Test cases for opening and migrating the store."""

    @pytest.mark.unit
    def test_init_memory_database(self):
        """Test initialization with in-memory database."""
        store = LocalStore(":memory:")
        assert store.db_path == ":memory:"
        assert store._is_memory is True
        assert store.is_initialized is False
        store.initialize()
        assert store.schema_version == SCHEMA_VERSION
        store.close()

    @pytest.mark.unit
    def test_operations_before_initialize_raise(self):
        """Test that using the store before initialize() fails clearly."""
        store = LocalStore(":memory:")
        with pytest.raises(StorageError, match="not initialized"):
            store.get("products", "x")

    @pytest.mark.unit
    def test_initialize_is_idempotent(self):
        """Test that initialize returns the same handle when called twice."""
        store = LocalStore(":memory:")
        assert store.initialize() is store
        assert store.initialize() is store
        store.close()

    @pytest.mark.unit
    def test_initialize_creates_all_tables(self, store):
        """Test that every table exists after initialization."""
        counts = store.table_counts()
        assert set(counts) == set(TABLES)
        assert all(count == 0 for count in counts.values())

    @pytest.mark.unit
    def test_file_database_records_version(self, temp_db_path):
        """Test that the schema version is persisted in the file."""
        LocalStore(temp_db_path).initialize().close()

        conn = sqlite3.connect(temp_db_path)
        try:
            assert conn.execute("PRAGMA user_version").fetchone()[0] == SCHEMA_VERSION
        finally:
            conn.close()

    @pytest.mark.unit
    def test_data_survives_reopen(self, temp_db_path):
        """Test that committed records are durable across store instances."""
        store = LocalStore(temp_db_path).initialize()
        store.put("products", {"id": "p1", "name": "Tea", "price": 1.0, "stock": 2})
        store.close()

        reopened = LocalStore(temp_db_path).initialize()
        assert reopened.get("products", "p1")["name"] == "Tea"
        reopened.close()

    @pytest.mark.unit
    def test_upgrade_callback_runs_once(self, temp_db_path):
        """Test that the upgrade callback runs on the version bump only."""
        LocalStore(temp_db_path).initialize(schema_version=SCHEMA_VERSION).close()

        upgrade = Mock()
        store = LocalStore(temp_db_path).initialize(schema_version=SCHEMA_VERSION + 1, upgrade=upgrade)
        upgrade.assert_called_once()
        assert upgrade.call_args[0][0] == SCHEMA_VERSION
        store.close()

        upgrade.reset_mock()
        LocalStore(temp_db_path).initialize(schema_version=SCHEMA_VERSION + 1, upgrade=upgrade).close()
        upgrade.assert_not_called()

    @pytest.mark.unit
    def test_upgrade_from_v1_adds_queue_item_columns(self, temp_db_path):
        """Test that a v1 database without queue_item_id columns is migrated."""
        conn = sqlite3.connect(temp_db_path)
        conn.execute("CREATE TABLE orders (record_key TEXT PRIMARY KEY, data TEXT NOT NULL, "
                     "ix_status, ix_cashier_id, ix_customer_id)")
        conn.execute("CREATE TABLE inventory_transactions (record_key TEXT PRIMARY KEY, "
                     "data TEXT NOT NULL, ix_product_id, ix_order_id, ix_synced)")
        for table in ("products", "customers", "sync_queue", "settings"):
            conn.execute(f"CREATE TABLE {table} (record_key TEXT PRIMARY KEY, data TEXT NOT NULL)")
        conn.execute("PRAGMA user_version = 1")
        conn.commit()
        conn.close()

        store = LocalStore(temp_db_path).initialize()
        store.put("orders", {"id": "o1", "status": "pending", "queue_item_id": "q1"})
        assert [r["id"] for r in store.query_by_index("orders", "queue_item_id", "q1")] == ["o1"]
        store.close()

    @pytest.mark.unit
    def test_newer_stored_version_raises(self, temp_db_path):
        """Test that opening with an older version than stored is refused."""
        LocalStore(temp_db_path).initialize(schema_version=SCHEMA_VERSION + 1).close()

        with pytest.raises(SchemaMigrationError):
            LocalStore(temp_db_path).initialize(schema_version=SCHEMA_VERSION)

    @pytest.mark.unit
    def test_failed_upgrade_rolls_back(self, temp_db_path):
        """Test that a failing upgrade leaves the previous version intact."""
        LocalStore(temp_db_path).initialize().close()

        def broken_upgrade(old_version, conn):
            conn.execute("CREATE TABLE extra (id TEXT)")
            raise RuntimeError("boom")

        with pytest.raises(SchemaMigrationError, match="boom"):
            LocalStore(temp_db_path).initialize(schema_version=SCHEMA_VERSION + 1, upgrade=broken_upgrade)

        conn = sqlite3.connect(temp_db_path)
        try:
            assert conn.execute("PRAGMA user_version").fetchone()[0] == SCHEMA_VERSION
            tables = {row[0] for row in conn.execute("SELECT name FROM sqlite_master WHERE type='table'")}
            assert "extra" not in tables
        finally:
            conn.close()


class TestLocalStoreOperations:
    """Test cases for get/put/delete/query."""

    @pytest.mark.unit
    def test_get_missing_returns_none(self, store):
        """Test that a missing record is a normal empty result."""
        assert store.get("products", "nope") is None

    @pytest.mark.unit
    def test_put_and_get(self, store):
        """Test storing and reading back a record."""
        record = {"id": "p1", "name": "Bánh mì", "price": 20000.0, "stock": 4}
        store.put("products", record)
        assert store.get("products", "p1") == record

    @pytest.mark.unit
    def test_put_overwrites_and_keeps_order(self, store):
        """Test that an upsert replaces data without moving the record."""
        store.put("products", {"id": "a", "name": "first"})
        store.put("products", {"id": "b", "name": "second"})
        store.put("products", {"id": "a", "name": "first, edited"})

        records = store.get_all("products")
        assert [r["id"] for r in records] == ["a", "b"]
        assert records[0]["name"] == "first, edited"

    @pytest.mark.unit
    def test_put_without_key_raises(self, store):
        """Test that records must carry their key field."""
        with pytest.raises(ValidationError):
            store.put("products", {"name": "no id"})

    @pytest.mark.unit
    def test_settings_keyed_by_key(self, store):
        """Test that the settings table uses 'key' as its key field."""
        store.set_setting("last_sync_time", "2025-01-15T09:00:00")
        assert store.get_setting("last_sync_time") == "2025-01-15T09:00:00"
        assert store.get_setting("missing", default=42) == 42

    @pytest.mark.unit
    def test_delete(self, store):
        """Test delete reports whether a record existed."""
        store.put("customers", {"id": "c1", "name": "An"})
        assert store.delete("customers", "c1") is True
        assert store.delete("customers", "c1") is False
        assert store.get("customers", "c1") is None

    @pytest.mark.unit
    def test_query_by_index(self, store):
        """Test index lookups, including booleans and nulls."""
        store.put("inventory_transactions", {"id": "t1", "product_id": "p1", "synced": False})
        store.put("inventory_transactions", {"id": "t2", "product_id": "p1", "synced": True})
        store.put("inventory_transactions", {"id": "t3", "product_id": "p2", "synced": False})

        assert [r["id"] for r in store.query_by_index("inventory_transactions", "product_id", "p1")] == ["t1", "t2"]
        assert [r["id"] for r in store.query_by_index("inventory_transactions", "synced", False)] == ["t1", "t3"]
        assert [r["id"] for r in store.query_by_index("inventory_transactions", "order_id", None)] == ["t1", "t2", "t3"]

    @pytest.mark.unit
    def test_query_unknown_index_raises(self, store):
        """Test that querying an undeclared index is an error."""
        with pytest.raises(StorageError, match="no index"):
            store.query_by_index("products", "price", 1)

    @pytest.mark.unit
    def test_unknown_table_raises(self, store):
        """Test that unknown tables are rejected."""
        with pytest.raises(StorageError, match="Unknown table"):
            store.get("widgets", "x")

    @pytest.mark.unit
    def test_replace_all(self, store):
        """Test replacing a table's contents."""
        store.put("products", {"id": "old"})
        store.replace_all("products", [{"id": "new1"}, {"id": "new2"}])
        assert [r["id"] for r in store.get_all("products")] == ["new1", "new2"]


class TestLocalStoreTransactions:
    """Test cases for multi-table transactions."""

    @pytest.mark.unit
    def test_transaction_commits(self, store):
        """Test that all writes in a block are committed together."""
        with store.transaction() as tx:
            tx.put("orders", {"id": "o1", "status": "pending"})
            tx.put("sync_queue", {"id": "q1", "status": "pending", "domain_type": "order"})

        assert store.get("orders", "o1") is not None
        assert store.get("sync_queue", "q1") is not None

    @pytest.mark.unit
    def test_transaction_rolls_back_on_error(self, store):
        """Test that an exception discards every write in the block."""
        with pytest.raises(RuntimeError):
            with store.transaction() as tx:
                tx.put("orders", {"id": "o1", "status": "pending"})
                tx.put("sync_queue", {"id": "q1", "status": "pending"})
                raise RuntimeError("interrupted")

        assert store.get("orders", "o1") is None
        assert store.get("sync_queue", "q1") is None

    @pytest.mark.unit
    def test_store_usable_after_rollback(self, store):
        """Test that a rolled back transaction leaves the store usable."""
        with pytest.raises(ValidationError):
            with store.transaction() as tx:
                tx.put("products", {"id": "p1"})
                tx.put("products", {"name": "missing id"})

        store.put("products", {"id": "p2"})
        assert [r["id"] for r in store.get_all("products")] == ["p2"]


class TestErrorTranslation:
    """Test cases for sqlite error mapping."""

    @pytest.mark.unit
    def test_disk_full_maps_to_quota(self):
        """Test that a full disk becomes QuotaExceededError."""
        error = translate_error(sqlite3.OperationalError("database or disk is full"), "put")
        assert isinstance(error, QuotaExceededError)
        assert isinstance(error, StorageError)

    @pytest.mark.unit
    def test_other_errors_map_to_storage_error(self):
        """Test that other failures become plain StorageError."""
        error = translate_error(sqlite3.OperationalError("database is locked"), "put")
        assert type(error) is StorageError
        assert "locked" in str(error)


class TestExportImport:
    """Test cases for backup snapshots."""

    @pytest.mark.unit
    def test_export_contains_every_table(self, store, clock):
        """Test that export includes all tables and metadata."""
        store.put("products", {"id": "p1", "name": "Tea"})
        data = store.export_data()

        for table in TABLES:
            assert table in data
        assert data["products"] == [{"id": "p1", "name": "Tea"}]
        assert data["schema_version"] == SCHEMA_VERSION
        assert data["exported_at"].startswith("2025-01-15T09:00:00")

    @pytest.mark.unit
    def test_import_replaces_contents(self, store, clock):
        """Test that importing a snapshot restores it exactly."""
        store.put("products", {"id": "p1"})
        snapshot = store.export_data()

        store.put("products", {"id": "p2"})
        store.put("customers", {"id": "c1", "name": "An"})
        store.import_data(snapshot)

        assert [r["id"] for r in store.get_all("products")] == ["p1"]
        assert store.get_all("customers") == []

    @pytest.mark.unit
    def test_database_size(self, store):
        """Test that the size estimate is positive."""
        assert store.database_size() > 0


class TestLocalStoreConcurrency:
    """Test cases for thread safety."""

    @pytest.mark.concurrency
    def test_concurrent_puts(self, temp_db_path):
        """Test that concurrent writers do not lose records."""
        store = LocalStore(temp_db_path).initialize()

        def write(i):
            store.put("products", {"id": f"p{i}", "stock": i})
            return i

        with ThreadPoolExecutor(max_workers=8) as executor:
            futures = [executor.submit(write, i) for i in range(100)]
            for future in as_completed(futures):
                future.result()

        assert store.table_counts()["products"] == 100
        store.close()

    @pytest.mark.concurrency
    def test_concurrent_memory_transactions(self, store):
        """Test that the shared in-memory connection serializes transactions."""
        errors = []

        def write(i):
            try:
                with store.transaction() as tx:
                    tx.put("orders", {"id": f"o{i}", "status": "pending"})
                    tx.put("sync_queue", {"id": f"q{i}", "status": "pending"})
            except Exception as e:
                errors.append(e)

        threads = [threading.Thread(target=write, args=(i,)) for i in range(20)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert errors == []
        counts = store.table_counts()
        assert counts["orders"] == 20
        assert counts["sync_queue"] == 20
