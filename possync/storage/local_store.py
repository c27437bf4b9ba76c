"""
Local SQLite store for offline operation.

This module keeps every table the terminal needs while disconnected: the
catalog and customer mirrors, orders taken offline, the inventory ledger,
the sync queue and engine settings. Each record is a JSON document keyed by
its id, with a handful of extracted columns for index lookups.
"""

import json
import logging
import sqlite3
import threading
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Any, Callable, Dict, Iterator, List, Optional, Tuple

from ..errors import QuotaExceededError, SchemaMigrationError, StorageError, ValidationError
from ..utils.clock import SystemClock, to_iso
from ..utils.serialization import dumps

logger = logging.getLogger(__name__)

SCHEMA_VERSION = 2

UpgradeCallback = Callable[[int, sqlite3.Connection], None]


@dataclass(frozen=True)
class TableSpec:
    key_field: str
    indexes: Tuple[str, ...] = ()


TABLES: Dict[str, TableSpec] = {
    "products": TableSpec("id", ("barcode", "category", "sku")),
    "customers": TableSpec("id", ("phone", "email")),
    "orders": TableSpec("id", ("status", "cashier_id", "customer_id", "queue_item_id")),
    "inventory_transactions": TableSpec("id", ("product_id", "order_id", "queue_item_id", "synced")),
    "sync_queue": TableSpec("id", ("status", "domain_type")),
    "settings": TableSpec("key"),
}


def _index_column(name: str) -> str:
    return f"ix_{name}"


def _create_table(conn: sqlite3.Connection, table: str) -> None:
    spec = TABLES[table]
    extra = "".join(f", {_index_column(name)}" for name in spec.indexes)
    conn.execute(f"""
        CREATE TABLE IF NOT EXISTS {table} (
            record_key TEXT PRIMARY KEY,
            data TEXT NOT NULL{extra}
        )
    """)
    for name in spec.indexes:
        conn.execute(f"""
            CREATE INDEX IF NOT EXISTS idx_{table}_{name}
            ON {table}({_index_column(name)})
        """)


def _migrate_v1(conn: sqlite3.Connection) -> None:
    for table in ("products", "customers", "orders", "inventory_transactions", "sync_queue", "settings"):
        _create_table(conn, table)


def _migrate_v2(conn: sqlite3.Connection) -> None:
    # v2 started tracking which queue item carries each order and stock change.
    for table, column in (("orders", "queue_item_id"), ("inventory_transactions", "queue_item_id")):
        existing = {row[1] for row in conn.execute(f"PRAGMA table_info({table})")}
        if _index_column(column) not in existing:
            conn.execute(f"ALTER TABLE {table} ADD COLUMN {_index_column(column)}")
            conn.execute(f"""
                CREATE INDEX IF NOT EXISTS idx_{table}_{column}
                ON {table}({_index_column(column)})
            """)


MIGRATIONS: Dict[int, Callable[[sqlite3.Connection], None]] = {
    1: _migrate_v1,
    2: _migrate_v2,
}


def translate_error(exc: sqlite3.Error, operation: str) -> StorageError:
    """Map a sqlite3 error onto the storage error taxonomy."""
    name = getattr(exc, "sqlite_errorname", "")
    message = str(exc)
    if name == "SQLITE_FULL" or "disk is full" in message:
        return QuotaExceededError(f"Local storage full during {operation}: {message}", cause=exc)
    return StorageError(f"Local storage failure during {operation}: {message}", cause=exc)


def _spec(table: str) -> TableSpec:
    try:
        return TABLES[table]
    except KeyError:
        raise StorageError(f"Unknown table: {table}") from None


def _index_value(value: Any) -> Any:
    if isinstance(value, bool):
        return int(value)
    if value is None or isinstance(value, (str, int, float)):
        return value
    return str(value)


class StoreTransaction:
    """
    Table operations bound to one open SQLite transaction.

    Obtained from LocalStore.transaction(); everything done through it
    commits or rolls back together.
    """

    def __init__(self, conn: sqlite3.Connection):
        self._conn = conn

    def _execute(self, operation: str, sql: str, params: tuple = ()) -> sqlite3.Cursor:
        try:
            return self._conn.execute(sql, params)
        except sqlite3.Error as e:
            raise translate_error(e, operation) from e

    def get(self, table: str, key: str) -> Optional[Dict[str, Any]]:
        _spec(table)
        row = self._execute(
            "get", f"SELECT data FROM {table} WHERE record_key = ?", (str(key),)
        ).fetchone()
        return json.loads(row[0]) if row else None

    def put(self, table: str, record: Dict[str, Any]) -> None:
        spec = _spec(table)
        key = record.get(spec.key_field)
        if key is None:
            raise ValidationError(f"Record for {table} is missing '{spec.key_field}'")

        columns = ["record_key", "data"] + [_index_column(name) for name in spec.indexes]
        values = [str(key), dumps(record)] + [_index_value(record.get(name)) for name in spec.indexes]
        placeholders = ", ".join("?" for _ in columns)
        updates = ", ".join(f"{col} = excluded.{col}" for col in columns[1:])
        # Upsert keeps the original rowid, which preserves insertion order.
        self._execute(
            "put",
            f"INSERT INTO {table} ({', '.join(columns)}) VALUES ({placeholders}) "
            f"ON CONFLICT(record_key) DO UPDATE SET {updates}",
            tuple(values),
        )

    def delete(self, table: str, key: str) -> bool:
        _spec(table)
        cursor = self._execute("delete", f"DELETE FROM {table} WHERE record_key = ?", (str(key),))
        return cursor.rowcount > 0

    def get_all(self, table: str) -> List[Dict[str, Any]]:
        _spec(table)
        rows = self._execute("get_all", f"SELECT data FROM {table} ORDER BY rowid ASC").fetchall()
        return [json.loads(row[0]) for row in rows]

    def query_by_index(self, table: str, index_name: str, value: Any) -> List[Dict[str, Any]]:
        spec = _spec(table)
        if index_name not in spec.indexes:
            raise StorageError(f"Table {table} has no index '{index_name}'")
        column = _index_column(index_name)
        if value is None:
            sql = f"SELECT data FROM {table} WHERE {column} IS NULL ORDER BY rowid ASC"
            params: tuple = ()
        else:
            sql = f"SELECT data FROM {table} WHERE {column} = ? ORDER BY rowid ASC"
            params = (_index_value(value),)
        rows = self._execute("query_by_index", sql, params).fetchall()
        return [json.loads(row[0]) for row in rows]

    def count(self, table: str) -> int:
        _spec(table)
        return self._execute("count", f"SELECT COUNT(*) FROM {table}").fetchone()[0]

    def clear(self, table: str) -> int:
        _spec(table)
        return self._execute("clear", f"DELETE FROM {table}").rowcount

    def replace_all(self, table: str, records: List[Dict[str, Any]]) -> None:
        self.clear(table)
        for record in records:
            self.put(table, record)


class LocalStore:
    """
    SQLite-backed durable store for mirrors, orders and the sync queue.

    This class provides:
    - Versioned schema with ordered migrations
    - One transaction per operation, plus explicit multi-table transactions
    - Thread-safe operations
    - Distinct errors for quota exhaustion and migration failures; missing
      records are reported as None, never as an exception
    """

    DEFAULT_DB_PATH = "possync.db"

    def __init__(self, db_path: Optional[str] = None, clock=None):
        """
        Create the store. Nothing is opened until initialize() is called.

        Args:
            db_path: Path to the SQLite database file. If None, uses default.
                     Use ":memory:" for in-memory database (useful for testing).
            clock: Clock used for settings timestamps
        """
        self.db_path = db_path or self.DEFAULT_DB_PATH
        self.clock = clock or SystemClock()
        self._lock = threading.RLock()
        self._is_memory = self.db_path == ":memory:"
        self._shared_conn: Optional[sqlite3.Connection] = None
        self._schema_version: Optional[int] = None

    @property
    def schema_version(self) -> Optional[int]:
        return self._schema_version

    @property
    def is_initialized(self) -> bool:
        return self._schema_version is not None

    def _connect(self) -> sqlite3.Connection:
        try:
            # Autocommit mode: transactions are opened explicitly below.
            return sqlite3.connect(
                self.db_path,
                timeout=5.0,
                isolation_level=None,
                check_same_thread=not self._is_memory,
            )
        except sqlite3.Error as e:
            raise translate_error(e, "connect") from e

    @contextmanager
    def _connection(self) -> Iterator[sqlite3.Connection]:
        # For in-memory databases, reuse the same connection
        if self._is_memory:
            if self._shared_conn is None:
                self._shared_conn = self._connect()
            yield self._shared_conn
            return

        conn = self._connect()
        try:
            yield conn
        finally:
            conn.close()

    def initialize(
        self,
        schema_version: int = SCHEMA_VERSION,
        upgrade: Optional[UpgradeCallback] = None,
    ) -> 'LocalStore':
        """
        Open the store and bring its schema up to schema_version.

        Built-in migrations for every version above the stored one run first,
        then the optional upgrade callback, all inside one transaction. Safe to
        call repeatedly: once initialized the same handle is returned.

        Args:
            schema_version: Version the caller expects
            upgrade: Optional callback(old_version, connection) for extra steps

        Returns:
            This store

        Raises:
            SchemaMigrationError: If the stored schema is newer or a migration fails
        """
        with self._lock:
            if self._schema_version is not None:
                return self

            with self._connection() as conn:
                try:
                    current = conn.execute("PRAGMA user_version").fetchone()[0]
                except sqlite3.Error as e:
                    raise translate_error(e, "initialize") from e

                if current > schema_version:
                    raise SchemaMigrationError(
                        f"Stored schema v{current} is newer than requested v{schema_version}",
                        details={"stored": current, "requested": schema_version},
                    )

                if current < schema_version:
                    self._migrate(conn, current, schema_version, upgrade)

            self._schema_version = schema_version
            return self

    def _migrate(
        self,
        conn: sqlite3.Connection,
        current: int,
        target: int,
        upgrade: Optional[UpgradeCallback],
    ) -> None:
        logger.info(f"Migrating local store {self.db_path} from v{current} to v{target}")
        try:
            conn.execute("BEGIN IMMEDIATE")
            for version in range(current + 1, target + 1):
                step = MIGRATIONS.get(version)
                if step is not None:
                    step(conn)
            if upgrade is not None:
                upgrade(current, conn)
            conn.execute(f"PRAGMA user_version = {int(target)}")
            conn.execute("COMMIT")
        except Exception as e:
            if conn.in_transaction:
                conn.execute("ROLLBACK")
            logger.error(f"Schema migration to v{target} failed: {e}")
            if isinstance(e, sqlite3.Error):
                storage_error = translate_error(e, "migrate")
                if isinstance(storage_error, QuotaExceededError):
                    raise storage_error from e
            raise SchemaMigrationError(
                f"Migration from v{current} to v{target} failed: {e}",
                details={"stored": current, "requested": target},
                cause=e,
            ) from e

    def _ensure_initialized(self) -> None:
        if self._schema_version is None:
            raise StorageError("Local store not initialized. Call initialize() first.")

    @contextmanager
    def transaction(self, write: bool = True) -> Iterator[StoreTransaction]:
        """
        Open a transaction spanning any number of table operations.

        Commits when the block exits normally, rolls back on any exception.
        Other store methods must not be called from inside the block; use the
        yielded handle instead.

        Args:
            write: Take the write lock up front (BEGIN IMMEDIATE)
        """
        self._ensure_initialized()
        with self._lock:
            with self._connection() as conn:
                try:
                    conn.execute("BEGIN IMMEDIATE" if write else "BEGIN")
                except sqlite3.Error as e:
                    raise translate_error(e, "begin") from e

                try:
                    yield StoreTransaction(conn)
                except BaseException:
                    if conn.in_transaction:
                        conn.execute("ROLLBACK")
                    raise

                try:
                    conn.execute("COMMIT")
                except sqlite3.Error as e:
                    if conn.in_transaction:
                        conn.execute("ROLLBACK")
                    raise translate_error(e, "commit") from e

    def get(self, table: str, key: str) -> Optional[Dict[str, Any]]:
        with self.transaction(write=False) as tx:
            return tx.get(table, key)

    def put(self, table: str, record: Dict[str, Any]) -> None:
        with self.transaction() as tx:
            tx.put(table, record)

    def delete(self, table: str, key: str) -> bool:
        with self.transaction() as tx:
            return tx.delete(table, key)

    def get_all(self, table: str) -> List[Dict[str, Any]]:
        with self.transaction(write=False) as tx:
            return tx.get_all(table)

    def query_by_index(self, table: str, index_name: str, value: Any) -> List[Dict[str, Any]]:
        with self.transaction(write=False) as tx:
            return tx.query_by_index(table, index_name, value)

    def replace_all(self, table: str, records: List[Dict[str, Any]]) -> None:
        """
        Clear a table and insert records in its place, atomically.

        Args:
            table: Table to replace
            records: New contents
        """
        with self.transaction() as tx:
            tx.replace_all(table, records)
        logger.debug(f"Replaced {table} with {len(records)} records")

    def get_setting(self, key: str, default: Any = None) -> Any:
        record = self.get("settings", key)
        return record["value"] if record else default

    def set_setting(self, key: str, value: Any) -> None:
        self.put("settings", {
            "key": key,
            "value": value,
            "last_updated": to_iso(self.clock.now()),
        })

    def table_counts(self) -> Dict[str, int]:
        with self.transaction(write=False) as tx:
            return {table: tx.count(table) for table in TABLES}

    def database_size(self) -> int:
        """Approximate size of the database in bytes."""
        self._ensure_initialized()
        with self._lock, self._connection() as conn:
            try:
                page_count = conn.execute("PRAGMA page_count").fetchone()[0]
                page_size = conn.execute("PRAGMA page_size").fetchone()[0]
            except sqlite3.Error as e:
                raise translate_error(e, "database_size") from e
        return page_count * page_size

    def export_data(self) -> Dict[str, Any]:
        """
        Snapshot every table for backup.

        Returns:
            Dictionary of table name to records, plus export metadata
        """
        with self.transaction(write=False) as tx:
            data: Dict[str, Any] = {table: tx.get_all(table) for table in TABLES}
        data["schema_version"] = self._schema_version
        data["exported_at"] = to_iso(self.clock.now())
        return data

    def import_data(self, data: Dict[str, Any]) -> None:
        """
        Restore a snapshot produced by export_data, replacing current contents.

        Tables missing from the snapshot are left empty.
        """
        with self.transaction() as tx:
            for table in TABLES:
                tx.replace_all(table, data.get(table, []))
        logger.info("Local store restored from backup")

    def close(self) -> None:
        """Close the store and any open connections."""
        with self._lock:
            if self._shared_conn is not None:
                self._shared_conn.close()
                self._shared_conn = None
            self._schema_version = None
