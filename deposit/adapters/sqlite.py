"""SQLite storage adapter with versioned schema upgrades.

Each schema table becomes one SQLite table holding the primary key and the
JSON-encoded record. The database version is kept in ``PRAGMA user_version``;
opening with a higher version creates missing tables and indexes and runs
the migration callback inside the same transaction.

Every CRUD call runs in exactly one native transaction. Writes issued by a
single call are atomic; nothing spans more than one call.
"""

import asyncio
import inspect
import logging
import sqlite3
from collections.abc import Awaitable, Callable, Iterable, Mapping
from pathlib import Path
from typing import Any, Literal, TypeVar

import msgspec

from ..exceptions import (
    DepositError,
    MigrationError,
    TransactionAbortedError,
    VersionError,
)
from ..expiry import now_ms, unwrap_with_expiry, wrap_with_expiry
from ..schema import Schema, TableSchema, record_key, table_schema, validate_schema
from .base import run_safe

logger = logging.getLogger(__name__)

T = TypeVar("T")

Mode = Literal["readonly", "readwrite", "versionchange"]


def _quote(identifier: str) -> str:
    """Quote an SQL identifier."""
    return '"' + identifier.replace('"', '""') + '"'


class ObjectStore:
    """Handle on one table inside an open transaction."""

    def __init__(
        self,
        connection: sqlite3.Connection,
        name: str,
        definition: TableSchema,
        mode: Mode,
    ):
        self.connection = connection
        self.name = name
        self.definition = definition
        self.mode = mode
        self._table = _quote(name)

    @property
    def key_field(self) -> str:
        return self.definition.key

    def get_raw(self, key: Any) -> str | None:
        """Fetch the stored JSON for a key."""
        row = self.connection.execute(
            f"SELECT value FROM {self._table} WHERE key = ?", (key,)
        ).fetchone()
        return row[0] if row else None

    def get(self, key: Any) -> dict[str, Any] | None:
        """Fetch and decode a record."""
        item = self.get_raw(key)
        return None if item is None else msgspec.json.decode(item)

    def items(self) -> list[tuple[Any, str]]:
        """All (key, stored JSON) pairs ordered by key."""
        cursor = self.connection.execute(
            f"SELECT key, value FROM {self._table} ORDER BY key"
        )
        return [(row[0], row[1]) for row in cursor]

    def get_all(self) -> list[dict[str, Any]]:
        """All decoded records ordered by key."""
        return [msgspec.json.decode(item) for _, item in self.items()]

    def put(self, record: Mapping[str, Any]) -> Any:
        """Insert or replace a record, returning its key."""
        self._check_writable()
        key = record_key({self.name: self.definition}, self.name, record)
        self.connection.execute(
            f"""
            INSERT INTO {self._table} (key, value) VALUES (?, ?)
            ON CONFLICT(key) DO UPDATE SET value = excluded.value
            """,
            (key, msgspec.json.encode(record).decode()),
        )
        return key

    def delete(self, key: Any) -> None:
        """Delete a record by key."""
        self._check_writable()
        self.connection.execute(f"DELETE FROM {self._table} WHERE key = ?", (key,))

    def discard(self, key: Any, item: str) -> None:
        """Delete a record only while it still holds the given stored JSON."""
        self._check_writable()
        self.connection.execute(
            f"DELETE FROM {self._table} WHERE key = ? AND value = ?", (key, item)
        )

    def clear(self) -> None:
        """Delete every record."""
        self._check_writable()
        self.connection.execute(f"DELETE FROM {self._table}")

    def count(self) -> int:
        """Count stored rows, including expired ones."""
        return self.connection.execute(
            f"SELECT COUNT(*) FROM {self._table}"
        ).fetchone()[0]

    def create_index(self, field: str) -> None:
        """Create a secondary index on a record field."""
        self._check_writable()
        path = '$."' + field.replace('"', '\\"') + '"'
        path = path.replace("'", "''")
        self.connection.execute(
            f"CREATE INDEX IF NOT EXISTS {_quote(f'{self.name}.{field}')} "
            f"ON {self._table} (json_extract(value, '{path}'))"
        )

    def index_names(self) -> list[str]:
        """Names of the record fields that carry an index."""
        prefix = f"{self.name}."
        cursor = self.connection.execute(
            """
            SELECT name FROM sqlite_master
            WHERE type = 'index' AND tbl_name = ? AND sql IS NOT NULL
            ORDER BY name
            """,
            (self.name,),
        )
        return [row[0][len(prefix) :] for row in cursor if row[0].startswith(prefix)]

    def _check_writable(self) -> None:
        if self.mode == "readonly":
            raise DepositError(f"Cannot write to {self.name} in a readonly transaction")


class NativeTransaction:
    """An open SQLite transaction scoped to some tables."""

    def __init__(
        self,
        connection: sqlite3.Connection,
        tables: list[str],
        schema: Schema,
        mode: Mode,
    ):
        self.connection = connection
        self.tables = tables
        self.schema = schema
        self.mode = mode
        self.aborted = False

    def store(self, name: str | None = None) -> ObjectStore:
        """Get a table handle; defaults to the first scoped table."""
        name = self.tables[0] if name is None else name
        if name not in self.tables:
            raise DepositError(f"Table {name} is not part of this transaction")
        return ObjectStore(
            self.connection, name, table_schema(self.schema, name), self.mode
        )

    def abort(self) -> None:
        """Roll back this transaction when the current call ends."""
        self.aborted = True


MigrationFn = Callable[
    [sqlite3.Connection, int, int, NativeTransaction, Schema],
    Awaitable[None] | None,
]


class SQLiteAdapter:
    """Adapter over a versioned SQLite database."""

    def __init__(
        self,
        db_name: str,
        version: int,
        schema: Mapping[str, Any],
        migration: MigrationFn | None = None,
        directory: Path | str | None = None,
    ):
        if not isinstance(version, int) or version < 1:
            raise ValueError(f"version must be a positive integer, got {version!r}")

        self.schema = validate_schema(schema)
        self.db_name = db_name
        self.version = version
        self.migration = migration
        self.path: Path | None = None
        if directory is not None:
            self.path = Path(directory) / f"{db_name}.sqlite3"

        self.conn: sqlite3.Connection | None = None
        self._opening: asyncio.Future[None] | None = None
        self._pending: set[asyncio.Task] = set()

    async def connect(self) -> None:
        """Open the database, upgrading it if the version increased.

        Raises:
            VersionError: If the stored version is newer than requested.
            MigrationError: If the upgrade or migration callback fails.
        """
        if self.conn is not None:
            return
        if self._opening is None:
            self._opening = asyncio.ensure_future(self._open())
        try:
            await self._opening
        finally:
            self._opening = None

    async def close(self) -> None:
        """Wait for pending evictions and close the connection."""
        await self.settle()
        if self.conn is not None:
            self.conn.close()
            self.conn = None

    async def settle(self) -> None:
        """Wait until every background eviction has finished."""
        while self._pending:
            await asyncio.gather(*list(self._pending))

    @run_safe("GET_FAILED")
    async def get(self, table: str, key: Any, default: Any = None) -> Any:
        """Read one record."""
        item = await self._with_transaction(
            table, "readonly", lambda tx: tx.store().get_raw(key)
        )
        if item is None:
            return default

        record = self._decode(table, item)
        if record is None:
            self._evict(table, [(key, item)])
            return default

        record = unwrap_with_expiry(
            record, now_ms(), lambda: self._evict(table, [(key, item)])
        )
        return default if record is None else record

    @run_safe("GET_ALL_FAILED")
    async def get_all(self, table: str) -> list[dict[str, Any]]:
        """Read every live record ordered by key."""
        rows = await self._with_transaction(
            table, "readonly", lambda tx: tx.store().items()
        )

        now = now_ms()
        records = []
        stale: list[tuple[Any, str]] = []
        for key, item in rows:
            record = self._decode(table, item)
            if record is None:
                stale.append((key, item))
                continue
            record = unwrap_with_expiry(
                record, now, lambda row=(key, item): stale.append(row)
            )
            if record is not None:
                records.append(record)

        if stale:
            self._evict(table, stale)
        return records

    @run_safe("PUT_FAILED")
    async def put(
        self, table: str, record: Mapping[str, Any], ttl: int | None = None
    ) -> None:
        """Insert or replace a record."""
        await self._with_transaction(
            table, "readwrite", lambda tx: tx.store().put(wrap_with_expiry(record, ttl))
        )

    @run_safe("BULK_PUT_FAILED")
    async def bulk_put(
        self, table: str, records: Iterable[Mapping[str, Any]], ttl: int | None = None
    ) -> None:
        """Insert or replace several records in one transaction."""

        def write(tx: NativeTransaction) -> None:
            store = tx.store()
            for record in records:
                store.put(wrap_with_expiry(record, ttl))

        await self._with_transaction(table, "readwrite", write)

    @run_safe("DELETE_FAILED")
    async def delete(self, table: str, key: Any) -> None:
        """Delete a record; missing keys are ignored."""
        await self._with_transaction(
            table, "readwrite", lambda tx: tx.store().delete(key)
        )

    @run_safe("BULK_DELETE_FAILED")
    async def bulk_delete(self, table: str, keys: Iterable[Any]) -> None:
        """Delete several records in one transaction."""

        def remove(tx: NativeTransaction) -> None:
            store = tx.store()
            for key in keys:
                store.delete(key)

        await self._with_transaction(table, "readwrite", remove)

    @run_safe("CLEAR_FAILED")
    async def clear(self, table: str) -> None:
        """Delete every record of a table."""
        await self._with_transaction(table, "readwrite", lambda tx: tx.store().clear())

    @run_safe("COUNT_FAILED")
    async def count(self, table: str) -> int:
        """Count live records."""
        return len(await self.get_all(table) or [])

    async def indexes(self, table: str) -> list[str]:
        """List the indexed fields of a table."""
        return await self._with_transaction(
            table, "readonly", lambda tx: tx.store().index_names()
        )

    async def _with_transaction(
        self,
        tables: str | list[str],
        mode: Mode,
        fn: Callable[[NativeTransaction], T],
    ) -> T:
        """Run ``fn`` inside one native transaction.

        The result is returned only once the transaction has committed. If
        ``fn`` raises or aborts the transaction, everything it wrote is
        rolled back.
        """
        if self.conn is None:
            await self.connect()
        conn = self.conn
        assert conn is not None

        names = [tables] if isinstance(tables, str) else list(tables)
        for name in names:
            table_schema(self.schema, name)
        label = ", ".join(names)

        conn.execute("BEGIN IMMEDIATE" if mode == "readwrite" else "BEGIN")
        tx = NativeTransaction(conn, names, self.schema, mode)

        try:
            result = fn(tx)
        except Exception as e:
            conn.execute("ROLLBACK")
            raise TransactionAbortedError(f"Transaction aborted for {label}") from e

        if tx.aborted:
            conn.execute("ROLLBACK")
            raise TransactionAbortedError(f"Transaction aborted for {label}")

        try:
            conn.execute("COMMIT")
        except sqlite3.Error as e:
            if conn.in_transaction:
                conn.execute("ROLLBACK")
            raise TransactionAbortedError(f"Transaction error for {label}") from e

        return result

    async def _open(self) -> None:
        target = ":memory:" if self.path is None else str(self.path)
        if self.path is not None:
            self.path.parent.mkdir(parents=True, exist_ok=True)

        conn = sqlite3.connect(target, isolation_level=None)
        try:
            stored = conn.execute("PRAGMA user_version").fetchone()[0]
            if self.version < stored:
                raise VersionError(self.version, stored)
            if self.version > stored:
                await self._upgrade(conn, stored)
        except BaseException:
            conn.close()
            raise

        self.conn = conn

    async def _upgrade(self, conn: sqlite3.Connection, old_version: int) -> None:
        logger.info(
            f"Upgrading {self.db_name} from version {old_version} to {self.version}"
        )
        conn.execute("BEGIN IMMEDIATE")
        tx = NativeTransaction(conn, list(self.schema), self.schema, "versionchange")

        try:
            self._create_tables(tx)
            if self.migration is not None:
                result = self.migration(
                    conn, old_version, self.version, tx, self.schema
                )
                if inspect.isawaitable(result):
                    await result
            if tx.aborted:
                raise MigrationError("Migration aborted")
            conn.execute(f"PRAGMA user_version = {int(self.version)}")
            conn.execute("COMMIT")
        except Exception as e:
            if conn.in_transaction:
                conn.execute("ROLLBACK")
            if isinstance(e, MigrationError):
                raise
            raise MigrationError(f"Migration failed: {e}") from e

    def _create_tables(self, tx: NativeTransaction) -> None:
        """Create every table missing from the database, with its indexes."""
        existing = {
            row[0]
            for row in tx.connection.execute(
                "SELECT name FROM sqlite_master WHERE type = 'table'"
            )
        }

        for name, definition in self.schema.items():
            if name in existing:
                continue

            tx.connection.execute(
                f"CREATE TABLE {_quote(name)} (key PRIMARY KEY, value TEXT NOT NULL)"
            )
            store = tx.store(name)

            created: set[str] = set()
            for field in definition.indexes:
                if field in created:
                    logger.warning(
                        f'Duplicate index "{field}" in table "{name}" schema - skipping'
                    )
                    continue
                if field == definition.key:
                    logger.warning(
                        f'Skipping index on key field "{field}" in table "{name}"'
                    )
                    continue
                try:
                    store.create_index(field)
                    created.add(field)
                except sqlite3.Error as e:
                    logger.error(
                        f'Failed to create index "{field}" in table "{name}": {e}'
                    )

    def _decode(self, table: str, item: str) -> dict[str, Any] | None:
        try:
            record = msgspec.json.decode(item)
        except msgspec.DecodeError as e:
            logger.warning(f"Skipping corrupted entry in {table}: {e}")
            return None
        if not isinstance(record, dict):
            logger.warning(f"Skipping corrupted entry in {table}: not a record")
            return None
        return record

    @run_safe("EVICT_FAILED")
    async def _discard(self, table: str, rows: list[tuple[Any, str]]) -> None:
        """Delete rows that still hold the stale values a read saw."""

        def remove(tx: NativeTransaction) -> None:
            store = tx.store()
            for key, item in rows:
                store.discard(key, item)

        await self._with_transaction(table, "readwrite", remove)

    def _evict(self, table: str, rows: list[tuple[Any, str]]) -> None:
        """Delete stale rows in the background.

        A row rewritten before the task runs no longer matches and is kept.
        """
        logger.debug(f"Evicting {len(rows)} stale record(s) from {table}")
        task = asyncio.get_running_loop().create_task(self._discard(table, rows))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)
