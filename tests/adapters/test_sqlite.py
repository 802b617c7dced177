"""Tests for the SQLite adapter."""

import asyncio
import sqlite3

import pytest


def user_version(path):
    conn = sqlite3.connect(path)
    try:
        return conn.execute("PRAGMA user_version").fetchone()[0]
    finally:
        conn.close()


def table_names(path):
    conn = sqlite3.connect(path)
    try:
        rows = conn.execute("SELECT name FROM sqlite_master WHERE type = 'table'")
        return {row[0] for row in rows}
    finally:
        conn.close()


class TestSQLiteOpen:
    """Test opening and creating databases."""

    def test_rejects_invalid_version(self, users_schema):
        """Versions must be positive integers."""
        from deposit.adapters import SQLiteAdapter

        with pytest.raises(ValueError, match="positive integer"):
            SQLiteAdapter("app", 0, users_schema)
        with pytest.raises(ValueError):
            SQLiteAdapter("app", 1.5, users_schema)

    def test_database_path(self, users_schema, tmp_path):
        """The file is named after the database inside the directory."""
        from deposit.adapters import SQLiteAdapter

        adapter = SQLiteAdapter("app", 1, users_schema, directory=tmp_path)
        in_memory = SQLiteAdapter("app", 1, users_schema)

        assert adapter.path == tmp_path / "app.sqlite3"
        assert in_memory.path is None

    @pytest.mark.asyncio
    async def test_connect_creates_tables(self, sqlite_adapter):
        """Connecting creates every schema table and sets the version."""
        await sqlite_adapter.connect()
        await sqlite_adapter.close()

        assert {"users", "posts"} <= table_names(sqlite_adapter.path)
        assert user_version(sqlite_adapter.path) == 1

    @pytest.mark.asyncio
    async def test_connects_lazily(self, sqlite_adapter):
        """The first operation opens the database."""
        assert sqlite_adapter.conn is None

        await sqlite_adapter.put("users", {"id": 1})

        assert sqlite_adapter.conn is not None
        await sqlite_adapter.close()
        assert sqlite_adapter.conn is None

    @pytest.mark.asyncio
    async def test_concurrent_connects_share_one_open(self, users_schema, tmp_path):
        """Simultaneous connects run the upgrade only once."""
        from deposit.adapters import SQLiteAdapter

        calls = []

        async def migration(conn, old, new, tx, schema):
            calls.append((old, new))
            await asyncio.sleep(0)

        adapter = SQLiteAdapter(
            "app", 1, users_schema, migration=migration, directory=tmp_path
        )

        await asyncio.gather(adapter.connect(), adapter.connect(), adapter.connect())

        assert calls == [(0, 1)]
        await adapter.close()

    @pytest.mark.asyncio
    async def test_in_memory_database(self, users_schema):
        """Without a directory the database lives in memory."""
        from deposit.adapters import SQLiteAdapter

        adapter = SQLiteAdapter("scratch", 1, users_schema)
        await adapter.put("users", {"id": 1, "name": "Alice"})

        assert await adapter.get("users", 1) == {"id": 1, "name": "Alice"}
        await adapter.close()

    @pytest.mark.asyncio
    async def test_data_persists_across_instances(self, users_schema, tmp_path):
        """Reopening the same file sees earlier writes."""
        from deposit.adapters import SQLiteAdapter

        first = SQLiteAdapter("app", 1, users_schema, directory=tmp_path)
        await first.put("users", {"id": 1, "name": "Alice"})
        await first.close()

        second = SQLiteAdapter("app", 1, users_schema, directory=tmp_path)
        assert await second.get("users", 1) == {"id": 1, "name": "Alice"}
        await second.close()


class TestSQLiteIndexes:
    """Test secondary index creation."""

    @pytest.mark.asyncio
    async def test_declared_indexes_created(self, sqlite_adapter):
        """Each declared field gets an index."""
        assert await sqlite_adapter.indexes("users") == ["city", "name"]
        assert await sqlite_adapter.indexes("posts") == []
        await sqlite_adapter.close()

    @pytest.mark.asyncio
    async def test_duplicate_and_key_indexes_skipped(self, tmp_path, caplog):
        """Duplicates and the key field are skipped with a warning."""
        from deposit.adapters import SQLiteAdapter

        schema = {"users": {"key": "id", "indexes": ["name", "name", "id"]}}
        adapter = SQLiteAdapter("app", 1, schema, directory=tmp_path)

        assert await adapter.indexes("users") == ["name"]
        assert 'Duplicate index "name"' in caplog.text
        assert 'Skipping index on key field "id"' in caplog.text
        await adapter.close()

    @pytest.mark.asyncio
    async def test_indexes_are_per_table(self, tmp_path):
        """Tables may index fields with the same name."""
        from deposit.adapters import SQLiteAdapter

        schema = {
            "users": {"key": "id", "indexes": ["name"]},
            "teams": {"key": "id", "indexes": ["name"]},
        }
        adapter = SQLiteAdapter("app", 1, schema, directory=tmp_path)

        assert await adapter.indexes("users") == ["name"]
        assert await adapter.indexes("teams") == ["name"]
        await adapter.close()


class TestSQLiteVersioning:
    """Test version upgrades and migrations."""

    @pytest.mark.asyncio
    async def test_upgrade_adds_new_tables(self, tmp_path):
        """Opening a higher version creates tables added to the schema."""
        from deposit.adapters import SQLiteAdapter

        v1 = SQLiteAdapter("app", 1, {"users": {"key": "id"}}, directory=tmp_path)
        await v1.put("users", {"id": 1, "name": "Alice"})
        await v1.close()

        schema = {"users": {"key": "id"}, "posts": {"key": "slug"}}
        v2 = SQLiteAdapter("app", 2, schema, directory=tmp_path)
        await v2.put("posts", {"slug": "hello"})

        assert await v2.get("users", 1) == {"id": 1, "name": "Alice"}
        assert await v2.get("posts", "hello") == {"slug": "hello"}
        await v2.close()
        assert user_version(tmp_path / "app.sqlite3") == 2

    @pytest.mark.asyncio
    async def test_migration_receives_versions(self, users_schema, tmp_path):
        """The migration callback sees old and new versions and can write."""
        from deposit.adapters import SQLiteAdapter

        v1 = SQLiteAdapter("app", 1, users_schema, directory=tmp_path)
        await v1.bulk_put(
            "users", [{"id": 1, "name": "alice"}, {"id": 2, "name": "bob"}]
        )
        await v1.close()

        seen = []

        def migration(conn, old, new, tx, schema):
            seen.append((old, new, sorted(schema)))
            store = tx.store("users")
            for record in store.get_all():
                store.put({**record, "name": record["name"].title()})

        v2 = SQLiteAdapter(
            "app", 2, users_schema, migration=migration, directory=tmp_path
        )

        records = await v2.get_all("users")

        assert seen == [(1, 2, ["posts", "users"])]
        assert [r["name"] for r in records] == ["Alice", "Bob"]
        await v2.close()

    @pytest.mark.asyncio
    async def test_same_version_skips_migration(self, users_schema, tmp_path):
        """Reopening at the stored version runs no migration."""
        from deposit.adapters import SQLiteAdapter

        calls = []
        for _ in range(2):
            adapter = SQLiteAdapter(
                "app",
                1,
                users_schema,
                migration=lambda *args: calls.append(args[1:3]),
                directory=tmp_path,
            )
            await adapter.connect()
            await adapter.close()

        assert calls == [(0, 1)]

    @pytest.mark.asyncio
    async def test_async_migration_awaited(self, users_schema, tmp_path):
        """Coroutine migrations complete before the upgrade commits."""
        from deposit.adapters import SQLiteAdapter

        async def migration(conn, old, new, tx, schema):
            await asyncio.sleep(0)
            tx.store("posts").put({"slug": "welcome"})

        adapter = SQLiteAdapter(
            "app", 1, users_schema, migration=migration, directory=tmp_path
        )

        assert await adapter.get("posts", "welcome") == {"slug": "welcome"}
        await adapter.close()

    @pytest.mark.asyncio
    async def test_lower_version_rejected(self, users_schema, tmp_path):
        """Opening below the stored version fails."""
        from deposit.adapters import SQLiteAdapter
        from deposit.exceptions import VersionError

        newer = SQLiteAdapter("app", 3, users_schema, directory=tmp_path)
        await newer.connect()
        await newer.close()

        older = SQLiteAdapter("app", 2, users_schema, directory=tmp_path)
        with pytest.raises(VersionError) as exc_info:
            await older.connect()

        assert exc_info.value.requested == 2
        assert exc_info.value.stored == 3
        assert older.conn is None

    @pytest.mark.asyncio
    async def test_failed_migration_rolls_back(self, users_schema, tmp_path):
        """A raising migration leaves the database untouched."""
        from deposit.adapters import SQLiteAdapter
        from deposit.exceptions import MigrationError

        def migration(conn, old, new, tx, schema):
            tx.store("users").put({"id": 1})
            raise RuntimeError("boom")

        adapter = SQLiteAdapter(
            "app", 1, users_schema, migration=migration, directory=tmp_path
        )

        with pytest.raises(MigrationError, match="Migration failed: boom") as exc_info:
            await adapter.connect()

        assert isinstance(exc_info.value.__cause__, RuntimeError)
        assert adapter.conn is None
        assert user_version(adapter.path) == 0
        assert table_names(adapter.path) == set()

    @pytest.mark.asyncio
    async def test_aborted_migration_rolls_back(self, users_schema, tmp_path):
        """Aborting the version change transaction fails the open."""
        from deposit.adapters import SQLiteAdapter
        from deposit.exceptions import MigrationError

        adapter = SQLiteAdapter(
            "app",
            1,
            users_schema,
            migration=lambda conn, old, new, tx, schema: tx.abort(),
            directory=tmp_path,
        )

        with pytest.raises(MigrationError, match="aborted"):
            await adapter.connect()
        assert user_version(adapter.path) == 0

    @pytest.mark.asyncio
    async def test_failed_open_can_retry(self, users_schema, tmp_path):
        """A later connect tries the upgrade again."""
        from deposit.adapters import SQLiteAdapter
        from deposit.exceptions import MigrationError

        attempts = []

        def migration(conn, old, new, tx, schema):
            attempts.append(old)
            if len(attempts) == 1:
                raise RuntimeError("first try fails")

        adapter = SQLiteAdapter(
            "app", 1, users_schema, migration=migration, directory=tmp_path
        )

        with pytest.raises(MigrationError):
            await adapter.connect()
        await adapter.connect()

        assert attempts == [0, 0]
        assert adapter.conn is not None
        await adapter.close()


class TestSQLiteTransactions:
    """Test the per-call native transaction."""

    @pytest.mark.asyncio
    async def test_bulk_put_is_atomic(self, sqlite_adapter, caplog):
        """One bad record rolls back the whole batch."""
        await sqlite_adapter.bulk_put("users", [{"id": 1}, {"name": "no key"}])

        assert "BULK_PUT_FAILED" in caplog.text
        assert await sqlite_adapter.count("users") == 0
        await sqlite_adapter.close()

    @pytest.mark.asyncio
    async def test_raising_body_rolls_back(self, sqlite_adapter):
        """Writes made before an exception are discarded."""
        from deposit.exceptions import TransactionAbortedError

        def body(tx):
            tx.store().put({"id": 1})
            raise RuntimeError("nope")

        with pytest.raises(TransactionAbortedError) as exc_info:
            await sqlite_adapter._with_transaction("users", "readwrite", body)

        assert isinstance(exc_info.value.__cause__, RuntimeError)
        assert await sqlite_adapter.get("users", 1) is None
        await sqlite_adapter.close()

    @pytest.mark.asyncio
    async def test_abort_rolls_back(self, sqlite_adapter):
        """Calling abort discards the transaction's writes."""
        from deposit.exceptions import TransactionAbortedError

        def body(tx):
            tx.store().put({"id": 1})
            tx.abort()

        with pytest.raises(TransactionAbortedError):
            await sqlite_adapter._with_transaction("users", "readwrite", body)

        assert await sqlite_adapter.count("users") == 0
        await sqlite_adapter.close()

    @pytest.mark.asyncio
    async def test_readonly_rejects_writes(self, sqlite_adapter):
        """Readonly transactions refuse to write."""
        from deposit.exceptions import DepositError, TransactionAbortedError

        with pytest.raises(TransactionAbortedError) as exc_info:
            await sqlite_adapter._with_transaction(
                "users", "readonly", lambda tx: tx.store().put({"id": 1})
            )

        assert isinstance(exc_info.value.__cause__, DepositError)
        await sqlite_adapter.close()

    @pytest.mark.asyncio
    async def test_multi_table_scope(self, sqlite_adapter):
        """A transaction only exposes the tables it was opened on."""
        from deposit.exceptions import TransactionAbortedError

        def body(tx):
            tx.store("users").put({"id": 1})
            tx.store("posts").put({"slug": "a"})
            return [tx.store("users").count(), tx.store("posts").count()]

        counts = await sqlite_adapter._with_transaction(
            ["users", "posts"], "readwrite", body
        )
        assert counts == [1, 1]

        with pytest.raises(TransactionAbortedError):
            await sqlite_adapter._with_transaction(
                "users", "readonly", lambda tx: tx.store("posts")
            )
        await sqlite_adapter.close()

    @pytest.mark.asyncio
    async def test_get_all_ordered_by_key(self, sqlite_adapter):
        """Records come back in key order, not insertion order."""
        for key in (3, 1, 2):
            await sqlite_adapter.put("users", {"id": key})

        records = await sqlite_adapter.get_all("users")

        assert [r["id"] for r in records] == [1, 2, 3]
        await sqlite_adapter.close()


class TestSQLiteCleanup:
    """Test background eviction of stale rows."""

    @pytest.mark.asyncio
    async def test_expired_rows_deleted(self, sqlite_adapter):
        """Expired rows are removed once pending evictions settle."""
        await sqlite_adapter.bulk_put("users", [{"id": 1}, {"id": 2}], ttl=1)
        await sqlite_adapter.put("users", {"id": 3})
        await asyncio.sleep(0.01)

        assert await sqlite_adapter.get_all("users") == [{"id": 3}]
        await sqlite_adapter.settle()

        stored = await sqlite_adapter._with_transaction(
            "users", "readonly", lambda tx: tx.store().count()
        )
        assert stored == 1
        await sqlite_adapter.close()

    @pytest.mark.asyncio
    async def test_corrupt_rows_skipped(self, sqlite_adapter, caplog):
        """Rows that are not JSON records are skipped and deleted."""
        await sqlite_adapter.put("users", {"id": 1})
        sqlite_adapter.conn.execute(
            "INSERT INTO users (key, value) VALUES (?, ?)", (2, "{broken")
        )

        assert await sqlite_adapter.get_all("users") == [{"id": 1}]
        assert await sqlite_adapter.get("users", 2) is None
        assert "Skipping corrupted entry in users" in caplog.text

        await sqlite_adapter.close()
        conn = sqlite3.connect(sqlite_adapter.path)
        try:
            assert conn.execute("SELECT COUNT(*) FROM users").fetchone()[0] == 1
        finally:
            conn.close()


class TestSQLiteEvictionRaces:
    """Test that background eviction never removes fresh writes."""

    @pytest.mark.asyncio
    async def test_rewrite_after_expired_get_survives(self, sqlite_adapter):
        """A record written right after a read found it expired is kept."""
        from deposit.expiry import now_ms

        await sqlite_adapter.put("users", {"id": 1, "expiresAt": now_ms() - 10})

        assert await sqlite_adapter.get("users", 1) is None
        await sqlite_adapter.put("users", {"id": 1, "name": "New"})
        await sqlite_adapter.settle()

        assert await sqlite_adapter.get("users", 1) == {"id": 1, "name": "New"}
        await sqlite_adapter.close()

    @pytest.mark.asyncio
    async def test_rewrite_after_expired_get_all_survives(self, sqlite_adapter):
        """Rows rewritten before the eviction runs stay; others go."""
        from deposit.expiry import now_ms

        expired = now_ms() - 10
        await sqlite_adapter.bulk_put(
            "users", [{"id": 1, "expiresAt": expired}, {"id": 2, "expiresAt": expired}]
        )

        assert await sqlite_adapter.get_all("users") == []
        await sqlite_adapter.put("users", {"id": 1, "name": "New"})
        await sqlite_adapter.settle()

        assert await sqlite_adapter.count("users") == 1
        stored = await sqlite_adapter._with_transaction(
            "users", "readonly", lambda tx: tx.store().count()
        )
        assert stored == 1
        await sqlite_adapter.close()

    @pytest.mark.asyncio
    async def test_rewrite_after_corrupt_read_survives(self, sqlite_adapter):
        """Replacing a corrupt row before cleanup keeps the replacement."""
        await sqlite_adapter.connect()
        sqlite_adapter.conn.execute(
            "INSERT INTO users (key, value) VALUES (?, ?)", (1, "{broken")
        )

        assert await sqlite_adapter.get("users", 1) is None
        await sqlite_adapter.put("users", {"id": 1, "name": "Fixed"})
        await sqlite_adapter.settle()

        assert await sqlite_adapter.get("users", 1) == {"id": 1, "name": "Fixed"}
        await sqlite_adapter.close()
