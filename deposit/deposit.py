"""Deposit facade over a storage adapter.

Passes CRUD calls through to the adapter, hands out query builders, and
offers optimistic multi-table transactions and batched patches.
"""

import asyncio
import inspect
import logging
from collections.abc import Awaitable, Callable, Iterable, Mapping
from pathlib import Path
from typing import Any

import msgspec

from .adapters import StorageAdapter, create_adapter
from .config import DepositConfig, load_config
from .exceptions import TransactionError
from .query import QueryBuilder

logger = logging.getLogger(__name__)

Stores = dict[str, list[dict[str, Any]]]


class PutOperation(msgspec.Struct, frozen=True, tag="put", tag_field="type"):
    value: dict[str, Any]
    ttl: int | None = None


class DeleteOperation(msgspec.Struct, frozen=True, tag="delete", tag_field="type"):
    key: Any


class ClearOperation(msgspec.Struct, frozen=True, tag="clear", tag_field="type"):
    pass


PatchOperation = PutOperation | DeleteOperation | ClearOperation


class Deposit:
    """Typed table storage over one adapter.

    Example:
        >>> deposit = Deposit(DepositConfig(
        ...     type=AdapterType.KEYVALUE,
        ...     db_name="app",
        ...     schema={"users": TableSchema(key="id")},
        ... ))
        >>> await deposit.put("users", {"id": 1, "name": "Ann"})
        >>> await deposit.query("users").equals("id", 1).first()
        {'id': 1, 'name': 'Ann'}
    """

    def __init__(self, adapter_or_config: StorageAdapter | DepositConfig):
        if isinstance(adapter_or_config, DepositConfig):
            self.adapter = create_adapter(adapter_or_config)
        else:
            self.adapter = adapter_or_config

    @classmethod
    def from_config_file(cls, path: Path | str | None = None) -> "Deposit":
        """Build a Deposit from YAML configuration and environment."""
        return cls(load_config(path))

    async def __aenter__(self) -> "Deposit":
        await self.connect()
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.close()

    async def connect(self) -> None:
        """Open the backend if it needs opening."""
        connect = getattr(self.adapter, "connect", None)
        if connect is not None:
            await connect()

    async def close(self) -> None:
        """Release backend resources."""
        close = getattr(self.adapter, "close", None)
        if close is not None:
            await close()

    # CRUD

    async def get(self, table: str, key: Any, default: Any = None) -> Any:
        return await self.adapter.get(table, key, default)

    async def get_all(self, table: str) -> list[dict[str, Any]]:
        return await self.adapter.get_all(table)

    async def put(
        self, table: str, record: Mapping[str, Any], ttl: int | None = None
    ) -> None:
        await self.adapter.put(table, record, ttl)

    async def bulk_put(
        self, table: str, records: Iterable[Mapping[str, Any]], ttl: int | None = None
    ) -> None:
        await self.adapter.bulk_put(table, records, ttl)

    async def delete(self, table: str, key: Any) -> None:
        await self.adapter.delete(table, key)

    async def bulk_delete(self, table: str, keys: Iterable[Any]) -> None:
        await self.adapter.bulk_delete(table, keys)

    async def clear(self, table: str) -> None:
        await self.adapter.clear(table)

    async def count(self, table: str) -> int:
        return await self.adapter.count(table)

    def query(self, table: str) -> QueryBuilder:
        """Start a new query on a table."""
        return QueryBuilder(self.adapter, table)

    # Batches

    async def transaction(
        self,
        tables: list[str],
        fn: Callable[[Stores], Awaitable[None] | None],
        ttl: int | None = None,
    ) -> None:
        """Read tables, let ``fn`` edit them in memory, then write them back.

        ``fn`` receives a dict of table name to record list and may mutate
        the lists or replace them. When it returns, every listed table is
        cleared and rewritten from that dict, whether or not it changed.
        This is optimistic: there is no isolation from concurrent writers,
        and the last transaction to commit wins.

        Raises:
            TransactionError: If ``fn`` raises; nothing is written.
        """
        stores = await self._load_stores(tables)

        try:
            result = fn(stores)
            if inspect.isawaitable(result):
                await result
            self._check_stores(tables, stores)
        except Exception as e:
            raise TransactionError(
                f"Transaction failed for tables: {', '.join(tables)}"
            ) from e

        await self._commit_stores(tables, stores, ttl)

    async def patch(
        self, table: str, operations: Iterable[PatchOperation | Mapping[str, Any]]
    ) -> None:
        """Apply put/delete/clear operations concurrently.

        Operations run in no particular order, so a batch should not touch
        the same key twice.
        """
        batch = [_to_operation(op) for op in operations]
        await asyncio.gather(*(self._apply_patch(table, op) for op in batch))

    async def _load_stores(self, tables: list[str]) -> Stores:
        contents = await asyncio.gather(*(self.get_all(table) for table in tables))
        return {table: list(records or []) for table, records in zip(tables, contents)}

    def _check_stores(self, tables: list[str], stores: Stores) -> None:
        for table in tables:
            if not isinstance(stores.get(table), list):
                raise TypeError(f"Table {table} must hold a list of records")

    async def _commit_stores(
        self, tables: list[str], stores: Stores, ttl: int | None
    ) -> None:
        async def rewrite(table: str) -> None:
            await self.clear(table)
            await self.bulk_put(table, stores[table], ttl)

        await asyncio.gather(*(rewrite(table) for table in tables))
        logger.debug(f"Committed transaction for {', '.join(tables)}")

    async def _apply_patch(self, table: str, operation: PatchOperation) -> None:
        match operation:
            case PutOperation(value=value, ttl=ttl):
                await self.put(table, value, ttl)
            case DeleteOperation(key=key):
                await self.delete(table, key)
            case ClearOperation():
                await self.clear(table)


def _to_operation(operation: Any) -> PatchOperation:
    if isinstance(operation, (PutOperation, DeleteOperation, ClearOperation)):
        return operation
    try:
        return msgspec.convert(operation, PatchOperation)
    except msgspec.ValidationError as e:
        raise ValueError(f"Invalid patch operation {operation!r}: {e}") from e
