"""Key-value storage adapter.

Stores every record under its own key in a flat string mapping. Keys are
namespaced as ``{db_name}:{version}:{table}:{key}`` so several databases
and tables can share one store.
"""

import asyncio
import logging
from collections.abc import Iterable, Mapping, MutableMapping
from typing import Any
from urllib.parse import quote

import msgspec

from ..expiry import now_ms, unwrap_with_expiry, wrap_with_expiry
from ..schema import record_key, table_schema, validate_schema
from .base import run_safe

logger = logging.getLogger(__name__)


class KeyValueAdapter:
    """Adapter over a synchronous ``MutableMapping[str, str]``."""

    def __init__(
        self,
        db_name: str,
        version: int,
        schema: Mapping[str, Any],
        store: MutableMapping[str, str] | None = None,
    ):
        self.schema = validate_schema(schema)
        self.db_name = db_name
        self.version = version
        self.store: MutableMapping[str, str] = {} if store is None else store

    @run_safe("GET_FAILED")
    async def get(self, table: str, key: Any, default: Any = None) -> Any:
        """Read one record."""
        storage_key = self._storage_key(table, key)
        item = self.store.get(storage_key)
        if item is None:
            return default

        record = self._parse(storage_key, item)
        return default if record is None else record

    @run_safe("GET_ALL_FAILED")
    async def get_all(self, table: str) -> list[dict[str, Any]]:
        """Read every live record of a table in store order."""
        records = []
        for storage_key in self._table_keys(table):
            item = self.store.get(storage_key)
            if item is None:
                continue
            record = self._parse(storage_key, item)
            if record is not None:
                records.append(record)
        return records

    @run_safe("PUT_FAILED")
    async def put(
        self, table: str, record: Mapping[str, Any], ttl: int | None = None
    ) -> None:
        """Insert or replace a record."""
        key = record_key(self.schema, table, record)
        data = msgspec.json.encode(wrap_with_expiry(record, ttl))
        self.store[self._storage_key(table, key)] = data.decode()

    @run_safe("BULK_PUT_FAILED")
    async def bulk_put(
        self, table: str, records: Iterable[Mapping[str, Any]], ttl: int | None = None
    ) -> None:
        """Insert or replace several records independently."""
        await asyncio.gather(*(self.put(table, record, ttl) for record in records))

    @run_safe("DELETE_FAILED")
    async def delete(self, table: str, key: Any) -> None:
        """Delete a record; missing keys are ignored."""
        self.store.pop(self._storage_key(table, key), None)

    @run_safe("BULK_DELETE_FAILED")
    async def bulk_delete(self, table: str, keys: Iterable[Any]) -> None:
        """Delete several records."""
        await asyncio.gather(*(self.delete(table, key) for key in keys))

    @run_safe("CLEAR_FAILED")
    async def clear(self, table: str) -> None:
        """Delete every record of a table."""
        for storage_key in self._table_keys(table):
            self.store.pop(storage_key, None)

    @run_safe("COUNT_FAILED")
    async def count(self, table: str) -> int:
        """Count live records."""
        return len(await self.get_all(table) or [])

    def _parse(self, storage_key: str, item: str) -> dict[str, Any] | None:
        """Decode a stored value, dropping it if corrupt or expired."""
        try:
            raw = msgspec.json.decode(item)
        except msgspec.DecodeError as e:
            logger.warning(f"Skipping corrupted entry {storage_key}: {e}")
            self.store.pop(storage_key, None)
            return None

        if not isinstance(raw, dict):
            logger.warning(f"Skipping corrupted entry {storage_key}: not a record")
            self.store.pop(storage_key, None)
            return None

        return unwrap_with_expiry(
            raw, now_ms(), lambda: self.store.pop(storage_key, None)
        )

    def _table_keys(self, table: str) -> list[str]:
        prefix = self._storage_key(table)
        return [k for k in list(self.store.keys()) if k.startswith(prefix)]

    def _storage_key(self, table: str, key: Any = None) -> str:
        table_schema(self.schema, table)
        db_name, table_name = quote(self.db_name, safe=""), quote(table, safe="")
        prefix = f"{db_name}:{self.version}:{table_name}:"
        if key is None or key == "":
            return prefix
        return prefix + quote(str(key), safe="")
