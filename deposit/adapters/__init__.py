"""Pluggable storage adapters.

Provides one async, table-oriented interface over two backends:

- **KeyValueAdapter**: flat string mapping with prefix-namespaced keys
- **SQLiteAdapter**: versioned SQLite database with schema migrations

The backend is selected by ``AdapterType``; both adapters implement the
``StorageAdapter`` protocol independently.
"""

from ..config import AdapterType, DepositConfig
from .base import StorageAdapter, run_safe
from .keyvalue import KeyValueAdapter
from .sqlite import NativeTransaction, ObjectStore, SQLiteAdapter


def create_adapter(config: DepositConfig) -> StorageAdapter:
    """Build the adapter variant named by a configuration."""
    adapter_type = config.type
    if isinstance(adapter_type, str):
        try:
            adapter_type = AdapterType(adapter_type)
        except ValueError:
            raise ValueError(f"Unknown adapter type: {adapter_type}") from None

    match adapter_type:
        case AdapterType.KEYVALUE:
            return KeyValueAdapter(
                config.db_name, config.version, config.schema, store=config.store
            )
        case AdapterType.SQLITE:
            return SQLiteAdapter(
                config.db_name,
                config.version,
                config.schema,
                migration=config.migration,
                directory=config.directory,
            )
        case _:
            raise ValueError(f"Unknown adapter type: {adapter_type}")


__all__ = [
    "KeyValueAdapter",
    "NativeTransaction",
    "ObjectStore",
    "SQLiteAdapter",
    "StorageAdapter",
    "create_adapter",
    "run_safe",
]
