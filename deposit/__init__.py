"""Table-oriented async storage with pluggable backends.

Provides one API over two storage engines:

- **Adapters**: flat key-value store or versioned SQLite database
- **Expiry**: per-record time to live with lazy eviction on read
- **Queries**: lazy, memoized filter/sort/page pipelines over a table
- **Transactions**: optimistic read-modify-write across several tables
- **Migrations**: schema upgrades with a user callback on version change
"""

__version__ = "0.1.0"

from deposit.adapters import (
    KeyValueAdapter,
    NativeTransaction,
    ObjectStore,
    SQLiteAdapter,
    StorageAdapter,
    create_adapter,
)
from deposit.config import AdapterType, Config, DepositConfig, load_config
from deposit.deposit import (
    ClearOperation,
    DeleteOperation,
    Deposit,
    PatchOperation,
    PutOperation,
)
from deposit.exceptions import (
    ConfigError,
    DepositError,
    MigrationError,
    MissingKeyError,
    QueryError,
    SchemaError,
    TransactionAbortedError,
    TransactionError,
    UnknownTableError,
    VersionError,
)
from deposit.expiry import unwrap_with_expiry, wrap_with_expiry
from deposit.query import (
    Between,
    Equals,
    Filter,
    Limit,
    Offset,
    OrderBy,
    Page,
    QueryBuilder,
    StartsWith,
    Where,
)
from deposit.schema import TableSchema, validate_schema

__all__ = [
    # Facade
    "Deposit",
    "PutOperation",
    "DeleteOperation",
    "ClearOperation",
    "PatchOperation",
    # Adapters
    "StorageAdapter",
    "KeyValueAdapter",
    "SQLiteAdapter",
    "NativeTransaction",
    "ObjectStore",
    "create_adapter",
    # Configuration
    "AdapterType",
    "Config",
    "DepositConfig",
    "load_config",
    "TableSchema",
    "validate_schema",
    # Queries
    "QueryBuilder",
    "Equals",
    "Between",
    "StartsWith",
    "Where",
    "Filter",
    "OrderBy",
    "Limit",
    "Offset",
    "Page",
    # Expiry
    "wrap_with_expiry",
    "unwrap_with_expiry",
    # Errors
    "DepositError",
    "SchemaError",
    "UnknownTableError",
    "MissingKeyError",
    "VersionError",
    "MigrationError",
    "TransactionAbortedError",
    "TransactionError",
    "QueryError",
    "ConfigError",
]
