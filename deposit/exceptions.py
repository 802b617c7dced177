"""Exception classes for the deposit package."""


class DepositError(Exception):
    """Base exception for storage errors."""

    pass


class SchemaError(DepositError, ValueError):
    """Raised when a table schema is malformed."""

    pass


class UnknownTableError(SchemaError):
    """Raised when a table is not declared in the schema."""

    def __init__(self, table: str):
        """Initialize with table name."""
        self.table = table
        super().__init__(f"Unknown table: {table}")


class MissingKeyError(DepositError, ValueError):
    """Raised when a record has no value for its table's key field."""

    def __init__(self, table: str, field: str):
        """Initialize with table and key field."""
        self.table = table
        self.field = field
        super().__init__(
            f'Missing required key field "{field}" in record for table "{table}"'
        )


class VersionError(DepositError):
    """Raised when opening a database with a version older than stored."""

    def __init__(self, requested: int, stored: int):
        """Initialize with requested and stored versions."""
        self.requested = requested
        self.stored = stored
        super().__init__(
            f"Requested version {requested} is less than stored version {stored}"
        )


class MigrationError(DepositError):
    """Raised when a schema upgrade fails."""

    pass


class TransactionAbortedError(DepositError):
    """Raised when a native transaction is rolled back."""

    pass


class TransactionError(DepositError):
    """Raised when an optimistic multi-table transaction fails."""

    pass


class QueryError(DepositError, ValueError):
    """Raised for invalid query pipelines or conditions."""

    pass


class ConfigError(DepositError, ValueError):
    """Raised when configuration cannot be loaded."""

    pass
