"""Table schema definitions.

A schema maps each table name to the field used as its primary key and
the fields that get a secondary index. Schemas can be written as plain
dictionaries and are normalized into ``TableSchema`` structs.
"""

from collections.abc import Mapping
from typing import Any

import msgspec

from .exceptions import MissingKeyError, SchemaError, UnknownTableError


class TableSchema(msgspec.Struct, frozen=True, kw_only=True):
    """Physical layout of one table."""

    key: str
    indexes: tuple[str, ...] = ()
    record: Any = None


Schema = dict[str, TableSchema]


def validate_schema(schema: Mapping[str, Any]) -> Schema:
    """Normalize a schema and fail early if it is malformed.

    Args:
        schema: Mapping of table name to ``TableSchema`` or dict.

    Returns:
        Mapping of table name to ``TableSchema``.

    Raises:
        SchemaError: If a table definition lacks a key field.
    """
    if not isinstance(schema, Mapping):
        raise SchemaError("Invalid schema: expected a mapping of table definitions")

    normalized: Schema = {}
    for name, definition in schema.items():
        if isinstance(definition, TableSchema):
            normalized[name] = definition
            continue

        if not isinstance(definition, Mapping) or definition.get("key") is None:
            raise SchemaError(
                f'Invalid schema: table "{name}" missing required "key" field. '
                "Schema entries must have shape: {key, indexes?, record?}"
            )

        try:
            normalized[name] = msgspec.convert(dict(definition), TableSchema)
        except msgspec.ValidationError as e:
            raise SchemaError(f'Invalid schema for table "{name}": {e}') from e

    return normalized


def table_schema(schema: Schema, table: str) -> TableSchema:
    """Look up a table definition."""
    try:
        return schema[table]
    except KeyError:
        raise UnknownTableError(table) from None


def record_key(schema: Schema, table: str, record: Mapping[str, Any]) -> Any:
    """Extract the primary key value of a record.

    Raises:
        MissingKeyError: If the key field is absent or None.
    """
    field = table_schema(schema, table).key
    value = record.get(field)
    if value is None:
        raise MissingKeyError(table, field)
    return value
