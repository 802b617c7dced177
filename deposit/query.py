"""Lazy, memoizing query pipeline over one table.

Operations are only recorded when called. ``to_array()`` fetches the whole
table once, folds every recorded operation over a copy of it, and caches
the result under the pipeline's signature and the current data version.
Concurrent identical reads share a single fetch.
"""

import asyncio
import logging
from collections.abc import Callable, Iterable, Mapping
from dataclasses import dataclass
from typing import Any, Literal

import msgspec

from . import arrays
from .exceptions import QueryError

logger = logging.getLogger(__name__)

Record = dict[str, Any]
Predicate = Callable[[Record], bool]
Signature = tuple[str, ...]
MemoKey = tuple[Signature, int]


@dataclass(frozen=True)
class Operation:
    """One staged pipeline step."""

    name: str
    args: tuple[Any, ...]
    transform: Callable[[Any], Any]

    @property
    def signature(self) -> str:
        return f"{self.name}:{_encode(list(self.args))}"


def _encode_arg(obj: Any) -> Any:
    """Give callables and other opaque arguments a stable identity."""
    if callable(obj):
        name = getattr(obj, "__qualname__", type(obj).__name__)
        return f"<{name}#{id(obj):x}>"
    return repr(obj)


def _encode(value: Any) -> str:
    encoded = msgspec.json.encode(value, enc_hook=_encode_arg, order="deterministic")
    return encoded.decode()


# Condition descriptors accepted by QueryBuilder.build()


class Equals(msgspec.Struct, frozen=True, tag="equals", tag_field="type"):
    field: str
    value: Any


class Between(msgspec.Struct, frozen=True, tag="between", tag_field="type"):
    field: str
    lower: Any
    upper: Any


class StartsWith(msgspec.Struct, frozen=True, tag="startsWith", tag_field="type"):
    field: str
    value: str
    ignore_case: bool = False


class Where(msgspec.Struct, frozen=True, tag="where", tag_field="type"):
    field: str
    fn: Any


class Filter(msgspec.Struct, frozen=True, tag="filter", tag_field="type"):
    fn: Any


class OrderBy(msgspec.Struct, frozen=True, tag="orderBy", tag_field="type"):
    field: str
    value: Literal["asc", "desc"] = "asc"


class Limit(msgspec.Struct, frozen=True, tag="limit", tag_field="type"):
    value: int


class Offset(msgspec.Struct, frozen=True, tag="offset", tag_field="type"):
    value: int


class Page(msgspec.Struct, frozen=True, tag="page", tag_field="type"):
    page_number: int
    page_size: int


QueryCondition = (
    Equals | Between | StartsWith | Where | Filter | OrderBy | Limit | Offset | Page
)

_CONDITIONS: dict[str, type] = {
    "equals": Equals,
    "between": Between,
    "startsWith": StartsWith,
    "where": Where,
    "filter": Filter,
    "orderBy": OrderBy,
    "limit": Limit,
    "offset": Offset,
    "page": Page,
}


class QueryBuilder:
    """Fluent, lazily executed query over one table.

    Each builder is private to the caller that created it. Nothing done by
    ``modify`` callbacks is written back to storage.
    """

    def __init__(self, adapter: Any, table: str):
        self.adapter = adapter
        self.table = table
        self._operations: list[Operation] = []
        self._memo: dict[MemoKey, asyncio.Future] = {}
        self._data_version = 0
        self._has_mutating_op = False
        self._signature: Signature | None = None

    @property
    def data_version(self) -> int:
        return self._data_version

    @property
    def operations(self) -> tuple[Operation, ...]:
        return tuple(self._operations)

    # Filtering

    def where(
        self, field: str, predicate: Callable[[Any, Record], bool]
    ) -> "QueryBuilder":
        """Keep records where ``predicate(record[field], record)`` holds."""
        return self._push(
            "where",
            (field, predicate),
            lambda data: [r for r in data if predicate(r.get(field), r)],
        )

    def equals(self, field: str, value: Any) -> "QueryBuilder":
        """Keep records whose field equals a value."""
        return self._push(
            "equals",
            (field, value),
            lambda data: [r for r in data if field in r and r[field] == value],
        )

    def between(self, field: str, lower: Any, upper: Any) -> "QueryBuilder":
        """Keep records whose field lies in the inclusive range."""

        def in_range(record: Record) -> bool:
            value = record.get(field)
            if value is None:
                return False
            try:
                return lower <= value <= upper
            except TypeError:
                return False

        return self._push(
            "between",
            (field, lower, upper),
            lambda data: [r for r in data if in_range(r)],
        )

    def starts_with(
        self, field: str, prefix: str, ignore_case: bool = False
    ) -> "QueryBuilder":
        """Keep records whose string field starts with a prefix."""
        expected = prefix.lower() if ignore_case else prefix

        def matches(record: Record) -> bool:
            value = record.get(field)
            if not isinstance(value, str):
                return False
            return (value.lower() if ignore_case else value).startswith(expected)

        return self._push(
            "startsWith",
            (field, prefix, ignore_case),
            lambda data: [r for r in data if matches(r)],
        )

    def filter(self, predicate: Predicate) -> "QueryBuilder":
        """Keep records matching a predicate."""
        return self._push(
            "filter", (predicate,), lambda data: [r for r in data if predicate(r)]
        )

    def not_(self, predicate: Predicate) -> "QueryBuilder":
        """Drop records matching a predicate."""
        return self._push(
            "not", (predicate,), lambda data: [r for r in data if not predicate(r)]
        )

    def and_(self, *predicates: Predicate) -> "QueryBuilder":
        """Keep records matching every predicate."""
        return self._push(
            "and",
            predicates,
            lambda data: [r for r in data if all(p(r) for p in predicates)],
        )

    def or_(self, *predicates: Predicate) -> "QueryBuilder":
        """Keep records matching at least one predicate."""
        return self._push(
            "or",
            predicates,
            lambda data: [r for r in data if any(p(r) for p in predicates)],
        )

    # Ordering and slicing

    def order_by(
        self, field: str, direction: Literal["asc", "desc"] = "asc"
    ) -> "QueryBuilder":
        """Stable sort on a field."""
        if direction not in ("asc", "desc"):
            raise QueryError(f"Invalid sort direction: {direction}")
        return self._push(
            "orderBy",
            (field, direction),
            lambda data: arrays.sort_by(data, {field: direction}),
        )

    def limit(self, n: int) -> "QueryBuilder":
        """Keep the first ``n`` records."""
        return self._push("limit", (n,), lambda data: data[:n])

    def offset(self, n: int) -> "QueryBuilder":
        """Skip the first ``n`` records; negative values count from the end."""
        return self._push("offset", (n,), lambda data: data[n:])

    def page(self, page_number: int, page_size: int) -> "QueryBuilder":
        """Keep one page of records, counting pages from 1."""
        start = (page_number - 1) * page_size
        return self._push(
            "page",
            (page_number, page_size),
            lambda data: data[start : start + page_size] if start >= 0 else [],
        )

    def reverse(self) -> "QueryBuilder":
        """Reverse the current order."""
        return self._push("reverse", (), lambda data: data[::-1])

    # Transformations

    def group_by(self, field: str) -> "QueryBuilder":
        """Turn the result into a mapping of field value to records.

        This must be the last operation of the pipeline.
        """
        return self._push(
            "groupBy", (field,), lambda data: arrays.group(data, field)
        )

    def search(self, query: str, tone: float = 0.25) -> "QueryBuilder":
        """Keep records with any value fuzzily resembling ``query``."""
        return self._push(
            "search", (query, tone), lambda data: arrays.search(data, query, tone)
        )

    def modify(
        self,
        callback: Callable[[Record], Record | None],
        context: Mapping[str, Any] | None = None,
    ) -> "QueryBuilder":
        """Transform every record in the result.

        The callback returns a replacement record, or None to keep the
        record it was given (possibly mutated). Results are not persisted.
        A pipeline containing ``modify`` is never cached.

        Args:
            callback: Record transformer.
            context: Optional ``{"field": ..., "value": ...}`` naming what
                the callback changes, limiting which cached results are
                dropped.
        """
        self._check_open()
        self._has_mutating_op = True
        self._data_version += 1
        self._invalidate_modified(context)

        def transform(data: list[Record]) -> list[Record]:
            result = []
            for item in data:
                replaced = callback(item)
                result.append(item if replaced is None else replaced)
            return result

        return self._push("modify", (callback,), transform)

    # Execution

    def reset(self) -> "QueryBuilder":
        """Drop every staged operation and cached result."""
        self._operations = []
        self._has_mutating_op = False
        self._signature = None
        self._invalidate()
        return self

    async def to_array(self) -> Any:
        """Run the pipeline, reusing a cached or in-flight result."""
        key = self._memo_key()
        cached = self._memo.get(key)
        if cached is not None:
            logger.debug(f"Query cache hit on {self.table}")
            return await cached

        task = asyncio.ensure_future(self._execute())
        if not self._has_mutating_op:
            self._memo[key] = task
            task.add_done_callback(lambda t: self._forget_failed(key, t))
        return await task

    async def to_grouped(self, field: str) -> list[dict[str, Any]]:
        """Run the pipeline and group the result as key/values pairs."""
        data = await self._execute()
        return [
            {"key": key, "values": values}
            for key, values in arrays.group(data, field).items()
        ]

    def build(
        self, conditions: Iterable[QueryCondition | Mapping[str, Any]]
    ) -> "QueryBuilder":
        """Apply a list of condition descriptors as chained calls.

        Conditions are structs from this module or dicts with a ``type``
        tag, e.g. ``{"type": "equals", "field": "city", "value": "Paris"}``.
        """
        for condition in conditions:
            self._apply(_to_condition(condition))
        return self

    # Aggregations

    async def count(self) -> int:
        return len(await self._records())

    async def first(self) -> Record | None:
        data = await self._records()
        return data[0] if data else None

    async def last(self) -> Record | None:
        data = await self._records()
        return data[-1] if data else None

    async def average(self, field: str) -> float:
        data = await self._records()
        if not data:
            return 0
        return sum(arrays.to_number(r.get(field)) for r in data) / len(data)

    async def sum(self, field: str) -> float:
        data = await self._records()
        return sum(arrays.to_number(r.get(field)) for r in data)

    async def min(self, field: str) -> Record | None:
        return arrays.min_by(await self._records(), lambda r: r.get(field))

    async def max(self, field: str) -> Record | None:
        return arrays.max_by(await self._records(), lambda r: r.get(field))

    # Internals

    async def _records(self) -> list[Record]:
        data = await self.to_array()
        if not isinstance(data, list):
            raise QueryError(
                "Aggregations need a record list; group_by() returns groups"
            )
        return data

    def _push(
        self, name: str, args: tuple[Any, ...], transform: Callable[[Any], Any]
    ) -> "QueryBuilder":
        self._check_open()
        previous = self._current_signature()
        self._operations.append(Operation(name, tuple(args), transform))
        self._signature = None

        # A result cached for the shorter chain no longer answers this query.
        self._invalidate(lambda key: key[0][: len(previous)] == previous)
        return self

    def _check_open(self) -> None:
        if self._operations and self._operations[-1].name == "groupBy":
            raise QueryError("group_by() must be the last operation of a query")

    def _current_signature(self) -> Signature:
        if self._signature is None:
            self._signature = tuple(op.signature for op in self._operations)
        return self._signature

    def _memo_key(self) -> MemoKey:
        return (self._current_signature(), self._data_version)

    def _invalidate(self, predicate: Callable[[MemoKey], bool] | None = None) -> None:
        if predicate is None:
            self._memo.clear()
            return
        for key in [k for k in self._memo if predicate(k)]:
            del self._memo[key]

    def _invalidate_modified(self, context: Mapping[str, Any] | None) -> None:
        if not context or context.get("field") is None:
            self._invalidate()
            return

        field = _encode(context["field"])
        value = _encode(context["value"]) if "value" in context else None

        def stale_or_mentions(key: MemoKey) -> bool:
            if key[1] < self._data_version:
                return True
            text = "|".join(key[0])
            return field in text and (value is None or value in text)

        self._invalidate(stale_or_mentions)

    def _forget_failed(self, key: MemoKey, task: asyncio.Future) -> None:
        if task.cancelled() or task.exception() is not None:
            if self._memo.get(key) is task:
                del self._memo[key]

    async def _execute(self) -> Any:
        records = await self.adapter.get_all(self.table)
        data: Any = list(records or [])
        for operation in self._operations:
            data = operation.transform(data)
        return data

    def _apply(self, condition: QueryCondition) -> None:
        match condition:
            case Equals(field=field, value=value):
                self.equals(field, value)
            case Between(field=field, lower=lower, upper=upper):
                self.between(field, lower, upper)
            case StartsWith(field=field, value=value, ignore_case=ignore_case):
                self.starts_with(field, value, ignore_case)
            case Where(field=field, fn=fn):
                self.where(field, fn)
            case Filter(fn=fn):
                self.filter(fn)
            case OrderBy(field=field, value=value):
                self.order_by(field, value)
            case Limit(value=value):
                self.limit(value)
            case Offset(value=value):
                self.offset(value)
            case Page(page_number=page_number, page_size=page_size):
                self.page(page_number, page_size)
            case _:
                raise QueryError(f"Unknown query type: {condition!r}")


def _to_condition(condition: Any) -> QueryCondition:
    if isinstance(condition, tuple(_CONDITIONS.values())):
        return condition
    if not isinstance(condition, Mapping):
        raise QueryError(f"Unknown query type: {condition!r}")

    fields = dict(condition)
    kind = fields.pop("type", None)
    cls = _CONDITIONS.get(kind)
    if cls is None:
        raise QueryError(f"Unknown query type: {kind}")
    try:
        return cls(**fields)
    except TypeError as e:
        raise QueryError(f"Invalid {kind} condition: {e}") from e
