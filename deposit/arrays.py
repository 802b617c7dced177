"""Pure helpers over lists of records used by the query pipeline.

Provides a stable multi-field sort, grouping by key, selector-based
min/max, and fuzzy text matching across all values of a record.
"""

import functools
import json
import math
from collections.abc import Callable, Iterable, Mapping
from typing import Any, Literal

from rapidfuzz.distance import Levenshtein

Direction = Literal["asc", "desc"]

_MISSING = object()


def compare(a: Any, b: Any) -> int:
    """Three-way comparison tolerant of mixed and missing values.

    Missing values sort after everything, None before everything else.
    Strings compare case-insensitively first, then by code point.
    """
    if a is b:
        return 0
    if a is _MISSING:
        return 1
    if b is _MISSING:
        return -1
    if a is None:
        return 0 if b is None else -1
    if b is None:
        return 1

    if isinstance(a, str) and isinstance(b, str):
        left, right = (a.casefold(), a), (b.casefold(), b)
    elif _is_number(a) and _is_number(b):
        left, right = a, b
    elif isinstance(a, (dict, list)) and isinstance(b, (dict, list)):
        left = json.dumps(a, sort_keys=True, default=str)
        right = json.dumps(b, sort_keys=True, default=str)
    else:
        try:
            return (a > b) - (a < b)
        except TypeError:
            left, right = str(a), str(b)

    return (left > right) - (left < right)


def sort_by(
    records: Iterable[Mapping[str, Any]], selectors: Mapping[str, Direction]
) -> list:
    """Return records sorted by several fields.

    Python's sort is stable, so records that tie on every selector keep
    their relative order.

    Example:
        >>> sort_by([{"a": 2}, {"a": 1}], {"a": "asc"})
        [{'a': 1}, {'a': 2}]
    """
    fields = list(selectors.items())

    def by_fields(left: Mapping[str, Any], right: Mapping[str, Any]) -> int:
        for field, direction in fields:
            result = compare(left.get(field, _MISSING), right.get(field, _MISSING))
            if result:
                return -result if direction == "desc" else result
        return 0

    return sorted(records, key=functools.cmp_to_key(by_fields))


def group(
    records: Iterable[Any], selector: str | Callable[[Any], Any]
) -> dict[str, list]:
    """Group records by a field name or key function.

    Keys are stringified; None groups under ``"_"``.
    """
    get_key = selector if callable(selector) else (lambda item: item.get(selector))

    result: dict[str, list] = {}
    for item in records:
        raw = get_key(item)
        key = "_" if raw is None else str(raw)
        result.setdefault(key, []).append(item)
    return result


def min_by(records: list, selector: Callable[[Any], Any]) -> Any | None:
    """Return the item with the smallest selected value."""
    if not records:
        return None
    return functools.reduce(
        lambda a, b: a if compare(selector(a), selector(b)) < 0 else b, records
    )


def max_by(records: list, selector: Callable[[Any], Any]) -> Any | None:
    """Return the item with the largest selected value."""
    if not records:
        return None
    return functools.reduce(
        lambda a, b: a if compare(selector(a), selector(b)) > 0 else b, records
    )


def similarity(a: Any, b: Any) -> float:
    """Normalized Levenshtein similarity of two values, case-insensitive."""
    return Levenshtein.normalized_similarity(str(a).lower(), str(b).lower())


def seek(item: Any, query: str, tone: float = 1.0) -> bool:
    """Check whether any value nested in ``item`` resembles ``query``."""
    _check_tone(tone)

    if isinstance(item, Mapping):
        values: Iterable[Any] = item.values()
    elif isinstance(item, (list, tuple)):
        values = item
    else:
        return similarity(item, query) >= tone

    for value in values:
        if value is None:
            continue
        if isinstance(value, (Mapping, list, tuple)):
            if seek(value, query, tone):
                return True
        elif similarity(value, query) >= tone:
            return True
    return False


def search(records: Iterable[Any], query: str, tone: float = 0.25) -> list:
    """Fuzzy-filter records whose values resemble the query.

    Args:
        records: Records to search.
        query: Search text. An empty query matches nothing.
        tone: Minimum similarity between 0 and 1.

    Returns:
        Matching records in their original order.
    """
    if not isinstance(query, str):
        raise TypeError(f"Expected a string query, got {type(query).__name__}")
    _check_tone(tone)

    if not query:
        return []

    term = query.lower()
    return [record for record in records if seek(record, term, tone)]


def to_number(value: Any) -> float:
    """Coerce a value to a number, treating anything non-numeric as zero."""
    if _is_number(value):
        return 0 if math.isnan(value) else value
    if isinstance(value, str):
        try:
            number = float(value)
        except ValueError:
            return 0
        return 0 if math.isnan(number) else number
    return 0


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float))


def _check_tone(tone: float) -> None:
    if not 0 <= tone <= 1:
        raise ValueError(f"tone must be between 0 and 1, got {tone}")
