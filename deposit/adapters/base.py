"""Storage adapter interface shared by all backends."""

import functools
import logging
from collections.abc import Awaitable, Callable, Iterable, Mapping
from typing import Any, ParamSpec, Protocol, TypeVar, runtime_checkable

logger = logging.getLogger(__name__)

P = ParamSpec("P")
R = TypeVar("R")


@runtime_checkable
class StorageAdapter(Protocol):
    """Protocol for table-oriented storage backends.

    Every method is a coroutine, even for backends that are synchronous
    underneath, so that backends stay interchangeable.
    """

    async def get(self, table: str, key: Any, default: Any = None) -> Any:
        """Read one record, or ``default`` if absent or expired."""
        ...

    async def get_all(self, table: str) -> list[dict[str, Any]]:
        """Read every live record, evicting expired ones."""
        ...

    async def put(
        self, table: str, record: Mapping[str, Any], ttl: int | None = None
    ) -> None:
        """Insert or replace a record."""
        ...

    async def bulk_put(
        self, table: str, records: Iterable[Mapping[str, Any]], ttl: int | None = None
    ) -> None:
        """Insert or replace several records."""
        ...

    async def delete(self, table: str, key: Any) -> None:
        """Delete a record by key."""
        ...

    async def bulk_delete(self, table: str, keys: Iterable[Any]) -> None:
        """Delete several records by key."""
        ...

    async def clear(self, table: str) -> None:
        """Delete every record of a table."""
        ...

    async def count(self, table: str) -> int:
        """Count live records."""
        ...


def run_safe(
    label: str,
) -> Callable[[Callable[P, Awaitable[R]]], Callable[P, Awaitable[R | None]]]:
    """Swallow and log failures of an async adapter method.

    The wrapped coroutine returns None instead of raising, so storage
    errors degrade to empty results rather than crashing callers.
    """

    def decorator(fn: Callable[P, Awaitable[R]]) -> Callable[P, Awaitable[R | None]]:
        @functools.wraps(fn)
        async def wrapper(*args: P.args, **kwargs: P.kwargs) -> R | None:
            try:
                return await fn(*args, **kwargs)
            except Exception as e:
                logger.error(f"{label}: {e}", exc_info=True)
                return None

        return wrapper

    return decorator
