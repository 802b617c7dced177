"""Time-to-live helpers for stored records.

A record written with a TTL carries an ``expiresAt`` field holding an
absolute epoch-milliseconds timestamp. Readers treat the record as absent
once that moment has passed.
"""

import logging
import time
from collections.abc import Callable, Mapping
from typing import Any

logger = logging.getLogger(__name__)

EXPIRES_AT = "expiresAt"


def now_ms() -> int:
    """Current time in epoch milliseconds."""
    return int(time.time() * 1000)


def wrap_with_expiry(record: Mapping[str, Any], ttl: int | None = None):
    """Attach an expiry timestamp to a record.

    Args:
        record: Record to store.
        ttl: Time to live in milliseconds. ``None`` means no expiry.

    Returns:
        The record itself when ``ttl`` is None, otherwise a shallow copy
        with ``expiresAt`` set.
    """
    if ttl is None:
        return record
    return {**record, EXPIRES_AT: now_ms() + ttl}


def unwrap_with_expiry(
    stored: dict[str, Any],
    now: int,
    on_expire: Callable[[], Any] | None = None,
) -> dict[str, Any] | None:
    """Return a stored record unless it has expired.

    The ``expiresAt`` field is left on records that are still alive.
    Expired records trigger ``on_expire`` and yield None.
    """
    expires_at = stored.get(EXPIRES_AT)
    if expires_at is None:
        return stored

    if now >= expires_at:
        if on_expire is not None:
            try:
                on_expire()
            except Exception as e:
                logger.warning(f"Failed to clean up expired entry: {e}")
        return None

    return stored
