"""Single-retry wrapper for storage calls."""
from __future__ import annotations

import sqlite3
from typing import Callable, TypeVar

from app.core.errors import PersistenceError
from app.core.logging import logger

T = TypeVar("T")


def with_storage_retry(operation: str, func: Callable[[], T]) -> T:
    """Run ``func``, retrying once on a storage failure.

    Domain errors raised inside ``func`` pass straight through; only
    ``sqlite3`` failures other than constraint violations count as transient.
    """
    for attempt in (1, 2):
        try:
            return func()
        except sqlite3.IntegrityError:
            raise
        except sqlite3.Error as exc:
            if attempt == 1:
                logger.warning("Storage call failed, retrying", operation=operation, error=str(exc))
                continue
            logger.error("Storage call failed after retry", operation=operation, error=str(exc))
            raise PersistenceError(f"Could not save {operation}; please try again") from exc
    raise AssertionError("unreachable")
