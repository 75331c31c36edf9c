from __future__ import annotations

import sqlite3
from typing import Any, Callable, Iterable, TypeVar

import structlog

from ..errors import PerEntityError, Result, TransientInfrastructureError

log = structlog.get_logger()

T = TypeVar("T")
R = TypeVar("R")

# Store contention ("database is locked") counts as infrastructure.
TRANSIENT_ERRORS = (TransientInfrastructureError, sqlite3.OperationalError)


def for_each_isolated(
    items: Iterable[T],
    fn: Callable[[T], R],
    *,
    key: Callable[[T], Any] | None = None,
    event: str = "batch_item_failed",
    on_error: Callable[[T, BaseException], None] | None = None,
) -> list[Result[R]]:
    """Apply `fn` to every item; one item's failure never stops the rest.

    Each failure is logged, handed to `on_error` (for marking the entity
    degraded) and returned as a failed Result wrapping a PerEntityError.
    """
    results: list[Result[R]] = []
    for item in items:
        item_key = key(item) if key else item
        try:
            results.append(Result.success(fn(item), key=item_key))
        except Exception as exc:
            log.error(event, key=str(item_key), err=str(exc), err_type=type(exc).__name__, exc_info=True)
            if on_error is not None:
                try:
                    on_error(item, exc)
                except Exception as mark_exc:
                    log.error("batch_item_mark_failed", key=str(item_key), err=str(mark_exc))
            results.append(Result.failure(PerEntityError(item_key, exc), key=item_key))
    return results

def summarize(results: list[Result]) -> dict:
    failed = [r for r in results if not r.ok]
    return {
        "processed": len(results),
        "succeeded": len(results) - len(failed),
        "failed": len(failed),
        "failed_keys": [str(r.key) for r in failed],
    }

def raise_if_all_failed_transient(results: list[Result]):
    """Escalate when every entity failed on infrastructure, so the job is retried."""
    if not results:
        return
    causes = [getattr(r.error, "cause", r.error) for r in results if not r.ok]
    if len(causes) == len(results) and all(isinstance(c, TRANSIENT_ERRORS) for c in causes):
        raise TransientInfrastructureError(f"all {len(results)} entities failed: {causes[-1]}")
