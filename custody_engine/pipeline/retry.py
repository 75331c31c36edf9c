from __future__ import annotations

import time
from dataclasses import dataclass, field
from typing import Any, Callable

import structlog

from ..errors import ConflictError, NotFoundError, ValidationError

log = structlog.get_logger()

# Caller errors; retrying cannot change the outcome.
NON_RETRYABLE = (ValidationError, ConflictError, NotFoundError)


@dataclass(frozen=True)
class RetryPolicy:
    """Delays (seconds) between attempts; attempts = 1 + len(delays)."""

    delays: tuple[float, ...] = ()

    @property
    def attempts(self) -> int:
        return 1 + len(self.delays)


SYNC_POLICY = RetryPolicy((30, 60, 120))
CALC_POLICY = RetryPolicy((60, 180))


@dataclass
class RetryOutcome:
    ok: bool
    attempts: int
    value: Any = None
    error: BaseException | None = None
    errors: list[str] = field(default_factory=list)


def run_with_retry(
    fn: Callable[[], Any],
    policy: RetryPolicy,
    *,
    sleep: Callable[[float], None] = time.sleep,
    on_attempt: Callable[[int], None] | None = None,
    label: str = "job",
) -> RetryOutcome:
    """Run `fn` until it succeeds or the policy is exhausted. Never raises."""
    outcome = RetryOutcome(ok=False, attempts=0)
    for attempt in range(1, policy.attempts + 1):
        outcome.attempts = attempt
        if on_attempt is not None:
            on_attempt(attempt)
        try:
            outcome.value = fn()
            outcome.ok = True
            outcome.error = None
            return outcome
        except Exception as exc:
            outcome.error = exc
            outcome.errors.append(f"{type(exc).__name__}: {exc}")
            log.warning("job_attempt_failed", job=label, attempt=attempt, of=policy.attempts,
                        err=str(exc), err_type=type(exc).__name__, exc_info=True)
            if isinstance(exc, NON_RETRYABLE) or attempt >= policy.attempts:
                break
            sleep(policy.delays[attempt - 1])
    return outcome
