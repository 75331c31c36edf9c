from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Generic, Optional, TypeVar

T = TypeVar("T")


class CustodyError(Exception):
    """Base class for errors raised by the engine."""


class ValidationError(CustodyError):
    def __init__(self, field: str, message: str):
        super().__init__(f"{field}: {message}")
        self.field = field
        self.message = message


class ConflictError(CustodyError):
    pass


class NotFoundError(CustodyError):
    pass


class TransientInfrastructureError(CustodyError):
    """Store or external collaborator unavailable; the job runner retries these."""


class PerEntityError(CustodyError):
    """One entity in a batch failed; the batch carries on."""

    def __init__(self, key: Any, cause: BaseException):
        super().__init__(f"{key}: {cause}")
        self.key = key
        self.cause = cause


class UnsupportedCurrencyError(CustodyError):
    def __init__(self, currency: str):
        super().__init__(f"no USD rate for currency {currency!r}")
        self.currency = currency


@dataclass
class Result(Generic[T]):
    ok: bool
    value: Optional[T] = None
    error: Optional[BaseException] = None
    key: Any = None

    @classmethod
    def success(cls, value: T = None, key: Any = None) -> "Result[T]":
        return cls(ok=True, value=value, key=key)

    @classmethod
    def failure(cls, error: BaseException, key: Any = None) -> "Result[T]":
        return cls(ok=False, error=error, key=key)

    @property
    def error_kind(self) -> str | None:
        if self.error is None:
            return None
        return type(self.error).__name__
