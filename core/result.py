"""
Result envelope shared by every fallible cross-component call.
"""
from __future__ import annotations

from dataclasses import dataclass
from typing import Generic, TypeVar

from core.errors import BilibiliError, ErrorKind, error_kind_of

T = TypeVar("T")


@dataclass(slots=True)
class Result(Generic[T]):
    """Success/failure envelope.

    ``error`` is the human-readable failure message; ``code`` and ``kind``
    let callers branch without string matching when they are known.
    """
    success: bool
    data: T | None = None
    error: str | None = None
    code: int | None = None
    kind: ErrorKind | None = None

    @classmethod
    def ok(cls, data: T | None = None) -> Result[T]:
        return cls(success=True, data=data)

    @classmethod
    def fail(
        cls,
        error: str,
        *,
        code: int | None = None,
        kind: ErrorKind | None = None,
    ) -> Result[T]:
        return cls(success=False, error=error, code=code, kind=kind)

    @classmethod
    def from_exception(cls, exc: BaseException) -> Result[T]:
        code = exc.code if isinstance(exc, BilibiliError) else None
        return cls(success=False, error=str(exc), code=code, kind=error_kind_of(exc))
