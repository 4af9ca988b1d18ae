"""
Error taxonomy for Bilibili API access.

Exceptions are raised only by the signer and the HTTP primitives; the API
facade converts them into ``Result`` envelopes before they cross a component
boundary.
"""
from __future__ import annotations

import re
from enum import Enum
from typing import Any

from core.constants import (
    CODE_FORBIDDEN,
    CODE_NOT_FOUND,
    CODE_NOT_LOGIN,
    CODE_RATE_LIMITED,
    CODE_RISK_CONTROL,
    CODE_TOO_FAST,
    CODE_TOO_FREQUENT,
    CODE_USER_NOT_EXIST,
)

# Substrings the upstream (or our own messages) use for abuse detection.
RISK_CONTROL_KEYWORDS = (
    "-352",
    "请求被风控",
    "请求被拦截",
    "风控",
    "User-Agent",
    "请求过于频繁",
    "-503",
    "-509",
    "-799",
)

_CODE_PATTERN = re.compile(r"错误码: (-?\d+)\]")


class ErrorKind(str, Enum):
    """Classification of a failed upstream call."""
    TRANSIENT_NETWORK = "transient_network"
    ABUSE_DETECTED = "abuse_detected"
    RATE_LIMITED = "rate_limited"
    NOT_FOUND = "not_found"
    UNAUTHENTICATED = "unauthenticated"
    FORBIDDEN = "forbidden"
    SIGNING_UNAVAILABLE = "signing_unavailable"
    SCOPE_TORN_DOWN = "scope_torn_down"
    UPSTREAM = "upstream"


class BilibiliError(Exception):
    """Base class for errors raised by the API access layer."""
    kind: ErrorKind = ErrorKind.UPSTREAM
    code: int | None = None


class BilibiliApiError(BilibiliError):
    """Upstream answered with a non-zero ``code``."""

    def __init__(
        self,
        message: str,
        code: int,
        *,
        reason: str | None = None,
        kind: ErrorKind | None = None,
        diagnostics: dict[str, Any] | None = None,
    ):
        super().__init__(message)
        self.code = code
        self.reason = reason or message
        self.kind = kind or classify_code(code)
        self.diagnostics = diagnostics or {}


class SigningUnavailable(BilibiliError):
    """WBI keys could not be fetched and no cached pair exists."""
    kind = ErrorKind.SIGNING_UNAVAILABLE


class ScopeTornDown(BilibiliError):
    """The owning service is shutting down; no new requests are issued."""
    kind = ErrorKind.SCOPE_TORN_DOWN


def classify_code(code: int) -> ErrorKind:
    """Map an upstream response code onto an ``ErrorKind``."""
    match code:
        case c if c == CODE_RISK_CONTROL:
            return ErrorKind.ABUSE_DETECTED
        case c if c in (CODE_TOO_FAST, CODE_TOO_FREQUENT, CODE_RATE_LIMITED):
            return ErrorKind.RATE_LIMITED
        case c if c in (CODE_NOT_FOUND, CODE_USER_NOT_EXIST):
            return ErrorKind.NOT_FOUND
        case c if c == CODE_NOT_LOGIN:
            return ErrorKind.UNAUTHENTICATED
        case c if c == CODE_FORBIDDEN:
            return ErrorKind.FORBIDDEN
        case _:
            return ErrorKind.UPSTREAM


def is_risk_control_signal(text: str | None) -> bool:
    """Check whether an error message carries an abuse-detection signal."""
    if not text:
        return False
    return any(keyword in text for keyword in RISK_CONTROL_KEYWORDS)


def extract_error_code(error: BaseException) -> int | None:
    """Recover the upstream code from an exception, if it carries one."""
    if isinstance(error, BilibiliError) and error.code is not None:
        return error.code
    match = _CODE_PATTERN.search(str(error))
    if match:
        return int(match.group(1))
    return None


def error_kind_of(error: BaseException) -> ErrorKind:
    """Best-effort classification of an arbitrary exception."""
    if isinstance(error, BilibiliError):
        return error.kind
    if is_risk_control_signal(str(error)):
        return ErrorKind.ABUSE_DETECTED
    return ErrorKind.TRANSIENT_NETWORK
