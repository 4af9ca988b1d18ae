"""
Core business logic for the Bilibili notifier.

This package contains the upstream access layer (WBI signing, the paced HTTP
client, risk control and the API facade), login and credential storage,
timer supervision, the danmaku push channel and both monitors.

Only the access layer is re-exported here; the monitors depend on
``services`` and are imported from their own modules.
"""

from .bilibili_api import BilibiliApi
from .errors import (
    BilibiliApiError,
    BilibiliError,
    ErrorKind,
    ScopeTornDown,
    SigningUnavailable,
)
from .http_client import RateLimitedHttpClient
from .result import Result
from .risk_control import RiskControlTracker
from .scheduler import JobHandle, SchedulerManager, TaskStatus
from .state import CredentialStore
from .wbi import WbiSigner

__all__ = [
    # Upstream access
    "BilibiliApi",
    "RateLimitedHttpClient",
    "WbiSigner",
    "RiskControlTracker",
    # Errors
    "BilibiliError",
    "BilibiliApiError",
    "ErrorKind",
    "ScopeTornDown",
    "SigningUnavailable",
    "Result",
    # Infrastructure
    "CredentialStore",
    "SchedulerManager",
    "JobHandle",
    "TaskStatus",
]
