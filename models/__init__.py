"""
Data models for the Bilibili notifier.

This package contains the configuration tree, subscriptions and the records
returned by the Bilibili API.
"""

from .bilibili import (
    Destination,
    Subscription,
    DynamicItem,
    LiveStatus,
    UserInfo,
    DanmuInfo,
    LoginInfo,
    LiveRoomState,
)

from .config import (
    CustomMessages,
    DanmakuConfig,
    FilterConfig,
    NotifyConfig,
)

__all__ = [
    # Bilibili models
    "Destination",
    "Subscription",
    "DynamicItem",
    "LiveStatus",
    "UserInfo",
    "DanmuInfo",
    "LoginInfo",
    "LiveRoomState",
    # Configuration
    "CustomMessages",
    "DanmakuConfig",
    "FilterConfig",
    "NotifyConfig",
]
