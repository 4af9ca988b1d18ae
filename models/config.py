"""
Plugin configuration models.

The AstrBot config dict is parsed once into an immutable tree; a reload
builds a new ``NotifyConfig`` instead of mutating the old one.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

from models.bilibili import Subscription

DEFAULT_LIVE_START_TEMPLATE = "🔴 {name} 开始直播啦！\\n📺 {title}\\n🔗 {url}"
DEFAULT_LIVE_TEMPLATE = "🔴 {name} 正在直播\\n📺 {title}\\n👥 观看人数：{online}\\n⏱️ 已播：{time}"
DEFAULT_LIVE_END_TEMPLATE = "⚫ {name} 直播结束了，本次直播 {time}"


def _as_int(value: Any, default: int) -> int:
    try:
        return int(value)
    except (TypeError, ValueError):
        return default


def _as_float(value: Any, default: float) -> float:
    try:
        return float(value)
    except (TypeError, ValueError):
        return default


def _as_str_list(value: Any) -> tuple[str, ...]:
    if isinstance(value, str):
        value = value.splitlines()
    if not isinstance(value, list | tuple):
        return ()
    return tuple(str(v).strip() for v in value if str(v).strip())


@dataclass(frozen=True, slots=True)
class CustomMessages:
    """Message templates; variables: {name} {title} {url} {online} {time}."""
    live_start: str = DEFAULT_LIVE_START_TEMPLATE
    live: str = DEFAULT_LIVE_TEMPLATE
    live_end: str = DEFAULT_LIVE_END_TEMPLATE

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> CustomMessages:
        return cls(
            live_start=str(data.get("live_start", DEFAULT_LIVE_START_TEMPLATE)),
            live=str(data.get("live", DEFAULT_LIVE_TEMPLATE)),
            live_end=str(data.get("live_end", DEFAULT_LIVE_END_TEMPLATE)),
        )


@dataclass(frozen=True, slots=True)
class DanmakuConfig:
    """Push channel (live danmaku websocket) settings. Intervals in seconds."""
    enable: bool = False
    max_connections: int = 5
    reconnect_interval: float = 30.0
    heartbeat_interval: float = 30.0
    enable_guard_buy: bool = False
    enable_viewer_count: bool = True

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> DanmakuConfig:
        return cls(
            enable=bool(data.get("enable", False)),
            max_connections=max(1, _as_int(data.get("max_connections"), 5)),
            reconnect_interval=max(1.0, _as_float(data.get("reconnect_interval"), 30.0)),
            heartbeat_interval=max(1.0, _as_float(data.get("heartbeat_interval"), 30.0)),
            enable_guard_buy=bool(data.get("enable_guard_buy", False)),
            enable_viewer_count=bool(data.get("enable_viewer_count", True)),
        )


@dataclass(frozen=True, slots=True)
class FilterConfig:
    """Keyword / regex filtering for dynamics and live titles."""
    enable: bool = False
    keywords: tuple[str, ...] = ()
    regex: str = ""
    forward: bool = False
    article: bool = False

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> FilterConfig:
        return cls(
            enable=bool(data.get("enable", False)),
            keywords=_as_str_list(data.get("keywords")),
            regex=str(data.get("regex") or ""),
            forward=bool(data.get("forward", False)),
            article=bool(data.get("article", False)),
        )


@dataclass(frozen=True, slots=True)
class NotifyConfig:
    """Top-level plugin configuration."""
    subscriptions: tuple[Subscription, ...] = ()
    user_agents: tuple[str, ...] = ()
    dynamic_interval: float = 2.0  # minutes
    live_interval: float = 30.0  # seconds
    push_time: float = 1.0  # hours between "still live" notifications
    enable_dynamic: bool = True
    enable_live: bool = True
    custom_messages: CustomMessages = field(default_factory=CustomMessages)
    danmaku: DanmakuConfig = field(default_factory=DanmakuConfig)
    filter: FilterConfig = field(default_factory=FilterConfig)
    state_file: str = "data/bilibili_notify_login.json"
    debug: bool = False

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> NotifyConfig:
        data = data or {}
        subscriptions = tuple(
            Subscription.from_dict(s)
            for s in data.get("subscriptions") or []
            if isinstance(s, dict) and s.get("uid")
        )
        return cls(
            subscriptions=subscriptions,
            user_agents=_as_str_list(data.get("custom_user_agents")),
            dynamic_interval=max(1.0, _as_float(data.get("dynamic_interval"), 2.0)),
            live_interval=max(15.0, _as_float(data.get("live_interval"), 30.0)),
            push_time=max(0.0, _as_float(data.get("push_time"), 1.0)),
            enable_dynamic=bool(data.get("enable_dynamic", True)),
            enable_live=bool(data.get("enable_live", True)),
            custom_messages=CustomMessages.from_dict(data.get("custom_messages") or {}),
            danmaku=DanmakuConfig.from_dict(data.get("danmaku") or {}),
            filter=FilterConfig.from_dict(data.get("filter") or {}),
            state_file=str(data.get("state_file") or "data/bilibili_notify_login.json"),
            debug=bool(data.get("debug", False)),
        )

    @property
    def dynamic_subscriptions(self) -> list[Subscription]:
        return [s for s in self.subscriptions if s.wants_posts]

    @property
    def live_subscriptions(self) -> list[Subscription]:
        return [s for s in self.subscriptions if s.wants_live]

    def find_subscription(self, uid: str) -> Subscription | None:
        for sub in self.subscriptions:
            if sub.uid == uid:
                return sub
        return None
