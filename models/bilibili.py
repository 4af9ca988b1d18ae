"""
Data models for Bilibili dynamic and live notifications.

Defines subscriptions, upstream records and per-room monitoring state.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from core.scheduler import JobHandle


@dataclass(frozen=True, slots=True)
class Destination:
    """A chat channel that receives notifications."""
    platform: str
    channel_id: str
    posts: bool = False
    live: bool = False
    guard_buy: bool = False
    at_all: bool = False

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Destination:
        return cls(
            platform=str(data.get("platform", "")),
            channel_id=str(data.get("channel_id") or data.get("channelId") or ""),
            posts=bool(data.get("dynamic", data.get("posts", False))),
            live=bool(data.get("live", False)),
            guard_buy=bool(data.get("live_guard_buy", data.get("liveGuardBuy", False))),
            at_all=bool(data.get("at_all", data.get("atAll", False))),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "platform": self.platform,
            "channel_id": self.channel_id,
            "dynamic": self.posts,
            "live": self.live,
            "live_guard_buy": self.guard_buy,
            "at_all": self.at_all,
        }

    @property
    def unified_origin(self) -> str:
        """AstrBot session string for this channel."""
        if self.channel_id.count(":") >= 2:
            return self.channel_id
        return f"{self.platform}:GroupMessage:{self.channel_id}"

    def __str__(self) -> str:
        return f"{self.platform}:{self.channel_id}"


@dataclass(frozen=True, slots=True)
class Subscription:
    """A monitored Bilibili user."""
    uid: str
    name: str
    wants_posts: bool = False
    wants_live: bool = False
    targets: tuple[Destination, ...] = ()

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Subscription:
        targets = data.get("targets") or []
        return cls(
            uid=str(data.get("uid", "")),
            name=str(data.get("name") or ""),
            wants_posts=bool(data.get("dynamic", data.get("wants_posts", False))),
            wants_live=bool(data.get("live", data.get("wants_live", False))),
            targets=tuple(Destination.from_dict(t) for t in targets if isinstance(t, dict)),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "uid": self.uid,
            "name": self.name,
            "dynamic": self.wants_posts,
            "live": self.wants_live,
            "targets": [t.to_dict() for t in self.targets],
        }

    @property
    def display_name(self) -> str:
        return self.name or self.uid


@dataclass(slots=True)
class DynamicItem:
    """A single entry of a user's dynamic feed."""
    id_str: str
    type: str
    modules: dict[str, Any] = field(default_factory=dict)
    author: dict[str, Any] | None = None
    timestamp: int | None = None  # Unix timestamp

    @classmethod
    def from_api_response(cls, data: dict[str, Any]) -> DynamicItem:
        """Create DynamicItem from a ``feed/space`` item."""
        modules = data.get("modules") if isinstance(data.get("modules"), dict) else {}
        author = modules.get("module_author") if isinstance(modules.get("module_author"), dict) else None
        return cls(
            id_str=str(data.get("id_str", "")),
            type=str(data.get("type", "")),
            modules=modules,
            author=author,
            timestamp=author.get("pub_ts") if author else None,
        )

    def get_url(self) -> str:
        return f"https://t.bilibili.com/{self.id_str}"

    def get_publish_datetime(self) -> datetime | None:
        if self.timestamp:
            return datetime.fromtimestamp(int(self.timestamp))
        return None


@dataclass(slots=True)
class LiveStatus:
    """Live room status as reported by ``Room/get_info``."""
    live_status: int
    title: str
    cover: str | None = None
    online: int | None = None

    @classmethod
    def from_api_response(cls, data: dict[str, Any]) -> LiveStatus:
        return cls(
            live_status=int(data.get("live_status") or 0),
            title=str(data.get("title") or ""),
            cover=data.get("user_cover"),
            online=data.get("online"),
        )

    @property
    def is_live(self) -> bool:
        return self.live_status == 1


@dataclass(slots=True)
class UserInfo:
    """Public profile of a Bilibili user."""
    uid: str
    name: str
    face: str | None = None
    sign: str | None = None
    level: int | None = None
    follower: int | None = None
    following: int | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "uid": self.uid,
            "name": self.name,
            "face": self.face,
            "sign": self.sign,
            "level": self.level,
            "follower": self.follower,
            "following": self.following,
        }


@dataclass(slots=True)
class DanmuHost:
    host: str
    port: int = 2243
    wss_port: int = 443
    ws_port: int = 2244


@dataclass(slots=True)
class DanmuInfo:
    """Push-channel credentials for a live room."""
    token: str
    host_list: list[DanmuHost] = field(default_factory=list)
    max_delay: int = 0

    @classmethod
    def from_api_response(cls, data: dict[str, Any]) -> DanmuInfo:
        hosts = []
        for host in data.get("host_list") or []:
            if isinstance(host, dict) and host.get("host"):
                hosts.append(DanmuHost(
                    host=str(host["host"]),
                    port=int(host.get("port", 2243)),
                    wss_port=int(host.get("wss_port", 443)),
                    ws_port=int(host.get("ws_port", 2244)),
                ))
        return cls(
            token=str(data.get("token") or ""),
            host_list=hosts,
            max_delay=int(data.get("max_delay") or 0),
        )


@dataclass(slots=True)
class LoginInfo:
    """Result of the ``nav`` login check."""
    is_login: bool
    uid: str | None = None
    uname: str | None = None
    face: str | None = None
    level: int | None = None


@dataclass
class LiveRoomState:
    """Per-room monitoring state.

    ``is_live`` is only flipped by the live monitor's start/end handlers.
    """
    room_id: str
    uid: str
    display_name: str
    title: str = ""
    is_live: bool = False
    live_started_at: float | None = None  # Unix timestamp
    repeat_timer: JobHandle | None = None
    is_filtered: bool = False
    viewer_count: int | None = None
    uses_push_channel: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {
            "room_id": self.room_id,
            "uid": self.uid,
            "display_name": self.display_name,
            "title": self.title,
            "is_live": self.is_live,
            "live_started_at": self.live_started_at,
            "has_repeat_timer": self.repeat_timer is not None,
            "is_filtered": self.is_filtered,
            "viewer_count": self.viewer_count,
            "uses_push_channel": self.uses_push_channel,
        }
