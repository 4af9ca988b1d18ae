"""
Message formatting for Bilibili notifications.

Turns dynamics, live-room transitions and service status into the plain
text that is pushed to chat channels.
"""
from __future__ import annotations

import time
from datetime import datetime
from typing import Any

from core.constants import LIVE_URL_TEMPLATE
from models.bilibili import DynamicItem, LiveRoomState
from models.config import CustomMessages

_TEMPLATE_VARIABLES = ("name", "title", "url", "online", "time", "follower", "followerChange")


def render_template(template: str, **values: Any) -> str:
    """Fill ``{name}``-style variables; unknown variables render empty.

    Literal ``\\n`` sequences (as typed into the config UI) become newlines.
    """
    if not template:
        return ""
    message = template
    for key in _TEMPLATE_VARIABLES:
        value = values.get(key)
        message = message.replace(f"{{{key}}}", "" if value is None else str(value))
    return message.replace("\\n", "\n")


def format_duration(seconds: float | None) -> str:
    """``2小时5分钟`` / ``5分钟3秒`` / ``42秒``; ``未知`` without a start time."""
    if seconds is None or seconds < 0:
        return "未知"
    total = int(seconds)
    hours, rest = divmod(total, 3600)
    minutes, secs = divmod(rest, 60)
    if hours > 0:
        return f"{hours}小时{minutes}分钟"
    if minutes > 0:
        return f"{minutes}分钟{secs}秒"
    return f"{secs}秒"


def live_url(room_id: str) -> str:
    return LIVE_URL_TEMPLATE.format(room_id=room_id)


class NotificationFormatter:
    """Format notification bodies from templates and upstream records."""

    def __init__(self, messages: CustomMessages | None = None):
        """Initialize formatter.

        Args:
            messages: Live message templates
        """
        self.messages = messages or CustomMessages()

    def _format_number(self, num: int | None) -> str:
        """Format large numbers with units.

        Args:
            num: Number to format

        Returns:
            Formatted string
        """
        if num is None:
            return "未知"

        if num >= 10000:
            return f"{num / 10000:.1f}万"
        elif num >= 1000:
            return f"{num / 1000:.1f}千"
        else:
            return str(num)

    def _format_datetime(self, dt: datetime | None) -> str:
        if dt is None:
            return "未知"
        return dt.strftime("%Y-%m-%d %H:%M")

    def extract_dynamic_content(self, item: DynamicItem) -> str:
        """Short summary of a dynamic depending on its type."""
        module_dynamic = item.modules.get("module_dynamic") or {}
        desc = (module_dynamic.get("desc") or {}).get("text")
        major = module_dynamic.get("major") or {}

        match item.type:
            case "DYNAMIC_TYPE_WORD":
                return desc or "文字动态"
            case "DYNAMIC_TYPE_DRAW":
                return desc or "图片动态"
            case "DYNAMIC_TYPE_AV":
                return (major.get("archive") or {}).get("title") or "视频动态"
            case "DYNAMIC_TYPE_FORWARD":
                return "转发了动态"
            case "DYNAMIC_TYPE_ARTICLE":
                return (major.get("article") or {}).get("title") or "专栏动态"
            case _:
                return "动态更新"

    def format_dynamic(self, item: DynamicItem, display_name: str) -> str:
        """Notification body for a new dynamic (the URL is appended by the dispatcher)."""
        lines = [f"📢 {display_name} 发布了新动态", self.extract_dynamic_content(item)]
        published = item.get_publish_datetime()
        if published:
            lines.append(f"🕒 {self._format_datetime(published)}")
        return "\n".join(lines)

    def _elapsed(self, room: LiveRoomState, now: float | None = None) -> str:
        if room.live_started_at is None:
            return format_duration(None)
        return format_duration((now or time.time()) - room.live_started_at)

    def format_live_start(self, room: LiveRoomState) -> str:
        return render_template(
            self.messages.live_start,
            name=room.display_name,
            title=room.title,
            url=live_url(room.room_id),
        ) or room.title

    def format_live_reminder(self, room: LiveRoomState, now: float | None = None) -> str:
        """The periodic "still live" message."""
        return render_template(
            self.messages.live,
            name=room.display_name,
            title=room.title,
            url=live_url(room.room_id),
            online=self._format_number(room.viewer_count),
            time=self._elapsed(room, now),
        ) or room.title

    def format_live_end(self, room: LiveRoomState, now: float | None = None) -> str:
        return render_template(
            self.messages.live_end,
            name=room.display_name,
            time=self._elapsed(room, now),
        ) or f"{room.display_name} 下播了"

    def format_guard_buy(self, room: LiveRoomState, username: str, gift_name: str) -> str:
        return f"[{room.display_name}的直播间]「{username}」加入了大航海（{gift_name}）"

    def format_status(self, status: dict[str, Any]) -> str:
        """Render the service status snapshot for the status command."""
        lines = ["📊 B站推送服务状态", ""]
        lines.append(f"运行中: {'是' if status.get('is_running') else '否'}")

        http = status.get("http") or {}
        ua = http.get("current_user_agent") or {}
        lines.append(f"登录: {'已登录' if http.get('has_login') else '未登录'}")
        if ua:
            lines.append(f"User-Agent: {ua.get('index')}/{ua.get('total')}")

        dynamic = status.get("dynamic")
        if dynamic:
            lines.append("")
            lines.append(
                f"📝 动态检测: {'运行中' if dynamic.get('is_running') else '已停止'}"
                f" | 跟踪 {dynamic.get('last_seen_count', 0)} 个用户"
            )
            lines.append(self._format_risk(dynamic.get("risk_control") or {}))

        live = status.get("live")
        if live:
            lines.append("")
            lines.append(
                f"📺 直播监听: {'运行中' if live.get('is_running') else '已停止'}"
                f" | 直播间 {live.get('room_count', 0)}"
                f" (弹幕 {live.get('danmaku_rooms', 0)}, 轮询 {live.get('polling_rooms', 0)})"
            )
            lines.append(self._format_risk(live.get("risk_control") or {}))
            for room in live.get("rooms") or []:
                state = "🔴 直播中" if room.get("is_live") else "⚫ 未开播"
                lines.append(f"  - {room.get('display_name')} ({room.get('room_id')}): {state}")

        return "\n".join(lines)

    def _format_risk(self, risk: dict[str, Any]) -> str:
        if not risk.get("is_blocked"):
            return f"  风控: 正常 (连续失败 {risk.get('consecutive_failures', 0)} 次)"
        minutes = int((risk.get("remaining_time") or 0) // 60) + 1
        return f"  风控: 🚫 暂停中，剩余约 {minutes} 分钟 (连续失败 {risk.get('consecutive_failures', 0)} 次)"
