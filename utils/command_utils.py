"""
Shared utility functions for command handlers.

Contains flag parsing and the plain-text replies of the search and login
commands.
"""
from __future__ import annotations

from typing import Any

from models.bilibili import LoginInfo, UserInfo


def split_command(message: str) -> list[str]:
    """Split a command message and drop the command word itself."""
    parts = message.strip().split()
    return parts[1:]


def parse_command_flags(argv: list[str]) -> dict[str, Any]:
    """
    Parse simple flags used by commands.

    Supported flags:
      --max N     (int, result limit)
      --detail    (bool, include signature and level)

    Args:
        argv: Command arguments

    Returns:
        Dictionary with parsed flags, ``keyword`` joined from the remaining
        words and ``_consumed`` with the number of flag arguments consumed
    """
    flags: dict[str, Any] = {
        "max": 5,
        "detail": False,
    }
    words: list[str] = []
    consumed = 0
    i = 0
    while i < len(argv):
        a = argv[i]
        if a == "--detail":
            flags["detail"] = True
            consumed += 1
            i += 1
        elif a == "--max" and i + 1 < len(argv):
            try:
                flags["max"] = max(1, int(argv[i + 1]))
            except ValueError:
                pass
            consumed += 2
            i += 2
        else:
            words.append(a)
            i += 1
    flags["keyword"] = " ".join(words)
    flags["_consumed"] = consumed
    return flags


def _format_count(num: int | None) -> str:
    if num is None:
        return "未知"
    if num >= 10000:
        return f"{num / 10000:.1f}万"
    return str(num)


def format_search_results(keyword: str, users: list[UserInfo], limit: int = 5, detail: bool = False) -> str:
    if not users:
        return f"没有找到与「{keyword}」相关的用户。"

    lines = [f"🔍 「{keyword}」的搜索结果（共 {len(users)} 个，显示前 {min(limit, len(users))} 个）："]
    for index, user in enumerate(users[:limit], 1):
        lines.append(f"{index}. {user.name} (UID: {user.uid}) 粉丝: {_format_count(user.follower)}")
        if detail:
            if user.level is not None:
                lines.append(f"   等级: Lv{user.level}")
            if user.sign:
                lines.append(f"   签名: {user.sign}")
    return "\n".join(lines)


def format_login_info(info: LoginInfo) -> str:
    if not info.is_login:
        return "❌ 未登录或登录已失效，请使用 /bili_login 重新登录。"
    lines = ["✅ 已登录"]
    if info.uname:
        lines.append(f"用户名: {info.uname}")
    if info.uid:
        lines.append(f"UID: {info.uid}")
    if info.level is not None:
        lines.append(f"等级: Lv{info.level}")
    return "\n".join(lines)
