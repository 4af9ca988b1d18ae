"""
Keyword / regex filtering for dynamics and live titles.
"""
from __future__ import annotations

import logging
import re
from functools import lru_cache

from models.bilibili import DynamicItem
from models.config import FilterConfig

logger = logging.getLogger(__name__)

DYNAMIC_TYPE_FORWARD = "DYNAMIC_TYPE_FORWARD"
DYNAMIC_TYPE_ARTICLE = "DYNAMIC_TYPE_ARTICLE"

BLOCKED_FORWARD = "已屏蔽转发动态"
BLOCKED_ARTICLE = "已屏蔽专栏动态"
BLOCKED_KEYWORD = "出现关键词，屏蔽该动态"


@lru_cache(maxsize=32)
def _compile(pattern: str) -> re.Pattern[str] | None:
    try:
        return re.compile(pattern)
    except re.error as e:
        logger.error(f"Invalid filter regex {pattern!r}: {e}")
        return None


def extract_dynamic_text(item: DynamicItem) -> str:
    """Plain text of a dynamic: description plus opus rich-text nodes."""
    module_dynamic = item.modules.get("module_dynamic") or {}
    text = (module_dynamic.get("desc") or {}).get("text") or ""

    opus = (module_dynamic.get("major") or {}).get("opus") or {}
    nodes = (opus.get("summary") or {}).get("rich_text_nodes") or []
    text += "".join(node.get("text") or "" for node in nodes if isinstance(node, dict))
    return text


def matches_keywords(text: str, keywords: tuple[str, ...] | list[str]) -> bool:
    return any(keyword in text for keyword in keywords)


def matches_regex(text: str, pattern: str) -> bool:
    if not pattern:
        return False
    compiled = _compile(pattern)
    return bool(compiled and compiled.search(text))


def check_dynamic_filter(item: DynamicItem, config: FilterConfig) -> str | None:
    """
    Decide whether a dynamic is filtered out.

    Args:
        item: The dynamic
        config: Filter settings

    Returns:
        The reason it was blocked, or None if it should be delivered
    """
    if not config.enable:
        return None
    if config.forward and item.type == DYNAMIC_TYPE_FORWARD:
        return BLOCKED_FORWARD
    if config.article and item.type == DYNAMIC_TYPE_ARTICLE:
        return BLOCKED_ARTICLE

    text = extract_dynamic_text(item)
    if matches_keywords(text, config.keywords) or matches_regex(text, config.regex):
        return BLOCKED_KEYWORD
    return None


def check_live_filter(title: str, config: FilterConfig) -> bool:
    """True when a live session with this title should not be announced."""
    if not config.enable or not title:
        return False
    return matches_keywords(title, config.keywords) or matches_regex(title, config.regex)
