"""
Cookie string helpers for the Bilibili session.

Only the login-essential fields are ever sent upstream; everything else a
browser might have collected is dropped.
"""
from __future__ import annotations

from urllib.parse import parse_qsl, urlsplit

from core.constants import DEFAULT_BUVID3, ESSENTIAL_COOKIE_FIELDS


def parse_cookie_string(cookies: str) -> dict[str, str]:
    """Parse ``a=1; b=2`` into an ordered dict, later duplicates win."""
    result: dict[str, str] = {}
    for part in cookies.split(";"):
        name, sep, value = part.strip().partition("=")
        if sep and name:
            result[name.strip()] = value.strip()
    return result


def format_cookie_dict(cookies: dict[str, str]) -> str:
    return "; ".join(f"{name}={value}" for name, value in cookies.items())


def sanitize_cookies(cookies: str) -> str:
    """
    Reduce a cookie string to the essential login fields.

    ``buvid3`` is kept when present and filled with a placeholder otherwise,
    since several endpoints reject requests without it.
    """
    if not cookies:
        return ""
    parsed = parse_cookie_string(cookies)
    kept = {name: parsed[name] for name in ESSENTIAL_COOKIE_FIELDS if parsed.get(name)}
    kept["buvid3"] = parsed.get("buvid3") or DEFAULT_BUVID3
    return format_cookie_dict(kept)


def cookies_from_url(url: str) -> dict[str, str]:
    """Extract login cookies from the QR login redirect URL query."""
    query = dict(parse_qsl(urlsplit(url).query))
    return {name: query[name] for name in ESSENTIAL_COOKIE_FIELDS if query.get(name)}


def mask_secret(value: str, keep: int = 6) -> str:
    """``abcdef...(32)``; used whenever a token or cookie is logged."""
    if not value:
        return "<empty>"
    return f"{value[:keep]}...({len(value)})"
