"""
WBI request signing for Bilibili web endpoints.

Keys are taken from the ``wbi_img`` block of the nav endpoint and cached for
a few minutes. A stale pair is preferred over failing outright.
"""
from __future__ import annotations

import hashlib
import logging
import time
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Callable
from urllib.parse import quote

from core.constants import (
    MIXIN_KEY_ENC_TAB,
    MIXIN_KEY_LENGTH,
    NAV_URL,
    WBI_CACHE_DURATION,
    WBI_CHAR_FILTER,
)
from core.errors import SigningUnavailable

if TYPE_CHECKING:
    from core.http_client import RateLimitedHttpClient

logger = logging.getLogger(__name__)

_FILTER_TABLE = str.maketrans("", "", WBI_CHAR_FILTER)


@dataclass(slots=True)
class WbiKeys:
    img_key: str
    sub_key: str
    expires_at: float


def get_mixin_key(orig: str) -> str:
    """Permute ``img_key + sub_key`` through the mixing table."""
    return "".join(orig[i] for i in MIXIN_KEY_ENC_TAB if i < len(orig))[:MIXIN_KEY_LENGTH]


def _encode(value: str) -> str:
    # Same escaping rules as JavaScript's encodeURIComponent
    return quote(value, safe="!~*'()")


def build_signed_query(params: dict[str, Any], img_key: str, sub_key: str, wts: int) -> str:
    """
    Build the signed query string for a parameter set.

    Args:
        params: Request parameters (not modified)
        img_key: Image key from nav
        sub_key: Sub key from nav
        wts: Unix timestamp in seconds

    Returns:
        Query string ending in ``&w_rid=<md5>``
    """
    mixin_key = get_mixin_key(img_key + sub_key)
    signed = dict(params)
    signed["wts"] = wts

    query = "&".join(
        f"{_encode(str(key))}={_encode(str(signed[key]).translate(_FILTER_TABLE))}"
        for key in sorted(signed)
    )
    w_rid = hashlib.md5((query + mixin_key).encode()).hexdigest()
    return f"{query}&w_rid={w_rid}"


def _key_from_url(url: str) -> str:
    """``https://i0.hdslb.com/bfs/wbi/7cd0...png`` -> ``7cd0...``"""
    return url.rsplit("/", 1)[-1].split(".", 1)[0]


class WbiSigner:
    """
    Signs query parameters with the cached WBI key pair.

    The key pair is refreshed from nav when the cache has expired; if that
    fetch fails and an expired pair is still around it is used instead.
    """

    def __init__(
        self,
        http_client: RateLimitedHttpClient,
        cache_duration: float = WBI_CACHE_DURATION,
        clock: Callable[[], float] = time.time,
    ):
        self.http_client = http_client
        self.cache_duration = cache_duration
        self._clock = clock
        self._keys: WbiKeys | None = None

    async def sign(self, params: dict[str, Any], now: int | None = None) -> str:
        """Return the signed query string for ``params``."""
        img_key, sub_key = await self._get_keys()
        wts = int(now if now is not None else self._clock())
        return build_signed_query(params, img_key, sub_key, wts)

    async def _get_keys(self) -> tuple[str, str]:
        current = self._clock()
        if self._keys and current < self._keys.expires_at:
            return self._keys.img_key, self._keys.sub_key

        try:
            img_key, sub_key = await self._fetch_keys()
        except Exception as e:
            if self._keys:
                logger.warning(f"Failed to refresh WBI keys, using stale cache: {e}")
                return self._keys.img_key, self._keys.sub_key
            raise SigningUnavailable(f"WBI keys unavailable: {e}") from e

        self._keys = WbiKeys(img_key, sub_key, current + self.cache_duration)
        logger.debug("WBI keys refreshed")
        return img_key, sub_key

    async def _fetch_keys(self) -> tuple[str, str]:
        # nav answers -101 for anonymous sessions but still carries wbi_img
        payload = await self.http_client.get(NAV_URL)
        wbi_img = (payload.get("data") or {}).get("wbi_img") or {}
        img_url = wbi_img.get("img_url") or ""
        sub_url = wbi_img.get("sub_url") or ""
        if not img_url or not sub_url:
            raise SigningUnavailable("nav response has no wbi_img")
        return _key_from_url(img_url), _key_from_url(sub_url)

    def clear_cache(self):
        self._keys = None

    def status(self) -> dict[str, Any]:
        if not self._keys:
            return {"has_keys": False, "expires_in": 0}
        return {
            "has_keys": True,
            "expires_in": max(0.0, self._keys.expires_at - self._clock()),
        }
