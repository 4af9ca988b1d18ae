"""
Shared, globally rate-limited HTTP client for Bilibili.

Every upstream call of the plugin goes through one instance so request
spacing, User-Agent rotation and the retry policy apply across all
subscriptions at once.
"""
from __future__ import annotations

import asyncio
import logging
import random
import time
from typing import Any, Awaitable, Callable, TypeVar

import aiohttp

from core.constants import (
    BASE_RETRY_DELAY,
    BILIBILI_LIVE,
    BILIBILI_MAIN,
    CODE_RISK_CONTROL,
    DEFAULT_MAX_RETRIES,
    DEFAULT_TIMEOUT,
    DEFAULT_USER_AGENTS,
    MAX_REQUEST_INTERVAL,
    MAX_RETRY_DELAY,
    MIN_REQUEST_INTERVAL,
    NORMAL_GRACE_PERIOD,
    RETRYABLE_CODES,
    RISK_CONTROL_DELAY_RANGE,
    RISK_CONTROL_EXTENDED_DELAY_RANGE,
    STARTUP_GRACE_PERIOD,
    STARTUP_INTERVAL_RANGE,
    UA_ROTATION_PROBABILITY,
    WARMUP_INTERVAL_RANGE,
)
from core.cookies import mask_secret, sanitize_cookies
from core.errors import BilibiliError, ScopeTornDown, extract_error_code, is_risk_control_signal

logger = logging.getLogger(__name__)

T = TypeVar("T")

Validator = Callable[[dict[str, Any]], dict[str, Any]]


def is_abuse_error(error: BaseException) -> bool:
    """-352 style failures that call for a long pause and a new identity."""
    if extract_error_code(error) == CODE_RISK_CONTROL:
        return True
    text = str(error)
    return "-352" in text or "请求被风控" in text


class RateLimitedHttpClient:
    """
    aiohttp based client with pacing, UA rotation and smart retries.

    Pacing: each request waits until a random spacing (3-5 s by default)
    has passed since the previous one. The spacing is raised during the
    first 30 s and the first 5 min after start so a freshly started bot
    ramps up gently.
    """

    def __init__(
        self,
        user_agents: list[str] | tuple[str, ...] | None = None,
        *,
        min_interval: float = MIN_REQUEST_INTERVAL,
        max_interval: float = MAX_REQUEST_INTERVAL,
        timeout: float = DEFAULT_TIMEOUT,
        session: aiohttp.ClientSession | None = None,
        clock: Callable[[], float] = time.time,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        rng: random.Random | None = None,
    ):
        self.user_agents = list(user_agents or DEFAULT_USER_AGENTS)
        self.min_interval = min_interval
        self.max_interval = max_interval
        self.timeout = timeout

        self._session = session
        self._owns_session = session is None
        self._clock = clock
        self._sleep = sleep
        self._rng = rng or random.Random()
        self._lock = asyncio.Lock()

        self._cookies = ""
        self._ua_index = 0
        self._closed = False
        self.last_request_time = 0.0
        self.startup_time = self._clock()

    # Identity

    def set_cookies(self, cookies: str):
        self._cookies = cookies or ""
        logger.debug(f"Cookie set: {mask_secret(self._cookies)}")

    @property
    def has_cookies(self) -> bool:
        return bool(self._cookies)

    def cookies_for_header(self) -> str:
        return sanitize_cookies(self._cookies)

    def reload_user_agents(self, user_agents: list[str] | tuple[str, ...] | None):
        self.user_agents = list(user_agents or DEFAULT_USER_AGENTS)
        self._ua_index = 0

    def rotate_user_agent(self):
        self._ua_index = (self._ua_index + 1) % len(self.user_agents)

    def current_user_agent_info(self) -> dict[str, Any]:
        return {
            "index": self._ua_index + 1,
            "total": len(self.user_agents),
            "current": self.user_agents[self._ua_index],
        }

    def build_headers(
        self,
        headers: dict[str, str] | None = None,
        *,
        include_cookies: bool = True,
        referer: str | None = None,
        origin: str | None = None,
    ) -> dict[str, str]:
        """
        Build request headers, possibly rotating the User-Agent first.

        Args:
            headers: Extra headers merged last
            include_cookies: Whether to attach the sanitized login cookie
            referer: Referer override
            origin: Origin override

        Returns:
            Header dict for a single request
        """
        if self._rng.random() < UA_ROTATION_PROBABILITY:
            self.rotate_user_agent()

        result = {
            "User-Agent": self.user_agents[self._ua_index],
            "Referer": referer or f"{BILIBILI_MAIN}/",
            "Origin": origin or BILIBILI_MAIN,
            "Accept": "application/json, text/plain, */*",
        }
        if include_cookies and self._cookies:
            result["Cookie"] = self.cookies_for_header()
        if headers:
            result.update(headers)
        return result

    def special_headers(self, room_id: str | int | None = None) -> dict[str, str]:
        """Headers for live-domain endpoints such as the danmaku info API."""
        result = self.build_headers()
        result.update({
            "Accept-Language": "zh-CN,zh;q=0.9,en;q=0.8",
            "Sec-Fetch-Dest": "empty",
            "Sec-Fetch-Mode": "cors",
            "Sec-Fetch-Site": "same-site",
        })
        if room_id:
            result["Referer"] = f"{BILIBILI_LIVE}/{room_id}"
            result["Origin"] = BILIBILI_LIVE
        return result

    # Pacing

    def _next_interval(self, since_startup: float) -> float:
        interval = self._rng.uniform(self.min_interval, self.max_interval)
        if since_startup < STARTUP_GRACE_PERIOD:
            interval = max(interval, self._rng.uniform(*STARTUP_INTERVAL_RANGE))
        elif since_startup < NORMAL_GRACE_PERIOD:
            interval = max(interval, self._rng.uniform(*WARMUP_INTERVAL_RANGE))
        return interval

    async def enforce_rate_limit(self):
        """Wait until the randomized spacing since the last request has elapsed."""
        async with self._lock:
            now = self._clock()
            interval = self._next_interval(now - self.startup_time)
            elapsed = now - self.last_request_time
            if elapsed < interval:
                await self._sleep(interval - elapsed)
            self.last_request_time = self._clock()

    # Requests

    def _ensure_open(self):
        if self._closed:
            raise ScopeTornDown("HTTP client is closed, no further requests")

    def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(
                timeout=aiohttp.ClientTimeout(total=self.timeout),
            )
            self._owns_session = True
        return self._session

    async def _send(self, method: str, url: str, **kwargs: Any) -> dict[str, Any]:
        session = self._get_session()
        async with session.request(method, url, **kwargs) as resp:
            resp.raise_for_status()
            payload = await resp.json(content_type=None)
            if not isinstance(payload, dict):
                raise BilibiliError(f"Unexpected response structure from {url}")
            return payload

    async def request(
        self,
        method: str,
        url: str,
        *,
        params: dict[str, Any] | str | None = None,
        data: Any = None,
        headers: dict[str, str] | None = None,
        include_cookies: bool = True,
    ) -> dict[str, Any]:
        """Single paced request returning the decoded JSON body."""
        self._ensure_open()
        await self.enforce_rate_limit()
        self._ensure_open()

        request_headers = headers if headers is not None else self.build_headers(include_cookies=include_cookies)
        if isinstance(params, str):
            # Pre-signed query strings must not be re-encoded
            url = f"{url}?{params}"
            params = None
        try:
            return await self._send(method, url, params=params, data=data, headers=request_headers)
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            logger.error(f"HTTP {method} {url} failed: {e!r}")
            raise

    async def get(self, url: str, **kwargs: Any) -> dict[str, Any]:
        return await self.request("GET", url, **kwargs)

    async def post(self, url: str, data: Any = None, **kwargs: Any) -> dict[str, Any]:
        return await self.request("POST", url, data=data, **kwargs)

    # Retry

    def should_retry(self, error: BaseException) -> bool:
        if self._closed or isinstance(error, ScopeTornDown):
            return False
        code = extract_error_code(error)
        if code in RETRYABLE_CODES:
            return True
        if is_risk_control_signal(str(error)):
            return True
        # Errors without an upstream code are network level
        return code is None

    async def with_retry(
        self,
        func: Callable[[], Awaitable[T]],
        *,
        max_retries: int = DEFAULT_MAX_RETRIES,
        base_delay: float = BASE_RETRY_DELAY,
        max_delay: float = MAX_RETRY_DELAY,
    ) -> T:
        """
        Run ``func`` with exponential backoff.

        Abuse-detection failures wait 10-30 s (30-90 s from the second
        retry on) and always switch to another User-Agent.

        Raises:
            The last error once retries are exhausted or not applicable.
        """
        attempt = 0
        while True:
            self._ensure_open()
            try:
                return await func()
            except ScopeTornDown:
                raise
            except Exception as e:
                if attempt >= max_retries or not self.should_retry(e):
                    raise

                delay = min(base_delay * 2 ** attempt, max_delay)
                if is_abuse_error(e):
                    delay = max(delay, self._rng.uniform(*RISK_CONTROL_DELAY_RANGE))
                    if attempt >= 1:
                        delay = max(delay, self._rng.uniform(*RISK_CONTROL_EXTENDED_DELAY_RANGE))
                    self.rotate_user_agent()
                    logger.warning(
                        f"Risk control detected, rotated User-Agent and waiting {delay:.0f}s "
                        f"(retry {attempt + 1})"
                    )
                logger.warning(f"Request failed, retry {attempt + 1}/{max_retries} in {delay:.1f}s: {e}")
                await self._sleep(delay)
                attempt += 1

    async def get_with_retry(
        self,
        url: str,
        *,
        validate: Validator | None = None,
        max_retries: int = DEFAULT_MAX_RETRIES,
        **kwargs: Any,
    ) -> dict[str, Any]:
        """GET with retries; ``validate`` may raise on a bad upstream ``code``."""
        async def attempt() -> dict[str, Any]:
            payload = await self.get(url, **kwargs)
            return validate(payload) if validate else payload

        return await self.with_retry(attempt, max_retries=max_retries)

    async def post_with_retry(
        self,
        url: str,
        data: Any = None,
        *,
        validate: Validator | None = None,
        max_retries: int = DEFAULT_MAX_RETRIES,
        **kwargs: Any,
    ) -> dict[str, Any]:
        async def attempt() -> dict[str, Any]:
            payload = await self.post(url, data, **kwargs)
            return validate(payload) if validate else payload

        return await self.with_retry(attempt, max_retries=max_retries)

    # Lifecycle

    @property
    def is_closed(self) -> bool:
        return self._closed

    async def close(self):
        """Tear down: later calls fail fast with ``ScopeTornDown``."""
        self._closed = True
        if self._session is not None and self._owns_session and not self._session.closed:
            await self._session.close()
        self._session = None

    def reset_state(self):
        """Restart the graduated pacing with a random identity."""
        self.last_request_time = 0.0
        self.startup_time = self._clock()
        self._ua_index = self._rng.randrange(len(self.user_agents))
        logger.info("HTTP client state reset, using conservative pacing again")

    def status(self) -> dict[str, Any]:
        return {
            "has_login": self.has_cookies,
            "last_request_time": self.last_request_time,
            "current_user_agent": self.current_user_agent_info(),
            "startup_time": self.startup_time,
        }
