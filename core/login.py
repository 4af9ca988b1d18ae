"""
QR-code login against the Bilibili passport.

The flow is: generate a QR code, the user scans it with the mobile app, and
polling eventually returns the login cookies, which are persisted in the
credential store and installed into the shared HTTP client.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any

import httpx

from core.bilibili_api import BilibiliApi
from core.constants import (
    BILIBILI_PASSPORT,
    DEFAULT_USER_AGENTS,
    ESSENTIAL_COOKIE_FIELDS,
    QRCODE_GENERATE_URL,
    QRCODE_POLL_URL,
)
from core.cookies import cookies_from_url, format_cookie_dict, mask_secret
from core.result import Result
from core.state import CredentialStore
from models.bilibili import LoginInfo

logger = logging.getLogger(__name__)

QR_SUCCESS = 0
QR_NOT_SCANNED = 86101
QR_SCANNED_UNCONFIRMED = 86090
QR_EXPIRED = 86038


@dataclass(slots=True)
class QRCodeInfo:
    url: str
    qrcode_key: str


@dataclass(slots=True)
class LoginResult:
    success: bool
    message: str
    status_code: int | None = None
    cookies: str | None = None
    refresh_token: str | None = None


def cookies_from_set_cookie(headers: list[str]) -> dict[str, str]:
    """Pick the login cookies out of raw ``Set-Cookie`` header values."""
    cookies: dict[str, str] = {}
    for header in headers:
        name, sep, value = header.split(";", 1)[0].partition("=")
        if sep and name.strip() in ESSENTIAL_COOKIE_FIELDS and value.strip():
            cookies[name.strip()] = value.strip()
    return cookies


class LoginService:
    """
    Drives QR login and keeps the stored session in sync with the API client.

    Args:
        store: Credential store the cookies are written to
        api: API facade whose HTTP client receives the cookies
        timeout: Passport request timeout in seconds
        transport: Optional httpx transport, used by tests
    """

    def __init__(
        self,
        store: CredentialStore,
        api: BilibiliApi,
        timeout: float = 10.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.store = store
        self.api = api
        self.timeout = timeout
        self._transport = transport
        self.pending_qrcode: QRCodeInfo | None = None

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            timeout=self.timeout,
            transport=self._transport,
            headers={
                "User-Agent": DEFAULT_USER_AGENTS[0],
                "Referer": f"{BILIBILI_PASSPORT}/",
                "Origin": BILIBILI_PASSPORT,
            },
        )

    async def generate_qrcode(self) -> Result[QRCodeInfo]:
        """Request a fresh login QR code and remember its key."""
        try:
            async with self._client() as client:
                response = await client.get(QRCODE_GENERATE_URL)
                response.raise_for_status()
                payload: dict[str, Any] = response.json()
        except (httpx.HTTPError, ValueError) as e:
            logger.error(f"QR code generation failed: {e}")
            return Result.from_exception(e)

        if payload.get("code") != 0:
            return Result.fail(f"获取二维码失败: {payload.get('message')}", code=payload.get("code"))

        data = payload.get("data") or {}
        self.pending_qrcode = QRCodeInfo(url=str(data.get("url", "")), qrcode_key=str(data.get("qrcode_key", "")))
        return Result.ok(self.pending_qrcode)

    async def poll(self, qrcode_key: str | None = None) -> LoginResult:
        """
        Poll the QR code state once.

        On success the cookies are saved and set on the HTTP client.

        Args:
            qrcode_key: Key to poll, defaults to the last generated one
        """
        key = qrcode_key or (self.pending_qrcode.qrcode_key if self.pending_qrcode else "")
        if not key:
            return LoginResult(False, "请先获取登录二维码")

        try:
            async with self._client() as client:
                response = await client.get(QRCODE_POLL_URL, params={"qrcode_key": key})
                response.raise_for_status()
                payload: dict[str, Any] = response.json()
                set_cookie = response.headers.get_list("set-cookie")
        except (httpx.HTTPError, ValueError) as e:
            logger.error(f"QR code poll failed: {e}")
            return LoginResult(False, "网络错误，请重试")

        if payload.get("code") != 0:
            return LoginResult(False, str(payload.get("message") or "请求失败"))

        data = payload.get("data") or {}
        code = data.get("code")
        match code:
            case 0:
                cookies = cookies_from_url(str(data.get("url") or ""))
                if not cookies:
                    cookies = cookies_from_set_cookie(set_cookie)
                if not cookies:
                    logger.error(
                        f"Login succeeded but no cookies found (url: {bool(data.get('url'))}, "
                        f"set-cookie headers: {len(set_cookie)})"
                    )
                    return LoginResult(False, "登录信息提取失败，请重试", code)

                cookie_str = format_cookie_dict(cookies)
                refresh_token = str(data.get("refresh_token") or "")
                self.store.save_login(cookie_str, refresh_token)
                self.api.http.set_cookies(cookie_str)
                self.pending_qrcode = None
                logger.info(f"Login succeeded, cookie {mask_secret(cookie_str)}")
                return LoginResult(True, "登录成功", code, cookie_str, refresh_token)
            case c if c == QR_NOT_SCANNED:
                return LoginResult(False, "请使用哔哩哔哩客户端扫描二维码", code)
            case c if c == QR_SCANNED_UNCONFIRMED:
                return LoginResult(False, "已扫码，请在手机上确认登录", code)
            case c if c == QR_EXPIRED:
                self.pending_qrcode = None
                return LoginResult(False, "二维码已失效，请重新获取", code)
            case _:
                return LoginResult(False, str(data.get("message") or "未知错误"), code)

    def restore_session(self) -> bool:
        """Install stored cookies into the HTTP client, if any."""
        cookies = self.store.load_cookies()
        if cookies:
            self.api.http.set_cookies(cookies)
        return bool(cookies)

    async def check_login_status(self) -> LoginInfo:
        """Validate the stored session through ``nav``."""
        if not self.restore_session():
            return LoginInfo(is_login=False)
        result = await self.api.get_login_status()
        if result.success and result.data and result.data.is_login:
            return result.data
        logger.warning("Stored cookie is no longer valid, login required")
        return LoginInfo(is_login=False)

    def logout(self):
        self.store.clear_login()
        self.api.http.set_cookies("")
        self.pending_qrcode = None
        logger.info("Logged out, stored credentials removed")
