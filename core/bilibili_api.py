"""
Async Bilibili API facade.

Wraps the rate-limited HTTP client and the WBI signer. Every public
operation returns a ``Result`` envelope; exceptions never leave this module.

API docs (community maintained):
- https://github.com/SocialSisterYi/bilibili-API-collect
"""
from __future__ import annotations

import logging
from typing import Any

from core.constants import (
    CODE_NOT_LOGIN,
    CODE_RISK_CONTROL,
    CODE_SUCCESS,
    DANMU_INFO_URL,
    ERROR_REASONS,
    MAX_USER_SEARCH_RESULTS,
    NAV_URL,
    ROOM_INFO_OLD_URL,
    ROOM_INFO_URL,
    ROOM_INIT_URL,
    SEARCH_USER_TYPE,
    USER_ACCOUNT_URL,
    USER_DYNAMICS_URL,
    USER_INFO_URL,
    USER_SEARCH_URL,
    USER_STATS_URL,
)
from core.errors import BilibiliApiError, ErrorKind, ScopeTornDown, classify_code
from core.http_client import RateLimitedHttpClient
from core.result import Result
from core.wbi import WbiSigner
from models.bilibili import DanmuInfo, DynamicItem, LiveStatus, LoginInfo, UserInfo

logger = logging.getLogger(__name__)


class BilibiliApi:
    """
    Typed access to the handful of Bilibili endpoints the notifier needs.

    Args:
        http_client: Shared rate-limited client
        signer: WBI signer; one is created on top of ``http_client`` if omitted
    """

    def __init__(self, http_client: RateLimitedHttpClient, signer: WbiSigner | None = None):
        self.http = http_client
        self.signer = signer or WbiSigner(http_client)

    def _raise_api_error(self, payload: dict[str, Any]):
        code = int(payload.get("code", -1))
        original = str(payload.get("message") or "")
        friendly = ERROR_REASONS.get(code, "未知错误")

        reason = friendly
        if original and original != friendly:
            reason = f"{friendly} (原始信息: {original})"
        message = f"{reason} [错误码: {code}]"
        diagnostics: dict[str, Any] = {}

        match code:
            case c if c == CODE_NOT_LOGIN:
                message = f"需要登录才能访问此接口 [错误码: {code}]"
            case c if c == CODE_RISK_CONTROL:
                ua = self.http.current_user_agent_info()
                cookie = self.http.cookies_for_header()
                diagnostics = {
                    "user_agent_index": ua["index"],
                    "user_agent_total": ua["total"],
                    "user_agent": ua["current"][:50],
                    "has_cookie": bool(cookie),
                    "cookie_length": len(cookie),
                }
                message = (
                    f"请求被风控，建议检查User-Agent设置或稍后重试 (原始信息: {original}) [错误码: {code}]\n"
                    f"诊断信息: User-Agent({ua['index']}/{ua['total']}): {ua['current'][:50]}...\n"
                    f"Cookie状态: {'已设置' if cookie else '未设置'}, 长度: {len(cookie)}"
                )

        raise BilibiliApiError(message, code, reason=reason, kind=classify_code(code), diagnostics=diagnostics)

    def _check(self, payload: dict[str, Any]) -> dict[str, Any]:
        if payload.get("code") != CODE_SUCCESS:
            self._raise_api_error(payload)
        return payload

    def _fail(self, what: str, error: Exception) -> Result[Any]:
        if isinstance(error, ScopeTornDown):
            logger.debug(f"{what} skipped, client closed")
        else:
            logger.error(f"{what} failed: {error}")
        return Result.from_exception(error)

    async def get_login_status(self) -> Result[LoginInfo]:
        """Check the current cookie against ``nav``; anonymous is a success."""
        try:
            payload = await self.http.get_with_retry(NAV_URL)
        except Exception as e:
            return self._fail("get_login_status", e)

        data = payload.get("data") or {}
        if payload.get("code") == CODE_SUCCESS and data.get("isLogin"):
            return Result.ok(LoginInfo(
                is_login=True,
                uid=str(data["mid"]) if data.get("mid") else None,
                uname=data.get("uname"),
                face=data.get("face"),
                level=(data.get("level_info") or {}).get("current_level"),
            ))
        return Result.ok(LoginInfo(is_login=False))

    async def get_myself_info(self) -> Result[dict[str, Any]]:
        """Account details of the logged-in user (``mid``, ``uname``...)."""
        try:
            payload = await self.http.get_with_retry(USER_ACCOUNT_URL, validate=self._check)
        except Exception as e:
            return self._fail("get_myself_info", e)
        return Result.ok(payload.get("data") or {})

    async def get_user_info(self, uid: str) -> Result[UserInfo]:
        try:
            query = await self.signer.sign({"mid": uid})
            payload = await self.http.get_with_retry(USER_INFO_URL, params=query, validate=self._check)
            data = payload.get("data") or {}

            # Follower counts are best effort
            stats: dict[str, Any] = {}
            try:
                stat_payload = await self.http.get_with_retry(USER_STATS_URL, params={"vmid": uid})
                if stat_payload.get("code") == CODE_SUCCESS:
                    stats = stat_payload.get("data") or {}
            except ScopeTornDown:
                raise
            except Exception as e:
                logger.debug(f"relation stat for {uid} unavailable: {e}")
        except Exception as e:
            return self._fail(f"get_user_info({uid})", e)

        return Result.ok(UserInfo(
            uid=str(data.get("mid", uid)),
            name=str(data.get("name") or ""),
            face=data.get("face"),
            sign=data.get("sign"),
            level=data.get("level"),
            follower=stats.get("follower"),
            following=stats.get("following"),
        ))

    async def get_user_dynamics(self, uid: str, offset: str | None = None) -> Result[list[DynamicItem]]:
        """Newest-first list of a user's dynamics."""
        params: dict[str, Any] = {
            "host_mid": uid,
            "platform": "web",
            "features": "itemOpusStyle",
        }
        if offset:
            params["offset"] = offset
        try:
            query = await self.signer.sign(params)
            payload = await self.http.get_with_retry(USER_DYNAMICS_URL, params=query, validate=self._check)
        except Exception as e:
            return self._fail(f"get_user_dynamics({uid})", e)

        items = (payload.get("data") or {}).get("items") or []
        return Result.ok([DynamicItem.from_api_response(item) for item in items if isinstance(item, dict)])

    async def get_live_room_info(self, room_id: str) -> Result[LiveStatus]:
        try:
            payload = await self.http.get_with_retry(
                ROOM_INFO_URL, params={"room_id": room_id}, validate=self._check
            )
        except Exception as e:
            return self._fail(f"get_live_room_info({room_id})", e)
        return Result.ok(LiveStatus.from_api_response(payload.get("data") or {}))

    async def get_room_id_by_uid(self, uid: str) -> Result[str]:
        """Resolve a user's live room, normalised to the long room id."""
        try:
            payload = await self.http.get_with_retry(ROOM_INFO_OLD_URL, params={"mid": uid})
        except Exception as e:
            return self._fail(f"get_room_id_by_uid({uid})", e)

        data = payload.get("data") or {}
        if payload.get("code") != CODE_SUCCESS or not data.get("roomid"):
            return Result.fail("该用户没有直播间", code=payload.get("code"), kind=ErrorKind.NOT_FOUND)

        room_id = str(data["roomid"])
        long_id = await self.get_long_room_id(room_id)
        if long_id.success and long_id.data:
            return Result.ok(long_id.data)
        logger.warning(f"Long room id lookup failed, using short id {room_id}")
        return Result.ok(room_id)

    async def get_long_room_id(self, room_id: str) -> Result[str]:
        try:
            payload = await self.http.get_with_retry(ROOM_INIT_URL, params={"id": room_id})
        except Exception as e:
            return self._fail(f"get_long_room_id({room_id})", e)

        data = payload.get("data") or {}
        if payload.get("code") == CODE_SUCCESS and data.get("room_id"):
            long_id = str(data["room_id"])
            if long_id != room_id:
                logger.debug(f"Room id {room_id} -> {long_id}")
            return Result.ok(long_id)
        return Result.fail("无法获取长房间ID", code=payload.get("code"))

    async def search_user(self, keyword: str) -> Result[list[UserInfo]]:
        try:
            query = await self.signer.sign({"keyword": keyword, "search_type": SEARCH_USER_TYPE})
            payload = await self.http.get_with_retry(USER_SEARCH_URL, params=query, validate=self._check)
        except Exception as e:
            return self._fail(f"search_user({keyword!r})", e)

        users = (payload.get("data") or {}).get("result") or []
        return Result.ok([
            UserInfo(
                uid=str(user.get("mid", "")),
                name=str(user.get("uname") or ""),
                face=user.get("upic"),
                sign=user.get("usign"),
                level=user.get("level"),
                follower=user.get("fans"),
                following=0,
            )
            for user in users[:MAX_USER_SEARCH_RESULTS]
            if isinstance(user, dict)
        ])

    async def get_danmu_info(self, room_id: str) -> Result[DanmuInfo]:
        """Push-channel token and hosts for a room."""
        try:
            payload = await self.http.get_with_retry(
                DANMU_INFO_URL,
                params={"id": room_id},
                headers=self.http.special_headers(room_id),
                validate=self._check,
            )
        except Exception as e:
            return self._fail(f"get_danmu_info({room_id})", e)
        return Result.ok(DanmuInfo.from_api_response(payload.get("data") or {}))

    def reset_state(self):
        """Restart pacing and drop cached WBI keys, used after risk control."""
        self.http.reset_state()
        self.signer.clear_cache()
        logger.info("API state reset")
