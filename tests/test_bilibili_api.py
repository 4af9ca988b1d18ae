import asyncio
import random

from core.bilibili_api import BilibiliApi
from core.constants import (
    NAV_URL,
    ROOM_INFO_OLD_URL,
    ROOM_INIT_URL,
    USER_DYNAMICS_URL,
    USER_INFO_URL,
    USER_STATS_URL,
)
from core.errors import ErrorKind
from core.http_client import RateLimitedHttpClient


async def no_sleep(seconds):
    return None


class RoutedClient(RateLimitedHttpClient):
    """Answers each URL with a canned payload (or the next of a list)."""

    def __init__(self, routes):
        super().__init__(user_agents=("ua-test",), sleep=no_sleep, rng=random.Random(1))
        self.routes = routes
        self.sent = []

    async def _send(self, method, url, **kwargs):
        base = url.split("?", 1)[0]
        self.sent.append(base)
        payload = self.routes[base]
        if isinstance(payload, list):
            payload = payload.pop(0)
        return payload


class FakeSigner:
    def __init__(self):
        self.signed = []
        self.cleared = False

    async def sign(self, params, now=None):
        self.signed.append(dict(params))
        return "&".join(f"{k}={v}" for k, v in sorted(params.items())) + "&w_rid=x"

    def clear_cache(self):
        self.cleared = True


def make_api(routes):
    client = RoutedClient(routes)
    return BilibiliApi(client, signer=FakeSigner()), client


def test_dynamics_are_parsed_newest_first():
    async def runner():
        api, client = make_api({
            USER_DYNAMICS_URL: {
                "code": 0,
                "data": {"items": [
                    {"id_str": "2", "type": "DYNAMIC_TYPE_AV", "modules": {"module_author": {"pub_ts": 200}}},
                    {"id_str": "1", "type": "DYNAMIC_TYPE_WORD", "modules": {}},
                ]},
            },
        })

        result = await api.get_user_dynamics("42")

        assert result.success is True
        assert [item.id_str for item in result.data] == ["2", "1"]
        assert result.data[0].timestamp == 200
        assert api.signer.signed[0]["host_mid"] == "42"

    asyncio.run(runner())


def test_risk_control_code_is_retried_then_reported_as_abuse():
    async def runner():
        api, client = make_api({USER_DYNAMICS_URL: {"code": -352, "message": "风控校验失败"}})

        result = await api.get_user_dynamics("42")

        assert result.success is False
        assert result.kind == ErrorKind.ABUSE_DETECTED
        assert result.code == -352
        assert "[错误码: -352]" in result.error
        assert "User-Agent(1/1)" in result.error
        # Initial attempt plus three retries
        assert client.sent.count(USER_DYNAMICS_URL) == 4

    asyncio.run(runner())


def test_not_found_code_is_not_retried():
    async def runner():
        api, client = make_api({USER_INFO_URL: {"code": -626, "message": ""}})

        result = await api.get_user_info("404")

        assert result.success is False
        assert result.kind == ErrorKind.NOT_FOUND
        assert result.error == "用户不存在 [错误码: -626]"
        assert client.sent == [USER_INFO_URL]

    asyncio.run(runner())


def test_user_info_includes_best_effort_follower_stats():
    async def runner():
        api, _ = make_api({
            USER_INFO_URL: {"code": 0, "data": {"mid": 42, "name": "测试", "level": 6}},
            USER_STATS_URL: {"code": 0, "data": {"follower": 12345, "following": 7}},
        })

        result = await api.get_user_info("42")

        assert result.success is True
        assert result.data.name == "测试"
        assert result.data.follower == 12345
        assert result.data.level == 6

    asyncio.run(runner())


def test_room_id_is_normalised_to_long_id():
    async def runner():
        api, _ = make_api({
            ROOM_INFO_OLD_URL: {"code": 0, "data": {"roomid": 123}},
            ROOM_INIT_URL: {"code": 0, "data": {"room_id": 21452505}},
        })

        result = await api.get_room_id_by_uid("42")

        assert result.success is True
        assert result.data == "21452505"

    asyncio.run(runner())


def test_room_id_falls_back_to_short_id_when_lookup_fails():
    async def runner():
        api, _ = make_api({
            ROOM_INFO_OLD_URL: {"code": 0, "data": {"roomid": 123}},
            ROOM_INIT_URL: {"code": 60004, "message": "直播间不存在"},
        })

        result = await api.get_room_id_by_uid("42")

        assert result.success is True
        assert result.data == "123"

    asyncio.run(runner())


def test_user_without_room_is_not_found():
    async def runner():
        api, _ = make_api({ROOM_INFO_OLD_URL: {"code": 0, "data": {"roomStatus": 0, "roomid": 0}}})

        result = await api.get_room_id_by_uid("42")

        assert result.success is False
        assert result.kind == ErrorKind.NOT_FOUND

    asyncio.run(runner())


def test_anonymous_login_status_is_a_success():
    async def runner():
        api, _ = make_api({NAV_URL: {"code": -101, "data": {"isLogin": False}}})

        result = await api.get_login_status()

        assert result.success is True
        assert result.data.is_login is False

    asyncio.run(runner())


def test_closed_client_turns_into_failed_result():
    async def runner():
        api, client = make_api({})
        await client.close()

        result = await api.get_live_room_info("1")

        assert result.success is False
        assert result.kind == ErrorKind.SCOPE_TORN_DOWN
        assert client.sent == []

    asyncio.run(runner())


def test_reset_state_clears_signer_cache():
    api, client = make_api({})
    client.last_request_time = 123.0

    api.reset_state()

    assert api.signer.cleared is True
    assert client.last_request_time == 0.0
