import asyncio

import pytest

from core.errors import ScopeTornDown
from core.http_client import RateLimitedHttpClient
from core.state import CredentialStore
from models.config import NotifyConfig
from services.notify_service import NotifyService


async def no_sleep(seconds):
    return None


async def sender(origin, message):
    return None


SUBSCRIPTIONS = {
    "subscriptions": [
        {"uid": "1", "name": "a", "dynamic": True, "live": True, "targets": []},
    ],
}


def make_service(tmp_path, raw=None):
    config = NotifyConfig.from_dict({**(raw or {}), "state_file": str(tmp_path / "login.json")})
    http = RateLimitedHttpClient(sleep=no_sleep)
    return NotifyService(config, sender, http_client=http, store=CredentialStore(config.state_file))


def test_start_without_subscriptions_builds_nothing(tmp_path):
    async def runner():
        service = make_service(tmp_path)

        result = await service.start()

        assert result.success is True
        assert service.is_running is True
        assert service.dynamic_monitor is None
        assert service.live_monitor is None
        status = service.status()
        assert status["dynamic"] is None
        assert status["http"]["has_login"] is False

        await service.stop()
        assert service.is_running is False

    asyncio.run(runner())


def test_start_restores_stored_login(tmp_path):
    async def runner():
        CredentialStore(tmp_path / "login.json").save_login("SESSDATA=s; DedeUserID=1")
        service = make_service(tmp_path)

        await service.start()

        assert service.http.has_cookies is True
        await service.stop()

    asyncio.run(runner())


def test_monitors_follow_configuration(tmp_path):
    async def runner():
        service = make_service(tmp_path, {**SUBSCRIPTIONS, "danmaku": {"enable": True}})
        service._build_monitors()
        assert service.dynamic_monitor is not None
        assert service.live_monitor is not None
        assert service.live_monitor.danmaku is not None

        service = make_service(tmp_path, {**SUBSCRIPTIONS, "enable_dynamic": False})
        service._build_monitors()
        assert service.dynamic_monitor is None
        assert service.live_monitor.danmaku is None

    asyncio.run(runner())


def test_reload_swaps_configuration(tmp_path):
    async def runner():
        service = make_service(tmp_path)
        await service.start()

        new_config = NotifyConfig.from_dict({
            "custom_user_agents": ["ua-new"],
            "custom_messages": {"live_end": "{name} 下播"},
            "state_file": str(tmp_path / "login.json"),
        })
        result = await service.reload(new_config)

        assert result.success is True
        assert service.config is new_config
        assert service.http.user_agents == ["ua-new"]
        assert service.formatter.messages.live_end == "{name} 下播"
        await service.stop()

    asyncio.run(runner())


def test_stop_with_close_http_tears_down_scope(tmp_path):
    async def runner():
        service = make_service(tmp_path)
        await service.start()

        await service.stop(close_http=True)

        assert service.http.is_closed is True
        with pytest.raises(ScopeTornDown):
            await service.http.get("https://api.bilibili.com/x/web-interface/nav")

    asyncio.run(runner())


def test_reset_risk_control_resets_api_state(tmp_path):
    service = make_service(tmp_path)
    service.http.last_request_time = 50.0

    service.reset_risk_control()

    assert service.http.last_request_time == 0.0
    assert service.api.signer.status()["has_keys"] is False


def test_stop_then_start_resumes_monitoring(tmp_path):
    async def runner():
        service = make_service(tmp_path, {**SUBSCRIPTIONS, "enable_live": False})
        await service.start()
        first_monitor = service.dynamic_monitor
        assert first_monitor.is_running is True

        await service.stop()
        assert service.is_running is False
        assert first_monitor.is_running is False
        assert service.http.is_closed is False

        result = await service.start()
        assert result.success is True
        assert service.is_running is True
        assert service.dynamic_monitor is not first_monitor
        assert service.dynamic_monitor.is_running is True
        await service.stop()

    asyncio.run(runner())
