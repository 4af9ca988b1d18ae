import asyncio

from models.bilibili import Destination
from services.notifier import Notification, NotificationDispatcher, OutgoingMessage

TARGET = Destination(platform="aiocqhttp", channel_id="123", live=True)


def notification(**kwargs):
    defaults = {"type": "live", "user": "主播", "content": "开播了", "target": TARGET}
    defaults.update(kwargs)
    return Notification(**defaults)


def test_message_appends_url_and_keeps_flags():
    message = notification(url="https://live.bilibili.com/1", image=b"png", mention_all=True).to_message()

    assert message == OutgoingMessage(text="开播了\nhttps://live.bilibili.com/1", image=b"png", mention_all=True)
    assert notification().to_message().text == "开播了"


def test_message_skips_url_already_in_content():
    url = "https://live.bilibili.com/1"

    message = notification(content=f"开播了 {url}", url=url).to_message()

    assert message.text == f"开播了 {url}"


def test_dispatch_sends_to_unified_origin():
    async def runner():
        sent = []

        async def sender(origin, message):
            sent.append((origin, message.text))

        result = await NotificationDispatcher(sender).send_notification(notification())

        assert result.success is True
        assert sent == [("aiocqhttp:GroupMessage:123", "开播了")]

    asyncio.run(runner())


def test_dispatch_retries_once_then_reports_failure():
    async def runner():
        attempts = []

        async def sender(origin, message):
            attempts.append(origin)
            raise RuntimeError("platform offline")

        result = await NotificationDispatcher(sender, retry_delay=0).send_notification(notification())

        assert len(attempts) == 2
        assert result.success is False
        assert "platform offline" in result.error

    asyncio.run(runner())


def test_dispatch_recovers_on_retry():
    async def runner():
        attempts = []

        async def sender(origin, message):
            attempts.append(origin)
            if len(attempts) == 1:
                raise RuntimeError("flaky")

        result = await NotificationDispatcher(sender, retry_delay=0).send_notification(notification())

        assert result.success is True
        assert len(attempts) == 2

    asyncio.run(runner())
