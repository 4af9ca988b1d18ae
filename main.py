"""
AstrBot Bilibili Notify Plugin - Dynamic & Live Notifications

Pushes Bilibili updates of subscribed users to chat channels:
- New dynamics (posts, videos, articles) with keyword / type filtering
- Live start / end, periodic "still live" reminders, guard purchases
- Danmaku websocket for real-time live detection, polling as fallback
- Adaptive risk-control backoff shared by every subscription
"""
from astrbot.api.event import filter, AstrMessageEvent, MessageChain  # type: ignore
from astrbot.api.star import Context, Star, register  # type: ignore
from astrbot.api import logger  # type: ignore

import asyncio
import base64
import logging
from typing import Any

# Core modules
from core.login import QR_NOT_SCANNED, QR_SCANNED_UNCONFIRMED, LoginService

# Models
from models.config import NotifyConfig

# Services
from services.notifier import OutgoingMessage
from services.notify_service import NotifyService

# Utilities
from utils.command_utils import (
    format_login_info,
    format_search_results,
    parse_command_flags,
    split_command,
)

LOGIN_POLL_INTERVAL = 3.0
LOGIN_POLL_TIMEOUT = 180.0


@register("astrbot-bilibili-notify", "AstroAir", "B站动态与直播推送", "1.0.0")
class BilibiliNotifyPlugin(Star):
    """
    AstrBot Bilibili Notify Plugin

    Commands:
    - /bili_status: Show service, login and risk-control status
    - /bili_login: Log in by scanning a QR code with the Bilibili app
    - /bili_login_check: Validate the stored login
    - /bili_logout: Remove the stored login
    - /bili_search: Search Bilibili users by keyword
    - /bili_reset_risk: Clear risk-control pauses
    - /bili_restart: Restart monitoring with the current configuration
    - /bili_start: Start monitoring
    - /bili_stop: Stop monitoring

    Background tasks:
    - Dynamic detection
    - Live monitoring (polling + danmaku)
    """

    def __init__(self, context: Context):
        super().__init__(context)

        # Get configuration from context
        self.config: dict[str, Any] = {}
        if hasattr(context, 'config_helper') and context.config_helper:
            self.config = context.config_helper.get_all() or {}

        self.notify_config = NotifyConfig.from_dict(self.config)
        if self.notify_config.debug:
            for name in ("core", "services"):
                logging.getLogger(name).setLevel(logging.DEBUG)

        self.service = NotifyService(self.notify_config, self._send_message)
        self.login_task: asyncio.Task | None = None

        # Start monitoring (delayed to after initialize)
        self.start_task: asyncio.Task | None = asyncio.create_task(self._start_service())

    async def initialize(self):
        """Initialize plugin components."""
        logger.info(
            f"B站推送插件已初始化：{len(self.notify_config.subscriptions)} 个订阅，"
            f"动态 {'开启' if self.notify_config.enable_dynamic else '关闭'}，"
            f"直播 {'开启' if self.notify_config.enable_live else '关闭'}，"
            f"弹幕 {'开启' if self.notify_config.danmaku.enable else '关闭'}"
        )

    async def _start_service(self):
        """Start monitoring once the plugin is loaded."""
        await asyncio.sleep(5)  # Wait for plugin to fully initialize

        logger.info("启动 B站推送服务...")
        result = await self.service.start()
        if result.success:
            logger.info("B站推送服务已启动")
        else:
            logger.error(f"B站推送服务启动失败: {result.error}")

    async def _send_message(self, origin: str, message: OutgoingMessage):
        """Deliver one notification through AstrBot."""
        chain = MessageChain()
        if message.mention_all:
            chain.at_all()
        if message.image:
            chain.base64_image(base64.b64encode(message.image).decode())
        chain.message(message.text)

        sent = await self.context.send_message(origin, chain)
        if sent is False:
            raise RuntimeError(f"会话 {origin} 不存在或平台未加载")

    @filter.command("bili_status")
    async def bili_status(self, event: AstrMessageEvent):
        """
        Show service status, login state and risk-control pauses.

        Usage: /bili_status
        """
        try:
            status = self.service.status()
            yield event.plain_result(self.service.formatter.format_status(status))
        except Exception as e:
            logger.error(f"获取状态失败: {e}")
            yield event.plain_result(f"获取状态失败：{e}")

    @filter.command("bili_login")
    async def bili_login(self, event: AstrMessageEvent):
        """
        Log in with a QR code; the result is reported in this chat.

        Usage: /bili_login
        """
        result = await self.service.login.generate_qrcode()
        if not result.success or result.data is None:
            yield event.plain_result(f"获取登录二维码失败：{result.error}")
            return

        yield event.plain_result(
            "请使用哔哩哔哩客户端扫描以下链接对应的二维码登录（3 分钟内有效）：\n"
            f"{result.data.url}"
        )

        if self.login_task and not self.login_task.done():
            self.login_task.cancel()
        self.login_task = asyncio.create_task(
            self._wait_for_login(event.unified_msg_origin, result.data.qrcode_key)
        )

    async def _wait_for_login(self, origin: str, qrcode_key: str):
        """Poll the QR code until it is confirmed or expires."""
        login: LoginService = self.service.login
        elapsed = 0.0
        last_status: int | None = None
        try:
            while elapsed < LOGIN_POLL_TIMEOUT:
                await asyncio.sleep(LOGIN_POLL_INTERVAL)
                elapsed += LOGIN_POLL_INTERVAL

                outcome = await login.poll(qrcode_key)
                if outcome.success:
                    await self._reply(origin, "✅ 登录成功，正在重启推送服务...")
                    restart = await self.service.restart()
                    if not restart.success:
                        await self._reply(origin, f"推送服务重启失败：{restart.error}")
                    return
                if outcome.status_code not in (QR_NOT_SCANNED, QR_SCANNED_UNCONFIRMED):
                    await self._reply(origin, f"登录失败：{outcome.message}")
                    return
                if outcome.status_code != last_status:
                    last_status = outcome.status_code
                    if outcome.status_code == QR_SCANNED_UNCONFIRMED:
                        await self._reply(origin, outcome.message)

            await self._reply(origin, "登录超时，请重新使用 /bili_login")
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error(f"登录轮询出错: {e}", exc_info=True)
            await self._reply(origin, f"登录过程出错：{e}")

    async def _reply(self, origin: str, text: str):
        try:
            await self.context.send_message(origin, MessageChain().message(text))
        except Exception as e:
            logger.error(f"发送消息到 {origin} 失败: {e}")

    @filter.command("bili_login_check")
    async def bili_login_check(self, event: AstrMessageEvent):
        """
        Validate the stored login against Bilibili.

        Usage: /bili_login_check
        """
        try:
            info = await self.service.login.check_login_status()
            yield event.plain_result(format_login_info(info))
        except Exception as e:
            logger.error(f"检查登录状态失败: {e}")
            yield event.plain_result(f"检查登录状态失败：{e}")

    @filter.command("bili_logout")
    async def bili_logout(self, event: AstrMessageEvent):
        """
        Remove the stored login.

        Usage: /bili_logout
        """
        self.service.login.logout()
        yield event.plain_result("已退出登录，保存的登录信息已删除。")

    @filter.command("bili_search")
    async def bili_search(self, event: AstrMessageEvent):
        """
        Search Bilibili users.

        Usage: /bili_search <keyword> [--max N] [--detail]
        """
        flags = parse_command_flags(split_command(event.message_str))
        keyword = flags["keyword"]
        if not keyword:
            yield event.plain_result("用法：/bili_search <关键词> [--max N] [--detail]")
            return

        result = await self.service.api.search_user(keyword)
        if not result.success:
            yield event.plain_result(f"搜索失败：{result.error}")
            return

        yield event.plain_result(
            format_search_results(keyword, result.data or [], limit=flags["max"], detail=flags["detail"])
        )

    @filter.command("bili_reset_risk")
    async def bili_reset_risk(self, event: AstrMessageEvent):
        """
        Clear risk-control pauses, restart request pacing and drop cached WBI keys.

        Usage: /bili_reset_risk
        """
        self.service.reset_risk_control()
        yield event.plain_result("✅ 风控状态已重置，请求将以保守频率恢复。")

    @filter.command("bili_restart")
    async def bili_restart(self, event: AstrMessageEvent):
        """
        Restart monitoring with the current configuration.

        Usage: /bili_restart
        """
        yield event.plain_result("正在重启 B站推送服务...")
        if hasattr(self.context, 'config_helper') and self.context.config_helper:
            self.config = self.context.config_helper.get_all() or {}
            self.notify_config = NotifyConfig.from_dict(self.config)

        result = await self.service.reload(self.notify_config)
        if result.success:
            yield event.plain_result("✅ B站推送服务已重启")
        else:
            logger.error(f"重启推送服务失败: {result.error}")
            yield event.plain_result(f"重启失败：{result.error}")

    @filter.command("bili_start")
    async def bili_start(self, event: AstrMessageEvent):
        """
        Start dynamic and live monitoring.

        Usage: /bili_start
        """
        if self.service.is_running:
            yield event.plain_result("B站推送服务已在运行中。")
            return

        yield event.plain_result("正在启动 B站推送服务...")
        result = await self.service.start()
        if result.success:
            yield event.plain_result("✅ B站推送服务已启动")
        else:
            logger.error(f"启动推送服务失败: {result.error}")
            yield event.plain_result(f"启动失败：{result.error}")

    @filter.command("bili_stop")
    async def bili_stop(self, event: AstrMessageEvent):
        """
        Stop all monitoring; /bili_start resumes it.

        Usage: /bili_stop
        """
        if not self.service.is_running:
            yield event.plain_result("B站推送服务未在运行。")
            return

        try:
            await self.service.stop()
            yield event.plain_result("⏹️ B站推送服务已停止")
        except Exception as e:
            logger.error(f"停止推送服务失败: {e}")
            yield event.plain_result(f"停止失败：{e}")

    async def terminate(self):
        """Clean up plugin resources on shutdown."""
        logger.info("正在停止 B站推送插件...")

        for task in (self.start_task, self.login_task):
            if task and not task.done():
                task.cancel()
                try:
                    await task
                except asyncio.CancelledError:
                    pass

        try:
            await self.service.stop(close_http=True)
        except Exception as e:
            logger.error(f"停止推送服务失败: {e}")

        logger.info("B站推送插件已停止")
