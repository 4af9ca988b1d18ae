"""
Wiring of the notifier.

Builds the shared HTTP client, API facade, login service and both monitors
from a ``NotifyConfig`` and exposes the lifecycle the plugin drives.
"""
from __future__ import annotations

import logging
from typing import Any

from core.bilibili_api import BilibiliApi
from core.danmaku import DanmakuListener
from core.http_client import RateLimitedHttpClient
from core.live_monitor import LiveMonitor
from core.login import LoginService
from core.monitor import DynamicMonitor
from core.result import Result
from core.state import CredentialStore
from models.config import NotifyConfig
from services.formatter import NotificationFormatter
from services.notifier import ImageRenderer, NotificationDispatcher, Sender

logger = logging.getLogger(__name__)


class NotifyService:
    """
    Owns every long-lived component of the notifier.

    The HTTP client, credential store and login service live as long as the
    service; monitors are rebuilt on every start so a reload picks up the new
    configuration.
    """

    def __init__(
        self,
        config: NotifyConfig,
        sender: Sender,
        *,
        image_renderer: ImageRenderer | None = None,
        http_client: RateLimitedHttpClient | None = None,
        store: CredentialStore | None = None,
    ):
        self.config = config
        self.image_renderer = image_renderer
        self.http = http_client or RateLimitedHttpClient(config.user_agents or None)
        self.api = BilibiliApi(self.http)
        self.store = store or CredentialStore(config.state_file)
        self.login = LoginService(self.store, self.api)
        self.dispatcher = NotificationDispatcher(sender)
        self.formatter = NotificationFormatter(config.custom_messages)

        self.dynamic_monitor: DynamicMonitor | None = None
        self.live_monitor: LiveMonitor | None = None
        self.is_running = False

    def _build_monitors(self):
        config = self.config
        self.dynamic_monitor = None
        self.live_monitor = None

        if config.enable_dynamic and config.dynamic_subscriptions:
            self.dynamic_monitor = DynamicMonitor(
                self.api,
                self.dispatcher,
                config,
                formatter=self.formatter,
                image_renderer=self.image_renderer,
            )

        if config.enable_live and config.live_subscriptions:
            danmaku = DanmakuListener(self.api, config.danmaku) if config.danmaku.enable else None
            self.live_monitor = LiveMonitor(
                self.api,
                self.dispatcher,
                config,
                formatter=self.formatter,
                danmaku=danmaku,
                image_renderer=self.image_renderer,
            )

    async def start(self) -> Result[None]:
        if self.is_running:
            return Result.ok()
        self.is_running = True

        if self.login.restore_session():
            logger.info("Restored stored Bilibili login")
        else:
            logger.warning("No stored Bilibili login, some endpoints and the danmaku channel need one")

        self._build_monitors()
        if self.dynamic_monitor is None and self.live_monitor is None:
            logger.warning("No subscriptions enabled, nothing to monitor")

        try:
            if self.dynamic_monitor is not None:
                self.dynamic_monitor.start()
            if self.live_monitor is not None:
                await self.live_monitor.start()
        except Exception as e:
            logger.error(f"Starting notifier failed: {e}", exc_info=True)
            await self.stop_monitors()
            self.is_running = False
            return Result.from_exception(e)

        logger.info(
            f"Notifier started ({len(self.config.dynamic_subscriptions)} dynamic, "
            f"{len(self.config.live_subscriptions)} live subscriptions)"
        )
        return Result.ok()

    async def stop_monitors(self):
        if self.dynamic_monitor is not None:
            self.dynamic_monitor.stop()
        if self.live_monitor is not None:
            await self.live_monitor.stop()

    async def stop(self, *, close_http: bool = False):
        """Stop monitoring; ``close_http`` also tears the HTTP scope down for good."""
        if self.is_running:
            self.is_running = False
            await self.stop_monitors()
            logger.info("Notifier stopped")
        if close_http:
            await self.http.close()

    async def reload(self, config: NotifyConfig) -> Result[None]:
        """Restart with a new configuration."""
        await self.stop()
        self.config = config
        self.http.reload_user_agents(config.user_agents or None)
        self.formatter = NotificationFormatter(config.custom_messages)
        return await self.start()

    async def restart(self) -> Result[None]:
        return await self.reload(self.config)

    def reset_risk_control(self):
        """Clear both trackers, restart pacing and drop the WBI key cache."""
        if self.dynamic_monitor is not None:
            self.dynamic_monitor.reset_risk_control()
        if self.live_monitor is not None:
            self.live_monitor.reset_risk_control()
        self.api.reset_state()
        logger.info("Risk control state reset")

    def status(self) -> dict[str, Any]:
        return {
            "is_running": self.is_running,
            "http": self.http.status(),
            "dynamic": self.dynamic_monitor.status() if self.dynamic_monitor else None,
            "live": self.live_monitor.status() if self.live_monitor else None,
        }
