"""
Dynamic (post) update detection for subscribed Bilibili users.

Polls each user's feed, works out which items appeared since the last pass
and hands them to the notification dispatcher.
"""
from __future__ import annotations

import asyncio
import logging
from typing import Any, Awaitable, Callable

from core.bilibili_api import BilibiliApi
from core.errors import ErrorKind, is_risk_control_signal
from core.constants import CODE_USER_NOT_EXIST
from core.result import Result
from core.risk_control import RiskControlTracker
from core.scheduler import JobHandle, SchedulerManager
from models.bilibili import DynamicItem, Subscription
from models.config import NotifyConfig
from services.filter import check_dynamic_filter
from services.formatter import NotificationFormatter
from services.notifier import ImageRenderer, Notification, NotificationDispatcher

logger = logging.getLogger(__name__)

CHECK_JOB_ID = "dynamic-check"
FIRST_CHECK_DELAY = 5.0
DELAY_BETWEEN_CHECKS = 1.0


def select_new_items(items: list[DynamicItem], last_seen_id: str | None) -> list[DynamicItem]:
    """
    Pick the unseen items of a newest-first feed.

    Without a usable last-seen id only the newest item counts as new, so a
    restart or a feed that rotated past the marker never floods a channel.

    Args:
        items: Feed items, newest first
        last_seen_id: ``id_str`` recorded on the previous pass

    Returns:
        New items in chronological (oldest-first) order
    """
    if not items:
        return []
    if not last_seen_id:
        return items[:1]
    for index, item in enumerate(items):
        if item.id_str == last_seen_id:
            return list(reversed(items[:index]))
    return items[:1]


class DynamicMonitor:
    """Recurring dynamic detection over all post subscriptions."""

    def __init__(
        self,
        api: BilibiliApi,
        dispatcher: NotificationDispatcher,
        config: NotifyConfig,
        *,
        formatter: NotificationFormatter | None = None,
        scheduler: SchedulerManager | None = None,
        tracker: RiskControlTracker | None = None,
        image_renderer: ImageRenderer | None = None,
        delay_between_checks: float = DELAY_BETWEEN_CHECKS,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        """Initialize monitor.

        Args:
            api: API facade
            dispatcher: Notification dispatcher
            config: Plugin configuration (subscriptions, interval, filter)
            formatter: Message formatter
            scheduler: Scheduler owning the recurring check
            tracker: Risk-control tracker for this subsystem
            image_renderer: Optional image renderer; text only without it
            delay_between_checks: Seconds between two users in one pass
        """
        self.api = api
        self.dispatcher = dispatcher
        self.config = config
        self.formatter = formatter or NotificationFormatter(config.custom_messages)
        self.scheduler = scheduler or SchedulerManager("dynamic")
        self.tracker = tracker or RiskControlTracker("dynamic")
        self.image_renderer = image_renderer
        self.delay_between_checks = delay_between_checks
        self._sleep = sleep

        self.last_seen: dict[str, str] = {}
        self.is_running = False
        self._timer: JobHandle | None = None

    def start(self) -> Result[None]:
        if self.is_running:
            return Result.ok()
        self.is_running = True
        self.scheduler.start()

        interval = self.config.dynamic_interval * 60
        self._timer = self.scheduler.add_interval(
            CHECK_JOB_ID, self.check_for_updates, interval, first_run_in=FIRST_CHECK_DELAY
        )
        logger.info(
            f"Dynamic detection started for {len(self.config.dynamic_subscriptions)} users, "
            f"every {self.config.dynamic_interval:g} min"
        )
        return Result.ok()

    def stop(self) -> Result[None]:
        if not self.is_running:
            return Result.ok()
        self.is_running = False
        if self._timer:
            self._timer.cancel()
            self._timer = None
        self.scheduler.stop()
        logger.info("Dynamic detection stopped")
        return Result.ok()

    async def check_for_updates(self):
        """One detection pass over every post subscription."""
        if self.tracker.is_blocked():
            if self.tracker.should_log_warning():
                info = self.tracker.block_info()
                logger.warning(
                    f"🚫 Dynamic detection paused by risk control for {info['remaining_minutes']} min | "
                    f"type: {info['error_type']} | level: {info['block_level']} | "
                    f"failures: {info['consecutive_failures']}"
                )
            return

        subs = self.config.dynamic_subscriptions
        for index, sub in enumerate(subs):
            if not self.is_running:
                return
            await self.check_user(sub)
            if index < len(subs) - 1:
                await self._sleep(self.delay_between_checks)

    async def check_user(self, sub: Subscription):
        result = await self.api.get_user_dynamics(sub.uid)
        if not result.success or result.data is None:
            self._handle_fetch_failure(sub, result)
            return

        self.tracker.record_success()
        items = result.data
        new_items = select_new_items(items, self.last_seen.get(sub.uid))
        if new_items:
            logger.info(f"📢 {sub.display_name} has {len(new_items)} new dynamics")

        for item in new_items:
            await self.process_dynamic(item, sub)

        if items:
            self.last_seen[sub.uid] = items[0].id_str

    def _handle_fetch_failure(self, sub: Subscription, result: Result[Any]):
        error = result.error or "unknown error"
        if result.kind == ErrorKind.SCOPE_TORN_DOWN:
            logger.debug(f"Dynamic check for {sub.uid} skipped during shutdown")
            return

        self.tracker.record_failure(error, {"uid": sub.uid, "name": sub.display_name, "api": "get_user_dynamics"})

        if result.kind == ErrorKind.ABUSE_DETECTED or is_risk_control_signal(error):
            if self.tracker.is_blocked():
                info = self.tracker.block_info()
                logger.warning(
                    f"🚫 {sub.display_name} ({sub.uid}) hit risk control | type: {info['error_type']} | "
                    f"paused for {info['remaining_minutes']} min"
                )
            else:
                logger.warning(f"⚠️ {sub.display_name} ({sub.uid}) dynamic fetch flagged: {error}")
        elif result.code == CODE_USER_NOT_EXIST or result.kind == ErrorKind.NOT_FOUND:
            logger.error(f"❌ User {sub.uid} does not exist, check the subscription config")
        elif result.kind == ErrorKind.RATE_LIMITED:
            logger.warning(f"⚠️ {sub.display_name} ({sub.uid}) rate limited, skipping this pass")
        else:
            logger.warning(f"⚠️ Failed to fetch dynamics of {sub.display_name} ({sub.uid}): {error}")

    async def process_dynamic(self, item: DynamicItem, sub: Subscription):
        reason = check_dynamic_filter(item, self.config.filter)
        if reason:
            logger.info(f"Dynamic {item.id_str} of {sub.display_name} filtered: {reason}")
            return

        image: bytes | None = None
        if self.image_renderer is not None:
            rendered = await self.image_renderer.generate_dynamic_image(item)
            if rendered.success:
                image = rendered.data
            else:
                logger.warning(f"Dynamic image rendering failed, sending text only: {rendered.error}")

        content = self.formatter.format_dynamic(item, sub.display_name)
        for target in sub.targets:
            if not target.posts:
                continue
            sent = await self.dispatcher.send_notification(Notification(
                type="dynamic",
                user=sub.display_name,
                content=content,
                target=target,
                image=image,
                url=item.get_url(),
            ))
            if not sent.success:
                logger.error(f"Dynamic notification failed: {sent.error}")

    def reset_risk_control(self):
        self.tracker.reset()

    def status(self) -> dict[str, Any]:
        risk = self.tracker.status()
        return {
            "is_running": self.is_running,
            "has_timer": self._timer is not None,
            "last_seen_count": len(self.last_seen),
            "risk_control": {
                "is_blocked": risk["is_blocked"],
                "remaining_time": risk["remaining_time"],
                "consecutive_failures": risk["consecutive_failures"],
            },
        }
