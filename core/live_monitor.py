"""
Live-session monitoring.

Each subscribed room runs a small state machine (offline -> live -> offline,
title changes while live loop back onto live). Rooms with a healthy danmaku
connection get their transitions from push events and only a light title
sync from polling; all other rooms are fully polled.
"""
from __future__ import annotations

import asyncio
import logging
import random
import time
from functools import partial
from typing import Any, Awaitable, Callable

from core.bilibili_api import BilibiliApi
from core.constants import CODE_USER_NOT_EXIST
from core.danmaku import DanmakuListener
from core.errors import ErrorKind, is_risk_control_signal
from core.result import Result
from core.risk_control import RiskControlTracker
from core.scheduler import JobHandle, SchedulerManager
from models.bilibili import LiveRoomState, LiveStatus, Subscription
from models.config import NotifyConfig
from services.filter import check_live_filter
from services.formatter import NotificationFormatter, live_url
from services.notifier import ImageRenderer, Notification, NotificationDispatcher

logger = logging.getLogger(__name__)

CHECK_JOB_ID = "live-check"
MIN_PUSH_POLL_INTERVAL = 60.0
ROOM_INIT_DELAY_RANGE = (2.0, 5.0)
ROOM_CHECK_DELAY_RANGE = (1.0, 3.0)


def repeat_job_id(room_id: str) -> str:
    return f"live-push-{room_id}"


class LiveMonitor:
    """Polling plus push-channel live detection for all live subscriptions."""

    def __init__(
        self,
        api: BilibiliApi,
        dispatcher: NotificationDispatcher,
        config: NotifyConfig,
        *,
        formatter: NotificationFormatter | None = None,
        scheduler: SchedulerManager | None = None,
        tracker: RiskControlTracker | None = None,
        danmaku: DanmakuListener | None = None,
        image_renderer: ImageRenderer | None = None,
        rng: random.Random | None = None,
        clock: Callable[[], float] = time.time,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        """Initialize monitor.

        Args:
            api: API facade
            dispatcher: Notification dispatcher
            config: Plugin configuration
            formatter: Message formatter
            scheduler: Scheduler owning the check job and the repeat timers
            tracker: Risk-control tracker for this subsystem
            danmaku: Push-channel bridge; polling only without it
            image_renderer: Optional image renderer
        """
        self.api = api
        self.dispatcher = dispatcher
        self.config = config
        self.formatter = formatter or NotificationFormatter(config.custom_messages)
        self.scheduler = scheduler or SchedulerManager("live")
        self.tracker = tracker or RiskControlTracker("live")
        self.danmaku = danmaku
        self.image_renderer = image_renderer
        self._rng = rng or random.Random()
        self._clock = clock
        self._sleep = sleep

        self.rooms: dict[str, LiveRoomState] = {}
        self.is_running = False
        self.check_interval: float = float(config.live_interval)
        self._timer: JobHandle | None = None

    @property
    def push_enabled(self) -> bool:
        return self.danmaku is not None and self.config.danmaku.enable

    async def start(self) -> Result[None]:
        if self.is_running:
            return Result.ok()
        self.is_running = True
        self.scheduler.start()
        logger.info("Starting live monitor")

        if self.push_enabled:
            self._bind_push_events()
            self.danmaku.start()
            logger.info("Danmaku listener enabled, using push + polling")

        await self.initialize_rooms()
        if not self.is_running:
            return Result.ok()
        await self.check_all()
        if not self.is_running:
            return Result.ok()

        interval = float(self.config.live_interval)
        if any(room.uses_push_channel for room in self.rooms.values()):
            interval = max(interval * 2, MIN_PUSH_POLL_INTERVAL)
        self.check_interval = interval
        self._timer = self.scheduler.add_interval(CHECK_JOB_ID, self.check_all, interval)
        logger.info(f"Live check interval set to {interval:g}s")
        return Result.ok()

    async def stop(self) -> Result[None]:
        if not self.is_running:
            return Result.ok()
        self.is_running = False

        if self.danmaku is not None:
            await self.danmaku.stop()
        if self._timer:
            self._timer.cancel()
            self._timer = None
        for room in self.rooms.values():
            self._cancel_repeat_timer(room)
        self.scheduler.stop()
        self.rooms.clear()
        logger.info("Live monitor stopped")
        return Result.ok()

    # Setup

    async def initialize_rooms(self):
        subs = self.config.live_subscriptions
        if not subs:
            logger.info("No live subscriptions configured")
            return

        logger.info(f"Resolving live rooms for {len(subs)} users")
        for index, sub in enumerate(subs):
            if index > 0:
                await self._sleep(self._rng.uniform(*ROOM_INIT_DELAY_RANGE))
            if not self.is_running:
                logger.info("Live monitor stopped during room setup")
                return
            try:
                room = await self._resolve_room(sub)
            except Exception as e:
                logger.error(f"Failed to set up live room of {sub.display_name} ({sub.uid}): {e}", exc_info=True)
                continue
            if room is None or not self.is_running:
                continue
            self.rooms[room.room_id] = room
            if self.push_enabled:
                await self._connect_push(room)

        pushed = sum(1 for room in self.rooms.values() if room.uses_push_channel)
        logger.info(f"Monitoring {len(self.rooms)} live rooms (danmaku: {pushed}, polling: {len(self.rooms) - pushed})")
        if not self.rooms:
            logger.warning("No live room could be set up, check the subscriptions and the network")

    async def _resolve_room(self, sub: Subscription) -> LiveRoomState | None:
        name = sub.name
        if not name:
            info = await self.api.get_user_info(sub.uid)
            if info.success and info.data:
                name = info.data.name

        room_id = await self.api.get_room_id_by_uid(sub.uid)
        if not room_id.success or not room_id.data:
            logger.warning(f"User {sub.uid} ({sub.display_name}) has no live room: {room_id.error}")
            return None

        logger.debug(f"Live room of {sub.uid}: {room_id.data}")
        return LiveRoomState(room_id=room_id.data, uid=sub.uid, display_name=name or f"用户{sub.uid}")

    async def _connect_push(self, room: LiveRoomState):
        try:
            room.uses_push_channel = await self.danmaku.connect_room(room.room_id)
        except Exception as e:
            logger.error(f"Danmaku connect for room {room.room_id} raised: {e}", exc_info=True)
            room.uses_push_channel = False
        if room.uses_push_channel:
            logger.info(f"Room {room.room_id} ({room.display_name}) danmaku connected")
        else:
            logger.warning(f"Room {room.room_id} ({room.display_name}) danmaku unavailable, polling only")

    def _bind_push_events(self):
        self.danmaku.on("live_start", self.handle_push_live_start)
        self.danmaku.on("live_end", self.handle_push_live_end)
        self.danmaku.on("viewer_count_change", self.handle_viewer_count)
        self.danmaku.on("guard_buy", self.handle_guard_buy)
        self.danmaku.on("error", self._on_push_error)

    # Detection

    async def check_all(self):
        """One pass over every room."""
        if self.tracker.is_blocked():
            if self.tracker.should_log_warning():
                info = self.tracker.block_info()
                logger.warning(
                    f"🚫 Live detection paused by risk control for {info['remaining_minutes']} min | "
                    f"type: {info['error_type']} | level: {info['block_level']} | "
                    f"failures: {info['consecutive_failures']}"
                )
            return

        rooms = list(self.rooms.values())
        for index, room in enumerate(rooms):
            if not self.is_running:
                return
            try:
                if self._push_healthy(room):
                    await self.sync_room(room)
                else:
                    await self.check_room(room)
            except Exception as e:
                logger.error(f"❌ Live check of {room.display_name} ({room.room_id}) failed: {e}", exc_info=True)
            if index < len(rooms) - 1:
                await self._sleep(self._rng.uniform(*ROOM_CHECK_DELAY_RANGE))

    def _push_healthy(self, room: LiveRoomState) -> bool:
        return room.uses_push_channel and self.danmaku is not None and self.danmaku.is_connected(room.room_id)

    async def sync_room(self, room: LiveRoomState):
        """Title-only refresh; transitions of this room come from push events."""
        result = await self.api.get_live_room_info(room.room_id)
        if not self.is_running:
            return
        if not result.success or result.data is None:
            if result.kind != ErrorKind.SCOPE_TORN_DOWN:
                self.tracker.record_failure(result.error or "unknown error", self._context(room))
            logger.debug(f"Sync of room {room.room_id} failed: {result.error}")
            return

        self.tracker.record_success()
        if room.is_live and result.data.title != room.title:
            await self.handle_title_change(room, result.data.title)
        else:
            room.title = result.data.title

    async def check_room(self, room: LiveRoomState):
        result = await self.api.get_live_room_info(room.room_id)
        if not self.is_running:
            return
        if not result.success or result.data is None:
            self._handle_fetch_failure(room, result)
            return

        self.tracker.record_success()
        status = result.data
        if not room.is_live and status.is_live:
            logger.info(f"📡 Poll detected live start: {room.display_name}")
            await self.handle_live_start(room, status)
        elif room.is_live and not status.is_live:
            logger.info(f"📡 Poll detected live end: {room.display_name}")
            room.title = status.title
            await self.handle_live_end(room)
        elif status.is_live and status.title != room.title:
            await self.handle_title_change(room, status.title)
        else:
            room.title = status.title

    def _context(self, room: LiveRoomState) -> dict[str, Any]:
        return {"uid": room.uid, "name": room.display_name, "room_id": room.room_id, "api": "get_live_room_info"}

    def _handle_fetch_failure(self, room: LiveRoomState, result: Result[Any]):
        error = result.error or "unknown error"
        if result.kind == ErrorKind.SCOPE_TORN_DOWN:
            logger.debug(f"Live check for room {room.room_id} skipped during shutdown")
            return

        self.tracker.record_failure(error, self._context(room))

        label = f"{room.display_name} ({room.room_id})"
        if result.kind == ErrorKind.ABUSE_DETECTED or is_risk_control_signal(error):
            if self.tracker.is_blocked():
                info = self.tracker.block_info()
                logger.warning(
                    f"🚫 Room {label} hit risk control | type: {info['error_type']} | "
                    f"paused for {info['remaining_minutes']} min"
                )
            else:
                logger.warning(f"⚠️ Room {label} status fetch flagged: {error}")
        elif result.code == CODE_USER_NOT_EXIST or result.kind == ErrorKind.NOT_FOUND:
            logger.error(f"❌ Room {label} does not exist")
        elif result.kind == ErrorKind.RATE_LIMITED:
            logger.warning(f"⚠️ Room {label} rate limited, skipping this pass")
        else:
            logger.warning(f"⚠️ Failed to fetch status of room {label}: {error}")

    # Transitions

    async def handle_live_start(self, room: LiveRoomState, status: LiveStatus):
        room.title = status.title
        room.is_live = True

        if check_live_filter(room.title, self.config.filter):
            room.is_filtered = True
            logger.info(f"Live session filtered: {room.display_name} - {room.title}")
            return

        room.is_filtered = False
        room.live_started_at = self._clock()
        logger.info(f"{room.display_name} went live: {room.title}")
        await self.send_live_notification(room, "start")
        self._arm_repeat_timer(room)

    async def handle_live_end(self, room: LiveRoomState):
        room.is_live = False
        logger.info(f"{room.display_name} ended the live session")

        if room.is_filtered:
            room.is_filtered = False
            return

        self._cancel_repeat_timer(room)
        await self.send_live_notification(room, "end")
        room.live_started_at = None
        room.viewer_count = None

    async def handle_title_change(self, room: LiveRoomState, new_title: str):
        old_title, room.title = room.title, new_title
        logger.info(f"{room.display_name} changed the live title: {old_title} -> {new_title}")

        filtered = check_live_filter(new_title, self.config.filter)
        if filtered and not room.is_filtered:
            logger.info(f"Live session filtered after title change: {room.display_name} - {new_title}")
            self._cancel_repeat_timer(room)
            room.is_filtered = True
        elif room.is_filtered and not filtered:
            logger.info(f"Live session unfiltered after title change: {room.display_name} - {new_title}")
            room.is_filtered = False
            self._arm_repeat_timer(room)

    async def handle_push_live_start(self, room_id: str, title: str = ""):
        room = self.rooms.get(str(room_id))
        if room is None:
            return
        if room.is_live:
            logger.debug(f"Room {room.room_id} already live, ignoring push start")
            return

        result = await self.api.get_live_room_info(room.room_id)
        if not result.success or result.data is None:
            logger.warning(f"Push start for room {room.room_id} could not be confirmed: {result.error}")
            return
        if result.data.is_live:
            logger.info(f"🎯 Danmaku detected live start: {room.display_name}")
            await self.handle_live_start(room, result.data)

    async def handle_push_live_end(self, room_id: str):
        room = self.rooms.get(str(room_id))
        if room is None:
            return
        if not room.is_live:
            logger.debug(f"Room {room.room_id} already offline, ignoring push end")
            return
        logger.info(f"🎯 Danmaku detected live end: {room.display_name}")
        await self.handle_live_end(room)

    def handle_viewer_count(self, room_id: str, count: int):
        room = self.rooms.get(str(room_id))
        if room is not None:
            room.viewer_count = count

    async def handle_guard_buy(self, room_id: str, data: dict[str, Any]):
        room = self.rooms.get(str(room_id))
        if room is None:
            return
        sub = self.config.find_subscription(room.uid)
        if sub is None:
            return
        targets = [target for target in sub.targets if target.guard_buy]
        if not targets:
            return

        content = self.formatter.format_guard_buy(
            room, str(data.get("username") or ""), str(data.get("gift_name") or data.get("giftName") or "")
        )
        for target in targets:
            sent = await self.dispatcher.send_notification(Notification(
                type="guard",
                user=room.display_name,
                content=content,
                target=target,
            ))
            if not sent.success:
                logger.error(f"Guard notification failed: {sent.error}")

    def _on_push_error(self, room_id: str, error: BaseException):
        room = self.rooms.get(str(room_id))
        if room is not None:
            logger.error(f"Danmaku error in room {room.room_id} ({room.display_name}): {error}")

    # Repeat timers

    def _arm_repeat_timer(self, room: LiveRoomState):
        self._cancel_repeat_timer(room)
        if self.config.push_time <= 0:
            return
        room.repeat_timer = self.scheduler.add_interval(
            repeat_job_id(room.room_id),
            partial(self.send_timed_notification, room.room_id),
            self.config.push_time * 3600,
        )

    def _cancel_repeat_timer(self, room: LiveRoomState):
        if room.repeat_timer is not None:
            room.repeat_timer.cancel()
            room.repeat_timer = None

    async def send_timed_notification(self, room_id: str):
        room = self.rooms.get(room_id)
        if room is None or not room.is_live or room.is_filtered:
            return
        if room.viewer_count is None:
            result = await self.api.get_live_room_info(room.room_id)
            if result.success and result.data:
                room.viewer_count = result.data.online
        await self.send_live_notification(room, "push")

    # Delivery

    async def send_live_notification(self, room: LiveRoomState, sub_type: str):
        sub = self.config.find_subscription(room.uid)
        if sub is None:
            logger.warning(f"No subscription found for user {room.uid}")
            return

        image: bytes | None = None
        if self.image_renderer is not None:
            rendered = await self.image_renderer.generate_live_image(
                room.display_name, room.title, room.room_id, room.live_started_at
            )
            if rendered.success:
                image = rendered.data
            else:
                logger.warning(f"Live image rendering failed, sending text only: {rendered.error}")

        match sub_type:
            case "start":
                content = self.formatter.format_live_start(room)
            case "push":
                content = self.formatter.format_live_reminder(room, self._clock())
            case _:
                content = self.formatter.format_live_end(room, self._clock())

        url = live_url(room.room_id)
        for target in sub.targets:
            if not target.live:
                continue
            sent = await self.dispatcher.send_notification(Notification(
                type="live",
                sub_type=sub_type,
                user=room.display_name,
                content=content,
                target=target,
                image=image,
                url=None if url in content else url,
                mention_all=sub_type == "start" and target.at_all,
            ))
            if sent.success:
                logger.info(f"Live notification sent: {room.display_name} ({sub_type}) -> {target}")
            else:
                logger.error(f"Live notification failed: {sent.error}")

    def reset_risk_control(self):
        self.tracker.reset()
        logger.info("Live risk control state reset")

    def status(self) -> dict[str, Any]:
        risk = self.tracker.status()
        pushed = sum(1 for room in self.rooms.values() if room.uses_push_channel)
        return {
            "is_running": self.is_running,
            "room_count": len(self.rooms),
            "danmaku_rooms": pushed,
            "polling_rooms": len(self.rooms) - pushed,
            "has_timer": self._timer is not None,
            "check_interval": self.check_interval,
            "danmaku": self.danmaku.status() if self.danmaku is not None else None,
            "risk_control": {
                "is_blocked": risk["is_blocked"],
                "remaining_time": risk["remaining_time"],
                "consecutive_failures": risk["consecutive_failures"],
            },
            "rooms": [room.to_dict() for room in self.rooms.values()],
        }
