"""
Notification dispatch to chat destinations.

The dispatcher knows nothing about the host framework: it is given an async
sender that accepts a session origin and an ``OutgoingMessage``.
"""
from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Protocol

from core.result import Result
from models.bilibili import Destination, DynamicItem

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class OutgoingMessage:
    text: str
    image: bytes | None = None
    mention_all: bool = False


@dataclass(slots=True)
class Notification:
    """A single message for a single destination."""
    type: str  # dynamic | live | guard
    user: str
    content: str
    target: Destination
    sub_type: str | None = None  # start | push | end for live
    image: bytes | None = None
    url: str | None = None
    mention_all: bool = False

    def to_message(self) -> OutgoingMessage:
        parts = [self.content] if self.content else []
        if self.url and self.url not in self.content:
            parts.append(self.url)
        return OutgoingMessage(text="\n".join(parts), image=self.image, mention_all=self.mention_all)


Sender = Callable[[str, OutgoingMessage], Awaitable[Any]]


class ImageRenderer(Protocol):
    """Optional HTML-to-image collaborator."""

    async def generate_dynamic_image(self, item: DynamicItem) -> Result[bytes]: ...

    async def generate_live_image(
        self,
        display_name: str,
        title: str,
        room_id: str,
        live_started_at: float | None,
    ) -> Result[bytes]: ...


class NotificationDispatcher:
    """
    Deliver notifications with one retry per send.

    Errors are logged and returned in the ``Result``; they never propagate
    into the monitors.
    """

    def __init__(self, sender: Sender, retries: int = 1, retry_delay: float = 1.0):
        self.sender = sender
        self.retries = retries
        self.retry_delay = retry_delay

    async def send_notification(self, notification: Notification) -> Result[None]:
        origin = notification.target.unified_origin
        message = notification.to_message()
        logger.info(f"Sending {notification.type} notification for {notification.user} -> {notification.target}")

        last_error: Exception | None = None
        for attempt in range(self.retries + 1):
            try:
                await self.sender(origin, message)
                return Result.ok()
            except Exception as e:
                last_error = e
                if attempt < self.retries:
                    logger.warning(f"Send to {origin} failed, retrying: {e}")
                    await asyncio.sleep(self.retry_delay)

        logger.error(f"Failed to send message to {origin}: {last_error}")
        return Result.fail(f"发送到 {notification.target} 失败: {last_error}")
