"""
Live danmaku push channel.

Keeps a bounded set of websocket connections, one per live room, and turns
the relevant push commands into callbacks for the live monitor. A single
scheduler job sends client heartbeats and flags rooms that went silent.
"""
from __future__ import annotations

import asyncio
import inspect
import logging
import time
from dataclasses import dataclass
from typing import Any, Awaitable, Callable

import aiohttp

from core.bilibili_api import BilibiliApi
from core.constants import (
    BILIBILI_LIVE,
    DANMAKU_FALLBACK_HOST,
    HEARTBEAT_TIMEOUT_FACTOR,
    MAX_RECONNECT_ATTEMPTS,
    RECONNECT_SETTLE_DELAY,
)
from core.cookies import mask_secret
from core.danmaku_protocol import (
    CMD_GUARD_BUY,
    CMD_LIVE,
    CMD_PREPARING,
    CMD_WATCHED_CHANGE,
    OP_AUTH_REPLY,
    OP_COMMAND,
    OP_HEARTBEAT_REPLY,
    Packet,
    auth_succeeded,
    build_auth_packet,
    build_heartbeat_packet,
    decode_packets,
    parse_command,
    popularity_of,
)
from core.errors import BilibiliError
from core.scheduler import SchedulerManager
from models.config import DanmakuConfig

logger = logging.getLogger(__name__)

HEALTH_JOB_ID = "danmaku-health"

EVENTS = (
    "live_start",
    "live_end",
    "viewer_count_change",
    "guard_buy",
    "error",
    "connected",
    "disconnected",
)

WsConnect = Callable[[str, dict[str, str]], Awaitable[Any]]


@dataclass
class RoomConnection:
    room_id: str
    ws: Any = None
    reader: asyncio.Task | None = None
    is_connected: bool = False
    last_heartbeat: float = 0.0
    reconnect_count: int = 0
    reconnecting: bool = False


class DanmakuListener:
    """
    Push-channel bridge for live rooms.

    Args:
        api: API facade, used for room ids, the login check and push tokens
        config: Push channel settings
        scheduler: Scheduler for the heartbeat / health job
        ws_connect: Coroutine opening a websocket, defaults to aiohttp
    """

    def __init__(
        self,
        api: BilibiliApi,
        config: DanmakuConfig | None = None,
        *,
        scheduler: SchedulerManager | None = None,
        ws_connect: WsConnect | None = None,
        clock: Callable[[], float] = time.time,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        settle_delay: float = RECONNECT_SETTLE_DELAY,
    ):
        self.api = api
        self.config = config or DanmakuConfig()
        self.scheduler = scheduler or SchedulerManager("danmaku")
        self._ws_connect = ws_connect or self._aiohttp_connect
        self._clock = clock
        self._sleep = sleep
        self.settle_delay = settle_delay

        self.connections: dict[str, RoomConnection] = {}
        self.handlers: dict[str, Callable[..., Any]] = {}
        self.is_running = False
        self._session: aiohttp.ClientSession | None = None
        self._reconnect_tasks: set[asyncio.Task] = set()

    # Lifecycle

    def start(self) -> bool:
        if self.is_running:
            logger.warning("Danmaku listener already running")
            return True
        self.is_running = True
        self.scheduler.start()
        self.scheduler.add_interval(HEALTH_JOB_ID, self.check_connections, self.config.heartbeat_interval)
        logger.info(
            f"Danmaku listener started (max connections: {self.config.max_connections}, "
            f"heartbeat: {self.config.heartbeat_interval:g}s)"
        )
        return True

    async def stop(self):
        if not self.is_running:
            return
        self.is_running = False
        self.scheduler.stop()

        for task in list(self._reconnect_tasks):
            task.cancel()
        self._reconnect_tasks.clear()

        for room_id in list(self.connections):
            await self.disconnect_room(room_id)

        if self._session is not None and not self._session.closed:
            await self._session.close()
        self._session = None
        logger.info("Danmaku listener stopped")

    def on(self, event: str, handler: Callable[..., Any]):
        if event not in EVENTS:
            raise ValueError(f"Unknown danmaku event: {event}")
        self.handlers[event] = handler

    def off(self, event: str):
        self.handlers.pop(event, None)

    async def _emit(self, event: str, *args: Any):
        handler = self.handlers.get(event)
        if handler is None:
            return
        try:
            outcome = handler(*args)
            if inspect.isawaitable(outcome):
                await outcome
        except Exception as e:
            logger.error(f"Danmaku '{event}' handler failed: {e}", exc_info=True)

    # Connections

    async def connect_room(self, room_id: str | int) -> bool:
        """
        Open the push channel of a room.

        Returns:
            True when the websocket was opened and the auth frame sent
        """
        room_id = str(room_id)
        if not self.config.enable:
            logger.debug(f"Danmaku disabled, skipping room {room_id}")
            return False
        if not self.is_running:
            logger.warning(f"Danmaku listener not running, cannot connect room {room_id}")
            return False

        if room_id in self.connections:
            await self.disconnect_room(room_id)
        if len(self.connections) >= self.config.max_connections:
            logger.warning(f"Connection limit ({self.config.max_connections}) reached, cannot connect room {room_id}")
            return False

        long_id = await self.api.get_long_room_id(room_id)
        if long_id.success and long_id.data:
            if long_id.data != room_id:
                logger.info(f"Room id {room_id} -> {long_id.data} (short to long)")
            room_id = long_id.data
        else:
            logger.warning(f"Long room id lookup failed, using {room_id}")
        if not self.is_running:
            return False
        if room_id in self.connections:
            await self.disconnect_room(room_id)

        conn = RoomConnection(room_id=room_id, last_heartbeat=self._clock())
        self.connections[room_id] = conn
        if not await self._dial(conn):
            self.connections.pop(room_id, None)
            return False
        if not self.is_running:
            self.connections.pop(room_id, None)
            await self._close(conn)
            return False
        return True

    async def _dial(self, conn: RoomConnection) -> bool:
        room_id = conn.room_id
        try:
            cookies = self.api.http.cookies_for_header()
            myself = await self.api.get_myself_info()
            mid = (myself.data or {}).get("mid") if myself.success else None
            if not cookies or not mid:
                logger.error("Not logged in or login info invalid, cannot connect to the danmaku server")
                logger.error(f"  - cookie present: {bool(cookies)}")
                logger.error(f"  - self info fetched: {myself.success}")
                logger.error(f"  - uid: {mid or 'none'}")
                return False

            info = await self.api.get_danmu_info(room_id)
            if not info.success or info.data is None:
                logger.error(f"Failed to fetch danmaku credentials for room {room_id}: {info.error}")
                return False

            token = info.data.token
            host = info.data.host_list[0] if info.data.host_list else None
            url = f"wss://{host.host}:{host.wss_port}/sub" if host else f"wss://{DANMAKU_FALLBACK_HOST}/sub"
            logger.info(
                f"Connecting room {room_id} as uid {mid} via {url} "
                f"(token {mask_secret(token)}, cookie length {len(cookies)})"
            )

            headers = {
                "Cookie": cookies,
                "User-Agent": self.api.http.current_user_agent_info()["current"],
                "Origin": BILIBILI_LIVE,
            }
            conn.ws = await self._ws_connect(url, headers)
            await conn.ws.send_bytes(build_auth_packet(mid, room_id, token))
        except Exception as e:
            logger.error(f"Connecting room {room_id} failed: {e!r}")
            await self._emit("error", room_id, e)
            return False

        conn.is_connected = True
        conn.last_heartbeat = self._clock()
        conn.reader = asyncio.create_task(self._read_loop(conn))
        logger.info(f"✅ Room {room_id} websocket established")
        await self._emit("connected", room_id)
        return True

    async def _aiohttp_connect(self, url: str, headers: dict[str, str]) -> aiohttp.ClientWebSocketResponse:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession()
        return await self._session.ws_connect(url, headers=headers, autoping=True)

    async def disconnect_room(self, room_id: str | int):
        conn = self.connections.pop(str(room_id), None)
        if conn is None:
            return
        await self._close(conn)
        logger.info(f"Disconnected danmaku of room {conn.room_id}")
        await self._emit("disconnected", conn.room_id)

    async def _close(self, conn: RoomConnection):
        conn.is_connected = False
        reader, conn.reader = conn.reader, None
        if reader is not None and reader is not asyncio.current_task() and not reader.done():
            reader.cancel()
        ws, conn.ws = conn.ws, None
        if ws is not None:
            try:
                await ws.close()
            except Exception as e:
                logger.debug(f"Closing websocket of room {conn.room_id} failed: {e}")

    def is_connected(self, room_id: str | int) -> bool:
        """Connected and heard from within five heartbeat intervals."""
        conn = self.connections.get(str(room_id))
        if conn is None or conn.ws is None or not conn.is_connected:
            return False
        timeout = self.config.heartbeat_interval * HEARTBEAT_TIMEOUT_FACTOR
        return self._clock() - conn.last_heartbeat < timeout

    # Inbound

    async def _read_loop(self, conn: RoomConnection):
        ws = conn.ws
        try:
            async for msg in ws:
                if msg.type == aiohttp.WSMsgType.BINARY:
                    await self.handle_message(conn, msg.data)
                elif msg.type == aiohttp.WSMsgType.ERROR:
                    raise BilibiliError(f"websocket error: {ws.exception()}")
            logger.warning(f"Room {conn.room_id} websocket closed (code: {ws.close_code})")
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error(f"Room {conn.room_id} websocket error: {e!r}")
            await self._emit("error", conn.room_id, e)

        if conn.ws is ws and self.connections.get(conn.room_id) is conn:
            conn.is_connected = False
            await self._emit("disconnected", conn.room_id)
            if self.is_running:
                self.handle_connection_error(conn.room_id)

    async def handle_message(self, conn: RoomConnection, data: bytes):
        for packet in decode_packets(data):
            conn.last_heartbeat = self._clock()
            await self._handle_packet(conn, packet)

    async def _handle_packet(self, conn: RoomConnection, packet: Packet):
        room_id = conn.room_id
        if packet.op == OP_AUTH_REPLY:
            if auth_succeeded(packet):
                conn.reconnect_count = 0
                logger.info(f"🎧 Room {room_id} listening for danmaku")
                if conn.ws is not None:
                    await conn.ws.send_bytes(build_heartbeat_packet())
            else:
                logger.error(f"Room {room_id} push channel rejected auth: {packet.json()}")
                await self._emit("error", room_id, BilibiliError("danmaku auth rejected"))
                if conn.ws is not None:
                    await conn.ws.close()
            return
        if packet.op == OP_HEARTBEAT_REPLY:
            logger.debug(f"Room {room_id} popularity: {popularity_of(packet)}")
            return
        if packet.op != OP_COMMAND:
            return

        event = parse_command(packet)
        if event is None:
            return
        match event.cmd:
            case c if c == CMD_LIVE:
                logger.info(f"🔴 Room {room_id} live start event")
                await self._emit("live_start", room_id, "")
            case c if c == CMD_PREPARING:
                logger.info(f"⚫ Room {room_id} live end event")
                await self._emit("live_end", room_id)
            case c if c == CMD_WATCHED_CHANGE:
                num = event.data.get("num")
                if num is not None and self.config.enable_viewer_count:
                    logger.debug(f"Room {room_id} viewers: {num}")
                    await self._emit("viewer_count_change", room_id, int(num))
            case c if c == CMD_GUARD_BUY:
                if self.config.enable_guard_buy:
                    logger.info(f"⚡ Room {room_id} guard purchase: {event.data.get('username')}")
                    await self._emit("guard_buy", room_id, event.data)

    # Health

    async def check_connections(self):
        """Send client heartbeats and flag rooms silent for too long."""
        timeout = self.config.heartbeat_interval * HEARTBEAT_TIMEOUT_FACTOR
        now = self._clock()
        for room_id, conn in list(self.connections.items()):
            if not conn.is_connected or conn.ws is None:
                continue
            if now - conn.last_heartbeat > timeout:
                logger.warning(f"Room {room_id} silent for {now - conn.last_heartbeat:.0f}s, reconnecting")
                conn.is_connected = False
                self.handle_connection_error(room_id)
                continue
            try:
                await conn.ws.send_bytes(build_heartbeat_packet())
            except Exception as e:
                logger.warning(f"Heartbeat to room {room_id} failed: {e!r}")

    def handle_connection_error(self, room_id: str):
        """Count a failure and schedule a reconnect, or give up past the cap."""
        conn = self.connections.get(room_id)
        if conn is None or conn.reconnecting:
            return
        conn.is_connected = False
        conn.reconnect_count += 1
        conn.reconnecting = True
        task = asyncio.create_task(self._reconnect(conn))
        self._reconnect_tasks.add(task)
        task.add_done_callback(self._reconnect_tasks.discard)

    async def _reconnect(self, conn: RoomConnection):
        room_id = conn.room_id
        try:
            if conn.reconnect_count > MAX_RECONNECT_ATTEMPTS:
                logger.error(f"Room {room_id} exceeded {MAX_RECONNECT_ATTEMPTS} reconnect attempts, giving up")
                await self.disconnect_room(room_id)
                await self._emit("error", room_id, BilibiliError("reconnect attempts exhausted"))
                return

            logger.info(
                f"Room {room_id} reconnecting in {self.config.reconnect_interval:g}s "
                f"(attempt {conn.reconnect_count})"
            )
            await self._sleep(self.config.reconnect_interval)
            if not self.is_running or self.connections.get(room_id) is not conn:
                return

            await self._close(conn)
            await self._sleep(self.settle_delay)
            if not self.is_running or self.connections.get(room_id) is not conn:
                return

            if await self._dial(conn):
                logger.info(f"Room {room_id} reconnected")
                return
            logger.warning(f"Room {room_id} reconnect failed")
        finally:
            conn.reconnecting = False

        self.handle_connection_error(room_id)

    def status(self) -> dict[str, Any]:
        return {
            "is_running": self.is_running,
            "enabled": self.config.enable,
            "connection_count": len(self.connections),
            "max_connections": self.config.max_connections,
            "connected_rooms": [room_id for room_id in self.connections if self.is_connected(room_id)],
            "rooms": {
                room_id: {
                    "is_connected": conn.is_connected,
                    "reconnect_count": conn.reconnect_count,
                    "last_heartbeat": conn.last_heartbeat,
                }
                for room_id, conn in self.connections.items()
            },
        }
