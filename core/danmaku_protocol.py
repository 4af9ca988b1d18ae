"""
Wire format of the Bilibili live push channel.

Every frame starts with a 16 byte big-endian header::

    packet_len (uint32) | header_len (uint16) | protover (uint16) | op (uint32) | seq (uint32)

Command frames with protover 2 carry a zlib-deflated body that is itself a
sequence of frames.
"""
from __future__ import annotations

import json
import logging
import struct
import zlib
from dataclasses import dataclass, field
from typing import Any, Iterator

logger = logging.getLogger(__name__)

HEADER = struct.Struct(">IHHII")
HEADER_LENGTH = HEADER.size

PROTOVER_JSON = 0
PROTOVER_HEARTBEAT = 1
PROTOVER_ZLIB = 2

OP_HEARTBEAT = 2
OP_HEARTBEAT_REPLY = 3
OP_COMMAND = 5
OP_AUTH = 7
OP_AUTH_REPLY = 8

CMD_LIVE = "LIVE"
CMD_PREPARING = "PREPARING"
CMD_WATCHED_CHANGE = "WATCHED_CHANGE"
CMD_GUARD_BUY = "GUARD_BUY"


@dataclass(slots=True)
class Packet:
    op: int
    protover: int
    body: bytes = b""
    seq: int = 1

    def json(self) -> dict[str, Any]:
        """Decode the body as JSON; an undecodable body yields an empty dict."""
        try:
            data = json.loads(self.body.decode("utf-8"))
        except (UnicodeDecodeError, ValueError):
            return {}
        return data if isinstance(data, dict) else {}


@dataclass(slots=True)
class PushEvent:
    """A parsed command from the push channel."""
    cmd: str
    data: dict[str, Any] = field(default_factory=dict)
    raw: dict[str, Any] = field(default_factory=dict)


def encode_packet(op: int, body: bytes | str | dict[str, Any] = b"", protover: int = PROTOVER_HEARTBEAT,
                  seq: int = 1) -> bytes:
    if isinstance(body, dict):
        body = json.dumps(body, separators=(",", ":"))
    if isinstance(body, str):
        body = body.encode("utf-8")
    return HEADER.pack(HEADER_LENGTH + len(body), HEADER_LENGTH, protover, op, seq) + body


def build_auth_packet(uid: int | str, room_id: int | str, key: str) -> bytes:
    """First frame sent after the socket opens."""
    return encode_packet(OP_AUTH, {
        "uid": int(uid),
        "roomid": int(room_id),
        "protover": PROTOVER_ZLIB,
        "platform": "web",
        "type": 2,
        "key": key,
    })


def build_heartbeat_packet() -> bytes:
    return encode_packet(OP_HEARTBEAT, b"[object Object]")


def decode_packets(data: bytes) -> Iterator[Packet]:
    """
    Split a websocket message into frames.

    zlib compressed command frames are inflated and their inner frames are
    yielded in place. Truncated trailing bytes and frames with an impossible
    header stop decoding.
    """
    offset = 0
    while offset + HEADER_LENGTH <= len(data):
        packet_len, header_len, protover, op, seq = HEADER.unpack_from(data, offset)
        if header_len < HEADER_LENGTH or packet_len < header_len or offset + packet_len > len(data):
            logger.debug(f"Dropping malformed frame at offset {offset} (len={packet_len})")
            return
        body = data[offset + header_len:offset + packet_len]
        offset += packet_len

        if op == OP_COMMAND and protover == PROTOVER_ZLIB:
            try:
                inflated = zlib.decompress(body)
            except zlib.error as e:
                logger.warning(f"Failed to inflate push frame: {e}")
                continue
            yield from decode_packets(inflated)
        else:
            yield Packet(op=op, protover=protover, body=body, seq=seq)


def popularity_of(packet: Packet) -> int | None:
    """Viewer popularity carried by a heartbeat reply."""
    if packet.op != OP_HEARTBEAT_REPLY or len(packet.body) < 4:
        return None
    return struct.unpack(">I", packet.body[:4])[0]


def parse_command(packet: Packet) -> PushEvent | None:
    if packet.op != OP_COMMAND:
        return None
    raw = packet.json()
    cmd = str(raw.get("cmd") or "")
    if not cmd:
        return None
    # Some commands carry a suffix, e.g. "DANMU_MSG:4:0:2:2:2:0"
    cmd = cmd.split(":", 1)[0]
    data = raw.get("data")
    return PushEvent(cmd=cmd, data=data if isinstance(data, dict) else {}, raw=raw)


def auth_succeeded(packet: Packet) -> bool:
    if packet.op != OP_AUTH_REPLY:
        return False
    return packet.json().get("code", 0) == 0
