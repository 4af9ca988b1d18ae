import json
import struct
import zlib

from core.danmaku_protocol import (
    HEADER_LENGTH,
    OP_AUTH,
    OP_AUTH_REPLY,
    OP_COMMAND,
    OP_HEARTBEAT,
    OP_HEARTBEAT_REPLY,
    PROTOVER_JSON,
    PROTOVER_ZLIB,
    auth_succeeded,
    build_auth_packet,
    build_heartbeat_packet,
    decode_packets,
    encode_packet,
    parse_command,
    popularity_of,
)


def command(payload, protover=PROTOVER_JSON):
    return encode_packet(OP_COMMAND, payload, protover=protover)


def test_header_layout():
    frame = encode_packet(OP_HEARTBEAT, b"abc", seq=9)

    packet_len, header_len, protover, op, seq = struct.unpack(">IHHII", frame[:HEADER_LENGTH])
    assert (packet_len, header_len, protover, op, seq) == (19, 16, 1, OP_HEARTBEAT, 9)
    assert frame[HEADER_LENGTH:] == b"abc"


def test_auth_packet_body():
    packet = next(decode_packets(build_auth_packet("42", "21452505", "token")))

    assert packet.op == OP_AUTH
    assert packet.json() == {
        "uid": 42,
        "roomid": 21452505,
        "protover": 2,
        "platform": "web",
        "type": 2,
        "key": "token",
    }


def test_heartbeat_packet():
    packet = next(decode_packets(build_heartbeat_packet()))

    assert packet.op == OP_HEARTBEAT
    assert packet.body == b"[object Object]"


def test_several_frames_in_one_message():
    data = command({"cmd": "LIVE"}) + command({"cmd": "PREPARING"})

    cmds = [parse_command(p).cmd for p in decode_packets(data)]

    assert cmds == ["LIVE", "PREPARING"]


def test_zlib_frames_are_inflated_in_place():
    inner = command({"cmd": "LIVE", "roomid": 1}) + command({"cmd": "WATCHED_CHANGE", "data": {"num": 7}})
    data = encode_packet(OP_HEARTBEAT_REPLY, struct.pack(">I", 3)) + encode_packet(
        OP_COMMAND, zlib.compress(inner), protover=PROTOVER_ZLIB
    )

    packets = list(decode_packets(data))

    assert [p.op for p in packets] == [OP_HEARTBEAT_REPLY, OP_COMMAND, OP_COMMAND]
    assert popularity_of(packets[0]) == 3
    event = parse_command(packets[2])
    assert event.cmd == "WATCHED_CHANGE"
    assert event.data == {"num": 7}


def test_truncated_and_corrupt_frames_are_dropped():
    good = command({"cmd": "LIVE"})
    corrupt = encode_packet(OP_COMMAND, b"not zlib", protover=PROTOVER_ZLIB)

    assert [p.json()["cmd"] for p in decode_packets(corrupt + good)] == ["LIVE"]
    assert list(decode_packets(good[:-2])) == []
    assert list(decode_packets(b"\x00\x01")) == []


def test_zero_length_headers_end_decoding():
    assert list(decode_packets(b"\x00" * HEADER_LENGTH)) == []
    assert list(decode_packets(b"\x00" * HEADER_LENGTH + command({"cmd": "LIVE"}))) == []

    # A header length below 16 bytes is rejected even when the packet length is sane
    short_header = struct.pack(">IHHII", 20, 4, PROTOVER_JSON, OP_COMMAND, 1) + b"abcd"
    assert list(decode_packets(short_header)) == []


def test_command_suffix_is_stripped():
    packet = next(decode_packets(command({"cmd": "DANMU_MSG:4:0:2:2:2:0", "info": []})))

    event = parse_command(packet)

    assert event.cmd == "DANMU_MSG"
    assert event.data == {}
    assert event.raw["info"] == []


def test_non_commands_and_garbage_bodies():
    heartbeat = next(decode_packets(build_heartbeat_packet()))
    assert parse_command(heartbeat) is None
    assert popularity_of(heartbeat) is None

    garbage = next(decode_packets(encode_packet(OP_COMMAND, b"\xff\xfe")))
    assert parse_command(garbage) is None


def test_auth_reply():
    ok = next(decode_packets(encode_packet(OP_AUTH_REPLY, json.dumps({"code": 0}))))
    rejected = next(decode_packets(encode_packet(OP_AUTH_REPLY, {"code": -101})))

    assert auth_succeeded(ok) is True
    assert auth_succeeded(rejected) is False
