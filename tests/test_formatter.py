from models.bilibili import DynamicItem, LiveRoomState
from models.config import CustomMessages
from services.formatter import NotificationFormatter, format_duration, render_template


def room(**kwargs):
    defaults = {"room_id": "1000", "uid": "42", "display_name": "主播", "title": "打游戏"}
    defaults.update(kwargs)
    return LiveRoomState(**defaults)


def test_render_template_fills_known_variables_and_newlines():
    text = render_template("{name}\\n{title} {unknown} {online}", name="a", title="b")

    assert text == "a\nb {unknown} "


def test_format_duration():
    assert format_duration(None) == "未知"
    assert format_duration(-1) == "未知"
    assert format_duration(42) == "42秒"
    assert format_duration(5 * 60 + 3) == "5分钟3秒"
    assert format_duration(2 * 3600 + 5 * 60 + 59) == "2小时5分钟"


def test_live_messages_use_templates():
    formatter = NotificationFormatter()
    state = room(live_started_at=1_000.0, viewer_count=23456)

    start = formatter.format_live_start(state)
    assert start == "🔴 主播 开始直播啦！\n📺 打游戏\n🔗 https://live.bilibili.com/1000"

    reminder = formatter.format_live_reminder(state, now=1_000.0 + 3_700)
    assert "2.3万" in reminder
    assert "1小时1分钟" in reminder

    end = formatter.format_live_end(state, now=1_000.0 + 90)
    assert end == "⚫ 主播 直播结束了，本次直播 1分钟30秒"


def test_empty_templates_fall_back():
    formatter = NotificationFormatter(CustomMessages(live_start="", live="", live_end=""))
    state = room()

    assert formatter.format_live_start(state) == "打游戏"
    assert formatter.format_live_reminder(state) == "打游戏"
    assert formatter.format_live_end(state) == "主播 下播了"


def test_dynamic_message_by_type():
    formatter = NotificationFormatter()
    video = DynamicItem(
        id_str="9",
        type="DYNAMIC_TYPE_AV",
        modules={"module_dynamic": {"major": {"archive": {"title": "新视频"}}}},
    )
    word = DynamicItem(id_str="8", type="DYNAMIC_TYPE_WORD", modules={"module_dynamic": {"desc": {"text": "你好"}}})

    assert formatter.format_dynamic(video, "UP") == "📢 UP 发布了新动态\n新视频"
    assert formatter.format_dynamic(word, "UP").endswith("你好")
    assert formatter.extract_dynamic_content(DynamicItem(id_str="7", type="DYNAMIC_TYPE_FORWARD")) == "转发了动态"
    assert formatter.extract_dynamic_content(DynamicItem(id_str="6", type="OTHER")) == "动态更新"


def test_guard_buy_message():
    text = NotificationFormatter().format_guard_buy(room(), "路人", "提督")

    assert text == "[主播的直播间]「路人」加入了大航海（提督）"


def test_status_rendering():
    formatter = NotificationFormatter()
    status = {
        "is_running": True,
        "http": {"has_login": True, "current_user_agent": {"index": 2, "total": 5}},
        "dynamic": {
            "is_running": True,
            "last_seen_count": 3,
            "risk_control": {"is_blocked": False, "consecutive_failures": 1},
        },
        "live": {
            "is_running": True,
            "room_count": 1,
            "danmaku_rooms": 1,
            "polling_rooms": 0,
            "risk_control": {"is_blocked": True, "remaining_time": 130, "consecutive_failures": 3},
            "rooms": [{"display_name": "主播", "room_id": "1000", "is_live": True}],
        },
    }

    text = formatter.format_status(status)

    assert "登录: 已登录" in text
    assert "User-Agent: 2/5" in text
    assert "跟踪 3 个用户" in text
    assert "剩余约 3 分钟" in text
    assert "主播 (1000): 🔴 直播中" in text
