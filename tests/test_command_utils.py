from models.bilibili import LoginInfo, UserInfo
from utils.command_utils import format_login_info, format_search_results, parse_command_flags, split_command


def test_split_command_drops_command_word():
    assert split_command("/bili_search  老番茄 --max 3") == ["老番茄", "--max", "3"]
    assert split_command("") == []


def test_parse_flags():
    flags = parse_command_flags(["老", "番茄", "--max", "3", "--detail"])

    assert flags["keyword"] == "老 番茄"
    assert flags["max"] == 3
    assert flags["detail"] is True
    assert flags["_consumed"] == 3


def test_parse_flags_defaults_and_bad_values():
    assert parse_command_flags([])["max"] == 5
    assert parse_command_flags(["--max", "zero"])["max"] == 5
    assert parse_command_flags(["--max", "0"])["max"] == 1
    # A trailing --max without a value is treated as a keyword
    assert parse_command_flags(["a", "--max"])["keyword"] == "a --max"


def test_search_results():
    users = [
        UserInfo(uid="1", name="甲", follower=123456, level=6, sign="签名"),
        UserInfo(uid="2", name="乙", follower=None),
    ]

    text = format_search_results("kw", users, limit=1, detail=True)

    assert "共 2 个，显示前 1 个" in text
    assert "1. 甲 (UID: 1) 粉丝: 12.3万" in text
    assert "等级: Lv6" in text
    assert "签名: 签名" in text
    assert "乙" not in text
    assert format_search_results("kw", []) == "没有找到与「kw」相关的用户。"


def test_login_info():
    assert format_login_info(LoginInfo(is_login=False)).startswith("❌")

    text = format_login_info(LoginInfo(is_login=True, uid="42", uname="tester", level=5))

    assert text.splitlines() == ["✅ 已登录", "用户名: tester", "UID: 42", "等级: Lv5"]
