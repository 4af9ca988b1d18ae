"""
Bilibili endpoints, protocol constants and request pacing defaults.
"""
from __future__ import annotations

BILIBILI_MAIN = "https://www.bilibili.com"
BILIBILI_LIVE = "https://live.bilibili.com"
BILIBILI_API = "https://api.bilibili.com"
BILIBILI_LIVE_API = "https://api.live.bilibili.com"
BILIBILI_PASSPORT = "https://passport.bilibili.com"

# API endpoints
NAV_URL = f"{BILIBILI_API}/x/web-interface/nav"
USER_INFO_URL = f"{BILIBILI_API}/x/space/wbi/acc/info"
USER_STATS_URL = f"{BILIBILI_API}/x/relation/stat"
USER_DYNAMICS_URL = f"{BILIBILI_API}/x/polymer/web-dynamic/v1/feed/space"
USER_SEARCH_URL = f"{BILIBILI_API}/x/web-interface/wbi/search/type"
USER_ACCOUNT_URL = f"{BILIBILI_API}/x/member/web/account"
ROOM_INFO_URL = f"{BILIBILI_LIVE_API}/room/v1/Room/get_info"
ROOM_INFO_OLD_URL = f"{BILIBILI_LIVE_API}/room/v1/Room/getRoomInfoOld"
ROOM_INIT_URL = f"{BILIBILI_LIVE_API}/room/v1/Room/room_init"
DANMU_INFO_URL = f"{BILIBILI_LIVE_API}/xlive/web-room/v1/index/getDanmuInfo"
QRCODE_GENERATE_URL = f"{BILIBILI_PASSPORT}/x/passport-login/web/qrcode/generate"
QRCODE_POLL_URL = f"{BILIBILI_PASSPORT}/x/passport-login/web/qrcode/poll"

LIVE_URL_TEMPLATE = f"{BILIBILI_LIVE}/{{room_id}}"

SEARCH_USER_TYPE = "bili_user"
MAX_USER_SEARCH_RESULTS = 10

# HTTP pacing (seconds)
DEFAULT_TIMEOUT = 15.0
MIN_REQUEST_INTERVAL = 3.0
MAX_REQUEST_INTERVAL = 5.0
STARTUP_GRACE_PERIOD = 30.0
NORMAL_GRACE_PERIOD = 300.0
STARTUP_INTERVAL_RANGE = (2.0, 4.0)
WARMUP_INTERVAL_RANGE = (5.0, 8.0)

# Retry policy (seconds)
DEFAULT_MAX_RETRIES = 3
BASE_RETRY_DELAY = 1.0
MAX_RETRY_DELAY = 10.0
RISK_CONTROL_DELAY_RANGE = (10.0, 30.0)
RISK_CONTROL_EXTENDED_DELAY_RANGE = (30.0, 90.0)
UA_ROTATION_PROBABILITY = 0.2

# WBI signing
WBI_CACHE_DURATION = 5 * 60.0
MIXIN_KEY_LENGTH = 32
MIXIN_KEY_ENC_TAB = (
    46, 47, 18, 2, 53, 8, 23, 32, 15, 50, 10, 31, 58, 3, 45, 35, 27, 43, 5, 49, 33, 9, 42, 19, 29,
    28, 14, 39, 12, 38, 41, 13, 37, 48, 7, 16, 24, 55, 40, 61, 26, 17, 0, 1, 60, 51, 30, 4, 22, 25,
    54, 21, 56, 59, 6, 63, 57, 62, 11, 36, 20, 34, 44, 52,
)
WBI_CHAR_FILTER = "!'()*"

# Push channel defaults
HEARTBEAT_TIMEOUT_FACTOR = 5
MAX_RECONNECT_ATTEMPTS = 3
RECONNECT_SETTLE_DELAY = 2.0
DANMAKU_FALLBACK_HOST = "broadcastlv.chat.bilibili.com"

# Upstream response codes
CODE_SUCCESS = 0
CODE_NOT_LOGIN = -101
CODE_RISK_CONTROL = -352
CODE_FORBIDDEN = -403
CODE_NOT_FOUND = -404
CODE_SERVER_ERROR = -500
CODE_TOO_FAST = -503
CODE_TOO_FREQUENT = -509
CODE_USER_NOT_EXIST = -626
CODE_RATE_LIMITED = -799

RETRYABLE_CODES = frozenset({
    CODE_TOO_FAST,
    CODE_TOO_FREQUENT,
    CODE_RATE_LIMITED,
    CODE_SERVER_ERROR,
    CODE_RISK_CONTROL,
})

ERROR_REASONS: dict[int, str] = {
    0: "成功",
    -1: "应用程序不存在或已被封禁",
    -2: "Access key错误",
    -3: "API校验密匙错误",
    -101: "账号未登录",
    -102: "账号被封停",
    -103: "积分不足",
    -104: "硬币不足",
    -105: "验证码错误",
    -352: "请求被拦截，可能是User-Agent或请求头问题",
    -400: "请求错误",
    -403: "权限不足",
    -404: "无视频",
    -500: "服务器内部错误",
    -503: "调用速度过快",
    -509: "请求过于频繁",
    -616: "上传文件不存在",
    -617: "上传文件太大",
    -625: "登录失败次数太多",
    -626: "用户不存在",
    -628: "密码太弱",
    -629: "用户名或密码错误",
    -632: "操作对象数量限制",
    -643: "被锁定",
    -650: "用户等级太低",
    -652: "重复的内容",
    -658: "Token过期",
    -662: "密码时间戳过期",
    -688: "地理位置限制",
    -689: "版权限制",
    -701: "扣节操失败",
    -799: "请求过于频繁",
    -8888: "对不起，服务器开小差了~ (ಥ﹏ಥ)",
}

# Cookies
ESSENTIAL_COOKIE_FIELDS = ("SESSDATA", "bili_jct", "DedeUserID", "DedeUserID__ckMd5")
DEFAULT_BUVID3 = "some_non_empty_value"

DEFAULT_USER_AGENTS = (
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36",
    "Mozilla/5.0 (Macintosh; Intel Mac OS X 10_15_7) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36",
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64; rv:109.0) Gecko/20100101 Firefox/121.0",
    "Mozilla/5.0 (Macintosh; Intel Mac OS X 10_15_7) AppleWebKit/605.1.15 (KHTML, like Gecko) Version/17.1 Safari/605.1.15",
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36 Edg/120.0.0.0",
)
