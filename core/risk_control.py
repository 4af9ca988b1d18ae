"""
Risk-control (anti-automation) state tracking.

Each polling subsystem owns one tracker. Consecutive abuse signals from the
upstream pause that subsystem with an exponentially growing block.
"""
from __future__ import annotations

import logging
import math
import time
from dataclasses import asdict, dataclass
from typing import Any, Callable

from core.constants import CODE_RATE_LIMITED, CODE_RISK_CONTROL, CODE_TOO_FAST, CODE_TOO_FREQUENT
from core.errors import extract_error_code, is_risk_control_signal

logger = logging.getLogger(__name__)

MAX_CONSECUTIVE_FAILURES = 3
BASE_BLOCK_DURATION = 5 * 60.0
MAX_BLOCK_DURATION = 60 * 60.0
LOG_INTERVAL = 5 * 60.0

_RISK_CODES = frozenset({CODE_RISK_CONTROL, CODE_TOO_FAST, CODE_TOO_FREQUENT, CODE_RATE_LIMITED})


@dataclass(slots=True)
class RiskControlState:
    is_blocked: bool = False
    block_started_at: float | None = None
    block_duration: float = 0.0
    consecutive_failures: int = 0
    last_error: str | None = None
    error_type: str | None = None
    last_failure_at: float | None = None
    last_log_at: float | None = None


def analyze_error_type(error: str) -> str:
    """Human-readable category of a risk-control error."""
    if "-352" in error:
        return "访问频率限制"
    if "-503" in error:
        return "服务暂时不可用"
    if "-509" in error:
        return "请求过于频繁"
    if "-799" in error:
        return "IP被限制"
    if "User-Agent" in error:
        return "User-Agent异常"
    if "风控" in error or "拦截" in error:
        return "风控检测"
    if "频繁" in error:
        return "请求频率过高"
    return "未知风控类型"


class RiskControlTracker:
    """
    Per-subsystem block state driven by upstream abuse signals.

    A success only resets the failure counter; an active block is cleared
    lazily once its duration has elapsed.
    """

    def __init__(self, name: str = "default", clock: Callable[[], float] = time.time):
        self.name = name
        self._clock = clock
        self.state = RiskControlState()

    def is_blocked(self) -> bool:
        if not self.state.is_blocked:
            return False
        if (
            self.state.block_started_at is not None
            and self._clock() - self.state.block_started_at >= self.state.block_duration
        ):
            self._clear_block()
            return False
        return True

    def record_failure(self, error: BaseException | str, context: dict[str, Any] | None = None):
        """
        Record a failed upstream call.

        Args:
            error: The exception (or its message)
            context: Optional ``uid`` / ``name`` / ``api`` for the block log line
        """
        text = str(error)
        code = extract_error_code(error) if isinstance(error, BaseException) else None
        if code is not None and f"{code}" not in text:
            text = f"{text} [错误码: {code}]"

        if not (code in _RISK_CODES or is_risk_control_signal(text)):
            return

        now = self._clock()
        self.state.consecutive_failures += 1
        self.state.last_failure_at = now
        self.state.last_error = text
        self.state.error_type = analyze_error_type(text)

        if self.state.consecutive_failures >= MAX_CONSECUTIVE_FAILURES:
            self._activate_block(now, context or {})

    def record_success(self):
        self.state.consecutive_failures = 0
        self.state.last_failure_at = None
        self.state.last_error = None
        self.state.error_type = None

    def remaining_block_time(self) -> float:
        """Seconds left in the current block, 0 when not blocked."""
        if not self.state.is_blocked or self.state.block_started_at is None:
            return 0.0
        elapsed = self._clock() - self.state.block_started_at
        return max(0.0, self.state.block_duration - elapsed)

    def should_log_warning(self) -> bool:
        """Throttle for "still blocked" warnings, at most one per interval."""
        if not self.state.is_blocked:
            return False
        now = self._clock()
        if self.state.last_log_at is None or now - self.state.last_log_at >= LOG_INTERVAL:
            self.state.last_log_at = now
            return True
        return False

    def block_info(self) -> dict[str, Any]:
        failures = self.state.consecutive_failures
        if failures >= 6:
            level = "严重"
        elif failures >= 4:
            level = "中度"
        else:
            level = "轻度"
        return {
            "error_type": self.state.error_type or "未知",
            "last_error": self.state.last_error or "无详细信息",
            "remaining_minutes": math.ceil(self.remaining_block_time() / 60),
            "consecutive_failures": failures,
            "block_level": level,
        }

    def status(self) -> dict[str, Any]:
        data = asdict(self.state)
        data["remaining_time"] = self.remaining_block_time()
        return data

    def reset(self):
        self.state = RiskControlState()
        logger.info(f"[{self.name}] risk control state reset")

    def _activate_block(self, now: float, context: dict[str, Any]):
        multiplier = min(self.state.consecutive_failures - MAX_CONSECUTIVE_FAILURES + 1, 4)
        self.state.block_duration = min(BASE_BLOCK_DURATION * 2 ** multiplier, MAX_BLOCK_DURATION)
        self.state.is_blocked = True
        self.state.block_started_at = now
        self.state.last_log_at = now

        subject = context.get("name") or context.get("uid") or context.get("api") or "-"
        logger.warning(
            f"[{self.name}] risk control block activated for {self.state.block_duration / 60:.0f} min "
            f"after {self.state.consecutive_failures} consecutive failures "
            f"({self.state.error_type}, last subject: {subject})"
        )

    def _clear_block(self):
        self.state.is_blocked = False
        self.state.block_started_at = None
        self.state.block_duration = 0.0
        self.state.consecutive_failures = 0
        self.state.last_log_at = None
        logger.info(f"[{self.name}] risk control block expired, resuming")
