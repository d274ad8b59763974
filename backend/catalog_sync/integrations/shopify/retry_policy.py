"""
重试策略（数据，不是控制流）
  - classify_status(): HTTP 状态码 → Outcome
  - RetryPolicy: 每类可重试错误的最大次数和等待时长
  - 传输层是唯一消费者；上层只看到成功结果或终态异常
"""
from __future__ import annotations
import enum
from dataclasses import dataclass, field
from typing import Callable, Optional

from catalog_sync.utils.backoff import exp_backoff, with_jitter


class Outcome(enum.Enum):
    SUCCESS = "success"
    RATE_LIMITED = "rate_limited"      # 429：按 Retry-After 等待，同一请求重发
    GATEWAY = "gateway"                # 502/503：固定 3s
    SERVER = "server"                  # 其他 5xx
    AUTH = "auth"                      # 401：刷新一次 token
    NOT_FOUND = "not_found"            # 404：远端 id 失效
    FATAL = "fatal"                    # 其余 4xx：终态


class PolicyKind(enum.Enum):
    RETRYABLE = "retryable"
    FATAL = "fatal"
    QUOTA = "quota"


@dataclass(frozen=True)
class RetryPolicy:
    kind: PolicyKind
    max_attempts: int = 1
    # attempt 从 0 开始 → 秒
    delay: Callable[[int], float] = field(default=lambda attempt: 0.0)

    def should_retry(self, attempt: int) -> bool:
        return self.kind is PolicyKind.RETRYABLE and attempt + 1 < self.max_attempts

    def next_delay(self, attempt: int) -> float:
        return self.delay(attempt)


def _timeout_delay(attempt: int) -> float:
    # min(2^a·2, 30) + 0~1s 抖动
    return with_jitter(exp_backoff(attempt, base_seconds=2.0, cap_seconds=30.0), max_jitter=1.0)


# 429 不计入次数上限（远端明确告诉了等多久），这里给一个很大的保险上限
RATE_LIMITED = RetryPolicy(PolicyKind.RETRYABLE, max_attempts=50, delay=lambda attempt: 2.0)
GATEWAY = RetryPolicy(PolicyKind.RETRYABLE, max_attempts=3, delay=lambda attempt: 3.0)      # 最多 3 次（含首次）
SERVER = RetryPolicy(PolicyKind.RETRYABLE, max_attempts=3, delay=lambda attempt: 3.0)
TIMEOUT = RetryPolicy(PolicyKind.RETRYABLE, max_attempts=5, delay=_timeout_delay)
STAGED_UPLOAD = RetryPolicy(
    PolicyKind.RETRYABLE, max_attempts=5, delay=lambda attempt: exp_backoff(attempt, base_seconds=2.0)
)
FATAL = RetryPolicy(PolicyKind.FATAL)
QUOTA = RetryPolicy(PolicyKind.QUOTA)


def classify_status(status: int) -> Outcome:
    if 200 <= status < 300:
        return Outcome.SUCCESS
    if status == 429:
        return Outcome.RATE_LIMITED
    if status in (502, 503):
        return Outcome.GATEWAY
    if status >= 500:
        return Outcome.SERVER
    if status == 401:
        return Outcome.AUTH
    if status == 404:
        return Outcome.NOT_FOUND
    return Outcome.FATAL


def policy_for(outcome: Outcome) -> RetryPolicy:
    return {
        Outcome.RATE_LIMITED: RATE_LIMITED,
        Outcome.GATEWAY: GATEWAY,
        Outcome.SERVER: SERVER,
    }.get(outcome, FATAL)


def parse_retry_after(value: Optional[str], default: float = 2.0) -> float:
    """Retry-After 秒数；缺失/非法时用默认 2s。"""
    if value is None:
        return default
    try:
        return max(0.0, float(value))
    except (TypeError, ValueError):
        return default


THROTTLE_CODES = ("VARIANT_THROTTLE_EXCEEDED",)
THROTTLE_MESSAGES = ("daily variant creation limit", "throttle")


def classify_line_error(code: Optional[str], message: Optional[str]) -> PolicyKind:
    """
    Bulk 结果行的顶层 errors：当日变体额度 → QUOTA（资产保持 pending），其余 → FATAL（标记 error）。
    """
    if code and code.upper() in THROTTLE_CODES:
        return PolicyKind.QUOTA
    msg = (message or "").lower()
    if any(m in msg for m in THROTTLE_MESSAGES):
        return PolicyKind.QUOTA
    return PolicyKind.FATAL
