from __future__ import annotations
import random


def exp_backoff(attempt: int, base_seconds: float = 2.0, cap_seconds: float | None = None) -> float:
    """
    attempt 从 0 开始：base * 2^attempt，可选封顶。
    例：base=2 → 2, 4, 8, 16, 30(cap)
    """
    delay = base_seconds * (2 ** max(0, attempt))
    if cap_seconds is not None:
        delay = min(cap_seconds, delay)
    return float(delay)


def with_jitter(delay: float, max_jitter: float = 1.0, rng: random.Random | None = None) -> float:
    """在 delay 上叠加 0~max_jitter 秒的随机抖动。"""
    r = rng or random
    return delay + r.uniform(0, max_jitter)
