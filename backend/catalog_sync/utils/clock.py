from __future__ import annotations
import time
from datetime import datetime, timezone
from typing import Optional
from zoneinfo import ZoneInfo


def now_utc() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)  # 与 DB naive UTC 对齐


def local_midnight_utc(now: Optional[datetime] = None, tz_name: Optional[str] = None) -> datetime:
    """
    本地日历日 00:00 对应的 naive UTC 时间，用来统计“今天”同步了多少变体。
    tz_name 为空时用系统本地时区。
    """
    current = now or now_utc()
    aware_utc = current.replace(tzinfo=timezone.utc)
    tz = ZoneInfo(tz_name) if tz_name else None
    local = aware_utc.astimezone(tz)
    midnight_local = local.replace(hour=0, minute=0, second=0, microsecond=0)
    return midnight_local.astimezone(timezone.utc).replace(tzinfo=None)


class SystemClock:
    """Context 里的时钟：测试可替换成固定时间/不睡眠的实现。"""

    def __init__(self, tz_name: Optional[str] = None) -> None:
        self.tz_name = tz_name

    def now(self) -> datetime:
        return now_utc()

    def today_start(self) -> datetime:
        return local_midnight_utc(self.now(), self.tz_name)

    def sleep(self, seconds: float) -> None:
        if seconds > 0:
            time.sleep(seconds)

    def monotonic(self) -> float:
        return time.monotonic()
