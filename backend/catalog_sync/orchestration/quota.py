"""
每日新增变体额度（软上限，默认 900）
  今天已用 = 今天（本地日历日）同步成功的 asset 的变体总数
  剩余     = daily_limit - 今天已用
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Dict, List, Sequence, Tuple, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass
class DailyQuota:
    limit: int
    used_today: int

    @property
    def remaining(self) -> int:
        return max(0, self.limit - self.used_today)

    @property
    def exhausted(self) -> bool:
        return self.remaining <= 0


def load_quota(ctx) -> DailyQuota:
    used = ctx.store.variants_synced_since(ctx.clock.today_start())
    quota = DailyQuota(limit=ctx.daily_limit, used_today=used)
    logger.info("quota.loaded limit=%s used_today=%s remaining=%s", quota.limit, used, quota.remaining)
    return quota


def take_within_budget(
    items: Sequence[T],
    variant_counts: Dict[str, int],
    budget: int,
    *,
    key=lambda item: item.id,
) -> Tuple[List[T], int]:
    """
    按原顺序挑选，变体累计数一旦会超过 budget 就停（后面的不再看，保证顺序）。
    0 变体的 asset 不占额度，照常保留（投影时会被跳过）。
    返回 (选中的, 变体总数)
    """
    selected: List[T] = []
    total = 0
    for item in items:
        n = int(variant_counts.get(key(item), 0))
        if total + n > budget:
            break
        selected.append(item)
        total += n
    return selected, total
