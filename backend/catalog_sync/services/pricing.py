"""
定价 & 包装规则（纯函数）
  area = width_cm × height_cm
    ≤ 600   → 29.99 / 39.99
    ≤ 1800  → 49.99 / 64.99
    ≤ 4000  → 79.99 / 99.99
    > 4000  → 119.99 / 149.99
  weight(g) = round(area × 0.15 + 50)
"""
from __future__ import annotations

import re
from dataclasses import dataclass
from decimal import Decimal, ROUND_HALF_UP
from typing import Any, Optional, Tuple


@dataclass(frozen=True)
class PriceTier:
    max_area: Optional[Decimal]     # None = 无上限
    price: Decimal
    compare_at: Decimal


@dataclass(frozen=True)
class VariantPricing:
    price: Decimal
    compare_at: Decimal
    weight_grams: int
    sku: str


PRICE_TIERS: Tuple[PriceTier, ...] = (
    PriceTier(Decimal("600"), Decimal("29.99"), Decimal("39.99")),
    PriceTier(Decimal("1800"), Decimal("49.99"), Decimal("64.99")),
    PriceTier(Decimal("4000"), Decimal("79.99"), Decimal("99.99")),
    PriceTier(None, Decimal("119.99"), Decimal("149.99")),
)

WEIGHT_PER_CM2 = Decimal("0.15")
WEIGHT_BASE_GRAMS = Decimal("50")
SKU_PREFIX = "NP"

_NON_ALNUM = re.compile(r"[^a-z0-9]")


def to_decimal(value: Any) -> Decimal:
    if isinstance(value, Decimal):
        return value
    return Decimal(str(value))


def round_half_up(value: Decimal) -> int:
    # 与前端/历史数据一致：0.5 进位（不是银行家舍入）
    return int(value.quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def area_cm2(width_cm: Any, height_cm: Any) -> Decimal:
    return to_decimal(width_cm) * to_decimal(height_cm)


def price_tier(width_cm: Any, height_cm: Any) -> PriceTier:
    area = area_cm2(width_cm, height_cm)
    for tier in PRICE_TIERS:
        if tier.max_area is None or area <= tier.max_area:
            return tier
    return PRICE_TIERS[-1]


def weight_grams(width_cm: Any, height_cm: Any) -> int:
    return round_half_up(area_cm2(width_cm, height_cm) * WEIGHT_PER_CM2 + WEIGHT_BASE_GRAMS)


def sku_for(asset_id: Any, label: Optional[str]) -> str:
    """NP-<asset id 前 8 位>-<label 小写去掉非字母数字>；同一 (asset, label) 永远同一个 SKU。"""
    suffix = _NON_ALNUM.sub("", (label or "std").lower())
    return f"{SKU_PREFIX}-{str(asset_id)[:8]}-{suffix}"


def variant_pricing(asset_id: Any, label: Optional[str], width_cm: Any, height_cm: Any) -> VariantPricing:
    tier = price_tier(width_cm, height_cm)
    return VariantPricing(
        price=tier.price,
        compare_at=tier.compare_at,
        weight_grams=weight_grams(width_cm, height_cm),
        sku=sku_for(asset_id, label),
    )
