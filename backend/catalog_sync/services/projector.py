"""
Asset + 有序变体 → ProductInput（纯函数，同输入同输出）
  - 没有变体的 asset 返回 None（跳过，不算错误）
  - 变体顺序 = 输入顺序（width_cm 升序）
  - 逐个同步 / Bulk 两种模式都走这里，SKU、价格、metafield 完全一致
"""
from __future__ import annotations

import html
import re
from decimal import Decimal
from typing import Any, Iterable, List, Optional, Sequence, Tuple

from catalog_sync.services.pricing import round_half_up, to_decimal, variant_pricing
from catalog_sync.services.product_input import (
    DRIVE_FILE_ID_KEY, Metafield, ProductInput, VariantInput,
)


DEFAULT_VENDOR = "Neverland Prints"
PRODUCT_TYPE = "Art Print"
UNTITLED = "Untitled Print"
SEED_TAGS = ("art print", "fine art", "wall art")
AI_TAG_LIMIT = 10
QUALITY_PARAGRAPH = "<p>Premium fine art print on museum-quality paper.</p>"

_EXT_RE = re.compile(r"\.[^.]+$")
_SIZE_SUFFIX_RE = re.compile(r"_\d+x\d+$", re.IGNORECASE)


# ---------- 小工具 ----------

def _text(value: Any) -> Optional[str]:
    if value is None:
        return None
    s = str(value).strip()
    return s or None


def _num(value: Any) -> str:
    """Decimal/float → 去掉多余 0 的字符串：40.00 → 40，42.50 → 42.5"""
    d = to_decimal(value)
    if d == d.to_integral_value():
        return str(int(d))
    return format(d.normalize(), "f")


def title_for(asset: Any) -> str:
    title = _text(getattr(asset, "title", None))
    if title:
        return title
    filename = _text(getattr(asset, "filename", None))
    if filename:
        stem = _SIZE_SUFFIX_RE.sub("", _EXT_RE.sub("", filename)).strip()
        if stem:
            return stem
    return UNTITLED


def tags_for(asset: Any) -> Tuple[str, ...]:
    """种子标签在前，其余按插入顺序；大小写不敏感去重，保留第一次出现的写法。"""
    quality = "museum grade" if getattr(asset, "quality_tier", None) == "high" else "gallery grade"
    candidates: List[Optional[str]] = [
        *SEED_TAGS,
        _text(getattr(asset, "ratio_class", None)),
        quality,
    ]
    for attr in ("style", "era", "mood", "subject", "palette", "artist"):
        candidates.append(_text(getattr(asset, attr, None)))
    ai_tags = getattr(asset, "ai_tags", None) or []
    candidates.extend(_text(t) for t in list(ai_tags)[:AI_TAG_LIMIT])

    seen = set()
    out: List[str] = []
    for tag in candidates:
        if not tag:
            continue
        key = tag.lower()
        if key in seen:
            continue
        seen.add(key)
        out.append(tag)
    return tuple(out)


def option_label(variant: Any) -> str:
    label = _text(getattr(variant, "label", None)) or "Standard"
    w = round_half_up(to_decimal(variant.width_cm))
    h = round_half_up(to_decimal(variant.height_cm))
    return f"{label} — {w}×{h} cm"


def description_for(asset: Any, variants: Sequence[Any]) -> str:
    parts: List[str] = []
    artist = _text(getattr(asset, "artist", None))
    if artist:
        parts.append(f"<p><strong>Artist:</strong> {html.escape(artist)}</p>")
    parts.append(QUALITY_PARAGRAPH)
    sizes = " | ".join(
        f"{html.escape(_text(v.label) or 'Standard')} — {_num(v.width_cm)}×{_num(v.height_cm)} cm"
        for v in variants
    )
    parts.append(f"<p><strong>Available sizes:</strong> {sizes}</p>")
    return "".join(parts)


def metafields_for(asset: Any) -> Tuple[Metafield, ...]:
    """只输出有值的 metafield（缺失就不出现，不写空字符串）。"""
    out: List[Metafield] = []
    drive_id = _text(getattr(asset, "drive_file_id", None))
    if drive_id:
        out.append(Metafield(DRIVE_FILE_ID_KEY, drive_id))
    for key in ("ratio_class", "quality_tier"):
        value = _text(getattr(asset, key, None))
        if value:
            out.append(Metafield(key, value))
    ratio = getattr(asset, "aspect_ratio", None)
    if ratio is not None:
        out.append(Metafield("aspect_ratio", _num(ratio)))
    w = getattr(asset, "max_print_width_cm", None)
    h = getattr(asset, "max_print_height_cm", None)
    if w is not None and h is not None:
        out.append(Metafield(
            "max_print_cm",
            f"{round_half_up(to_decimal(w))} × {round_half_up(to_decimal(h))}",
        ))
    return tuple(out)


def variant_inputs(asset: Any, variants: Iterable[Any]) -> Tuple[VariantInput, ...]:
    out: List[VariantInput] = []
    for v in variants:
        p = variant_pricing(asset.id, v.label, v.width_cm, v.height_cm)
        out.append(VariantInput(
            option_value=option_label(v),
            price=p.price,
            compare_at_price=p.compare_at,
            sku=p.sku,
            weight_grams=p.weight_grams,
        ))
    return tuple(out)


# ---------- 入口 ----------

def project(asset: Any, variants: Sequence[Any], *, status: str = "ACTIVE") -> Optional[ProductInput]:
    if not variants:
        return None
    return ProductInput(
        title=title_for(asset),
        description_html=description_for(asset, variants),
        vendor=_text(getattr(asset, "artist", None)) or DEFAULT_VENDOR,
        product_type=PRODUCT_TYPE,
        tags=tags_for(asset),
        status=status.upper(),
        variants=variant_inputs(asset, variants),
        metafields=metafields_for(asset),
    )


def price_of(asset_id: Any, variant: Any) -> Decimal:
    """对账写回 base_price 用"""
    return variant_pricing(asset_id, variant.label, variant.width_cm, variant.height_cm).price
