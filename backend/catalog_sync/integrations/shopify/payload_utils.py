from __future__ import annotations

from typing import Any, Optional, Tuple


PRODUCT_GID_PREFIX = "gid://shopify/Product/"
VARIANT_GID_PREFIX = "gid://shopify/ProductVariant/"


def gid_to_id(gid: Any) -> Optional[int]:
    """gid://shopify/Product/123 → 123；纯数字也接受。"""
    if gid is None:
        return None
    tail = str(gid).rstrip("/").rsplit("/", 1)[-1]
    tail = tail.split("?", 1)[0]
    try:
        return int(tail)
    except ValueError:
        return None


def product_gid(product_id: Any) -> str:
    return f"{PRODUCT_GID_PREFIX}{product_id}"


def variant_gid(variant_id: Any) -> str:
    return f"{VARIANT_GID_PREFIX}{variant_id}"


def is_variant_gid(value: Any) -> bool:
    return isinstance(value, str) and "/ProductVariant/" in value


def parse_call_limit(header: Optional[str]) -> Optional[Tuple[int, int]]:
    """X-Shopify-Shop-Api-Call-Limit: "used/max" → (used, max)。"""
    if not header or "/" not in header:
        return None
    used_s, max_s = header.split("/", 1)
    try:
        return int(used_s.strip()), int(max_s.strip())
    except ValueError:
        return None
