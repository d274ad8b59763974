"""
远端结果 → 本地映射的写回规则（逐个同步和 Bulk 对账共用）
  1) asset: product id/gid、status=synced、synced_at=now、ingestion_status=ready
  2) 本地变体按 width_cm 升序，与远端 variants[0..min(本地, 远端)) 按位置配对，
     写 variant id/gid 和 base_price（= 定价规则算出的售价）
  同一映射重复写是 no-op（返回 False）。
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Sequence

from catalog_sync.integrations.shopify.payload_utils import (
    gid_to_id, is_variant_gid, product_gid, variant_gid,
)
from catalog_sync.services.projector import price_of

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RemoteVariant:
    gid: str
    id: int
    sku: Optional[str] = None


@dataclass(frozen=True)
class RemoteProduct:
    gid: str
    id: int
    variants: Sequence[RemoteVariant] = ()


def remote_variant(node: Dict[str, Any]) -> Optional[RemoteVariant]:
    raw = node.get("id")
    if raw is None:
        return None
    if isinstance(raw, str) and is_variant_gid(raw):
        num = gid_to_id(raw)
        gid = raw
    else:
        num = int(raw)
        gid = variant_gid(num)
    if num is None:
        return None
    return RemoteVariant(gid=gid, id=int(num), sku=node.get("sku"))


def from_rest_product(node: Dict[str, Any]) -> RemoteProduct:
    """POST /products.json 的响应：数字 id，gid 由我们拼。"""
    pid = int(node["id"])
    variants = [rv for rv in (remote_variant(v) for v in node.get("variants") or []) if rv is not None]
    return RemoteProduct(gid=node.get("admin_graphql_api_id") or product_gid(pid), id=pid, variants=tuple(variants))


def apply_remote_product(ctx, asset_id: str, remote: RemoteProduct) -> bool:
    local = ctx.store.variants_of(asset_id)
    paired = min(len(local), len(remote.variants))
    if len(local) != len(remote.variants):
        logger.warning(
            "mapping.variant_count_mismatch asset=%s local=%s remote=%s",
            asset_id, len(local), len(remote.variants),
        )
    rows: List[tuple] = []
    for i in range(paired):
        v = local[i]
        rv = remote.variants[i]
        rows.append((v.id, rv.id, rv.gid, price_of(asset_id, v)))

    return ctx.store.commit_mapping(
        asset_id,
        product_id=remote.id,
        product_gid=remote.gid,
        variant_rows=rows,
        now=ctx.clock.now(),
    )
