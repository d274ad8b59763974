from __future__ import annotations
import logging
from datetime import datetime
from decimal import Decimal
from typing import Dict, Iterable, List, Optional, Sequence, Tuple

from sqlalchemy import select, func, update
from sqlalchemy.orm import Session

from catalog_sync.db.model import (
    Asset, AssetVariant,
    SHOPIFY_PENDING, SHOPIFY_SYNCED, SHOPIFY_ERROR, SYNCABLE_INGESTION,
)

logger = logging.getLogger(__name__)

ERROR_MESSAGE_MAX = 500


def _chunks(items: Sequence, size: int) -> Iterable[Sequence]:
    for i in range(0, len(items), size):
        yield items[i:i + size]


def _pending_filter(stmt):
    return stmt.where(
        Asset.shopify_status == SHOPIFY_PENDING,
        Asset.ingestion_status.in_(SYNCABLE_INGESTION),
    )


# ---------- 读：待同步队列 ----------

def list_pending_by_artist(db: Session, limit: int, offset: int = 0) -> List[Asset]:
    """逐个同步用：按 artist、created_at 排序，便于同一艺术家的合集一次处理。"""
    stmt = _pending_filter(select(Asset)).order_by(
        Asset.artist.asc(), Asset.created_at.asc(), Asset.id.asc()
    ).offset(offset).limit(limit)
    return list(db.scalars(stmt))


def list_pending_page(db: Session, *, limit: int, offset: int = 0) -> List[Asset]:
    """Bulk 用：created_at 升序、id 兜底，保证 JSONL 行号与查询顺序一致。"""
    stmt = _pending_filter(select(Asset)).order_by(
        Asset.created_at.asc(), Asset.id.asc()
    ).offset(offset).limit(limit)
    return list(db.scalars(stmt))


def count_variants_by_asset(db: Session, asset_ids: Sequence[str], chunk_size: int = 200) -> Dict[str, int]:
    counts: Dict[str, int] = {}
    for chunk in _chunks(list(asset_ids), chunk_size):
        stmt = (
            select(AssetVariant.asset_id, func.count(AssetVariant.id))
            .where(AssetVariant.asset_id.in_(chunk))
            .group_by(AssetVariant.asset_id)
        )
        for asset_id, n in db.execute(stmt):
            counts[asset_id] = int(n)
    return counts


def load_variants(db: Session, asset_id: str) -> List[AssetVariant]:
    stmt = (
        select(AssetVariant)
        .where(AssetVariant.asset_id == asset_id)
        .order_by(AssetVariant.width_cm.asc(), AssetVariant.id.asc())
    )
    return list(db.scalars(stmt))


def load_variants_for_assets(
    db: Session, asset_ids: Sequence[str], chunk_size: int = 200
) -> Dict[str, List[AssetVariant]]:
    """按 ≤chunk_size 个 asset_id 一批查询，按 asset_id 分组，组内 width_cm 升序。"""
    grouped: Dict[str, List[AssetVariant]] = {}
    for chunk in _chunks(list(asset_ids), chunk_size):
        stmt = (
            select(AssetVariant)
            .where(AssetVariant.asset_id.in_(chunk))
            .order_by(AssetVariant.asset_id, AssetVariant.width_cm.asc(), AssetVariant.id.asc())
        )
        for v in db.scalars(stmt):
            grouped.setdefault(v.asset_id, []).append(v)
    return grouped


def resolve_ids_by_drive_file_ids(
    db: Session, drive_file_ids: Sequence[str], chunk_size: int = 200
) -> Dict[str, str]:
    """drive_file_id → 当前 asset.id"""
    out: Dict[str, str] = {}
    for chunk in _chunks(list(drive_file_ids), chunk_size):
        stmt = select(Asset.drive_file_id, Asset.id).where(Asset.drive_file_id.in_(chunk))
        for drive_id, asset_id in db.execute(stmt):
            out[drive_id] = asset_id
    return out


def sync_keys_by_asset_ids(
    db: Session, asset_ids: Sequence[str], chunk_size: int = 200
) -> Dict[str, Tuple[str, Optional[str]]]:
    """asset.id → (drive_file_id, 当前 shopify_product_gid)"""
    out: Dict[str, Tuple[str, Optional[str]]] = {}
    for chunk in _chunks(list(asset_ids), chunk_size):
        stmt = select(Asset.id, Asset.drive_file_id, Asset.shopify_product_gid).where(Asset.id.in_(chunk))
        for asset_id, drive_id, gid in db.execute(stmt):
            out[asset_id] = (drive_id, gid)
    return out


def artists_by_asset_ids(
    db: Session, asset_ids: Sequence[str], chunk_size: int = 200
) -> Dict[str, Optional[str]]:
    out: Dict[str, Optional[str]] = {}
    for chunk in _chunks(list(asset_ids), chunk_size):
        for asset_id, artist in db.execute(select(Asset.id, Asset.artist).where(Asset.id.in_(chunk))):
            out[asset_id] = artist
    return out


def list_synced_with_product(db: Session, *, limit: int, offset: int = 0) -> List[Asset]:
    stmt = (
        select(Asset)
        .where(Asset.shopify_status == SHOPIFY_SYNCED, Asset.shopify_product_id.is_not(None))
        .order_by(Asset.created_at.asc(), Asset.id.asc())
        .offset(offset)
        .limit(limit)
    )
    return list(db.scalars(stmt))


# ---------- 写：同步状态 ----------

def mark_error(db: Session, asset_id: str, message: str) -> None:
    db.execute(
        update(Asset)
        .where(Asset.id == asset_id)
        .values(shopify_status=SHOPIFY_ERROR, ingestion_error=(message or "")[:ERROR_MESSAGE_MAX])
    )


def apply_product_mapping(
    db: Session,
    asset_id: str,
    *,
    product_id: int,
    product_gid: str,
    variant_rows: Sequence[Tuple[str, int, str, Decimal]],
    now: datetime,
) -> bool:
    """
    写回 product/variant id（一次事务内）：
      - asset: product id/gid, status=synced, synced_at, ingestion_status=ready
      - variant_rows: (variant.id, shopify_variant_id, shopify_variant_gid, base_price)
    已经是同一映射时不写，返回 False（重复对账不改动任何字段）。
    """
    asset = db.get(Asset, asset_id)
    if asset is None:
        raise LookupError(f"asset not found: {asset_id}")

    current = {
        v.id: (v.shopify_variant_id, v.shopify_variant_gid)
        for v in db.scalars(select(AssetVariant).where(AssetVariant.asset_id == asset_id))
    }
    unchanged = (
        asset.shopify_status == SHOPIFY_SYNCED
        and asset.shopify_product_id == product_id
        and asset.shopify_product_gid == product_gid
        and all(current.get(vid) == (var_id, var_gid) for vid, var_id, var_gid, _ in variant_rows)
    )
    if unchanged:
        return False

    asset.shopify_product_id = product_id
    asset.shopify_product_gid = product_gid
    asset.shopify_status = SHOPIFY_SYNCED
    asset.shopify_synced_at = now
    asset.ingestion_status = "ready"    # 只和 synced 一起写
    asset.ingestion_error = None

    for vid, var_id, var_gid, price in variant_rows:
        db.execute(
            update(AssetVariant)
            .where(AssetVariant.id == vid)
            .values(shopify_variant_id=var_id, shopify_variant_gid=var_gid, base_price=price)
        )
    return True


def reset_shopify_by_drive_file_ids(db: Session, drive_file_ids: Sequence[str]) -> int:
    """漂移修复前先清掉这些 asset 上已有的 shopify_* 映射（含变体 id）。"""
    if not drive_file_ids:
        return 0
    asset_ids = list(db.scalars(select(Asset.id).where(Asset.drive_file_id.in_(drive_file_ids))))
    res = db.execute(
        update(Asset)
        .where(Asset.drive_file_id.in_(drive_file_ids))
        .values(
            shopify_product_id=None,
            shopify_product_gid=None,
            shopify_status=SHOPIFY_PENDING,
            shopify_synced_at=None,
        )
    )
    if asset_ids:
        db.execute(
            update(AssetVariant)
            .where(AssetVariant.asset_id.in_(asset_ids))
            .values(shopify_variant_id=None, shopify_variant_gid=None)
        )
    return int(res.rowcount or 0)


def clear_stale_product(db: Session, asset_id: str) -> None:
    """远端 404：本地 id 作废，回到 pending 等下次重新同步。"""
    db.execute(
        update(Asset)
        .where(Asset.id == asset_id)
        .values(
            shopify_product_id=None,
            shopify_product_gid=None,
            shopify_status=SHOPIFY_PENDING,
            shopify_synced_at=None,
        )
    )
    db.execute(
        update(AssetVariant)
        .where(AssetVariant.asset_id == asset_id)
        .values(shopify_variant_id=None, shopify_variant_gid=None)
    )


def reset_errors(db: Session) -> int:
    res = db.execute(
        update(Asset)
        .where(Asset.shopify_status == SHOPIFY_ERROR)
        .values(
            shopify_status=SHOPIFY_PENDING,
            ingestion_error=None,
            shopify_product_id=None,
            shopify_product_gid=None,
            shopify_synced_at=None,
        )
    )
    return int(res.rowcount or 0)


# ---------- 统计 ----------

def count_by_status(db: Session) -> Dict[str, int]:
    counts = {SHOPIFY_PENDING: 0, SHOPIFY_SYNCED: 0, SHOPIFY_ERROR: 0}
    stmt = select(Asset.shopify_status, func.count(Asset.id)).group_by(Asset.shopify_status)
    for status, n in db.execute(stmt):
        if status in counts:
            counts[status] = int(n)
    return counts


def count_synced_since(db: Session, since: datetime) -> int:
    stmt = select(func.count(Asset.id)).where(
        Asset.shopify_status == SHOPIFY_SYNCED, Asset.shopify_synced_at >= since
    )
    return int(db.scalar(stmt) or 0)


def count_variants_synced_since(db: Session, since: datetime) -> int:
    """今天新建的变体数 ≈ 今天同步成功的 asset 的变体总数。"""
    stmt = (
        select(func.count(AssetVariant.id))
        .join(Asset, Asset.id == AssetVariant.asset_id)
        .where(Asset.shopify_status == SHOPIFY_SYNCED, Asset.shopify_synced_at >= since)
    )
    return int(db.scalar(stmt) or 0)


