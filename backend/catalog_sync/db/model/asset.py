from __future__ import annotations
from decimal import Decimal
import uuid
from typing import Optional, List
from datetime import datetime

from sqlalchemy import (
    BigInteger, DateTime, String, Integer, Index, func, Numeric, ForeignKey, Text, JSON
)
from sqlalchemy.orm import Mapped, mapped_column
from catalog_sync.db.base import Base


# shopify_status 取值
SHOPIFY_PENDING = "pending"
SHOPIFY_SYNCED = "synced"
SHOPIFY_ERROR = "error"

# 可进入同步队列的 ingestion_status
SYNCABLE_INGESTION = ("tagged", "analyzed", "ready")


def _uuid_str() -> str:
    return str(uuid.uuid4())


"""
  作品表：一张图 = 一个 asset
    - 描述性字段（title/style/ai_tags...）由上游打标流程写入，这里只读
    - shopify_* 字段归同步引擎所有
"""
class Asset(Base):

    __tablename__ = "assets"

    id:            Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid_str)
    drive_file_id: Mapped[str] = mapped_column(String(255), unique=True, nullable=False)   # 外部稳定 id
    filename:      Mapped[str] = mapped_column(String(512), nullable=False)

    # 尺寸 / 画幅
    width_px:            Mapped[Optional[int]]     = mapped_column(Integer)
    height_px:           Mapped[Optional[int]]     = mapped_column(Integer)
    aspect_ratio:        Mapped[Optional[Decimal]] = mapped_column(Numeric(8, 4))
    ratio_class:         Mapped[Optional[str]]     = mapped_column(String(64), index=True)
    max_print_width_cm:  Mapped[Optional[Decimal]] = mapped_column(Numeric(8, 2))
    max_print_height_cm: Mapped[Optional[Decimal]] = mapped_column(Numeric(8, 2))
    quality_tier:        Mapped[Optional[str]]     = mapped_column(String(32))

    # 描述性元数据（只读输入）
    title:       Mapped[Optional[str]] = mapped_column(Text)
    description: Mapped[Optional[str]] = mapped_column(Text)
    artist:      Mapped[Optional[str]] = mapped_column(String(255), index=True)
    style:       Mapped[Optional[str]] = mapped_column(String(255))
    era:         Mapped[Optional[str]] = mapped_column(String(255))
    palette:     Mapped[Optional[str]] = mapped_column(String(255))
    mood:        Mapped[Optional[str]] = mapped_column(String(255))
    subject:     Mapped[Optional[str]] = mapped_column(String(255))
    ai_tags:     Mapped[List[str]]     = mapped_column(JSON, nullable=False, default=list)

    # Shopify 同步状态
    shopify_product_id:  Mapped[Optional[int]]      = mapped_column(BigInteger)
    shopify_product_gid: Mapped[Optional[str]]      = mapped_column(String(255))
    shopify_status:      Mapped[str]                = mapped_column(String(32), nullable=False, default=SHOPIFY_PENDING)
    shopify_synced_at:   Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=False))

    ingestion_status: Mapped[str]           = mapped_column(String(32), nullable=False, default="pending")
    ingestion_error:  Mapped[Optional[str]] = mapped_column(Text)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), server_default=func.now(), nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), server_default=func.now(), onupdate=func.now(), nullable=False)

    __table_args__ = (
        Index("ix_assets_shopify_status_ingestion", "shopify_status", "ingestion_status"),
        Index("ix_assets_shopify_synced_at", "shopify_synced_at"),
    )



"""
  作品可售尺寸：width_cm 升序 = 推送到 Shopify 的变体顺序
"""
class AssetVariant(Base):

    __tablename__ = "asset_variants"

    id:        Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid_str)
    asset_id:  Mapped[str] = mapped_column(String(36), ForeignKey("assets.id", ondelete="CASCADE"), index=True, nullable=False)
    label:     Mapped[str] = mapped_column(String(64), nullable=False)
    width_cm:  Mapped[Decimal] = mapped_column(Numeric(8, 2), nullable=False)
    height_cm: Mapped[Decimal] = mapped_column(Numeric(8, 2), nullable=False)
    quality_grade: Mapped[Optional[str]] = mapped_column(String(32))

    base_price:          Mapped[Optional[Decimal]] = mapped_column(Numeric(10, 2))
    shopify_variant_id:  Mapped[Optional[int]]     = mapped_column(BigInteger)
    shopify_variant_gid: Mapped[Optional[str]]     = mapped_column(String(255))

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), server_default=func.now(), nullable=False)
