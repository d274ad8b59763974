"""
元数据库门面（CatalogStore）
  - 编排层只通过它读写 Asset / AssetVariant / PipelineRun 的同步字段
  - 每个方法一个短 session、自己提交，可以被对账的 worker 线程并发调用
  - 返回的 ORM 对象已脱离 session（expire_on_commit=False），只读使用
"""
from __future__ import annotations
import logging
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, List, Optional, Sequence, Tuple

from sqlalchemy.orm import Session, sessionmaker

from catalog_sync.db.model import Asset, AssetVariant, PipelineRun
from catalog_sync.db.session import SessionLocal, session_scope
from catalog_sync.repository import asset_repo, run_repo

logger = logging.getLogger(__name__)


class CatalogStore:

    def __init__(self, session_factory: Optional[sessionmaker[Session]] = None, *, id_chunk: int = 200) -> None:
        self._factory = session_factory or SessionLocal
        self.id_chunk = id_chunk


    # ---------- assets ----------
    def pending_by_artist(self, limit: int, offset: int = 0) -> List[Asset]:
        with session_scope(self._factory) as db:
            return asset_repo.list_pending_by_artist(db, limit, offset)

    def pending_page(self, *, limit: int, offset: int = 0) -> List[Asset]:
        with session_scope(self._factory) as db:
            return asset_repo.list_pending_page(db, limit=limit, offset=offset)

    def variant_counts(self, asset_ids: Sequence[str]) -> Dict[str, int]:
        with session_scope(self._factory) as db:
            return asset_repo.count_variants_by_asset(db, asset_ids, self.id_chunk)

    def variants_of(self, asset_id: str) -> List[AssetVariant]:
        with session_scope(self._factory) as db:
            return asset_repo.load_variants(db, asset_id)

    def variants_for(self, asset_ids: Sequence[str]) -> Dict[str, List[AssetVariant]]:
        with session_scope(self._factory) as db:
            return asset_repo.load_variants_for_assets(db, asset_ids, self.id_chunk)

    def resolve_drive_file_ids(self, drive_file_ids: Sequence[str]) -> Dict[str, str]:
        with session_scope(self._factory) as db:
            return asset_repo.resolve_ids_by_drive_file_ids(db, drive_file_ids, self.id_chunk)

    def sync_keys(self, asset_ids: Sequence[str]) -> Dict[str, Tuple[str, Optional[str]]]:
        with session_scope(self._factory) as db:
            return asset_repo.sync_keys_by_asset_ids(db, asset_ids, self.id_chunk)

    def artists_of(self, asset_ids: Sequence[str]) -> Dict[str, Optional[str]]:
        with session_scope(self._factory) as db:
            return asset_repo.artists_by_asset_ids(db, asset_ids, self.id_chunk)

    def synced_with_product(self, *, limit: int, offset: int = 0) -> List[Asset]:
        with session_scope(self._factory) as db:
            return asset_repo.list_synced_with_product(db, limit=limit, offset=offset)

    def mark_error(self, asset_id: str, message: str) -> None:
        with session_scope(self._factory) as db:
            asset_repo.mark_error(db, asset_id, message)
            db.commit()

    def commit_mapping(
        self,
        asset_id: str,
        *,
        product_id: int,
        product_gid: str,
        variant_rows: Sequence[Tuple[str, int, str, Decimal]],
        now: datetime,
    ) -> bool:
        with session_scope(self._factory) as db:
            changed = asset_repo.apply_product_mapping(
                db, asset_id,
                product_id=product_id, product_gid=product_gid,
                variant_rows=variant_rows, now=now,
            )
            db.commit()
            return changed

    def reset_by_drive_file_ids(self, drive_file_ids: Sequence[str]) -> int:
        total = 0
        ids = list(drive_file_ids)
        for i in range(0, len(ids), self.id_chunk):
            with session_scope(self._factory) as db:
                total += asset_repo.reset_shopify_by_drive_file_ids(db, ids[i:i + self.id_chunk])
                db.commit()
        return total

    def clear_stale_product(self, asset_id: str) -> None:
        with session_scope(self._factory) as db:
            asset_repo.clear_stale_product(db, asset_id)
            db.commit()

    def reset_errors(self) -> int:
        with session_scope(self._factory) as db:
            n = asset_repo.reset_errors(db)
            db.commit()
            return n

    def queue_counts(self, today_start: datetime) -> Dict[str, int]:
        with session_scope(self._factory) as db:
            counts = asset_repo.count_by_status(db)
            counts["synced_today"] = asset_repo.count_synced_since(db, today_start)
            counts["variants_today"] = asset_repo.count_variants_synced_since(db, today_start)
            return counts

    def variants_synced_since(self, since: datetime) -> int:
        with session_scope(self._factory) as db:
            return asset_repo.count_variants_synced_since(db, since)


    # ---------- runs ----------
    def start_run(self, run_type: str, *, total_items: int = 0, meta: Optional[Dict[str, Any]] = None) -> str:
        with session_scope(self._factory) as db:
            run = run_repo.create_run(db, run_type, total_items=total_items, meta=meta)
            db.commit()
            return run.id

    def update_run(self, run_id: str, **fields: Any) -> None:
        with session_scope(self._factory) as db:
            run_repo.update_run(db, run_id, **fields)
            db.commit()

    def bump_run(self, run_id: str, *, processed: int = 0, errors: int = 0) -> None:
        with session_scope(self._factory) as db:
            run_repo.increment_run_counters(db, run_id, processed=processed, errors=errors)
            db.commit()

    def merge_run_meta(self, run_id: str, patch: Dict[str, Any]) -> None:
        with session_scope(self._factory) as db:
            run_repo.merge_run_meta(db, run_id, patch)
            db.commit()

    def get_run(self, run_id: str) -> Optional[PipelineRun]:
        with session_scope(self._factory) as db:
            return run_repo.get_run(db, run_id)

    def batch_file_for_operation(self, run_type: str, bulk_id: str) -> Optional[str]:
        with session_scope(self._factory) as db:
            return run_repo.find_batch_file(db, run_type, bulk_id)
