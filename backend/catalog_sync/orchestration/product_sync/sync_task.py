from __future__ import annotations
import logging
from collections import defaultdict
from dataclasses import asdict, dataclass, field
from typing import Any, Dict, List, Optional, Tuple

from celery import shared_task

from catalog_sync.db.model import RUN_COMPLETED, RUN_COMPLETED_WITH_ERRORS, RUN_FAILED
from catalog_sync.integrations.shopify.errors import ShopifyError, ShopifyUserInputError
from catalog_sync.orchestration.context import Context, build_context
from catalog_sync.orchestration.mapping import apply_remote_product, from_rest_product
from catalog_sync.orchestration.quota import load_quota, take_within_budget
from catalog_sync.services.collections import ensure_artist_collections, ensure_smart_collections
from catalog_sync.services.projector import project


logger = logging.getLogger(__name__)

RUN_TYPE = "shopify_sync"


@dataclass
class SyncReport:
    run_id: str
    status: str = RUN_COMPLETED
    selected: int = 0
    synced: int = 0
    errors: int = 0
    skipped: int = 0
    stopped_on_quota: bool = False
    collections: Dict[str, Any] = field(default_factory=dict)


"""
    Celery 入口：worker 里按当前环境配置建 Context 后执行。
"""
@shared_task(name="catalog_sync.product_sync.run_sync")
def run_sync_task(limit: Optional[int] = None, active: bool = False, collections: bool = False) -> Dict[str, Any]:
    ctx = build_context()
    report = run_product_sync(ctx, limit=limit, active=active, collections=collections)
    return asdict(report)



# ========================== 逐个同步 ==========================
"""
逐个创建商品（单线程，按 artist 排序）
    1) 建 run 记录；按剩余日额度预选 pending asset
    2) 逐个：投影 → POST /products.json → 写回映射；间隔 SYNC_PACER_MS
    3) 422 且提到 variant = 当天额度用完：当前 asset 保持 pending，整批停止
    4) 其它终态错误：asset 标记 error（前 500 字），继续下一个
    5) 可选：维护智能合集 + 艺术家合集
"""
def run_product_sync(
    ctx: Context,
    *,
    limit: Optional[int] = None,
    active: bool = False,
    collections: bool = False,
) -> SyncReport:

    cfg = ctx.settings
    limit = limit or cfg.SYNC_DEFAULT_LIMIT
    status_flag = "ACTIVE" if active else "DRAFT"

    run_id = ctx.store.start_run(RUN_TYPE, meta={"limit": limit, "active": active, "collections": collections})
    report = SyncReport(run_id=run_id)
    logger.info("sync.start run=%s limit=%s status=%s", run_id, limit, status_flag)

    try:
        # 1. 额度预检：变体累计数不超过今天剩余额度
        quota = load_quota(ctx)
        pending, counts, report.skipped = _pending_with_variants(ctx, limit)
        selected, planned_variants = take_within_budget(pending, counts, quota.remaining)
        report.selected = len(selected)
        ctx.store.update_run(run_id, total_items=len(selected))
        ctx.store.merge_run_meta(run_id, {
            "pending_seen": len(pending),
            "skipped_no_variants": report.skipped,
            "planned_variants": planned_variants,
            "quota_remaining": quota.remaining,
        })
        if len(selected) < len(pending):
            logger.warning(
                "sync.quota_trim run=%s pending=%s selected=%s remaining=%s",
                run_id, len(pending), len(selected), quota.remaining,
            )

        # 2. 逐个创建
        artist_products: Dict[str, List[int]] = defaultdict(list)
        pacer_s = cfg.SYNC_PACER_MS / 1000.0

        for i, asset in enumerate(selected):
            if ctx.cancelled:
                logger.warning("sync.cancelled run=%s at=%s", run_id, i)
                break
            if i > 0 and pacer_s > 0:
                ctx.clock.sleep(pacer_s)
            ctx.wait_for_cooldown()

            variants = ctx.store.variants_of(asset.id)
            product = project(asset, variants, status=status_flag)
            if product is None:
                report.skipped += 1
                logger.info("sync.skip_no_variants asset=%s", asset.id)
                continue

            try:
                node = ctx.client.create_product(product.to_rest_product())
            except ShopifyUserInputError as e:
                if e.is_variant_quota():
                    # 当前 asset 不动（仍是 pending），明天再来
                    report.stopped_on_quota = True
                    logger.warning("sync.variant_quota_hit run=%s asset=%s err=%s", run_id, asset.id, e)
                    break
                _record_error(ctx, run_id, asset.id, e, report)
                continue
            except ShopifyError as e:
                _record_error(ctx, run_id, asset.id, e, report)
                continue

            remote = from_rest_product(node)
            apply_remote_product(ctx, asset.id, remote)
            report.synced += 1
            ctx.store.bump_run(run_id, processed=1)
            if asset.artist:
                artist_products[asset.artist].append(remote.id)
            logger.info(
                "sync.created asset=%s product=%s variants=%s",
                asset.id, remote.id, len(remote.variants),
            )

        # 3. 合集
        if collections:
            report.collections = _sync_collections(ctx, artist_products)

        report.status = (
            RUN_COMPLETED_WITH_ERRORS if (report.errors or report.stopped_on_quota) else RUN_COMPLETED
        )
        ctx.store.update_run(run_id, status=report.status)
        ctx.store.merge_run_meta(run_id, {
            "synced": report.synced,
            "skipped": report.skipped,
            "stopped_on_quota": report.stopped_on_quota,
        })
        logger.info(
            "sync.done run=%s status=%s synced=%s errors=%s skipped=%s quota_stop=%s",
            run_id, report.status, report.synced, report.errors, report.skipped, report.stopped_on_quota,
        )
        return report

    except Exception:
        logger.exception("sync.failed run=%s", run_id)
        ctx.store.update_run(run_id, status=RUN_FAILED)
        raise


def _pending_with_variants(ctx: Context, limit: int) -> Tuple[List[Any], Dict[str, int], int]:
    """
    按 artist 顺序取前 limit 个有变体的 pending asset，返回 (assets, 变体数, 跳过数)。
    0 变体的 asset 不占 limit（它们仍是 pending），继续翻页越过它们。
    """
    page_size = min(ctx.settings.BULK_PAGE_SIZE, 1000)
    picked: List[Any] = []
    counts: Dict[str, int] = {}
    skipped = 0
    offset = 0
    while len(picked) < limit:
        page = ctx.store.pending_by_artist(page_size, offset)
        offset += len(page)
        page_counts = ctx.store.variant_counts([a.id for a in page]) if page else {}
        for asset in page:
            n = int(page_counts.get(asset.id, 0))
            if n == 0:
                skipped += 1
                logger.info("sync.skip_no_variants asset=%s", asset.id)
                continue
            picked.append(asset)
            counts[asset.id] = n
            if len(picked) >= limit:
                break
        if len(page) < page_size:
            break
    return picked, counts, skipped


def _record_error(ctx: Context, run_id: str, asset_id: str, err: Exception, report: SyncReport) -> None:
    msg = str(err)
    ctx.store.mark_error(asset_id, msg)
    ctx.store.bump_run(run_id, processed=1, errors=1)
    report.errors += 1
    logger.warning("sync.asset_error asset=%s err=%s", asset_id, msg[:300])


def _sync_collections(ctx: Context, artist_products: Dict[str, List[int]]) -> Dict[str, Any]:
    pacer_s = ctx.settings.COLLECTION_PACER_MS / 1000.0
    created = ensure_smart_collections(ctx.client)
    added = ensure_artist_collections(
        ctx.client,
        artist_products,
        pacer=(lambda: ctx.clock.sleep(pacer_s)) if pacer_s > 0 else None,
    )
    return {"smart_created": created, "artist_added": added}
