"""
push-tags：把已同步商品的标签按当前投影规则重推一遍（PUT /products/{id}.json）
  远端 404 = 本地 id 已失效：清掉 product/variant id，asset 回到 pending，下次同步重建
"""
from __future__ import annotations
import logging
from dataclasses import dataclass
from typing import List, Optional

from catalog_sync.db.model import RUN_COMPLETED, RUN_COMPLETED_WITH_ERRORS, RUN_FAILED
from catalog_sync.integrations.shopify.errors import ShopifyError, ShopifyNotFoundError
from catalog_sync.orchestration.context import Context
from catalog_sync.services.projector import tags_for

logger = logging.getLogger(__name__)

RUN_TYPE = "shopify_push_tags"
PAGE_SIZE = 1000


@dataclass
class TagPushReport:
    run_id: str
    status: str = RUN_COMPLETED
    updated: int = 0
    stale: int = 0
    errors: int = 0


def push_tags(ctx: Context, *, limit: Optional[int] = None) -> TagPushReport:
    run_id = ctx.store.start_run(RUN_TYPE, meta={"limit": limit})
    report = TagPushReport(run_id=run_id)

    try:
        # 先把候选取全：处理过程中 stale 的会离开 synced 集合，边翻页边改会漏行
        assets: List = []
        offset = 0
        while limit is None or len(assets) < limit:
            take = PAGE_SIZE if limit is None else min(PAGE_SIZE, limit - len(assets))
            page = ctx.store.synced_with_product(limit=take, offset=offset)
            if not page:
                break
            assets.extend(page)
            offset += len(page)
            if len(page) < take:
                break
        ctx.store.update_run(run_id, total_items=len(assets))

        pacer_s = ctx.settings.SYNC_PACER_MS / 1000.0
        for i, asset in enumerate(assets):
            if ctx.cancelled:
                break
            if i > 0 and pacer_s > 0:
                ctx.clock.sleep(pacer_s)
            ctx.wait_for_cooldown()

            tags = ", ".join(tags_for(asset))
            try:
                ctx.client.update_product(int(asset.shopify_product_id), {"tags": tags})
            except ShopifyNotFoundError:
                ctx.store.clear_stale_product(asset.id)
                report.stale += 1
                ctx.store.bump_run(run_id, processed=1)
                logger.warning("tags.stale_product asset=%s product=%s", asset.id, asset.shopify_product_id)
                continue
            except ShopifyError as e:
                report.errors += 1
                ctx.store.bump_run(run_id, processed=1, errors=1)
                logger.warning("tags.push_failed asset=%s product=%s err=%s", asset.id, asset.shopify_product_id, e)
                continue
            report.updated += 1
            ctx.store.bump_run(run_id, processed=1)

        report.status = RUN_COMPLETED_WITH_ERRORS if report.errors else RUN_COMPLETED
        ctx.store.update_run(run_id, status=report.status)
        ctx.store.merge_run_meta(run_id, {"updated": report.updated, "stale": report.stale})
        logger.info(
            "tags.done run=%s updated=%s stale=%s errors=%s",
            run_id, report.updated, report.stale, report.errors,
        )
        return report

    except Exception:
        logger.exception("tags.failed run=%s", run_id)
        ctx.store.update_run(run_id, status=RUN_FAILED)
        raise
