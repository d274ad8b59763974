from decimal import Decimal

from catalog_sync.db.model import (
    RUN_COMPLETED, RUN_COMPLETED_WITH_ERRORS, SHOPIFY_ERROR, SHOPIFY_PENDING, SHOPIFY_SYNCED,
)
from catalog_sync.orchestration.product_sync.sync_task import run_product_sync
from catalog_sync.services.collections import SMART_COLLECTIONS


# 3 个 asset × 3 个尺寸：价格按面积分档，9 个变体 id 全部写回
def test_sync_creates_products_and_maps_ids(make_ctx, seed, fake_client, load_asset, load_run):
    ids = [seed() for _ in range(3)]
    ctx = make_ctx(fake_client)

    report = run_product_sync(ctx)

    assert report.status == RUN_COMPLETED
    assert (report.selected, report.synced, report.errors) == (3, 3, 0)

    payload = fake_client.created[0]
    assert payload["status"] == "draft"
    assert [v["price"] for v in payload["variants"]] == ["29.99", "49.99", "29.99"]
    assert [v["compare_at_price"] for v in payload["variants"]] == ["39.99", "64.99", "39.99"]

    variant_ids = []
    for asset_id in ids:
        asset, variants = load_asset(asset_id)
        assert asset.shopify_status == SHOPIFY_SYNCED
        assert asset.shopify_product_id is not None
        assert [v.base_price for v in variants] == [Decimal("29.99"), Decimal("49.99"), Decimal("29.99")]
        variant_ids.extend(v.shopify_variant_id for v in variants)
    assert len(set(variant_ids)) == 9
    assert None not in variant_ids

    run = load_run(report.run_id)
    assert run.run_type == "shopify_sync"
    assert (run.total_items, run.processed_items, run.error_count) == (3, 3, 0)
    assert run.status == RUN_COMPLETED
    assert run.finished_at is not None


def test_active_flag_publishes(make_ctx, seed, fake_client):
    seed()
    run_product_sync(make_ctx(fake_client), active=True)
    assert fake_client.created[0]["status"] == "active"


# 422 + variant = 当天额度用完：当前 asset 保持 pending，整批停
def test_variant_quota_422_stops_the_run(make_ctx, seed, fake_client, load_asset, load_run):
    ids = [seed() for _ in range(3)]
    fake_client.quota_after = 1

    report = run_product_sync(make_ctx(fake_client))

    assert report.stopped_on_quota
    assert report.synced == 1
    assert report.status == RUN_COMPLETED_WITH_ERRORS
    assert load_asset(ids[0])[0].shopify_status == SHOPIFY_SYNCED
    assert load_asset(ids[1])[0].shopify_status == SHOPIFY_PENDING
    assert load_asset(ids[2])[0].shopify_status == SHOPIFY_PENDING
    assert len(fake_client.created) == 1
    assert load_run(report.run_id).status == RUN_COMPLETED_WITH_ERRORS


# 其它终态错误：标记 error，继续下一个
def test_other_errors_mark_asset_and_continue(make_ctx, seed, fake_client, load_asset, load_run):
    ids = [seed() for _ in range(3)]
    bad_title = load_asset(ids[1])[0].title
    fake_client.reject_titles[bad_title] = "Title contains invalid characters"

    report = run_product_sync(make_ctx(fake_client))

    assert (report.synced, report.errors) == (2, 1)
    assert report.status == RUN_COMPLETED_WITH_ERRORS
    errored = load_asset(ids[1])[0]
    assert errored.shopify_status == SHOPIFY_ERROR
    assert "Title contains invalid characters" in errored.ingestion_error
    assert load_asset(ids[2])[0].shopify_status == SHOPIFY_SYNCED
    assert load_run(report.run_id).error_count == 1


# 预检：变体累计数不超过今天剩余额度（今天已经用掉的也算）
def test_quota_precheck_trims_selection(make_ctx, seed, fake_client):
    [seed() for _ in range(4)]
    ctx = make_ctx(fake_client, DAILY_VARIANT_LIMIT=10)
    first = run_product_sync(ctx)
    assert first.selected == 3

    # 今天已用 9，剩 1：一个都选不上
    second = run_product_sync(ctx)
    assert second.selected == 0
    assert len(fake_client.created) == 3


def test_zero_variant_assets_are_skipped(make_ctx, seed, fake_client, load_asset):
    empty = seed(variants=())
    full = seed()

    report = run_product_sync(make_ctx(fake_client))

    assert report.skipped == 1
    assert report.synced == 1
    assert load_asset(empty)[0].shopify_status == SHOPIFY_PENDING
    assert load_asset(full)[0].shopify_status == SHOPIFY_SYNCED


# limit 只数有变体的 asset：前面一串 0 变体的不会把它占满
def test_zero_variant_assets_do_not_use_up_limit(make_ctx, seed, fake_client, load_asset, load_run):
    empty = [seed(variants=()) for _ in range(3)]
    ids = [seed() for _ in range(2)]

    report = run_product_sync(make_ctx(fake_client, BULK_PAGE_SIZE=2), limit=2)

    assert (report.selected, report.synced, report.skipped) == (2, 2, 3)
    assert all(load_asset(a)[0].shopify_status == SHOPIFY_SYNCED for a in ids)
    assert all(load_asset(a)[0].shopify_status == SHOPIFY_PENDING for a in empty)
    assert load_run(report.run_id).meta["skipped_no_variants"] == 3


def test_pending_is_processed_by_artist(make_ctx, seed, fake_client):
    seed(artist="Zed Zephyr", title="Late")
    seed(artist="Ann Abbott", title="Early")

    run_product_sync(make_ctx(fake_client))
    assert [p["title"] for p in fake_client.created] == ["Early", "Late"]


def test_pacer_sleeps_between_items(make_ctx, seed, fake_client, clock):
    [seed() for _ in range(3)]
    run_product_sync(make_ctx(fake_client, SYNC_PACER_MS=500))
    assert clock.sleeps == [0.5, 0.5]


def test_cancelled_run_does_nothing(make_ctx, seed, fake_client):
    seed()
    ctx = make_ctx(fake_client)
    ctx.cancel.set()

    report = run_product_sync(ctx)
    assert report.synced == 0
    assert fake_client.created == []


# --collections：5 个智能合集幂等；每个艺术家一个自定义合集
def test_collections_are_ensured(make_ctx, seed, fake_client):
    seed(artist="Hilma af Klint")
    seed(artist="Hilma af Klint")
    seed(artist="Agnes Martin")

    report = run_product_sync(make_ctx(fake_client), collections=True)

    assert report.collections["smart_created"] == [c.title for c in SMART_COLLECTIONS]
    assert report.collections["artist_added"] == {"Agnes Martin": 1, "Hilma af Klint": 2}
    assert sorted(c["title"] for c in fake_client.custom_collections) == ["Agnes Martin", "Hilma af Klint"]
    assert len(fake_client.collects) == 3

    seed(artist="agnes martin")
    again = run_product_sync(make_ctx(fake_client), collections=True)
    assert again.collections["smart_created"] == []
    assert again.collections["artist_added"] == {"agnes martin": 1}
    assert len(fake_client.custom_collections) == 2
