from decimal import Decimal

from catalog_sync.db.model import RUN_COMPLETED, SHOPIFY_PENDING, SHOPIFY_SYNCED
from catalog_sync.orchestration.tag_push import push_tags
from catalog_sync.services.projector import tags_for

from conftest import NOW


def _map(store, load_asset, asset_id, product_id):
    _, variants = load_asset(asset_id)
    store.commit_mapping(
        asset_id,
        product_id=product_id,
        product_gid=f"gid://shopify/Product/{product_id}",
        variant_rows=[(v.id, product_id * 10 + i, f"gid://shopify/ProductVariant/{product_id * 10 + i}", Decimal("29.99"))
                      for i, v in enumerate(variants)],
        now=NOW,
    )


# 远端 404：本地 product/variant id 作废，asset 回到 pending
def test_push_tags_clears_stale_products(make_ctx, seed, fake_client, store, load_asset, load_run):
    a0, a1, a2 = seed(), seed(), seed()
    unsynced = seed()
    for asset_id, pid in ((a0, 501), (a1, 502), (a2, 503)):
        _map(store, load_asset, asset_id, pid)
    fake_client.missing_products = {502}

    report = push_tags(make_ctx(fake_client))

    assert (report.updated, report.stale, report.errors) == (2, 1, 0)
    assert report.status == RUN_COMPLETED
    assert [pid for pid, _ in fake_client.updated] == [501, 503]

    asset0, _ = load_asset(a0)
    assert fake_client.updated[0][1] == {"tags": ", ".join(tags_for(asset0))}

    stale, stale_variants = load_asset(a1)
    assert stale.shopify_status == SHOPIFY_PENDING
    assert stale.shopify_product_id is None
    assert all(v.shopify_variant_id is None for v in stale_variants)
    assert load_asset(a2)[0].shopify_status == SHOPIFY_SYNCED
    assert load_asset(unsynced)[0].shopify_status == SHOPIFY_PENDING

    run = load_run(report.run_id)
    assert run.run_type == "shopify_push_tags"
    assert (run.total_items, run.processed_items) == (3, 3)


def test_push_tags_respects_limit(make_ctx, seed, fake_client, store, load_asset):
    ids = [seed() for _ in range(3)]
    for n, asset_id in enumerate(ids):
        _map(store, load_asset, asset_id, 600 + n)

    report = push_tags(make_ctx(fake_client), limit=2)
    assert report.updated == 2
    assert [pid for pid, _ in fake_client.updated] == [600, 601]
