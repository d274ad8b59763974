import json
import shutil
from pathlib import Path

import pytest

from catalog_sync.db.model import (
    RUN_COMPLETED, RUN_COMPLETED_WITH_ERRORS, RUN_FAILED, SHOPIFY_PENDING, SHOPIFY_SYNCED, PipelineRun,
)
from catalog_sync.integrations.shopify.errors import ShopifyNetworkError
from catalog_sync.orchestration.bulk_sync import bulk_sync_task
from catalog_sync.orchestration.bulk_sync.bulk_sync_task import reconcile_last, run_bulk_sync
from catalog_sync.orchestration.bulk_sync.jsonl_builder import BatchFileError, build_batch, read_drive_file_ids


def _lines(path):
    with open(path, "r", encoding="utf-8") as fh:
        return [json.loads(ln) for ln in fh if ln.strip()]


# Stage A：行号 k = 第 k 个投影成功的 asset；0 变体的跳过
def test_build_batch_writes_one_line_per_projected_asset(make_ctx, seed, tmp_path):
    a0 = seed()
    seed(variants=())
    a2 = seed(variants=(("Small", "20", "20"),))
    ctx = make_ctx()

    batch = build_batch(ctx, 1, batch_size=10, variant_budget=100, output_dir=tmp_path)

    assert batch.path == tmp_path / "bulk-sync-batch-1.jsonl"
    assert batch.asset_ids == [a0, a2]
    assert batch.pending_seen == 3
    assert batch.skipped_no_variants == 1
    assert batch.variant_total == 4

    lines = _lines(batch.path)
    assert len(lines) == 2
    assert lines[0]["input"]["status"] == "ACTIVE"
    assert [v["price"] for v in lines[0]["input"]["variants"]] == ["29.99", "49.99", "29.99"]
    assert read_drive_file_ids(batch.path) == [ln.drive_file_id for ln in batch.lines]


def test_build_batch_stops_at_variant_budget(make_ctx, seed, tmp_path):
    [seed() for _ in range(3)]
    batch = build_batch(make_ctx(), 1, batch_size=10, variant_budget=7, output_dir=tmp_path)
    assert batch.line_count == 2
    assert batch.stopped_on_quota


def test_build_batch_pages_pending(make_ctx, seed, tmp_path):
    ids = [seed(variants=(("Small", "20", "20"),)) for _ in range(5)]
    batch = build_batch(make_ctx(BULK_PAGE_SIZE=2), 1, batch_size=4, variant_budget=100, output_dir=tmp_path)
    assert batch.asset_ids == ids[:4]
    assert not batch.exhausted


# 还没打标签 / 分析的上传不进 bulk 批次
def test_build_batch_skips_unanalysed_uploads(make_ctx, seed, tmp_path):
    seed(ingestion_status="uploaded")
    ready = seed(ingestion_status="analyzed")
    batch = build_batch(make_ctx(), 1, batch_size=5, variant_budget=100, output_dir=tmp_path)
    assert batch.asset_ids == [ready]
    assert batch.pending_seen == 1


def test_build_batch_marks_exhausted_pending(make_ctx, seed, tmp_path):
    [seed() for _ in range(2)]
    batch = build_batch(make_ctx(), 1, batch_size=5, variant_budget=100, output_dir=tmp_path)
    assert batch.line_count == 2
    assert batch.exhausted


# 0 变体的 asset 占满了第一页：继续往后翻，后面有变体的照样同步
def test_zero_variant_assets_do_not_hide_later_pending(make_ctx, seed, fake_client, load_asset):
    empty = [seed(variants=()) for _ in range(3)]
    ids = [seed() for _ in range(2)]

    report = run_bulk_sync(make_ctx(fake_client), batch_size=2)

    assert report.status == RUN_COMPLETED
    assert [b.lines for b in report.batches] == [2]
    assert report.batches[0].skipped_no_variants == 3
    assert all(load_asset(a)[0].shopify_status == SHOPIFY_SYNCED for a in ids)
    assert all(load_asset(a)[0].shopify_status == SHOPIFY_PENDING for a in empty)


# 两批：第二批重新从 offset 0 查 pending，两份 JSONL 都留在磁盘上
def test_two_batches_two_files(make_ctx, seed, fake_client, load_asset, load_run, tmp_path):
    ids = [seed() for _ in range(5)]
    ctx = make_ctx(fake_client)

    report = run_bulk_sync(ctx, batch_size=3)

    assert report.status == RUN_COMPLETED
    assert report.stopped_reason is None
    assert [b.lines for b in report.batches] == [3, 2]
    out = Path(ctx.settings.BULK_OUTPUT_DIR)
    assert (out / "bulk-sync-batch-1.jsonl").exists()
    assert (out / "bulk-sync-batch-2.jsonl").exists()
    assert fake_client.submissions == 2

    for asset_id in ids:
        asset, variants = load_asset(asset_id)
        assert asset.shopify_status == SHOPIFY_SYNCED
        assert all(v.shopify_variant_id for v in variants)

    run = load_run(report.run_id)
    assert run.run_type == "shopify_bulk_sync"
    assert (run.total_items, run.processed_items, run.error_count) == (5, 5, 0)
    assert run.meta["batch_1"]["bulk_id"] == "gid://shopify/BulkOperation/1"
    assert run.meta["batch_2"]["reconcile"]["mapped"] == 2


# 60% 的行被当日额度限流：已成功的写回，其余保持 pending，不再跑下一批
def test_throttled_batch_stops_the_run(make_ctx, seed, fake_client, load_asset, load_run):
    ids = [seed() for _ in range(8)]
    fake_client.throttle_ratio = 0.6

    report = run_bulk_sync(make_ctx(fake_client), batch_size=5)

    assert report.status == RUN_COMPLETED_WITH_ERRORS
    assert report.stopped_reason == "throttled"
    assert fake_client.submissions == 1
    assert report.batches[0].throttled == 3
    statuses = [load_asset(a)[0].shopify_status for a in ids]
    assert statuses == [SHOPIFY_SYNCED] * 2 + [SHOPIFY_PENDING] * 6
    assert load_run(report.run_id).status == RUN_COMPLETED_WITH_ERRORS


# 少量限流只告警，继续跑
def test_light_throttle_only_warns(make_ctx, seed, fake_client):
    [seed() for _ in range(5)]
    fake_client.throttle_ratio = 0.2

    report = run_bulk_sync(make_ctx(fake_client), batch_size=5)

    assert report.batches[0].throttled == 1
    assert report.stopped_reason != "throttled"


# 结果文件被截断：限流比例按提交的行数算，不按收到的结果行数
def test_throttle_ratio_uses_submitted_lines(make_ctx, seed, fake_client, monkeypatch):
    [seed() for _ in range(10)]
    fake_client.throttle_ratio = 0.2
    full = fake_client.result_lines_for
    monkeypatch.setattr(fake_client, "result_lines_for", lambda lines: full(lines)[-3:])

    report = run_bulk_sync(make_ctx(fake_client), batch_size=10, max_batches=1)

    batch = report.batches[0]
    assert (batch.lines, batch.result_lines, batch.throttled) == (10, 3, 2)
    assert batch.reconcile["mapped"] == 1
    assert report.stopped_reason != "throttled"


def test_dry_run_only_writes_first_batch(make_ctx, seed, load_asset):
    ids = [seed() for _ in range(4)]
    ctx = make_ctx(None)

    report = run_bulk_sync(ctx, batch_size=2, dry_run=True)

    assert report.dry_run
    assert len(report.batches) == 1
    path = Path(report.batches[0].path)
    assert path.exists()
    assert len(_lines(path)) == 2
    assert all(load_asset(a)[0].shopify_status == SHOPIFY_PENDING for a in ids)


# 当天额度已经用完：不生成文件直接停
def test_exhausted_quota_stops_before_stage_a(make_ctx, seed, fake_client):
    [seed() for _ in range(2)]
    report = run_bulk_sync(make_ctx(fake_client, DAILY_VARIANT_LIMIT=0), batch_size=5)

    assert report.stopped_reason == "quota_exhausted"
    assert report.status == RUN_COMPLETED_WITH_ERRORS
    assert report.batches == []
    assert fake_client.submissions == 0


def test_nothing_pending_completes(make_ctx, fake_client):
    report = run_bulk_sync(make_ctx(fake_client), batch_size=5)
    assert report.status == RUN_COMPLETED
    assert report.batches == []


# Stage D 失败重试：bulk id 已知时只重试 D，不重复提交
def test_retry_after_submission_does_not_resubmit(make_ctx, seed, fake_client, clock):
    [seed() for _ in range(2)]
    fake_client.download_failures = 1

    report = run_bulk_sync(make_ctx(fake_client, BULK_POLL_INTERVAL_SEC=10), batch_size=5)

    assert fake_client.submissions == 1
    assert fake_client.downloads == 2
    assert report.batches[0].attempts == 2
    assert report.batches[0].reconcile["mapped"] == 2
    assert 20.0 in clock.sleeps           # 2^1 × 10s
    assert 10.0 in clock.sleeps           # 轮询间隔


def test_batch_gives_up_after_max_attempts(make_ctx, seed, fake_client, db):
    [seed() for _ in range(2)]
    fake_client.download_failures = 10

    with pytest.raises(ShopifyNetworkError):
        run_bulk_sync(make_ctx(fake_client), batch_size=5)

    assert fake_client.downloads == 3
    assert fake_client.submissions == 1
    run = db.query(PipelineRun).filter(PipelineRun.run_type == "shopify_bulk_sync").one()
    assert run.status == RUN_FAILED


# 远端操作以 FAILED 结束且没有部分结果：整批重新提交
def test_failed_operation_is_resubmitted(make_ctx, seed, fake_client, monkeypatch):
    [seed() for _ in range(2)]
    original = fake_client.run_bulk_mutation

    def flaky(staged_path, mutation=""):
        op = original(staged_path, mutation)
        if fake_client.submissions == 1:
            fake_client.ops[op["id"]].update({"status": "FAILED", "url": None, "errorCode": "INTERNAL_SERVER_ERROR"})
        return op

    monkeypatch.setattr(fake_client, "run_bulk_mutation", flaky)
    report = run_bulk_sync(make_ctx(fake_client), batch_size=5)

    assert fake_client.submissions == 2
    assert report.batches[0].bulk_id == "gid://shopify/BulkOperation/2"
    assert report.batches[0].reconcile["mapped"] == 2


# FAILED 但给了 partialDataUrl：用部分结果对账；部分结果里有限流就停
def test_partial_results_are_reconciled(make_ctx, seed, fake_client, monkeypatch):
    ids = [seed() for _ in range(4)]
    fake_client.throttle_ratio = 0.25
    original = fake_client.run_bulk_mutation

    def partial(staged_path, mutation=""):
        op = original(staged_path, mutation)
        stored = fake_client.ops[op["id"]]
        stored.update({"status": "FAILED", "partialDataUrl": stored["url"], "url": None})
        return op

    monkeypatch.setattr(fake_client, "run_bulk_mutation", partial)
    report = run_bulk_sync(make_ctx(fake_client), batch_size=10)

    batch = report.batches[0]
    assert batch.partial
    assert batch.reconcile["mapped"] == 3
    assert report.stopped_reason == "throttled"
    assert fake_client.submissions == 1


def test_bulk_collections(make_ctx, seed, fake_client):
    seed(artist="Agnes Martin")
    seed(artist="Agnes Martin")

    report = run_bulk_sync(make_ctx(fake_client), batch_size=5, collections=True)

    assert report.collections["artist_added"] == {"Agnes Martin": 2}
    assert len(fake_client.smart_collections) == 5


def test_bulk_status_returns_current_operation(make_ctx, fake_client):
    assert bulk_sync_task.bulk_status(make_ctx(fake_client)) is None


def _crash_after_submit(ctx, fake_client, batch_size=5):
    """Stage C 之后结果一直下载失败：远端已经建好商品，本地还没写回"""
    fake_client.download_failures = ctx.settings.BULK_BATCH_MAX_ATTEMPTS
    with pytest.raises(ShopifyNetworkError):
        run_bulk_sync(ctx, batch_size=batch_size)


# reconcile 命令：按 bulk-sync 提交当前操作时记下的 batch 文件对账
def test_reconcile_last_uses_file_recorded_for_operation(make_ctx, seed, fake_client, load_asset, db):
    ids = [seed() for _ in range(3)]
    ctx = make_ctx(fake_client)
    _crash_after_submit(ctx, fake_client)

    run = db.query(PipelineRun).filter(PipelineRun.run_type == "shopify_bulk_sync").one()
    assert run.meta["batch_1_bulk_id"] == fake_client.current_id
    assert run.meta["batch_1_file"].endswith("bulk-sync-batch-1.jsonl")

    run_id, report = reconcile_last(ctx)

    assert report.mapped == 3
    assert all(load_asset(a)[0].shopify_status == SHOPIFY_SYNCED for a in ids)

    # 重跑一次：no-op
    _, again = reconcile_last(ctx)
    assert (again.mapped, again.unchanged, again.reset) == (0, 3, 0)


# 输出目录里有更新、编号更大的旧文件：不能拿它去对当前操作的结果
def test_reconcile_last_ignores_newer_unrelated_batch_file(make_ctx, seed, fake_client, load_asset, tmp_path):
    x, y = seed(), seed()
    ctx = make_ctx(fake_client)
    stale = build_batch(ctx, 9, batch_size=5, variant_budget=100, output_dir=tmp_path / "stale")
    ctx.store.mark_error(x, "boom")
    ctx.store.mark_error(y, "boom")

    a = seed()
    _crash_after_submit(ctx, fake_client)
    shutil.copy(stale.path, Path(ctx.settings.BULK_OUTPUT_DIR) / "bulk-sync-batch-9.jsonl")

    _, report = reconcile_last(ctx)

    assert (report.mapped, report.reset) == (1, 0)
    assert load_asset(a)[0].shopify_status == SHOPIFY_SYNCED
    assert load_asset(x)[0].shopify_product_id is None
    assert load_asset(y)[0].shopify_product_id is None


# 记下的文件不在了，或者比结果短：拒绝对账，什么都不写
@pytest.mark.parametrize("damage", ["deleted", "truncated"])
def test_reconcile_last_refuses_damaged_batch_file(make_ctx, seed, fake_client, load_asset, damage):
    ids = [seed() for _ in range(2)]
    ctx = make_ctx(fake_client)
    _crash_after_submit(ctx, fake_client)

    path = Path(ctx.settings.BULK_OUTPUT_DIR) / "bulk-sync-batch-1.jsonl"
    if damage == "deleted":
        path.unlink()
    else:
        first = path.read_text(encoding="utf-8").splitlines()[0]
        path.write_text(first + "\n", encoding="utf-8")

    with pytest.raises(BatchFileError):
        reconcile_last(ctx)

    assert all(load_asset(a)[0].shopify_status == SHOPIFY_PENDING for a in ids)
    assert all(load_asset(a)[0].shopify_product_id is None for a in ids)


# 没有 bulk-sync 的提交记录（比如别的工具发起的操作）：按 pending 顺序
def test_reconcile_last_without_record_falls_back_to_pending_order(make_ctx, seed, fake_client, load_asset):
    ids = [seed() for _ in range(2)]
    ctx = make_ctx(fake_client)
    batch = build_batch(ctx, 1, batch_size=5, variant_budget=100, output_dir=ctx.settings.BULK_OUTPUT_DIR)
    fake_client.uploads.append(batch.path.read_text(encoding="utf-8").splitlines())
    fake_client.run_bulk_mutation("tmp/staged")
    fake_client.ops[fake_client.current_id]["_polls_left"] = 0

    _, report = reconcile_last(ctx)

    assert report.mapped == 2
    assert all(load_asset(a)[0].shopify_status == SHOPIFY_SYNCED for a in ids)


def test_reconcile_last_from_local_results_file(make_ctx, seed, load_asset, tmp_path):
    a0, a1 = seed(), seed()
    results = tmp_path / "results.jsonl"
    results.write_text(
        "\n".join([
            json.dumps({"data": {"productSet": {"product": {
                "id": "gid://shopify/Product/77",
                "variants": {"nodes": [{"id": "gid://shopify/ProductVariant/770"}]},
            }, "userErrors": []}}, "__lineNumber": 0}),
            json.dumps({"data": {"productSet": {"product": None, "userErrors": [{"message": "bad"}]}}, "__lineNumber": 1}),
        ]) + "\n",
        encoding="utf-8",
    )
    ctx = make_ctx(None)

    run_id, report = reconcile_last(ctx, results=str(results))

    assert report.mapped == 1
    assert report.marked_error == 1
    assert load_asset(a0)[0].shopify_product_id == 77
    assert ctx.store.get_run(run_id).status == RUN_COMPLETED_WITH_ERRORS


def test_reconcile_last_without_operation(make_ctx, fake_client):
    run_id, report = reconcile_last(make_ctx(fake_client))
    assert report.total_lines == 0
