from __future__ import annotations
import logging
from collections import defaultdict
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Tuple

from celery import shared_task

from catalog_sync.db.model import RUN_COMPLETED, RUN_COMPLETED_WITH_ERRORS, RUN_FAILED
from catalog_sync.integrations.shopify.errors import BulkOperationError, ShopifyError
from catalog_sync.integrations.shopify.shopify_client import BULK_BUSY_STATUSES
from catalog_sync.orchestration.bulk_sync.jsonl_builder import BatchFile, BatchFileError, build_batch
from catalog_sync.orchestration.bulk_sync.reconciler import (
    ReconcileReport, reconcile, targets_from_jsonl,
)
from catalog_sync.orchestration.bulk_sync.result_parser import ParsedResult, parse_lines
from catalog_sync.orchestration.context import Context, build_context
from catalog_sync.orchestration.quota import load_quota
from catalog_sync.services.collections import ensure_artist_collections, ensure_smart_collections
from catalog_sync.utils.backoff import exp_backoff


logger = logging.getLogger(__name__)

RUN_TYPE = "shopify_bulk_sync"
RECONCILE_RUN_TYPE = "shopify_reconcile"

STOP_THROTTLED = "throttled"
STOP_QUOTA = "quota_exhausted"
STOP_NO_PROGRESS = "no_progress"
STOP_CANCELLED = "cancelled"


@dataclass
class BatchOutcome:
    number: int
    path: str
    lines: int
    variants: int
    skipped_no_variants: int = 0
    bulk_id: Optional[str] = None
    bulk_status: Optional[str] = None
    attempts: int = 0
    partial: bool = False
    throttled: int = 0
    result_lines: int = 0
    reconcile: Dict[str, int] = field(default_factory=dict)
    products: Dict[str, int] = field(default_factory=dict)


@dataclass
class BulkSyncReport:
    run_id: str
    status: str = RUN_COMPLETED
    dry_run: bool = False
    stopped_reason: Optional[str] = None
    batches: List[BatchOutcome] = field(default_factory=list)
    collections: Dict[str, Any] = field(default_factory=dict)


"""
    Celery 入口：整条 Bulk 流水线（Stage A-D + 对账）在一个任务里跑完。
"""
@shared_task(name="catalog_sync.bulk_sync.run_bulk_sync")
def run_bulk_sync_task(batch_size: Optional[int] = None, collections: bool = False, dry_run: bool = False) -> Dict[str, Any]:
    ctx = build_context()
    return asdict(run_bulk_sync(ctx, batch_size=batch_size, collections=collections, dry_run=dry_run))


@shared_task(name="catalog_sync.bulk_sync.reconcile")
def reconcile_task(jsonl: Optional[str] = None, results: Optional[str] = None) -> Dict[str, Any]:
    ctx = build_context()
    run_id, report = reconcile_last(ctx, jsonl=jsonl, results=results)
    return {"run_id": run_id, **report.as_meta()}



# ========================== Bulk 主流程 ==========================
"""
分批循环
    每批：重新查 pending（offset 0）→ Stage A 写 JSONL → B 上传 → C 发起 → D 轮询/下载 → 对账
    - B/C/D 抛错：整批最多重试 BULK_BATCH_MAX_ATTEMPTS 次，间隔 2^attempt × 10s
      （已经发起成功的批次只重试 D，不会重复提交）
    - 限流行 > 0 告警；> BULK_THROTTLE_ABORT_RATIO × 本批提交行数 → 不再跑后续批次，completed_with_errors
    - 0 变体的 asset 不占行号；Stage A 翻过它们继续取，pending 翻到底才结束
    - 当天剩余额度为 0 → 停
    - --dry-run：只做第一批的 Stage A
"""
def run_bulk_sync(
    ctx: Context,
    *,
    batch_size: Optional[int] = None,
    dry_run: bool = False,
    collections: bool = False,
    max_batches: Optional[int] = None,
) -> BulkSyncReport:

    cfg = ctx.settings
    batch_size = batch_size or cfg.BULK_BATCH_SIZE
    run_id = ctx.store.start_run(RUN_TYPE, meta={"batch_size": batch_size, "dry_run": dry_run})
    report = BulkSyncReport(run_id=run_id, dry_run=dry_run)
    logger.info("bulk.start run=%s batch_size=%s dry_run=%s", run_id, batch_size, dry_run)

    try:
        number = 0
        total_items = 0
        while True:
            if ctx.cancelled:
                report.stopped_reason = STOP_CANCELLED
                break

            quota = load_quota(ctx)
            if quota.exhausted:
                if not ctx.store.pending_page(limit=1):
                    break
                report.stopped_reason = STOP_QUOTA
                logger.warning("bulk.quota_exhausted run=%s used_today=%s", run_id, quota.used_today)
                break

            number += 1
            # ---- Stage A ----
            batch = build_batch(
                ctx, number,
                batch_size=batch_size,
                variant_budget=quota.remaining,
                output_dir=cfg.BULK_OUTPUT_DIR,
            )
            if batch.line_count == 0:
                batch.path.unlink(missing_ok=True)
                if batch.stopped_on_quota:
                    report.stopped_reason = STOP_QUOTA
                logger.info(
                    "bulk.nothing_to_do run=%s batch=%s pending=%s skipped=%s",
                    run_id, number, batch.pending_seen, batch.skipped_no_variants,
                )
                ctx.store.merge_run_meta(run_id, {"skipped_no_variants": batch.skipped_no_variants})
                break

            total_items += batch.line_count
            ctx.store.update_run(run_id, total_items=total_items)
            outcome = BatchOutcome(
                number=number, path=str(batch.path), lines=batch.line_count, variants=batch.variant_total,
                skipped_no_variants=batch.skipped_no_variants,
            )
            report.batches.append(outcome)

            if dry_run:
                logger.info("bulk.dry_run run=%s file=%s lines=%s", run_id, batch.path, batch.line_count)
                break

            # ---- Stage B-D + 对账 ----
            _run_batch_with_retry(ctx, run_id, batch, outcome)
            ctx.store.merge_run_meta(run_id, {f"batch_{number}": _batch_meta(outcome)})

            # ---- 限流策略 ----
            if outcome.throttled > 0:
                logger.warning(
                    "bulk.throttled run=%s batch=%s throttled=%s lines=%s",
                    run_id, number, outcome.throttled, outcome.lines,
                )
                # 分母是提交的行数：结果文件被截断时也不会稀释限流比例
                limit = cfg.BULK_THROTTLE_ABORT_RATIO * max(outcome.lines, 1)
                if outcome.partial or outcome.throttled > limit:
                    report.stopped_reason = STOP_THROTTLED
                    logger.error("bulk.stop_daily_limit run=%s batch=%s", run_id, number)
                    break

            if batch.stopped_on_quota:
                report.stopped_reason = STOP_QUOTA
                break
            progressed = outcome.reconcile.get("mapped", 0) + outcome.reconcile.get("marked_error", 0)
            if progressed == 0:
                report.stopped_reason = STOP_NO_PROGRESS
                logger.warning("bulk.no_progress run=%s batch=%s", run_id, number)
                break
            if batch.exhausted:
                break       # pending 已经取完
            if max_batches is not None and number >= max_batches:
                break

            if cfg.BULK_BATCH_COOLDOWN_SEC > 0:
                logger.info("bulk.cooldown run=%s wait_s=%s", run_id, cfg.BULK_BATCH_COOLDOWN_SEC)
                ctx.clock.sleep(cfg.BULK_BATCH_COOLDOWN_SEC)

        if collections and not dry_run:
            report.collections = _bulk_collections(ctx, report.batches)

        run = ctx.store.get_run(run_id)
        had_errors = bool(run and run.error_count)
        if report.stopped_reason in (STOP_THROTTLED, STOP_QUOTA, STOP_NO_PROGRESS, STOP_CANCELLED) or had_errors:
            report.status = RUN_COMPLETED_WITH_ERRORS
        else:
            report.status = RUN_COMPLETED
        ctx.store.update_run(run_id, status=report.status)
        ctx.store.merge_run_meta(run_id, {"stopped_reason": report.stopped_reason, "batches": len(report.batches)})
        logger.info(
            "bulk.done run=%s status=%s batches=%s stopped=%s",
            run_id, report.status, len(report.batches), report.stopped_reason,
        )
        return report

    except Exception:
        logger.exception("bulk.failed run=%s", run_id)
        ctx.store.update_run(run_id, status=RUN_FAILED)
        raise


def _batch_meta(outcome: BatchOutcome) -> Dict[str, Any]:
    meta = asdict(outcome)
    meta.pop("products", None)
    return meta


def _run_batch_with_retry(ctx: Context, run_id: str, batch: BatchFile, outcome: BatchOutcome) -> None:
    max_attempts = ctx.settings.BULK_BATCH_MAX_ATTEMPTS
    for attempt in range(1, max_attempts + 1):
        outcome.attempts = attempt
        try:
            _submit_and_drain(ctx, run_id, batch, outcome)
            return
        except ShopifyError as e:
            logger.warning(
                "bulk.batch_attempt_failed run=%s batch=%s attempt=%s/%s err=%s",
                run_id, batch.number, attempt, max_attempts, e,
            )
            if isinstance(e, BulkOperationError) and e.status in ("FAILED", "CANCELED", "EXPIRED"):
                outcome.bulk_id = None      # 远端操作已经结束且没有结果：整批重新提交
            if attempt >= max_attempts:
                logger.error("bulk.batch_failed run=%s batch=%s file=%s", run_id, batch.number, batch.path)
                raise
            ctx.clock.sleep(exp_backoff(attempt, base_seconds=10.0))


def _submit_and_drain(ctx: Context, run_id: str, batch: BatchFile, outcome: BatchOutcome) -> None:
    client = ctx.client
    interval = ctx.settings.BULK_POLL_INTERVAL_SEC

    if outcome.bulk_id is None:
        # ---- Stage C 前置：每店只能有一个 MUTATION ----
        client.wait_until_idle(poll_interval=interval, sleep=ctx.clock.sleep)
        # ---- Stage B ----
        target = client.staged_upload_target()
        staged_path = client.upload_staged_file(target, str(batch.path))
        # ---- Stage C ----
        op = client.run_bulk_mutation(staged_path)
        outcome.bulk_id = op["id"]
        # 记下 bulk id → 本批文件，reconcile 靠它找回正确的行序
        ctx.store.merge_run_meta(run_id, {
            f"batch_{batch.number}_bulk_id": outcome.bulk_id,
            f"batch_{batch.number}_file": str(batch.path.resolve()),
        })

    # ---- Stage D ----
    final = poll_bulk_until_done(ctx, outcome.bulk_id)
    status = final.get("status")
    outcome.bulk_status = status
    url = final.get("url")
    if status == "COMPLETED":
        pass
    elif status == "FAILED" and final.get("partialDataUrl"):
        url = final["partialDataUrl"]
        outcome.partial = True
        logger.warning("bulk.partial_results id=%s error=%s", outcome.bulk_id, final.get("errorCode"))
    else:
        raise BulkOperationError(
            f"bulk operation {outcome.bulk_id} ended {status} ({final.get('errorCode')})", status=status,
        )

    parsed = download_results(ctx, url)
    rec = reconcile(ctx, parsed, batch.asset_ids, run_id=run_id)
    outcome.result_lines = parsed.total_lines
    outcome.throttled = parsed.throttled_count
    outcome.reconcile = rec.as_meta()
    outcome.products = dict(rec.products)


# ---------- Stage D：轮询 ----------

def _poll_bulk_step(ctx: Context, op_id: str) -> Tuple[bool, float, Optional[Dict[str, Any]]]:
    """
    一次轮询：返回 (should_retry, delay, result)
      - 还在 CREATED/RUNNING/CANCELING → 继续
      - 终态 → 停，result = operation 节点
    """
    op = ctx.client.current_bulk_operation()
    if not op or op.get("id") != op_id:
        op = ctx.client.bulk_operation(op_id)
    if not op:
        raise BulkOperationError(f"bulk operation {op_id} not found")

    status = op.get("status")
    if status in BULK_BUSY_STATUSES:
        logger.info(
            "bulk.poll id=%s status=%s objects=%s size=%s",
            op_id, status, op.get("objectCount"), op.get("fileSize"),
        )
        return True, float(ctx.settings.BULK_POLL_INTERVAL_SEC), op
    logger.info("bulk.poll.terminal id=%s status=%s objects=%s", op_id, status, op.get("objectCount"))
    return False, 0.0, op


def poll_bulk_until_done(ctx: Context, op_id: str, *, max_polls: Optional[int] = None) -> Dict[str, Any]:
    attempt = 0
    while True:
        should_retry, delay, result = _poll_bulk_step(ctx, op_id)
        if not should_retry:
            return result or {}
        attempt += 1
        if max_polls is not None and attempt > max_polls:
            raise BulkOperationError(f"bulk operation {op_id} still running after {max_polls} polls")
        ctx.clock.sleep(delay)


def download_results(ctx: Context, url: Optional[str]) -> ParsedResult:
    if not url:
        # 0 个对象时 Shopify 不给 url
        logger.info("bulk.results.empty")
        return ParsedResult()
    return parse_lines(ctx.client.iter_result_lines(url))


# ---------- 合集 ----------

def _bulk_collections(ctx: Context, batches: Iterable[BatchOutcome]) -> Dict[str, Any]:
    products: Dict[str, int] = {}
    for b in batches:
        products.update(b.products)
    artists = ctx.store.artists_of(list(products)) if products else {}
    grouped: Dict[str, List[int]] = defaultdict(list)
    for asset_id, pid in products.items():
        artist = artists.get(asset_id)
        if artist:
            grouped[artist].append(pid)

    pacer_s = ctx.settings.COLLECTION_PACER_MS / 1000.0
    created = ensure_smart_collections(ctx.client)
    added = ensure_artist_collections(
        ctx.client, grouped,
        pacer=(lambda: ctx.clock.sleep(pacer_s)) if pacer_s > 0 else None,
    )
    return {"smart_created": created, "artist_added": added}


# ========================== --status ==========================

def bulk_status(ctx: Context) -> Optional[Dict[str, Any]]:
    return ctx.client.current_bulk_operation()


# ========================== reconcile 命令 ==========================
"""
重新跑一次 Stage D + 对账
    - 结果来源：--results（本地文件或 URL），否则 currentBulkOperation 的 url / partialDataUrl
    - 目标来源：
        1) --jsonl 指定的文件
        2) 结果来自 currentBulkOperation 时：bulk-sync 提交它时记下的那份 batch 文件
           （文件已不在，或行数少于结果里最大的 __lineNumber → BatchFileError，拒绝对账）
        3) 都没有才按当前 pending 顺序
    - 按文件对账时走 drive_file_id（漂移修复），映射会变的 asset 先清掉旧值
"""
def reconcile_last(
    ctx: Context,
    *,
    jsonl: Optional[str] = None,
    results: Optional[str] = None,
) -> Tuple[str, ReconcileReport]:

    run_id = ctx.store.start_run(RECONCILE_RUN_TYPE, meta={"jsonl": jsonl, "results": results})
    try:
        lines, source, op_id = _result_source(ctx, results)
        if lines is None:
            logger.info("reconcile.nothing run=%s reason=%s", run_id, source)
            ctx.store.merge_run_meta(run_id, {"skipped": source})
            ctx.store.update_run(run_id, status=RUN_COMPLETED)
            return run_id, ReconcileReport()

        parsed = parse_lines(lines)
        ctx.store.update_run(run_id, total_items=parsed.total_lines)

        jsonl_path = _batch_file_for(ctx, jsonl, op_id)
        if jsonl_path is not None:
            logger.info("reconcile.by_drive_file_id run=%s file=%s op=%s", run_id, jsonl_path, op_id)
            targets = targets_from_jsonl(ctx, jsonl_path)
            if parsed.max_line is not None and len(targets) <= parsed.max_line:
                raise BatchFileError(
                    f"{jsonl_path} has {len(targets)} lines but results reach __lineNumber {parsed.max_line}"
                )
            report = reconcile(ctx, parsed, targets, run_id=run_id, reset_changed=True)
        else:
            logger.info("reconcile.by_position run=%s", run_id)
            n = parsed.max_line + 1 if parsed.max_line is not None else 0
            targets = _pending_targets(ctx, n)
            report = reconcile(ctx, parsed, targets, run_id=run_id)

        problems = report.failed_rows + report.marked_error + report.unmatched + report.throttled
        status = RUN_COMPLETED_WITH_ERRORS if problems else RUN_COMPLETED
        ctx.store.merge_run_meta(run_id, {
            "source": source,
            "jsonl": str(jsonl_path) if jsonl_path else None,
            **report.as_meta(),
        })
        ctx.store.update_run(run_id, status=status)
        return run_id, report

    except Exception:
        logger.exception("reconcile.failed run=%s", run_id)
        ctx.store.update_run(run_id, status=RUN_FAILED)
        raise


def _batch_file_for(ctx: Context, jsonl: Optional[str], op_id: Optional[str]) -> Optional[Path]:
    if jsonl:
        path = Path(jsonl)
    elif op_id:
        recorded = ctx.store.batch_file_for_operation(RUN_TYPE, op_id)
        if recorded is None:
            logger.warning("reconcile.no_batch_record op=%s", op_id)
            return None
        path = Path(recorded)
    else:
        return None
    if not path.is_file():
        raise BatchFileError(f"batch file {path} for {op_id or 'reconcile'} is missing")
    return path


def _result_source(
    ctx: Context, results: Optional[str]
) -> Tuple[Optional[Iterable[str]], str, Optional[str]]:
    """返回 (结果行, 来源说明, bulk operation id)；本地文件 / 显式 URL 没有 operation id"""
    if results:
        if results.startswith(("http://", "https://")):
            return ctx.client.iter_result_lines(results), results, None
        return _read_lines(Path(results)), results, None

    op = ctx.client.current_bulk_operation()
    if not op:
        return None, "no_bulk_operation", None
    status = op.get("status")
    if status == "COMPLETED" and op.get("url"):
        return ctx.client.iter_result_lines(op["url"]), op["id"], op["id"]
    if status == "FAILED" and op.get("partialDataUrl"):
        return ctx.client.iter_result_lines(op["partialDataUrl"]), op["id"], op["id"]
    return None, f"bulk_operation_{(status or 'unknown').lower()}", None


def _read_lines(path: Path) -> List[str]:
    with open(path, "r", encoding="utf-8") as fh:
        return fh.readlines()


def _pending_targets(ctx: Context, n: int) -> List[Optional[str]]:
    """没有 JSONL 文件时：当前 pending 顺序里有变体的前 n 个 asset（与 Stage A 的跳过规则一致）"""
    if n <= 0:
        return []
    page_size = min(ctx.settings.BULK_PAGE_SIZE, 1000)
    out: List[Optional[str]] = []
    offset = 0
    while len(out) < n:
        page = ctx.store.pending_page(limit=page_size, offset=offset)
        if not page:
            break
        offset += len(page)
        counts = ctx.store.variant_counts([a.id for a in page])
        out.extend(a.id for a in page if counts.get(a.id, 0) > 0)
    return out[:n]
