"""
对账：Bulk 结果 → 本地 asset / variant 映射
  目标解析两种方式：
    - 按位置：结果第 k 行 → 本批 JSONL 第 k 行对应的 asset（Stage A 记录下来的顺序）
    - 按稳定键（漂移修复）：读落盘的 JSONL，第 k 行 metafield 里的 drive_file_id → 当前 asset.id；
      先把映射会变的 asset 的 shopify_* 清掉（分块 UPDATE），再写新映射
  写回并发 RECONCILE_CONCURRENCY（≤ 30）；单行失败计入 run.error_count，不中断。
  同一结果重复对账不改任何字段。
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Sequence, Tuple

from catalog_sync.orchestration.bulk_sync.jsonl_builder import read_drive_file_ids
from catalog_sync.orchestration.bulk_sync.result_parser import ParsedResult, ProductLine
from catalog_sync.orchestration.mapping import apply_remote_product
from catalog_sync.orchestration.worker_pool import run_bounded

logger = logging.getLogger(__name__)


@dataclass
class ReconcileReport:
    total_lines: int = 0
    mapped: int = 0             # 本次真正写了映射
    unchanged: int = 0          # 已是同一映射
    failed_rows: int = 0        # 写回异常
    marked_error: int = 0       # userErrors / 顶层 errors → asset.error
    throttled: int = 0          # 保持 pending
    unmatched: int = 0          # 行号/drive_file_id 找不到本地 asset
    reset: int = 0              # 漂移修复前清掉的 asset 数
    products: Dict[str, int] = field(default_factory=dict)   # asset_id → product id

    def as_meta(self) -> Dict[str, int]:
        return {
            "lines": self.total_lines,
            "mapped": self.mapped,
            "unchanged": self.unchanged,
            "failed_rows": self.failed_rows,
            "marked_error": self.marked_error,
            "throttled": self.throttled,
            "unmatched": self.unmatched,
            "reset": self.reset,
        }


# ---------- 目标解析 ----------

def targets_from_drive_ids(ctx, drive_file_ids: Sequence[Optional[str]]) -> List[Optional[str]]:
    """第 k 个 drive_file_id → 当前 asset.id（找不到为 None）"""
    known = [d for d in drive_file_ids if d]
    resolved = ctx.store.resolve_drive_file_ids(known) if known else {}
    missing = len(set(known) - set(resolved))
    if missing:
        logger.warning("reconcile.drive_ids_unresolved count=%s", missing)
    return [resolved.get(d) if d else None for d in drive_file_ids]


def targets_from_jsonl(ctx, jsonl_path) -> List[Optional[str]]:
    return targets_from_drive_ids(ctx, read_drive_file_ids(jsonl_path))


# ---------- 主流程 ----------

def reconcile(
    ctx,
    parsed: ParsedResult,
    targets: Sequence[Optional[str]],
    *,
    run_id: Optional[str] = None,
    reset_changed: bool = False,
) -> ReconcileReport:
    """
    targets[k] = 结果第 k 行对应的本地 asset.id
    reset_changed=True（按稳定键对账）时先清掉映射会变的 asset 的旧 shopify_* 字段。
    """
    report = ReconcileReport(total_lines=parsed.total_lines)

    def target(line: int) -> Optional[str]:
        return targets[line] if 0 <= line < len(targets) else None

    # 1) 成功行 → (asset_id, ProductLine)
    rows: List[Tuple[str, ProductLine]] = []
    for line in sorted(parsed.products):
        asset_id = target(line)
        if asset_id is None:
            report.unmatched += 1
            logger.warning("reconcile.unmatched line=%s product=%s", line, parsed.products[line].product_gid)
            continue
        rows.append((asset_id, parsed.products[line]))

    # 2) 漂移修复：旧映射与结果不同的先整体清掉
    if reset_changed and rows:
        keys = ctx.store.sync_keys([a for a, _ in rows])
        drive_ids = [
            keys[a][0] for a, pl in rows
            if a in keys and keys[a][1] and keys[a][1] != pl.product_gid
        ]
        if drive_ids:
            report.reset = ctx.store.reset_by_drive_file_ids(drive_ids)
            logger.warning("reconcile.drift_reset assets=%s", report.reset)

    # 3) 并发写回
    def apply(row: Tuple[str, ProductLine]) -> bool:
        asset_id, pl = row
        return apply_remote_product(ctx, asset_id, parsed.remote_product(pl))

    pool = run_bounded(
        apply, rows,
        max_workers=min(ctx.settings.RECONCILE_CONCURRENCY, 30),
        cancel=ctx.cancel,
        name="reconcile",
    )
    for (asset_id, pl), changed in pool.results:
        report.products[asset_id] = int(parsed.remote_product(pl).id)
        if changed:
            report.mapped += 1
        else:
            report.unchanged += 1
    for (asset_id, pl), err in pool.errors:
        report.failed_rows += 1
        logger.error("reconcile.row_failed asset=%s product=%s err=%s", asset_id, pl.product_gid, err)

    # 4) 失败行：asset 标记 error
    for line, message in sorted(parsed.failures().items()):
        asset_id = target(line)
        if asset_id is None:
            report.unmatched += 1
            continue
        ctx.store.mark_error(asset_id, message)
        report.marked_error += 1

    # 5) 限流行：什么都不改，保持 pending
    report.throttled = parsed.throttled_count

    if run_id is not None:
        ctx.store.bump_run(
            run_id,
            processed=report.mapped + report.unchanged + report.marked_error,
            errors=report.failed_rows + report.marked_error + report.unmatched,
        )
    logger.info(
        "reconcile.done lines=%s mapped=%s unchanged=%s failed=%s marked_error=%s throttled=%s unmatched=%s skipped=%s",
        report.total_lines, report.mapped, report.unchanged, report.failed_rows,
        report.marked_error, report.throttled, report.unmatched, pool.skipped,
    )
    return report

