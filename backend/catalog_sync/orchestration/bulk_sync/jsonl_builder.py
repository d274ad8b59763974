"""
Stage A：生成 Bulk 变量文件 bulk-sync-batch-<n>.jsonl
  - pending 查询：created_at 升序、id 兜底，每页 ≤ BULK_PAGE_SIZE(1000)
  - 变体按 ≤ BULK_VARIANT_CHUNK(200) 个 asset_id 一批加载
  - 每个投影成功的 asset 写一行 {"input": <productSet input>}，行号 k = 第 k 个投影成功的 asset
  - 0 变体的 asset 跳过但仍是 pending：继续往后翻页，直到凑满 batch_size 行或 pending 取完
  - 文件留在磁盘上：对账漂移时以它为准（metafield 里带 drive_file_id）
"""
from __future__ import annotations

import json
import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import List, Optional

from catalog_sync.services.product_input import DRIVE_FILE_ID_KEY, metafield_value
from catalog_sync.services.projector import project
from catalog_sync.utils.serialization import dumps_line

logger = logging.getLogger(__name__)

BATCH_FILE_PATTERN = "bulk-sync-batch-{n}.jsonl"


class BatchFileError(RuntimeError):
    """batch 文件缺失，或行数对不上结果里的 __lineNumber：拒绝按它对账"""


@dataclass(frozen=True)
class BatchLine:
    index: int
    asset_id: str
    drive_file_id: Optional[str]
    artist: Optional[str]
    variant_count: int


@dataclass
class BatchFile:
    number: int
    path: Path
    lines: List[BatchLine] = field(default_factory=list)
    variant_total: int = 0
    pending_seen: int = 0
    skipped_no_variants: int = 0
    stopped_on_quota: bool = False
    exhausted: bool = False         # pending 已经翻到底

    @property
    def line_count(self) -> int:
        return len(self.lines)

    @property
    def asset_ids(self) -> List[str]:
        return [ln.asset_id for ln in self.lines]


def batch_path(output_dir: str | os.PathLike, number: int) -> Path:
    return Path(output_dir) / BATCH_FILE_PATTERN.format(n=number)


def build_batch(
    ctx,
    number: int,
    *,
    batch_size: int,
    variant_budget: int,
    output_dir: str | os.PathLike,
) -> BatchFile:
    cfg = ctx.settings
    page_size = min(cfg.BULK_PAGE_SIZE, 1000)
    out = BatchFile(number=number, path=batch_path(output_dir, number))

    out.path.parent.mkdir(parents=True, exist_ok=True)
    tmp_path = out.path.with_suffix(".jsonl.tmp")
    offset = 0
    with open(tmp_path, "w", encoding="utf-8") as fh:
        while out.line_count < batch_size and not out.stopped_on_quota:
            # 1) 取下一页 pending（同一时刻的顺序）
            take = min(page_size, batch_size - out.line_count)
            page = ctx.store.pending_page(limit=take, offset=offset)
            offset += len(page)
            out.pending_seen += len(page)
            if len(page) < take:
                out.exhausted = True

            # 2) 变体分组（store 内部按 id_chunk 分批）
            variants_by_asset = ctx.store.variants_for([a.id for a in page]) if page else {}

            # 3) 投影；超过当天剩余额度就停
            for asset in page:
                variants = variants_by_asset.get(asset.id) or []
                product = project(asset, variants, status="ACTIVE")
                if product is None:
                    out.skipped_no_variants += 1
                    continue
                n = len(product.variants)
                if out.variant_total + n > variant_budget:
                    out.stopped_on_quota = True
                    logger.warning(
                        "bulk.build.quota_stop batch=%s lines=%s variants=%s budget=%s",
                        number, out.line_count, out.variant_total, variant_budget,
                    )
                    break
                fh.write(dumps_line({"input": product.to_product_set_input()}))
                fh.write("\n")
                out.lines.append(BatchLine(
                    index=out.line_count,
                    asset_id=asset.id,
                    drive_file_id=product.drive_file_id,
                    artist=asset.artist,
                    variant_count=n,
                ))
                out.variant_total += n
                if out.line_count >= batch_size:
                    break

            if out.exhausted:
                break
    os.replace(tmp_path, out.path)

    logger.info(
        "bulk.build.done batch=%s file=%s pending=%s lines=%s variants=%s skipped=%s exhausted=%s",
        number, out.path, out.pending_seen, out.line_count, out.variant_total,
        out.skipped_no_variants, out.exhausted,
    )
    return out


def read_drive_file_ids(path: str | os.PathLike) -> List[Optional[str]]:
    """
    读回已落盘的 batch 文件：第 k 个元素 = 第 k 行 input.metafields 里的 drive_file_id。
    空行不算行号；无法解析的行记为 None（对应结果行会被跳过）。
    """
    out: List[Optional[str]] = []
    with open(path, "r", encoding="utf-8") as fh:
        for raw in fh:
            line = raw.strip()
            if not line:
                continue
            try:
                payload = json.loads(line)
            except ValueError:
                logger.warning("bulk.jsonl.bad_line file=%s index=%s", path, len(out))
                out.append(None)
                continue
            metafields = ((payload or {}).get("input") or {}).get("metafields")
            out.append(metafield_value(metafields, DRIVE_FILE_ID_KEY))
    return out
