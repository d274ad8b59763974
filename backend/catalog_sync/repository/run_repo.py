from __future__ import annotations
from typing import Any, Dict, Optional

from sqlalchemy import select, update
from sqlalchemy.orm import Session

from catalog_sync.db.model import PipelineRun, RUN_RUNNING
from catalog_sync.db.model.pipeline_run import TERMINAL_RUN_STATUSES
from catalog_sync.utils.clock import now_utc


def create_run(db: Session, run_type: str, *, total_items: int = 0, meta: Optional[Dict[str, Any]] = None) -> PipelineRun:
    run = PipelineRun(run_type=run_type, status=RUN_RUNNING, total_items=total_items, meta=dict(meta or {}))
    db.add(run)
    db.flush()
    return run


def update_run(db: Session, run_id: str, **fields: Any) -> None:
    """只改传入的列；终态自动补 finished_at。"""
    if not fields:
        return
    if fields.get("status") in TERMINAL_RUN_STATUSES and "finished_at" not in fields:
        fields["finished_at"] = now_utc()
    db.execute(update(PipelineRun).where(PipelineRun.id == run_id).values(**fields))


def increment_run_counters(db: Session, run_id: str, *, processed: int = 0, errors: int = 0) -> None:
    # 原子自增，worker 线程并发调用也不会丢计数
    db.execute(
        update(PipelineRun)
        .where(PipelineRun.id == run_id)
        .values(
            processed_items=PipelineRun.processed_items + processed,
            error_count=PipelineRun.error_count + errors,
        )
    )


def merge_run_meta(db: Session, run_id: str, patch: Dict[str, Any]) -> None:
    run = db.get(PipelineRun, run_id)
    if run is None:
        return
    merged = dict(run.meta or {})
    merged.update(patch)
    run.meta = merged   # 重新赋值，JSON 列才会被标记为脏


def get_run(db: Session, run_id: str) -> Optional[PipelineRun]:
    return db.get(PipelineRun, run_id)


def find_batch_file(db: Session, run_type: str, bulk_id: str, *, scan: int = 50) -> Optional[str]:
    """
    在最近 scan 条同类 run 的 meta 里找 batch_<n>_bulk_id == bulk_id，返回同批记下的 batch_<n>_file。
    没找到（或那条记录没有文件路径）返回 None。
    """
    stmt = (
        select(PipelineRun)
        .where(PipelineRun.run_type == run_type)
        .order_by(PipelineRun.started_at.desc())
        .limit(scan)
    )
    for run in db.scalars(stmt):
        meta = run.meta or {}
        for key, value in meta.items():
            if key.endswith("_bulk_id") and value == bulk_id:
                return meta.get(key[: -len("_bulk_id")] + "_file")
    return None
