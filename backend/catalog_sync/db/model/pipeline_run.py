from __future__ import annotations
import uuid
from typing import Optional, Dict, Any
from datetime import datetime

from sqlalchemy import DateTime, String, Integer, Index, func, JSON
from sqlalchemy.orm import Mapped, mapped_column
from catalog_sync.db.base import Base


RUN_RUNNING = "running"
RUN_COMPLETED = "completed"
RUN_COMPLETED_WITH_ERRORS = "completed_with_errors"
RUN_FAILED = "failed"

TERMINAL_RUN_STATUSES = (RUN_COMPLETED, RUN_COMPLETED_WITH_ERRORS, RUN_FAILED)


"""
  一次 CLI / 任务调用 = 一条 run 记录
    - 终态（completed / completed_with_errors / failed）时写 finished_at
"""
class PipelineRun(Base):

    __tablename__ = "pipeline_runs"

    id:              Mapped[str] = mapped_column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    run_type:        Mapped[str] = mapped_column(String(64), nullable=False)       # shopify_sync / shopify_bulk_sync / shopify_reconcile / shopify_push_tags
    status:          Mapped[str] = mapped_column(String(32), nullable=False, default=RUN_RUNNING)
    total_items:     Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    processed_items: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    error_count:     Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    started_at:  Mapped[datetime]           = mapped_column(DateTime(timezone=False), server_default=func.now(), nullable=False)
    finished_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=False))

    # 每批 bulk id / jsonl 路径 / 限流统计等
    meta: Mapped[Dict[str, Any]] = mapped_column("metadata", JSON, nullable=False, default=dict)

    __table_args__ = (
        Index("ix_pipeline_runs_type_started", "run_type", "started_at"),
    )
