"""
有界并发的线程池（requests 是同步的，用线程而不是协程）
  - 最多 max_workers 个任务同时在跑；按 chunk 提交，chunk 之间检查取消信号
  - 单个任务异常只记录，不影响其它任务
"""
from __future__ import annotations

import logging
import threading
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field
from typing import Callable, Generic, List, Optional, Sequence, Tuple, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")
R = TypeVar("R")


@dataclass
class PoolResult(Generic[T, R]):
    results: List[Tuple[T, R]] = field(default_factory=list)
    errors: List[Tuple[T, BaseException]] = field(default_factory=list)
    skipped: int = 0        # 取消后没跑的


def run_bounded(
    fn: Callable[[T], R],
    items: Sequence[T],
    *,
    max_workers: int = 20,
    cancel: Optional[threading.Event] = None,
    name: str = "pool",
) -> PoolResult[T, R]:
    out: PoolResult[T, R] = PoolResult()
    items = list(items)
    if not items:
        return out

    workers = max(1, min(max_workers, len(items)))
    with ThreadPoolExecutor(max_workers=workers, thread_name_prefix=name) as executor:
        for start in range(0, len(items), workers):
            if cancel is not None and cancel.is_set():
                out.skipped = len(items) - start
                logger.warning("%s.cancelled done=%s skipped=%s", name, start, out.skipped)
                break
            chunk = items[start:start + workers]
            futures = {executor.submit(fn, item): item for item in chunk}
            for fut in as_completed(futures):
                item = futures[fut]
                try:
                    out.results.append((item, fut.result()))
                except Exception as e:
                    logger.warning("%s.item_failed err=%s", name, e)
                    out.errors.append((item, e))
    return out
