"""
一次运行用到的依赖都放在 Context 里显式传递（不在编排层里直接读全局 settings / 单例 client）
  Context { client, store, clock, logger, daily_limit, settings, cancel }
"""
from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field
from typing import Any, Optional

from catalog_sync.core.config import Settings, settings as default_settings
from catalog_sync.integrations.shopify import ShopifyClient, ShopifyHttpClient
from catalog_sync.repository.catalog_store import CatalogStore
from catalog_sync.utils.clock import SystemClock


@dataclass
class Context:
    client: Any                 # ShopifyClient 或测试里的 fake
    store: CatalogStore
    clock: Any = field(default_factory=SystemClock)
    logger: logging.Logger = field(default_factory=lambda: logging.getLogger("catalog_sync"))
    daily_limit: int = 900
    settings: Settings = field(default_factory=lambda: default_settings)
    cancel: threading.Event = field(default_factory=threading.Event)

    @property
    def cancelled(self) -> bool:
        return self.cancel.is_set()

    def wait_for_cooldown(self) -> float:
        """
        传输层观察到 429 / 漏桶见底时会给出冷却截止时间；循环在发下一个请求前先等它过去。
        返回实际等待的秒数。
        """
        transport = getattr(self.client, "transport", None)
        remaining = getattr(transport, "cooldown_remaining", None)
        if remaining is None:
            return 0.0
        wait_s = float(remaining())
        if wait_s > 0:
            self.logger.info("sync.cooldown wait_s=%.2f", wait_s)
            self.clock.sleep(wait_s)
        return wait_s


def build_context(
    cfg: Optional[Settings] = None,
    *,
    client: Any = None,
    store: Optional[CatalogStore] = None,
    need_remote: bool = True,
) -> Context:
    """
    CLI / celery 任务用：先校验配置（缺凭证直接 ConfigurationError，不会发出任何网络请求），
    再建 engine 和 client。
    """
    cfg = cfg or default_settings
    if client is None and need_remote:
        cfg.require_remote()
    if store is None:
        cfg.require_store()
        from catalog_sync.db.session import SessionLocal, init_engine

        init_engine(cfg.DATABASE_URL)
        store = CatalogStore(SessionLocal, id_chunk=cfg.BULK_VARIANT_CHUNK)
    if client is None and need_remote:
        client = ShopifyClient(ShopifyHttpClient(settings=cfg))
    return Context(
        client=client,
        store=store,
        clock=SystemClock(cfg.LOCAL_TIMEZONE),
        logger=logging.getLogger("catalog_sync"),
        daily_limit=cfg.DAILY_VARIANT_LIMIT,
        settings=cfg,
    )


"""
  调试开关：True 时 CLI 在当前进程直接执行，不经过 broker。
"""
def inline_tasks_enabled(cfg: Optional[Settings] = None) -> bool:
    return bool(getattr(cfg or default_settings, "SYNC_TASKS_INLINE", True))
