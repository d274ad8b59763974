# Celery 应用：SYNC_TASKS_INLINE=false 时 CLI 把任务投递到这里

from celery import Celery
from kombu import Exchange, Queue
from catalog_sync.core.config import settings
from catalog_sync.core.logging import configure_logging

configure_logging(settings.LOG_LEVEL)


'''
初始化 Celery 应用/实例
   - orchestrator：同步编排（逐个同步 / Bulk / 对账），一个店同时只应有一个在跑
'''
celery_app = Celery(
    "catalog_sync",
    broker=settings.CELERY_BROKER_URL,          # 队列位置 (Redis)
    backend=settings.CELERY_RESULT_BACKEND,     # 结果存储 (Redis)
    include=[
        "catalog_sync.orchestration.product_sync.sync_task",       # 逐个同步
        "catalog_sync.orchestration.bulk_sync.bulk_sync_task",     # Bulk 同步 + 对账
    ],
)


'''
  通用 Celery 配置
'''
celery_app.conf.update(
    timezone=settings.CELERY_TIMEZONE,
    enable_utc=True,                             # 内部还是存 UTC
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    task_track_started=True,
    broker_connection_retry_on_startup=True,
    worker_prefetch_multiplier=1,    # 一个 worker 一次只取一个任务
    # 不开 acks_late：Bulk 任务中途崩溃后重投会重复提交，恢复走 reconcile 命令
    task_acks_late=False,
    broker_heartbeat=30,
    broker_pool_limit=10,
)


'''
队列
   - orchestrator：长任务（Bulk 可能跑一个小时）
   - shopify_io：短的 Shopify 出站调用（对账重跑）
'''
celery_app.conf.task_queues = (
    Queue("default", Exchange("default"), routing_key="default"),
    Queue("orchestrator", Exchange("orchestrator"), routing_key="orchestrator"),
    Queue("shopify_io", Exchange("shopify_io"), routing_key="shopify_io"),
)


celery_app.conf.task_routes = {
    "catalog_sync.product_sync.run_sync": {"queue": "orchestrator"},
    "catalog_sync.bulk_sync.run_bulk_sync": {"queue": "orchestrator"},
    "catalog_sync.bulk_sync.reconcile": {"queue": "shopify_io"},
}
