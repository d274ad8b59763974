# 聚合导入所有模型，保证 Base.metadata 完整

from .asset import (
    Asset,
    AssetVariant,
    SHOPIFY_PENDING,
    SHOPIFY_SYNCED,
    SHOPIFY_ERROR,
    SYNCABLE_INGESTION,
)

from .pipeline_run import (
    PipelineRun,
    RUN_RUNNING,
    RUN_COMPLETED,
    RUN_COMPLETED_WITH_ERRORS,
    RUN_FAILED,
)

__all__ = [
    "Asset", "AssetVariant", "PipelineRun",
    "SHOPIFY_PENDING", "SHOPIFY_SYNCED", "SHOPIFY_ERROR", "SYNCABLE_INGESTION",
    "RUN_RUNNING", "RUN_COMPLETED", "RUN_COMPLETED_WITH_ERRORS", "RUN_FAILED",
]
