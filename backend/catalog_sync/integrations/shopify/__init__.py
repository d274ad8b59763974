"""
对外统一入口（Public Surface）：
- 从这里 import 需要的类/函数，内部实现可自由演进。
"""

from .errors import (
    ShopifyError, ShopifyAuthError, ShopifyNetworkError, ShopifyServerError, ShopifyRateLimitError,
    ShopifyPayloadError, ShopifyUserInputError, ShopifyNotFoundError, ShopifyGraphQLError,
    BulkOperationError,
)
from . import retry_policy
from .http_client import ShopifyHttpClient
from .shopify_client import ShopifyClient


__all__ = [
    "ShopifyHttpClient", "ShopifyClient", "retry_policy",
    "ShopifyError", "ShopifyAuthError", "ShopifyNetworkError", "ShopifyServerError", "ShopifyRateLimitError",
    "ShopifyPayloadError", "ShopifyUserInputError", "ShopifyNotFoundError", "ShopifyGraphQLError",
    "BulkOperationError",
]
