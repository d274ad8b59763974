"""
   Shopify 集成层专用异常类型。
   将 HTTP/限流/服务端/载荷/Bulk 等错误与编排层解耦，便于上层统一处理。
"""
from __future__ import annotations
from typing import Any, List, Optional


class ShopifyError(Exception):
    """Base for all Shopify errors."""


class ShopifyAuthError(ShopifyError):
    """Token missing, rejected, or the client-credentials exchange failed."""


class ShopifyNetworkError(ShopifyError):
    """Connection/timeout errors that survived every retry."""


class ShopifyServerError(ShopifyError):
    """Server-side (5xx) errors after retries."""

    def __init__(self, message: str, status: Optional[int] = None) -> None:
        super().__init__(message)
        self.status = status


class ShopifyRateLimitError(ShopifyError):
    """429 Too Many Requests not resolved after retries."""


class ShopifyPayloadError(ShopifyError):
    """Unexpected/invalid response payload shape or content."""


class ShopifyUserInputError(ShopifyError):
    """Terminal 4xx (other than 429): the request itself is wrong and must not be retried."""

    def __init__(self, message: str, status: int, body: str = "") -> None:
        super().__init__(message)
        self.status = status
        self.body = body

    def is_variant_quota(self) -> bool:
        # 422 且提到 variant = 当天变体创建额度用完
        return self.status == 422 and "variant" in str(self).lower()


class ShopifyNotFoundError(ShopifyUserInputError):
    """404 on a resource we hold an id for (stale remote id)."""


class ShopifyGraphQLError(ShopifyError):
    """Top-level GraphQL `errors` (syntax, permissions, throttling at the API level)."""

    def __init__(self, message: str, errors: Optional[List[Any]] = None) -> None:
        super().__init__(message)
        self.errors = errors or []


class BulkOperationError(ShopifyError):
    """Bulk mutation kickoff rejected (userErrors) or the operation ended FAILED/CANCELED."""

    def __init__(self, message: str, user_errors: Optional[List[Any]] = None, status: Optional[str] = None) -> None:
        super().__init__(message)
        self.user_errors = user_errors or []
        self.status = status
