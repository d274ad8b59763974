"""
真实店铺的只读冒烟测试：没有配置域名和凭证时整组跳过。
    SHOPIFY_STORE_DOMAIN=xxx.myshopify.com SHOPIFY_ADMIN_TOKEN=... pytest -m integration
"""
import pytest

from catalog_sync.core.config import ConfigurationError, settings
from catalog_sync.integrations.shopify import ShopifyClient, ShopifyHttpClient


def _configured() -> bool:
    try:
        settings.require_remote()
    except ConfigurationError:
        return False
    return True


pytestmark = [
    pytest.mark.integration,
    pytest.mark.skipif(not _configured(), reason="Shopify store credentials not configured"),
]


@pytest.fixture(scope="module")
def client():
    return ShopifyClient(ShopifyHttpClient(settings=settings))


def test_ping_returns_shop(client):
    data = client.ping()
    assert data["shop"]["myshopifyDomain"]


# 只读：不提交任何 Bulk，只看当前状态的形状
def test_current_bulk_operation_shape(client):
    op = client.current_bulk_operation()
    if op is not None:
        assert op["id"].startswith("gid://shopify/BulkOperation/")
        assert op["status"]
