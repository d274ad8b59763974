#!/usr/bin/env python3
import json
import sys

from catalog_sync.core.config import ConfigurationError, settings
from catalog_sync.core.logging import configure_logging
from catalog_sync.integrations.shopify import ShopifyClient, ShopifyHttpClient


'''
连通性自检：域名 / API 版本 / token（或 client credentials）是否可用
    - 用法：
    export $(grep -v '^#' .env | xargs)   # 若你用 .env
    python scripts/ping_shopify.py
    - 看到返回 shop.name / myshopifyDomain / plan.displayName 说明都 OK
'''
def main() -> int:
    configure_logging(settings.LOG_LEVEL)
    try:
        settings.require_remote()
    except ConfigurationError as e:
        print(f"ERROR: {e}", file=sys.stderr)
        return 1

    client = ShopifyClient(ShopifyHttpClient(settings=settings))
    data = client.ping()
    print(json.dumps(data, ensure_ascii=False, indent=2))
    return 0


if __name__ == "__main__":
    sys.exit(main())
