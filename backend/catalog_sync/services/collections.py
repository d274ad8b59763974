"""
合集维护（--collections）
  - 5 个智能合集：按标题幂等，已存在就跳过
  - 艺术家合集：每个艺术家一个自定义合集，按标题（不区分大小写）查找或创建，再逐个 collect
"""
from __future__ import annotations

import html
import logging
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional, Tuple

from catalog_sync.integrations.shopify.errors import ShopifyError
from catalog_sync.services.product_input import SmartCollection, SmartCollectionRule

logger = logging.getLogger(__name__)


SMART_COLLECTIONS: Tuple[SmartCollection, ...] = (
    SmartCollection("All Art Prints", (SmartCollectionRule("TYPE", "EQUALS", "Art Print"),)),
    SmartCollection("Portrait Prints", (SmartCollectionRule("TAG", "EQUALS", "portrait"),)),
    SmartCollection("Landscape Prints", (SmartCollectionRule("TAG", "EQUALS", "landscape"),)),
    SmartCollection("Square Prints", (SmartCollectionRule("TAG", "EQUALS", "square"),)),
    SmartCollection("Museum Grade", (SmartCollectionRule("TAG", "EQUALS", "museum grade"),)),
)


def artist_body_html(artist: str) -> str:
    return f"<p>Explore the works of <strong>{html.escape(artist)}</strong>.</p>"


def ensure_smart_collections(client: Any, collections: Iterable[SmartCollection] = SMART_COLLECTIONS) -> List[str]:
    """返回本次新建的合集标题"""
    existing = {(c.get("title") or "").strip().lower() for c in client.list_smart_collections()}
    created: List[str] = []
    for coll in collections:
        if coll.title.lower() in existing:
            logger.info("collections.smart.exists title=%s", coll.title)
            continue
        client.create_smart_collection(coll.to_rest())
        created.append(coll.title)
        logger.info("collections.smart.created title=%s", coll.title)
    return created


def ensure_artist_collections(
    client: Any,
    artist_products: Mapping[str, Iterable[int]],
    *,
    pacer: Optional[Callable[[], None]] = None,
) -> Dict[str, int]:
    """
    artist_products: {artist: [shopify_product_id, ...]}
    返回 {artist: 成功挂上的商品数}；单个 collect 失败只记日志。
    """
    if not artist_products:
        return {}

    by_title = {
        (c.get("title") or "").strip().lower(): c
        for c in client.list_custom_collections()
    }

    added: Dict[str, int] = {}
    for artist, product_ids in artist_products.items():
        if not artist:
            continue
        coll = by_title.get(artist.strip().lower())
        if coll is None:
            coll = client.create_custom_collection(artist, artist_body_html(artist))
            by_title[artist.strip().lower()] = coll
            logger.info("collections.artist.created artist=%s id=%s", artist, coll.get("id"))

        n = 0
        for pid in product_ids:
            try:
                if client.add_to_collection(int(pid), int(coll["id"])):
                    n += 1
            except ShopifyError as e:
                logger.warning("collections.collect.failed artist=%s product=%s err=%s", artist, pid, e)
            if pacer is not None:
                pacer()
        added[artist] = n
    return added
