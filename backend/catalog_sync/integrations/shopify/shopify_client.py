"""面向 Admin API 的业务 Client：只放和商品同步强相关的方法，HTTP 细节全在 ShopifyHttpClient"""
from __future__ import annotations

import logging
from typing import Any, Callable, Dict, Iterator, List, Optional
import time

from catalog_sync.integrations.shopify.http_client import ShopifyHttpClient
from catalog_sync.integrations.shopify.errors import (
    BulkOperationError, ShopifyPayloadError, ShopifyUserInputError,
)
from catalog_sync.integrations.shopify.graphql_queries import (
    SHOP_PING,
    STAGED_UPLOADS_CREATE,
    PRODUCT_SET_TEMPLATE,
    BULK_OPERATION_RUN_MUTATION,
    CURRENT_BULK_MUTATION,
    BULK_OPERATION_BY_ID,
)


logger = logging.getLogger(__name__)

# currentBulkOperation 仍在占用“每店一个 MUTATION”名额的状态
BULK_BUSY_STATUSES = ("CREATED", "RUNNING", "CANCELING")
BULK_TERMINAL_STATUSES = ("COMPLETED", "FAILED", "CANCELED", "EXPIRED")

BULK_UPLOAD_FILENAME = "bulk-products.jsonl"


class ShopifyClient:

    def __init__(self, transport: Optional[ShopifyHttpClient] = None) -> None:
        self.transport = transport or ShopifyHttpClient()


    # 基础连通性探测（便于先测 token/域名/版本是否正确）
    def ping(self) -> dict:
        return self.transport.graphql(SHOP_PING, op_name="shop.ping")


    # ---------------- REST：商品 ----------------
    def create_product(self, product: Dict[str, Any]) -> Dict[str, Any]:
        """POST /products.json，返回 product 节点（含 id 与 variants[]）。"""
        data = self.transport.post("/products.json", {"product": product}) or {}
        node = data.get("product")
        if not isinstance(node, dict) or node.get("id") is None:
            raise ShopifyPayloadError(f"products.json response missing product: {str(data)[:300]}")
        return node

    def update_product(self, product_id: int, fields: Dict[str, Any]) -> Dict[str, Any]:
        body = {"product": {"id": product_id, **fields}}
        data = self.transport.put(f"/products/{product_id}.json", body) or {}
        return data.get("product") or {}

    def delete_product(self, product_id: int) -> None:
        self.transport.delete(f"/products/{product_id}.json")


    # ---------------- REST：合集 ----------------
    def list_smart_collections(self) -> List[Dict[str, Any]]:
        data = self.transport.get("/smart_collections.json", params={"limit": 250}) or {}
        return list(data.get("smart_collections") or [])

    def create_smart_collection(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        data = self.transport.post("/smart_collections.json", {"smart_collection": payload}) or {}
        return data.get("smart_collection") or {}

    def list_custom_collections(self) -> List[Dict[str, Any]]:
        # 只取第一页（250）；艺术家合集数远小于此
        data = self.transport.get("/custom_collections.json", params={"limit": 250}) or {}
        return list(data.get("custom_collections") or [])

    def create_custom_collection(self, title: str, body_html: str) -> Dict[str, Any]:
        payload = {"title": title, "body_html": body_html, "published": True}
        data = self.transport.post("/custom_collections.json", {"custom_collection": payload}) or {}
        node = data.get("custom_collection")
        if not isinstance(node, dict) or node.get("id") is None:
            raise ShopifyPayloadError(f"custom_collections.json response missing collection: {str(data)[:300]}")
        return node

    def add_to_collection(self, product_id: int, collection_id: int) -> bool:
        """POST /collects.json；已在合集里（422）视为成功，返回 False。"""
        try:
            self.transport.post("/collects.json", {"collect": {"product_id": product_id, "collection_id": collection_id}})
            return True
        except ShopifyUserInputError as e:
            if e.status == 422:
                logger.info("shopify.collect.exists product=%s collection=%s", product_id, collection_id)
                return False
            raise


    # ---------------- GraphQL：Bulk mutation ----------------
    def staged_upload_target(self, filename: str = BULK_UPLOAD_FILENAME) -> Dict[str, Any]:
        """
        stagedUploadsCreate(resource=BULK_MUTATION_VARIABLES)
        返回 {"url", "parameters": [{name, value}], "staged_path"}；staged_path = 参数 key 的值。
        """
        variables = {
            "input": [{
                "resource": "BULK_MUTATION_VARIABLES",
                "filename": filename,
                "mimeType": "text/jsonl",
                "httpMethod": "POST",
            }]
        }
        data = self.transport.graphql(STAGED_UPLOADS_CREATE, variables, op_name="stagedUploadsCreate")
        node = data.get("stagedUploadsCreate") or {}
        user_errors = node.get("userErrors") or []
        if user_errors:
            raise BulkOperationError(f"stagedUploadsCreate userErrors: {user_errors}", user_errors=user_errors)

        targets = node.get("stagedTargets") or []
        if not targets:
            raise ShopifyPayloadError("stagedUploadsCreate returned no targets")
        target = targets[0]
        params = list(target.get("parameters") or [])
        staged_path = next((p.get("value") for p in params if p.get("name") == "key"), None)
        if not target.get("url") or not staged_path:
            raise ShopifyPayloadError(f"staged target missing url/key: {target}")
        return {"url": target["url"], "parameters": params, "staged_path": staged_path}

    def upload_staged_file(self, target: Dict[str, Any], file_path: str) -> str:
        self.transport.upload_staged(target["url"], target["parameters"], file_path)
        return target["staged_path"]

    def run_bulk_mutation(self, staged_path: str, mutation: str = PRODUCT_SET_TEMPLATE) -> Dict[str, Any]:
        """bulkOperationRunMutation；userErrors 直接让本批失败。"""
        variables = {"mutation": mutation, "stagedUploadPath": staged_path}
        data = self.transport.graphql(BULK_OPERATION_RUN_MUTATION, variables, op_name="bulkOperationRunMutation")
        node = data.get("bulkOperationRunMutation") or {}
        user_errors = node.get("userErrors") or []
        if user_errors:
            raise BulkOperationError(f"bulkOperationRunMutation userErrors: {user_errors}", user_errors=user_errors)
        op = node.get("bulkOperation") or {}
        if not op.get("id"):
            raise ShopifyPayloadError(f"bulkOperationRunMutation returned no operation: {node}")
        logger.info("shopify.bulk.started id=%s status=%s", op.get("id"), op.get("status"))
        return op

    def current_bulk_operation(self) -> Optional[Dict[str, Any]]:
        data = self.transport.graphql(CURRENT_BULK_MUTATION, op_name="currentBulkOperation")
        node = data.get("currentBulkOperation")
        if not node:
            return None
        return _coerce_counts(node)

    def bulk_operation(self, op_id: str) -> Optional[Dict[str, Any]]:
        data = self.transport.graphql(BULK_OPERATION_BY_ID, {"id": op_id}, op_name="bulkOperation")
        node = data.get("node")
        if not node or not node.get("id"):
            return None
        return _coerce_counts(node)

    def wait_until_idle(
        self,
        *,
        poll_interval: float = 10.0,
        sleep: Callable[[float], None] = time.sleep,
        max_polls: Optional[int] = None,
    ) -> Optional[Dict[str, Any]]:
        """
        每店同时只能有一个 MUTATION：有 CREATED/RUNNING/CANCELING 的就原地等，直到终态。
        返回最后看到的 operation（可能为 None）。
        """
        polls = 0
        while True:
            op = self.current_bulk_operation()
            status = (op or {}).get("status")
            if status not in BULK_BUSY_STATUSES:
                return op
            polls += 1
            if max_polls is not None and polls > max_polls:
                raise BulkOperationError(f"bulk operation {op.get('id')} still {status}", status=status)
            logger.info("shopify.bulk.busy id=%s status=%s wait_s=%s", op.get("id"), status, poll_interval)
            sleep(poll_interval)

    def iter_result_lines(self, url: str) -> Iterator[str]:
        return self.transport.stream_lines(url)


def _coerce_counts(node: Dict[str, Any]) -> Dict[str, Any]:
    # objectCount/fileSize 返回的是字符串数字
    for key in ("objectCount", "fileSize"):
        raw = node.get(key)
        if raw is not None:
            try:
                node[key] = int(raw)
            except (TypeError, ValueError):
                node[key] = 0
    return node
