"""
共用 fixture：
  - 文件型 sqlite（tmp_path 下），对账的 worker 线程也能并发读写
  - FakeClock：固定“现在”，sleep 只记录不真睡
  - FakeSession：替身 requests.Session，传输层测试用
  - FakeShopifyClient：内存里的 REST / Bulk 行为，按上传的 JSONL 生成结果行
"""
from __future__ import annotations

import itertools
import json
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Any, Dict, List, Optional, Sequence, Tuple

import pytest
import requests
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker

from catalog_sync.core.config import settings
from catalog_sync.db import create_all
from catalog_sync.db.model import Asset, AssetVariant, PipelineRun
from catalog_sync.integrations.shopify.errors import (
    ShopifyNetworkError, ShopifyNotFoundError, ShopifyUserInputError,
)
from catalog_sync.orchestration.context import Context
from catalog_sync.repository.catalog_store import CatalogStore


NOW = datetime(2026, 3, 2, 12, 0, 0)

# 场景里最常用的三个尺寸：面积 400 / 1500 / 500，width 升序
DEFAULT_VARIANTS: Tuple[Tuple[str, str, str], ...] = (
    ("Small", "20", "20"),
    ("Medium", "30", "50"),
    ("Panorama", "40", "12.5"),
)


class FakeClock:

    def __init__(self, now: datetime = NOW) -> None:
        self._now = now
        self.sleeps: List[float] = []

    def now(self) -> datetime:
        return self._now

    def today_start(self) -> datetime:
        return self._now.replace(hour=0, minute=0, second=0, microsecond=0)

    def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)

    def monotonic(self) -> float:
        return float(sum(self.sleeps))

    def advance(self, **delta: float) -> None:
        self._now += timedelta(**delta)


def make_response(
    status: int = 200,
    *,
    json_body: Any = None,
    body: str = "",
    headers: Optional[Dict[str, str]] = None,
    url: str = "",
) -> requests.Response:
    """构造一个内容已读入内存的 requests.Response（iter_lines 也能用）。"""
    resp = requests.Response()
    resp.status_code = status
    resp.url = url
    resp.encoding = "utf-8"
    resp._content = (json.dumps(json_body) if json_body is not None else body).encode("utf-8")
    resp._content_consumed = True
    resp.headers.update(headers or {})
    return resp


class FakeSession:
    """
    替身 requests.Session：按 (method, url) 依次回放注册的响应，最后一个重复使用。
    回放项可以是异常实例（模拟超时 / 连接重置）。
    """

    def __init__(self) -> None:
        self._routes: Dict[Tuple[str, str], List[Any]] = {}
        self.calls: List[Dict[str, Any]] = []

    def add(self, method: str, url: str, status: int = 200, *, exc: Optional[Exception] = None, **kwargs: Any) -> None:
        reply = exc if exc is not None else make_response(status, url=url, **kwargs)
        self._routes.setdefault((method.upper(), url), []).append(reply)

    def request(self, method: str, url: str, **kwargs: Any) -> requests.Response:
        files = kwargs.get("files")
        self.calls.append({
            "method": method.upper(),
            "url": url,
            "headers": dict(kwargs.get("headers") or {}),
            "json": kwargs.get("json"),
            "data": kwargs.get("data"),
            "files": [(name, part[0]) for name, part in files] if files else None,
        })
        queue = self._routes.get((method.upper(), url))
        if not queue:
            raise AssertionError(f"unexpected request {method} {url}")
        reply = queue.pop(0) if len(queue) > 1 else queue[0]
        if isinstance(reply, Exception):
            raise reply
        return reply

    def get(self, url: str, **kwargs: Any) -> requests.Response:
        return self.request("GET", url, **kwargs)

    def post(self, url: str, **kwargs: Any) -> requests.Response:
        return self.request("POST", url, **kwargs)

    def close(self) -> None:
        pass

    def calls_to(self, url: str) -> List[Dict[str, Any]]:
        return [c for c in self.calls if c["url"] == url]


class FakeShopifyClient:
    """
    只实现编排层会调用的方法。
      - create_product：按调用顺序分配 product / variant id
      - Bulk：upload 时把 JSONL 读进内存，run_bulk_mutation 时按行生成结果；
        throttle_ratio 指定末尾多少比例的行返回当日变体额度错误
    """

    def __init__(self) -> None:
        self._ids = itertools.count(1001)
        self.transport = None

        # REST 商品
        self.created: List[Dict[str, Any]] = []
        self.quota_after: Optional[int] = None
        self.reject_titles: Dict[str, str] = {}
        self.updated: List[Tuple[int, Dict[str, Any]]] = []
        self.missing_products: set = set()

        # 合集
        self.smart_collections: List[Dict[str, Any]] = []
        self.custom_collections: List[Dict[str, Any]] = []
        self.collects: List[Tuple[int, int]] = []

        # Bulk
        self.throttle_ratio = 0.0
        self.running_polls = 1
        self.uploads: List[List[str]] = []
        self.submissions = 0
        self.ops: Dict[str, Dict[str, Any]] = {}
        self.current_id: Optional[str] = None
        self.results: Dict[str, List[str]] = {}
        self.download_failures = 0
        self.downloads = 0

    def _next_id(self) -> int:
        return next(self._ids)

    # ---------- REST ----------
    def create_product(self, product: Dict[str, Any]) -> Dict[str, Any]:
        if self.quota_after is not None and len(self.created) >= self.quota_after:
            raise ShopifyUserInputError(
                "Shopify POST /products.json → 422: Daily variant creation limit reached", status=422,
            )
        reason = self.reject_titles.get(product["title"])
        if reason:
            raise ShopifyUserInputError(f"Shopify POST /products.json → 422: {reason}", status=422)

        self.created.append(product)
        pid = self._next_id()
        return {
            "id": pid,
            "admin_graphql_api_id": f"gid://shopify/Product/{pid}",
            "title": product["title"],
            "variants": [{"id": self._next_id(), "sku": v["sku"]} for v in product["variants"]],
        }

    def update_product(self, product_id: int, fields: Dict[str, Any]) -> Dict[str, Any]:
        if product_id in self.missing_products:
            raise ShopifyNotFoundError(f"Shopify PUT /products/{product_id}.json → 404: Not Found", status=404)
        self.updated.append((product_id, fields))
        return {"id": product_id, **fields}

    def list_smart_collections(self) -> List[Dict[str, Any]]:
        return list(self.smart_collections)

    def create_smart_collection(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        node = {"id": self._next_id(), **payload}
        self.smart_collections.append(node)
        return node

    def list_custom_collections(self) -> List[Dict[str, Any]]:
        return list(self.custom_collections)

    def create_custom_collection(self, title: str, body_html: str) -> Dict[str, Any]:
        node = {"id": self._next_id(), "title": title, "body_html": body_html}
        self.custom_collections.append(node)
        return node

    def add_to_collection(self, product_id: int, collection_id: int) -> bool:
        if (product_id, collection_id) in self.collects:
            return False
        self.collects.append((product_id, collection_id))
        return True

    # ---------- Bulk ----------
    def wait_until_idle(self, **kwargs) -> Optional[Dict[str, Any]]:
        return self.current_bulk_operation()

    def staged_upload_target(self, filename: str = "bulk-products.jsonl") -> Dict[str, Any]:
        key = f"tmp/staged/{len(self.uploads) + 1}/{filename}"
        return {"url": "https://uploads.test/", "parameters": [{"name": "key", "value": key}], "staged_path": key}

    def upload_staged_file(self, target: Dict[str, Any], file_path: str) -> str:
        with open(file_path, "r", encoding="utf-8") as fh:
            self.uploads.append([ln for ln in fh.read().splitlines() if ln.strip()])
        return target["staged_path"]

    def run_bulk_mutation(self, staged_path: str, mutation: str = "") -> Dict[str, Any]:
        self.submissions += 1
        lines = self.uploads[-1]
        op_id = f"gid://shopify/BulkOperation/{self.submissions}"
        url = f"https://results.test/{self.submissions}.jsonl"
        self.results[url] = self.result_lines_for(lines)
        self.ops[op_id] = {
            "id": op_id, "status": "COMPLETED", "url": url, "partialDataUrl": None,
            "objectCount": len(lines), "_polls_left": self.running_polls,
        }
        self.current_id = op_id
        return {"id": op_id, "status": "CREATED"}

    def result_lines_for(self, lines: Sequence[str]) -> List[str]:
        throttled = round(len(lines) * self.throttle_ratio)
        ok = len(lines) - throttled
        out: List[str] = []
        for k, raw in enumerate(lines):
            payload = json.loads(raw)["input"]
            if k >= ok:
                out.append(json.dumps({
                    "errors": [{
                        "message": "Daily variant creation limit reached",
                        "extensions": {"code": "VARIANT_THROTTLE_EXCEEDED"},
                    }],
                    "__lineNumber": k,
                }))
                continue
            pid = self._next_id()
            nodes = [
                {"id": f"gid://shopify/ProductVariant/{self._next_id()}", "sku": v["sku"]}
                for v in payload["variants"]
            ]
            out.append(json.dumps({
                "data": {"productSet": {
                    "product": {"id": f"gid://shopify/Product/{pid}", "title": payload["title"], "variants": {"nodes": nodes}},
                    "userErrors": [],
                }},
                "__lineNumber": k,
            }))
        return out

    def current_bulk_operation(self) -> Optional[Dict[str, Any]]:
        if self.current_id is None:
            return None
        return self._view(self.current_id)

    def bulk_operation(self, op_id: str) -> Optional[Dict[str, Any]]:
        if op_id not in self.ops:
            return None
        return self._view(op_id)

    def _view(self, op_id: str) -> Dict[str, Any]:
        op = self.ops[op_id]
        if op["_polls_left"] > 0:
            op["_polls_left"] -= 1
            return {"id": op_id, "status": "RUNNING", "objectCount": 0, "url": None}
        return {k: v for k, v in op.items() if not k.startswith("_")}

    def iter_result_lines(self, url: str):
        self.downloads += 1
        if self.download_failures > 0:
            self.download_failures -= 1
            raise ShopifyNetworkError("result download interrupted: connection reset")
        return iter(self.results[url])


# ---------- fixtures ----------

@pytest.fixture
def engine(tmp_path):
    eng = create_engine(
        f"sqlite:///{tmp_path / 'catalog.db'}",
        connect_args={"check_same_thread": False, "timeout": 30},
    )
    create_all(eng)
    try:
        yield eng
    finally:
        eng.dispose()


@pytest.fixture
def session_factory(engine) -> sessionmaker:
    return sessionmaker(bind=engine, autoflush=False, expire_on_commit=False, class_=Session)


@pytest.fixture
def db(session_factory):
    session = session_factory()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def store(session_factory) -> CatalogStore:
    return CatalogStore(session_factory, id_chunk=2)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def fake_client() -> FakeShopifyClient:
    return FakeShopifyClient()


@pytest.fixture
def make_ctx(store, clock, tmp_path):
    """测试用 Context：节奏相关的间隔全部为 0，日额度默认很大。"""

    def _make(client: Any = None, **overrides: Any) -> Context:
        fields = {
            "SYNC_PACER_MS": 0,
            "COLLECTION_PACER_MS": 0,
            "BULK_BATCH_COOLDOWN_SEC": 0,
            "BULK_OUTPUT_DIR": str(tmp_path / "bulk"),
            "DAILY_VARIANT_LIMIT": 100_000,
            "RECONCILE_CONCURRENCY": 4,
        }
        fields.update(overrides)
        cfg = settings.model_copy(update=fields)
        return Context(client=client, store=store, clock=clock, daily_limit=cfg.DAILY_VARIANT_LIMIT, settings=cfg)

    return _make


@pytest.fixture
def seed(session_factory):
    """
    插一个 asset 及其变体，返回 asset.id。
    created_at 按调用顺序递增，pending 队列的顺序就是插入顺序。
    """
    seq = itertools.count()

    def _seed(
        *,
        variants: Sequence[Tuple[str, str, str]] = DEFAULT_VARIANTS,
        **fields: Any,
    ) -> str:
        n = next(seq)
        values: Dict[str, Any] = {
            "drive_file_id": f"drive-{n:04d}",
            "filename": f"artwork_{n:04d}_3000x4000.jpg",
            "title": f"Artwork {n}",
            "artist": "Hilma af Klint",
            "ratio_class": "portrait",
            "quality_tier": "high",
            "aspect_ratio": Decimal("0.75"),
            "max_print_width_cm": Decimal("60"),
            "max_print_height_cm": Decimal("80"),
            "ai_tags": ["abstract", "spiritual"],
            "ingestion_status": "tagged",
            "created_at": NOW - timedelta(days=30) + timedelta(minutes=n),
        }
        values.update(fields)
        with session_factory() as s:
            asset = Asset(**values)
            s.add(asset)
            s.flush()
            for label, w, h in variants:
                s.add(AssetVariant(
                    asset_id=asset.id, label=label, width_cm=Decimal(w), height_cm=Decimal(h),
                    created_at=values["created_at"],
                ))
            s.commit()
            return asset.id

    return _seed


@pytest.fixture
def load_asset(session_factory):

    def _load(asset_id: str) -> Tuple[Asset, List[AssetVariant]]:
        with session_factory() as s:
            asset = s.get(Asset, asset_id)
            variants = sorted(
                s.query(AssetVariant).filter(AssetVariant.asset_id == asset_id).all(),
                key=lambda v: v.width_cm,
            )
            s.expunge_all()
            return asset, variants

    return _load


@pytest.fixture
def load_run(session_factory):

    def _load(run_id: str) -> PipelineRun:
        with session_factory() as s:
            run = s.get(PipelineRun, run_id)
            s.expunge_all()
            return run

    return _load
