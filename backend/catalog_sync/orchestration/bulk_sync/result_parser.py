"""
Bulk 结果 JSONL 解析
每行归到一种类型（按形状穷举匹配）：
  ProductLine       data.productSet.product 有 id            → 第 k 行成功
  UserErrorLine     product 为空且 userErrors 非空            → 第 k 行校验失败（asset 标记 error）
  ThrottledLine     errors / userErrors 指向当日变体额度       → 第 k 行被限流（asset 保持 pending）
  ErrorLine         其它顶层 errors                           → 第 k 行失败（asset 标记 error）
  VariantChildLine  {"id": ProductVariant gid, "__parentId"}  → 展开的子行，按父商品 gid 归组
解析不了的行记日志、计数后跳过。
"""
from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Optional, Tuple, Union

from catalog_sync.integrations.shopify.payload_utils import gid_to_id, is_variant_gid
from catalog_sync.integrations.shopify.retry_policy import PolicyKind, classify_line_error
from catalog_sync.orchestration.mapping import RemoteProduct, RemoteVariant, remote_variant

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ProductLine:
    line: int
    product_gid: str
    title: Optional[str] = None
    inline_variants: Tuple[RemoteVariant, ...] = ()


@dataclass(frozen=True)
class UserErrorLine:
    line: int
    errors: Tuple[Dict[str, Any], ...]

    @property
    def message(self) -> str:
        parts = []
        for e in self.errors:
            field_path = ".".join(str(f) for f in (e.get("field") or []))
            code = e.get("code")
            text = e.get("message") or ""
            prefix = f"[{code}] " if code else ""
            parts.append(f"{prefix}{field_path + ': ' if field_path else ''}{text}")
        return "; ".join(parts)


@dataclass(frozen=True)
class ThrottledLine:
    line: int
    message: str


@dataclass(frozen=True)
class ErrorLine:
    line: int
    message: str


@dataclass(frozen=True)
class VariantChildLine:
    parent_gid: str
    variant: RemoteVariant


ResultLine = Union[ProductLine, UserErrorLine, ThrottledLine, ErrorLine, VariantChildLine]


@dataclass
class ParsedResult:
    products: Dict[int, ProductLine] = field(default_factory=dict)
    user_errors: Dict[int, UserErrorLine] = field(default_factory=dict)
    throttled: Dict[int, ThrottledLine] = field(default_factory=dict)
    errors: Dict[int, ErrorLine] = field(default_factory=dict)
    children: Dict[str, List[RemoteVariant]] = field(default_factory=dict)
    bad_lines: int = 0

    @property
    def total_lines(self) -> int:
        """有行号的结果行数（不含子行）"""
        return len(self.products) + len(self.user_errors) + len(self.throttled) + len(self.errors)

    @property
    def throttled_count(self) -> int:
        return len(self.throttled)

    @property
    def max_line(self) -> Optional[int]:
        """结果里出现过的最大 __lineNumber（没有行号行时为 None）"""
        keys = [*self.products, *self.user_errors, *self.throttled, *self.errors]
        return max(keys) if keys else None

    def add(self, item: ResultLine) -> None:
        if isinstance(item, ProductLine):
            self.products[item.line] = item
        elif isinstance(item, UserErrorLine):
            self.user_errors[item.line] = item
        elif isinstance(item, ThrottledLine):
            self.throttled[item.line] = item
        elif isinstance(item, ErrorLine):
            self.errors[item.line] = item
        elif isinstance(item, VariantChildLine):
            self.children.setdefault(item.parent_gid, []).append(item.variant)
        else:
            raise TypeError(f"unknown result line type: {type(item)!r}")

    def remote_product(self, line: ProductLine) -> RemoteProduct:
        """内联 variants.nodes 优先；没有内联时才用子行，两者不混用。"""
        variants = line.inline_variants if line.inline_variants else tuple(self.children.get(line.product_gid, ()))
        pid = gid_to_id(line.product_gid)
        return RemoteProduct(gid=line.product_gid, id=int(pid), variants=variants)

    def failures(self) -> Dict[int, str]:
        """行号 → 要写进 asset.ingestion_error 的消息（限流行不在这里）"""
        out: Dict[int, str] = {k: v.message for k, v in self.user_errors.items()}
        out.update({k: v.message for k, v in self.errors.items()})
        return out


# ---------- 单行 ----------

def _line_number(obj: Dict[str, Any]) -> Optional[int]:
    raw = obj.get("__lineNumber")
    if raw is None:
        return None
    try:
        return int(raw)
    except (TypeError, ValueError):
        return None


def _top_level_error(line: int, errors: List[Any]) -> ResultLine:
    messages = []
    for e in errors:
        if not isinstance(e, dict):
            messages.append(str(e))
            continue
        code = (e.get("extensions") or {}).get("code")
        msg = e.get("message") or ""
        if classify_line_error(code, msg) is PolicyKind.QUOTA:
            return ThrottledLine(line=line, message=msg or str(code))
        messages.append(f"[{code}] {msg}" if code else msg)
    return ErrorLine(line=line, message="; ".join(messages) or "unknown error")


def parse_line(obj: Dict[str, Any]) -> Optional[ResultLine]:
    # 子行：没有 data/errors，只有 id + __parentId
    parent = obj.get("__parentId")
    if parent and is_variant_gid(obj.get("id")):
        rv = remote_variant(obj)
        return VariantChildLine(parent_gid=str(parent), variant=rv) if rv else None

    line = _line_number(obj)
    if line is None:
        return None

    errors = obj.get("errors")
    if errors:
        return _top_level_error(line, list(errors))

    node = ((obj.get("data") or {}).get("productSet")) or {}
    user_errors = [e for e in (node.get("userErrors") or []) if isinstance(e, dict)]
    product = node.get("product")

    if product and product.get("id"):
        nodes = ((product.get("variants") or {}).get("nodes")) or []
        inline = tuple(rv for rv in (remote_variant(n) for n in nodes if isinstance(n, dict)) if rv)
        return ProductLine(line=line, product_gid=str(product["id"]), title=product.get("title"), inline_variants=inline)

    if user_errors:
        for e in user_errors:
            if classify_line_error(e.get("code"), e.get("message")) is PolicyKind.QUOTA:
                return ThrottledLine(line=line, message=e.get("message") or str(e.get("code")))
        return UserErrorLine(line=line, errors=tuple(user_errors))

    return ErrorLine(line=line, message="productSet returned no product and no userErrors")


# ---------- 整个文件 ----------

def parse_lines(lines: Iterable[Union[str, bytes]]) -> ParsedResult:
    result = ParsedResult()
    for raw in lines:
        if isinstance(raw, bytes):
            raw = raw.decode("utf-8", errors="replace")
        text = raw.strip()
        if not text:
            continue
        try:
            obj = json.loads(text)
        except ValueError:
            result.bad_lines += 1
            logger.warning("bulk.result.bad_json sample=%s", text[:200])
            continue
        if not isinstance(obj, dict):
            result.bad_lines += 1
            continue
        item = parse_line(obj)
        if item is None:
            result.bad_lines += 1
            logger.warning("bulk.result.unrecognized sample=%s", text[:200])
            continue
        result.add(item)

    logger.info(
        "bulk.result.parsed lines=%s ok=%s user_errors=%s throttled=%s errors=%s children=%s bad=%s",
        result.total_lines, len(result.products), len(result.user_errors), result.throttled_count,
        len(result.errors), sum(len(v) for v in result.children.values()), result.bad_lines,
    )
    return result
