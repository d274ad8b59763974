"""
商品输入的值对象（与平台无关）
  - ProductInput / VariantInput / Metafield / SmartCollection 都是不可变 dataclass
  - to_product_set_input(): Bulk（GraphQL productSet）形状
  - to_rest_product():      逐个创建（REST POST /products.json）形状
  两种形状都从同一个 ProductInput 生成，保证两种执行模式内容一致。
"""
from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal
from typing import Any, Dict, Optional, Tuple


METAFIELD_NAMESPACE = "neverland"
METAFIELD_TYPE = "single_line_text_field"
DRIVE_FILE_ID_KEY = "drive_file_id"


def _money(value: Decimal) -> str:
    return format(value.quantize(Decimal("0.01")), "f")


@dataclass(frozen=True)
class Metafield:
    key: str
    value: str
    namespace: str = METAFIELD_NAMESPACE
    type: str = METAFIELD_TYPE

    def as_dict(self) -> Dict[str, str]:
        return {"namespace": self.namespace, "key": self.key, "value": self.value, "type": self.type}


@dataclass(frozen=True)
class VariantInput:
    option_value: str
    price: Decimal
    compare_at_price: Decimal
    sku: str
    weight_grams: int
    requires_shipping: bool = True
    taxable: bool = True
    inventory_policy: str = "CONTINUE"


@dataclass(frozen=True)
class ProductInput:
    title: str
    description_html: str
    vendor: str
    product_type: str
    tags: Tuple[str, ...]
    status: str
    variants: Tuple[VariantInput, ...]
    metafields: Tuple[Metafield, ...]
    option_name: str = "Size"

    @property
    def option_values(self) -> Tuple[str, ...]:
        return tuple(v.option_value for v in self.variants)

    @property
    def drive_file_id(self) -> Optional[str]:
        return metafield_value(self.metafields, DRIVE_FILE_ID_KEY)


    # ---------- productSet（Bulk JSONL 每行的 input） ----------
    def to_product_set_input(self) -> Dict[str, Any]:
        return {
            "title": self.title,
            "descriptionHtml": self.description_html,
            "vendor": self.vendor,
            "productType": self.product_type,
            "tags": list(self.tags),
            "status": self.status,
            "productOptions": [{
                "name": self.option_name,
                "values": [{"name": v} for v in self.option_values],
            }],
            "variants": [
                {
                    "optionValues": [{"optionName": self.option_name, "name": v.option_value}],
                    "price": _money(v.price),
                    "compareAtPrice": _money(v.compare_at_price),
                    "sku": v.sku,
                    "taxable": v.taxable,
                    "inventoryPolicy": v.inventory_policy,
                    "inventoryItem": {
                        "requiresShipping": v.requires_shipping,
                        "measurement": {"weight": {"value": v.weight_grams, "unit": "GRAMS"}},
                    },
                }
                for v in self.variants
            ],
            "metafields": [m.as_dict() for m in self.metafields],
        }


    # ---------- REST POST /products.json ----------
    def to_rest_product(self) -> Dict[str, Any]:
        return {
            "title": self.title,
            "body_html": self.description_html,
            "vendor": self.vendor,
            "product_type": self.product_type,
            "tags": ", ".join(self.tags),
            "status": self.status.lower(),
            "options": [{"name": self.option_name}],
            "variants": [
                {
                    "option1": v.option_value,
                    "price": _money(v.price),
                    "compare_at_price": _money(v.compare_at_price),
                    "sku": v.sku,
                    "requires_shipping": v.requires_shipping,
                    "inventory_management": None,
                    "inventory_policy": v.inventory_policy.lower(),
                    "taxable": v.taxable,
                    "weight": v.weight_grams,
                    "weight_unit": "g",
                }
                for v in self.variants
            ],
            "metafields": [m.as_dict() for m in self.metafields],
        }


@dataclass(frozen=True)
class SmartCollectionRule:
    column: str        # TYPE / TAG ...
    relation: str      # EQUALS ...
    condition: str

    def as_rest(self) -> Dict[str, str]:
        return {"column": self.column.lower(), "relation": self.relation.lower(), "condition": self.condition}


@dataclass(frozen=True)
class SmartCollection:
    title: str
    rules: Tuple[SmartCollectionRule, ...]
    disjunctive: bool = False
    published: bool = True

    def to_rest(self) -> Dict[str, Any]:
        return {
            "title": self.title,
            "rules": [r.as_rest() for r in self.rules],
            "disjunctive": self.disjunctive,
            "published": self.published,
        }


def metafield_value(metafields: Any, key: str, namespace: str = METAFIELD_NAMESPACE) -> Optional[str]:
    """从 Metafield 元组或 JSONL 里的 dict 列表取值。"""
    for m in metafields or ():
        if isinstance(m, Metafield):
            if m.key == key and m.namespace == namespace:
                return m.value
        elif isinstance(m, dict):
            if m.get("key") == key and m.get("namespace", namespace) == namespace:
                value = m.get("value")
                return None if value is None else str(value)
    return None
