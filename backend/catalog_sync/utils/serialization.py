from __future__ import annotations

import dataclasses
import json
from datetime import date, datetime
from decimal import Decimal
from typing import Any
import math
import uuid


def to_jsonable(value: Any):
    """
    Recursively convert arbitrary Python values into JSON-serializable primitives.
    Dataclasses become dicts (field order kept); Decimals become fixed two-place strings
    so prices survive the trip as "29.99" rather than 29.990000000000002.
    """
    if dataclasses.is_dataclass(value) and not isinstance(value, type):
        return {f.name: to_jsonable(getattr(value, f.name)) for f in dataclasses.fields(value)}
    if isinstance(value, Decimal):
        if value.is_nan() or value.is_infinite():
            return None
        return format(value.quantize(Decimal("0.01")), "f")
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if isinstance(value, uuid.UUID):
        return str(value)
    if isinstance(value, (list, tuple, set)):
        return [to_jsonable(v) for v in value]
    if isinstance(value, dict):
        return {str(k): to_jsonable(v) for k, v in value.items()}
    if isinstance(value, float):
        if math.isnan(value) or math.isinf(value):
            return None
    return value


def dumps_line(payload: Any) -> str:
    """单行 JSON（JSONL 用）：固定分隔符，保留非 ASCII，同样输入输出逐字节一致。"""
    return json.dumps(to_jsonable(payload), ensure_ascii=False, separators=(",", ":"))
