from __future__ import annotations

import math
from datetime import date, datetime
from enum import Enum
from typing import Any


def sanitize_for_json(obj: Any) -> Any:
    """
    把 NaN/Inf 转成字符串、datetime 转成 ISO 字符串、Enum 转成 value，
    避免写出非标准 JSON（Infinity/NaN）或无法序列化的对象。
    """
    if isinstance(obj, bool):
        return obj
    if isinstance(obj, float):
        if math.isnan(obj):
            return "nan"
        if math.isinf(obj):
            return "inf" if obj > 0 else "-inf"
        return obj
    if isinstance(obj, Enum):
        return obj.value
    if isinstance(obj, (datetime, date)):
        return obj.isoformat()
    if isinstance(obj, dict):
        return {str(k.value if isinstance(k, Enum) else k): sanitize_for_json(v) for k, v in obj.items()}
    if isinstance(obj, (list, tuple)):
        return [sanitize_for_json(v) for v in obj]
    return obj
