from __future__ import annotations

import json
from datetime import datetime
from enum import Enum
from typing import Any


def sanitize_for_json(value: Any) -> Any:
    """
    Convert common non-JSON types to serializable forms.
    Azure SDK models are converted through as_dict(); enums through their value.
    """
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, bytes):
        return value.decode("utf-8", "replace")
    if isinstance(value, dict):
        return {k: sanitize_for_json(v) for k, v in value.items()}
    if isinstance(value, (list, tuple, set)):
        return [sanitize_for_json(v) for v in value]
    as_dict = getattr(value, "as_dict", None)
    if callable(as_dict):
        try:
            return sanitize_for_json(as_dict())
        except Exception:
            return str(value)
    return value


def stable_json_dumps(obj: Any) -> str:
    return json.dumps(sanitize_for_json(obj), sort_keys=True, separators=(",", ":"), ensure_ascii=False)
