from __future__ import annotations

import json
from typing import Any


def quote_value(value: Any) -> str:
    """logfmt value: bare for None/bools/numbers, JSON-escaped and quoted otherwise."""
    if value is None:
        return "NA"
    # bool before int: bool is an int subclass
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (int, float)):
        return str(value)
    return json.dumps(str(value), ensure_ascii=False)


def fmt(key: str, value: Any) -> str:
    return f"{key}={quote_value(value)}"
