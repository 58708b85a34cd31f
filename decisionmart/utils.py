"""Shared utility functions used across Decision Mart modules."""
from __future__ import annotations

import json
from functools import lru_cache
from typing import Any

from decisionmart.config import GOVERNANCE_PATH

_MISSING = object()


def json_parse(value: str | None, default: Any = _MISSING) -> Any:
    """Safely parse a JSON string, returning *default* on failure.

    If no default is given, returns ``{}`` on parse error.
    """
    try:
        return json.loads(value or "")
    except (json.JSONDecodeError, TypeError):
        return {} if default is _MISSING else default


@lru_cache(maxsize=1)
def load_governance() -> dict[str, Any]:
    """Static governance pack (operating model, board charter, funding framework)."""
    return json.loads(GOVERNANCE_PATH.read_text(encoding="utf-8"))
