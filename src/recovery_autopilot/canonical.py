from __future__ import annotations

from datetime import date, datetime
from enum import Enum
from typing import Any

import rfc8785
from pydantic import BaseModel

_PASSTHROUGH_TYPES = (bool, int, float, str, type(None))


def _normalize(value: Any) -> bool | int | float | str | None | list[Any] | dict[str, Any]:
    """Recursively convert pydantic models, enums and datetimes into JSON primitives.

    Raises:
        TypeError: If value contains a type that cannot be converted to JSON.
    """
    if isinstance(value, _PASSTHROUGH_TYPES):
        return value
    if isinstance(value, BaseModel):
        return _normalize(value.model_dump(mode="json"))
    if isinstance(value, dict):
        return {str(k): _normalize(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_normalize(item) for item in value]
    if isinstance(value, Enum):
        return _normalize(value.value)
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    raise TypeError(f"Cannot serialize type {type(value).__name__} to canonical JSON")


def to_canonical_json(value: Any) -> str:
    """Serialize a value to deterministic JSON per RFC 8785.

    Action log lines are written with this so identical entries are byte-identical
    on disk regardless of field order in the source dict.
    """
    return rfc8785.dumps(_normalize(value)).decode("utf-8")
