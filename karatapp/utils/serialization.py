from dataclasses import fields, is_dataclass
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Any

from pydantic import BaseModel


def _is_container(obj: Any) -> bool:
    return isinstance(obj, (list, tuple, set, frozenset, dict))


def to_jsonable(obj: Any) -> Any:
    """Convert service results (ORM rows, pydantic models, dataclasses) to JSON-ready values."""
    if obj is None or isinstance(obj, (bool, int, float, str)):
        return obj

    if isinstance(obj, Enum):
        return obj.value

    if isinstance(obj, datetime):
        return obj.isoformat()

    if isinstance(obj, Path):
        return str(obj)

    if isinstance(obj, BaseModel):
        return obj.model_dump(mode="json")

    to_dict = getattr(obj, "to_dict", None)
    if callable(to_dict):
        return to_jsonable(to_dict())

    if is_dataclass(obj) and not isinstance(obj, type):
        return {f.name: to_jsonable(getattr(obj, f.name)) for f in fields(obj)}

    if isinstance(obj, dict):
        return {str(k): to_jsonable(v) for k, v in obj.items()}

    if _is_container(obj):
        return [to_jsonable(v) for v in obj]

    return str(obj)
