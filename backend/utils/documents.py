"""Helpers for moving pydantic models in and out of MongoDB documents."""
from enum import Enum
from typing import Any, Dict, Optional, Type, TypeVar

from pydantic import BaseModel

M = TypeVar("M", bound=BaseModel)


def _plain(value: Any) -> Any:
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, dict):
        return {k: _plain(v) for k, v in value.items()}
    if isinstance(value, (list, tuple, set, frozenset)):
        return [_plain(v) for v in value]
    return value


def to_doc(model: BaseModel) -> Dict[str, Any]:
    """Dump a model for storage: enums become their values, datetimes stay native."""
    return _plain(model.model_dump())


def from_doc(model_cls: Type[M], doc: Optional[Dict[str, Any]]) -> Optional[M]:
    if not doc:
        return None
    doc = {k: v for k, v in doc.items() if k != "_id"}
    return model_cls.model_validate(doc)

