"""
Conversion between model objects and stored documents.

Documents are JSON objects. Models are converted as follows:
- pydantic models: model_dump(mode="json") / model_validate()
- mappings: copied as plain dicts
- other objects: their instance __dict__, restored onto a new instance
  without calling __init__
"""

from __future__ import annotations

from collections.abc import Mapping
from typing import Any, Optional

from pydantic import BaseModel
from pydantic_core import PydanticSerializationError, to_jsonable_python

from ..errors import DataError


def to_document(obj: Any, table: Optional[str] = None) -> dict[str, Any]:
    """Convert a model object to a JSON-compatible document.

    Raises:
        DataError: If the object cannot be represented as a JSON object
    """
    if isinstance(obj, BaseModel):
        doc = obj.model_dump(mode="json")
    elif isinstance(obj, Mapping):
        doc = dict(obj)
    elif hasattr(obj, "__dict__"):
        doc = dict(vars(obj))
    else:
        raise DataError(f"Cannot store {type(obj).__name__} as a document", table=table)

    try:
        return to_jsonable_python(doc)
    except PydanticSerializationError as e:
        raise DataError(f"Document is not JSON serializable: {e}", table=table) from e


def from_document(doc: dict[str, Any], model: Optional[type] = None) -> Any:
    """Convert a stored document back to a model object.

    Args:
        doc: The stored document
        model: Class mapped to the table (plain dict if None)
    """
    if model is None or issubclass(model, Mapping):
        return dict(doc)
    if issubclass(model, BaseModel):
        return model.model_validate(doc)
    obj = model.__new__(model)
    obj.__dict__.update(doc)
    return obj
