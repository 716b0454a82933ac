# jobrelay/core/codec/serde.py
"""
JSON codec for payloads, step details and results.

Everything stored in a JSONB column is also sent to clients as-is, so values
are reduced to plain JSON (no type metadata): pydantic models via
``model_dump(mode='json')``, dataclasses field by field, datetimes as ISO
strings.
"""

from __future__ import annotations
from typing import Any, Dict, List, Mapping, Optional, Sequence, Union, cast
import dataclasses
import datetime as dt
import enum
import json
import uuid

from pydantic import BaseModel

Json = Union[None, bool, int, float, str, List['Json'], Dict[str, 'Json']]
"""
Union type for JSON-serializable values.
"""


class SerializationError(Exception):
    """
    Raised when a value cannot be serialized to JSON.
    """

    pass


def to_jsonable(value: Any) -> Json:
    """Reduce ``value`` to plain JSON types.

    Raises:
        SerializationError: for values with no JSON form.
    """
    if value is None or isinstance(value, (bool, int, float, str)):
        return value

    if isinstance(value, (dt.datetime, dt.date, dt.time)):
        return value.isoformat()

    if isinstance(value, enum.Enum):
        return to_jsonable(value.value)

    if isinstance(value, uuid.UUID):
        return str(value)

    if isinstance(value, BaseModel):
        return cast(Json, value.model_dump(mode='json'))

    if dataclasses.is_dataclass(value) and not isinstance(value, type):
        return {
            field.name: to_jsonable(getattr(value, field.name))
            for field in dataclasses.fields(value)
        }

    if isinstance(value, Mapping):
        mapping = cast(Mapping[object, object], value)
        return {str(key): to_jsonable(item) for key, item in mapping.items()}

    if isinstance(value, (Sequence, set, frozenset)) and not isinstance(
        value, (str, bytes, bytearray)
    ):
        return [to_jsonable(item) for item in cast(Sequence[object], value)]

    raise SerializationError(f'Cannot serialize value of type {type(value).__name__}')


def dumps_json(value: Any) -> str:
    """Serialize a value to a compact JSON string (NaN rejected)."""
    return json.dumps(
        to_jsonable(value),
        ensure_ascii=False,
        separators=(',', ':'),
        allow_nan=False,
    )


def loads_json(s: Optional[str]) -> Json:
    return json.loads(s) if s else None
