"""
Base domain model with camelCase JSON compatibility.

Provides automatic camelCase <-> snake_case conversion for persisted records
(checkpoints) and for notification payloads consumed by UIs.
All streaming domain records should mix in BaseDomainModel.
"""

from __future__ import annotations

import dataclasses
from dataclasses import fields
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Type, TypeVar, get_type_hints

T = TypeVar("T", bound="BaseDomainModel")


def to_camel_case(snake_str: str) -> str:
    """
    Convert snake_case to camelCase.

    Examples:
        >>> to_camel_case("file_path")
        'filePath'
        >>> to_camel_case("start_byte_offset")
        'startByteOffset'
    """
    components = snake_str.split("_")
    return components[0] + "".join(x.title() for x in components[1:])


def to_snake_case(camel_str: str) -> str:
    """
    Convert camelCase to snake_case.

    Examples:
        >>> to_snake_case("filePath")
        'file_path'
        >>> to_snake_case("currentChunk")
        'current_chunk'
    """
    result = [camel_str[0].lower()]
    for char in camel_str[1:]:
        if char.isupper():
            result.extend(["_", char.lower()])
        else:
            result.append(char)
    return "".join(result)


def _serialize(value: Any) -> Any:
    if value is None:
        return None
    if isinstance(value, BaseDomainModel):
        return value.to_json()
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, (list, tuple)):
        return [_serialize(item) for item in value]
    if isinstance(value, dict):
        return {k: _serialize(v) for k, v in value.items()}
    return value


class BaseDomainModel:
    """
    Mixin for dataclass domain records.

    Kept free of dataclass fields itself so that both frozen and mutable
    dataclasses can inherit from it.

    - to_json() serializes to camelCase
    - from_json() deserializes from camelCase JSON
    - Enum values are serialized as their value
    - Dates are serialized as ISO 8601 strings
    """

    def to_json(self) -> Dict[str, Any]:
        """
        Serialize to camelCase JSON.

        Returns:
            Dictionary with camelCase keys, Enum values, dates as ISO strings
        """
        result: Dict[str, Any] = {}
        for field in fields(self):  # type: ignore[arg-type]
            result[to_camel_case(field.name)] = _serialize(getattr(self, field.name))
        return result

    @classmethod
    def missing_json_keys(cls, data: Dict[str, Any]) -> list:
        """camelCase keys of every field absent from ``data``, defaulted or not."""
        return [to_camel_case(f.name) for f in fields(cls) if to_camel_case(f.name) not in data]  # type: ignore[arg-type]

    @classmethod
    def from_json(cls: Type[T], data: Dict[str, Any]) -> T:
        """
        Deserialize from camelCase JSON to the Python model.

        Nested records are left as plain values; subclasses with nested
        models override this and convert them.

        Raises:
            ValueError: If required fields are missing
        """
        kwargs: Dict[str, Any] = {}
        # Resolves string annotations from `from __future__ import annotations`
        hints = get_type_hints(cls)

        for field in fields(cls):  # type: ignore[arg-type]
            json_key = to_camel_case(field.name)

            if json_key not in data:
                if field.default is not dataclasses.MISSING or field.default_factory is not dataclasses.MISSING:  # type: ignore[misc]
                    continue
                raise ValueError(f"Missing required field: {json_key}")

            value = data[json_key]

            field_type = hints.get(field.name)
            if value is not None and isinstance(field_type, type) and issubclass(field_type, Enum):
                value = field_type(value)

            kwargs[field.name] = value

        return cls(**kwargs)
