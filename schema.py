"""Immutable input-schema descriptors for registered tools.

Each node renders itself as the JSON Schema advertised to the model, and the
same rendered schema is what ``jsonschema`` checks incoming arguments against
before any executor runs. ``validate`` returns a normalised copy (defaults
filled in, integral floats coerced to int) or raises ``SchemaViolation``
naming the offending field.
"""
from dataclasses import dataclass
from typing import Any, Dict, Optional, Tuple, Union

from jsonschema import Draft202012Validator, FormatChecker
from jsonschema.exceptions import best_match

from errors import SchemaViolation

_MISSING = object()


def _join(path: str, key) -> str:
    if isinstance(key, int):
        return f"{path}[{key}]"
    return f"{path}.{key}" if path else key


def _violation(error, path: str) -> SchemaViolation:
    for key in error.absolute_path:
        path = _join(path, key)
    if error.validator == "required":
        missing = next(name for name in error.validator_value if name not in error.instance)
        return SchemaViolation(_join(path, missing), "is required")
    if error.validator == "additionalProperties":
        known = error.schema.get("properties", {})
        unexpected = sorted(k for k in error.instance if k not in known)
        allowed = ", ".join(known) or "none"
        return SchemaViolation(path, f"has unexpected properties {', '.join(unexpected)} (allowed: {allowed})")
    return SchemaViolation(path, error.message)


class _Node:
    def _prune(self, value):
        return value

    def _normalise(self, value):
        return value

    def validate(self, value: Any, path: str = ""):
        value = self._prune(value)
        validator = Draft202012Validator(self.to_json(), format_checker=FormatChecker())
        error = best_match(validator.iter_errors(value))
        if error is not None:
            raise _violation(error, path)
        return self._normalise(value)


@dataclass(frozen=True)
class StringSchema(_Node):
    description: Optional[str] = None
    enum: Optional[Tuple[str, ...]] = None
    pattern: Optional[str] = None
    format: Optional[str] = None
    min_length: Optional[int] = None
    max_length: Optional[int] = None
    default: Any = _MISSING

    kind = "string"

    def to_json(self) -> Dict[str, Any]:
        out: Dict[str, Any] = {"type": "string"}
        if self.description:
            out["description"] = self.description
        if self.enum:
            out["enum"] = list(self.enum)
        if self.pattern:
            out["pattern"] = self.pattern
        if self.format:
            out["format"] = self.format
        if self.min_length is not None:
            out["minLength"] = self.min_length
        if self.max_length is not None:
            out["maxLength"] = self.max_length
        return out


@dataclass(frozen=True)
class IntegerSchema(_Node):
    description: Optional[str] = None
    minimum: Optional[int] = None
    maximum: Optional[int] = None
    default: Any = _MISSING

    kind = "integer"

    def to_json(self) -> Dict[str, Any]:
        out: Dict[str, Any] = {"type": "integer"}
        if self.description:
            out["description"] = self.description
        if self.minimum is not None:
            out["minimum"] = self.minimum
        if self.maximum is not None:
            out["maximum"] = self.maximum
        return out

    def _normalise(self, value):
        return int(value)


@dataclass(frozen=True)
class NumberSchema(_Node):
    description: Optional[str] = None
    minimum: Optional[float] = None
    maximum: Optional[float] = None
    default: Any = _MISSING

    kind = "number"

    def to_json(self) -> Dict[str, Any]:
        out: Dict[str, Any] = {"type": "number"}
        if self.description:
            out["description"] = self.description
        if self.minimum is not None:
            out["minimum"] = self.minimum
        if self.maximum is not None:
            out["maximum"] = self.maximum
        return out


@dataclass(frozen=True)
class BooleanSchema(_Node):
    description: Optional[str] = None
    default: Any = _MISSING

    kind = "boolean"

    def to_json(self) -> Dict[str, Any]:
        out: Dict[str, Any] = {"type": "boolean"}
        if self.description:
            out["description"] = self.description
        return out


@dataclass(frozen=True)
class ArraySchema(_Node):
    items: "Schema"
    description: Optional[str] = None
    min_items: Optional[int] = None
    max_items: Optional[int] = None
    default: Any = _MISSING

    kind = "array"

    def to_json(self) -> Dict[str, Any]:
        out: Dict[str, Any] = {"type": "array", "items": self.items.to_json()}
        if self.description:
            out["description"] = self.description
        if self.min_items is not None:
            out["minItems"] = self.min_items
        if self.max_items is not None:
            out["maxItems"] = self.max_items
        return out

    def _prune(self, value):
        if not isinstance(value, (list, tuple)):
            return value
        return [self.items._prune(item) for item in value]

    def _normalise(self, value):
        return [self.items._normalise(item) for item in value]


@dataclass(frozen=True)
class ObjectSchema(_Node):
    properties: Tuple[Tuple[str, "Schema"], ...] = ()
    required: Tuple[str, ...] = ()
    description: Optional[str] = None
    additional_properties: bool = False
    default: Any = _MISSING

    kind = "object"

    def property_names(self) -> Tuple[str, ...]:
        return tuple(name for name, _ in self.properties)

    def to_json(self) -> Dict[str, Any]:
        out: Dict[str, Any] = {
            "type": "object",
            "properties": {name: schema.to_json() for name, schema in self.properties},
        }
        if self.required:
            out["required"] = list(self.required)
        if not self.additional_properties:
            out["additionalProperties"] = False
        if self.description:
            out["description"] = self.description
        return out

    def validate(self, value: Any, path: str = "") -> Dict[str, Any]:
        if value is None and not path:
            value = {}
        return super().validate(value, path)

    def _prune(self, value):
        # An explicit null for a declared property counts as omitted.
        if not isinstance(value, dict):
            return value
        known = dict(self.properties)
        return {
            name: known[name]._prune(raw) if name in known else raw
            for name, raw in value.items()
            if not (raw is None and name in known)
        }

    def _normalise(self, value):
        cleaned: Dict[str, Any] = {}
        for name, schema in self.properties:
            if name in value:
                cleaned[name] = schema._normalise(value[name])
            elif schema.default is not _MISSING:
                cleaned[name] = schema.default
        if self.additional_properties:
            for name, raw in value.items():
                cleaned.setdefault(name, raw)
        return cleaned


Schema = Union[StringSchema, IntegerSchema, NumberSchema, BooleanSchema, ArraySchema, ObjectSchema]


def object_schema(properties: Dict[str, Schema] | None = None, required=(), **kwargs) -> ObjectSchema:
    return ObjectSchema(properties=tuple((properties or {}).items()), required=tuple(required), **kwargs)


def date_string(description: str, **kwargs) -> StringSchema:
    return StringSchema(description=description, format="date", pattern=r"^\d{4}-\d{2}-\d{2}$", **kwargs)


CURSOR_PROPERTY = StringSchema(
    description="Opaque pagination cursor from a previous response's nextCursor. Omit for the first page."
)
