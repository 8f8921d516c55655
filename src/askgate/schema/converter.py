"""Two-way mapping between JSON-Schema tool parameters and pydantic models.

``to_native`` builds a ``NativeObject`` subclass for an object schema. Nested
nodes become annotations: scalars and arrays as
``Annotated[base, *constraints, SchemaKeywords(...)]``, enums as
``Annotated[Literal[...], SchemaKeywords(...)]``, nested objects as generated
model classes, nullability as ``Optional[...]``. Property names travel as field
aliases so any JSON name survives, including ones that are not identifiers.

Keywords without structural meaning (description, format, constraints, ...)
ride along verbatim in the ``SchemaKeywords`` marker; the enforceable ones are
also translated into pydantic constraints. ``to_external`` reads the types and
markers back, so the round trip is structurally exact.

Anything outside the supported subset raises ``SchemaConversionError`` naming
the construct and its path; nothing is dropped silently.
"""

from __future__ import annotations

import json
import re
import types
from collections import OrderedDict
from collections.abc import Mapping
from dataclasses import dataclass
from typing import Annotated, Any, ClassVar, Literal, Optional, Union, get_args, get_origin

import annotated_types
from pydantic import BaseModel, ConfigDict, Field, StringConstraints, create_model

from askgate.core.errors import SchemaConversionError

_ANNOTATION_KEYWORDS = frozenset(
    {"title", "description", "default", "examples", "format", "$schema", "$id", "$comment", "nullable"}
)
_NUMERIC_CONSTRAINTS = frozenset(
    {"minimum", "maximum", "exclusiveMinimum", "exclusiveMaximum", "multipleOf"}
)
_CONSTRAINTS: dict[str, frozenset[str]] = {
    "string": frozenset({"minLength", "maxLength", "pattern"}),
    "integer": _NUMERIC_CONSTRAINTS,
    "number": _NUMERIC_CONSTRAINTS,
    "boolean": frozenset(),
    "array": frozenset({"minItems", "maxItems"}),
    "object": frozenset(),
    "any": frozenset(),
}
_STRUCTURAL: dict[str, frozenset[str]] = {
    "string": frozenset({"type"}),
    "integer": frozenset({"type"}),
    "number": frozenset({"type"}),
    "boolean": frozenset({"type"}),
    "array": frozenset({"type", "items"}),
    "object": frozenset({"type", "properties", "required", "additionalProperties"}),
    "any": frozenset(),
}
_SCALAR_TYPES: dict[str, type] = {"string": str, "integer": int, "number": float, "boolean": bool}
_SCALAR_NAMES: dict[type, str] = {v: k for k, v in _SCALAR_TYPES.items()}
_BOUNDS = {
    "minimum": annotated_types.Ge,
    "maximum": annotated_types.Le,
    "exclusiveMinimum": annotated_types.Gt,
    "exclusiveMaximum": annotated_types.Lt,
    "multipleOf": annotated_types.MultipleOf,
}


@dataclass(frozen=True)
class SchemaKeywords:
    """Verbatim JSON-Schema keywords attached to a native type.

    Values are stored JSON-encoded so the marker stays hashable inside
    ``Annotated`` metadata.
    """

    pairs: tuple[tuple[str, str], ...] = ()

    @classmethod
    def of(cls, values: Mapping[str, Any]) -> SchemaKeywords:
        return cls(tuple((key, json.dumps(value)) for key, value in values.items()))

    def values(self) -> dict[str, Any]:
        return {key: json.loads(raw) for key, raw in self.pairs}


class NativeObject(BaseModel):
    """Base of every generated tool-parameter model."""

    model_config = ConfigDict(extra="allow")

    schema_keywords: ClassVar[SchemaKeywords] = SchemaKeywords()


class ClosedNativeObject(NativeObject):
    model_config = ConfigDict(extra="forbid")


def _join(*parts: str) -> str:
    return ".".join(p for p in parts if p)


def _model_name(raw: str) -> str:
    return re.sub(r"\W", "_", raw) or "ToolInput"


def _is_count(value: Any) -> bool:
    return isinstance(value, int) and not isinstance(value, bool) and value >= 0


def _is_union(annotation: Any) -> bool:
    return get_origin(annotation) in (Union, types.UnionType)


class SchemaConverter:
    def __init__(self, *, cache_size: int = 256) -> None:
        self._cache: OrderedDict[str, type[NativeObject]] = OrderedDict()
        self._cache_size = cache_size

    def to_native(self, schema: Mapping[str, Any], *, name: str = "ToolInput") -> type[NativeObject]:
        if not isinstance(schema, Mapping):
            raise SchemaConversionError("schema must be a JSON object", "")

        key = name + "\x00" + json.dumps(schema, default=str)
        cached = self._cache.get(key)
        if cached is not None:
            self._cache.move_to_end(key)
            return cached

        kind, nullable = self._classify(schema, "")
        if kind != "object" or nullable:
            raise SchemaConversionError("tool input schema must describe an object", "type")
        try:
            model = self._object(schema, "", _model_name(name))
        except RecursionError as e:
            raise SchemaConversionError("schema nesting is too deep", "") from e

        self._cache[key] = model
        if len(self._cache) > self._cache_size:
            self._cache.popitem(last=False)
        return model

    def to_external(self, native: type[BaseModel]) -> dict[str, Any]:
        if not (isinstance(native, type) and issubclass(native, NativeObject)):
            raise TypeError(f"{native!r} was not produced by SchemaConverter.to_native")
        return self._render_object(native)

    # -- JSON Schema -> native -------------------------------------------

    def _classify(self, node: Mapping[str, Any], path: str) -> tuple[str, bool]:
        if "enum" in node:
            return "enum", False

        nullable = node.get("nullable", False)
        if not isinstance(nullable, bool):
            raise SchemaConversionError("'nullable' must be a boolean", _join(path, "nullable"))

        declared = node.get("type")
        if declared is None:
            if "properties" in node:
                return "object", nullable
            if "items" in node:
                return "array", nullable
            return "any", nullable

        if isinstance(declared, list):
            names = [t for t in declared if t != "null"]
            if len(names) != 1 or len(set(declared)) != len(declared):
                raise SchemaConversionError("union types are not supported", _join(path, "type"))
            nullable = nullable or "null" in declared
            declared = names[0]

        if not isinstance(declared, str) or declared == "any" or declared not in _CONSTRAINTS:
            raise SchemaConversionError(f"unsupported type {declared!r}", _join(path, "type"))
        return declared, nullable

    def _reject_unknown(self, node: Mapping[str, Any], allowed: frozenset[str], path: str) -> None:
        for key in node:
            if key not in allowed:
                raise SchemaConversionError(f"unsupported keyword '{key}'", _join(path, key))

    def _annotation(self, node: Any, path: str, name: str) -> Any:
        if not isinstance(node, Mapping):
            raise SchemaConversionError("schema node must be a JSON object", path)

        kind, nullable = self._classify(node, path)
        if kind == "enum":
            return self._enum(node, path)
        if kind == "object":
            inner: Any = self._object(node, path, name)
        else:
            self._reject_unknown(node, _ANNOTATION_KEYWORDS | _STRUCTURAL[kind] | _CONSTRAINTS[kind], path)
            if kind == "array":
                items = node.get("items")
                if items is None:
                    base: Any = list[Any]
                elif isinstance(items, list):
                    raise SchemaConversionError("tuple-form 'items' is not supported", _join(path, "items"))
                else:
                    base = list[self._annotation(items, _join(path, "items"), f"{name}_item")]
            elif kind == "any":
                base = Any
            else:
                base = _SCALAR_TYPES[kind]
            keywords = SchemaKeywords.of({k: v for k, v in node.items() if k not in _STRUCTURAL[kind]})
            inner = Annotated[(base, *self._constraints(node, kind, path), keywords)]

        if nullable and kind != "any":
            return Optional[inner]
        return inner

    def _constraints(self, node: Mapping[str, Any], kind: str, path: str) -> list[Any]:
        out: list[Any] = []
        for key, value in node.items():
            if key not in _CONSTRAINTS[kind]:
                continue
            where = _join(path, key)
            if key in ("minLength", "maxLength", "minItems", "maxItems"):
                if not _is_count(value):
                    raise SchemaConversionError(f"'{key}' must be a non-negative integer", where)
                out.append(annotated_types.MinLen(value) if key.startswith("min") else annotated_types.MaxLen(value))
            elif key == "pattern":
                if not isinstance(value, str):
                    raise SchemaConversionError("'pattern' must be a string", where)
                try:
                    re.compile(value)
                except re.error as e:
                    raise SchemaConversionError(f"invalid pattern: {e}", where) from e
                out.append(StringConstraints(pattern=value))
            else:
                if isinstance(value, bool) or not isinstance(value, (int, float)):
                    raise SchemaConversionError(f"'{key}' must be a number", where)
                out.append(_BOUNDS[key](value))
        return out

    def _enum(self, node: Mapping[str, Any], path: str) -> Any:
        values = node["enum"]
        where = _join(path, "enum")
        if not isinstance(values, list) or not values:
            raise SchemaConversionError("'enum' must be a non-empty list", where)
        for value in values:
            if value is not None and not isinstance(value, (str, int, float, bool)):
                raise SchemaConversionError("enum values must be JSON scalars", where)
        self._reject_unknown(node, _ANNOTATION_KEYWORDS | {"type", "enum"}, path)
        keywords = SchemaKeywords.of({k: v for k, v in node.items() if k != "enum"})
        return Annotated[(Literal[tuple(values)], keywords)]

    def _object(self, node: Mapping[str, Any], path: str, name: str) -> type[NativeObject]:
        self._reject_unknown(node, _ANNOTATION_KEYWORDS | _STRUCTURAL["object"], path)

        properties = node.get("properties", {})
        if not isinstance(properties, Mapping):
            raise SchemaConversionError("'properties' must be an object", _join(path, "properties"))
        required = node.get("required", [])
        if not isinstance(required, list) or not all(isinstance(r, str) for r in required):
            raise SchemaConversionError("'required' must be a list of property names", _join(path, "required"))
        undeclared = [r for r in required if r not in properties]
        if undeclared:
            raise SchemaConversionError(
                f"required property '{undeclared[0]}' is not declared", _join(path, "required")
            )
        additional = node.get("additionalProperties", True)
        if not isinstance(additional, bool):
            raise SchemaConversionError(
                "schema-valued 'additionalProperties' is not supported", _join(path, "additionalProperties")
            )

        fields: dict[str, Any] = {}
        for i, (prop, sub) in enumerate(properties.items()):
            annotation = self._annotation(sub, _join(path, "properties", prop), f"{name}_{_model_name(prop)}")
            default = ... if prop in required else None
            fields[f"f{i}"] = (annotation, Field(default, alias=prop))

        base = NativeObject if additional else ClosedNativeObject
        try:
            model = create_model(name, __base__=base, **fields)
        except Exception as e:
            raise SchemaConversionError(f"native model could not be built: {e}", path) from e

        keywords = {
            k: v
            for k, v in node.items()
            if k not in ("type", "properties", "required") and not (k == "additionalProperties" and v is False)
        }
        model.schema_keywords = SchemaKeywords.of(keywords)
        return model

    # -- native -> JSON Schema -------------------------------------------

    def _render_object(self, model: type[NativeObject]) -> dict[str, Any]:
        properties: dict[str, Any] = {}
        required: list[str] = []
        for field_name, field in model.model_fields.items():
            prop = field.alias or field_name
            annotation = field.annotation
            if field.metadata:
                annotation = Annotated[(annotation, *field.metadata)]
            properties[prop] = self._render(annotation)
            if field.is_required():
                required.append(prop)

        node: dict[str, Any] = {"type": "object", "properties": properties}
        if required:
            node["required"] = required
        if model.model_config.get("extra") == "forbid":
            node["additionalProperties"] = False
        node.update(model.schema_keywords.values())
        return node

    def _render(self, annotation: Any) -> dict[str, Any]:
        nullable = False
        if _is_union(annotation):
            members = [a for a in get_args(annotation) if a is not type(None)]
            nullable = True
            annotation = members[0]

        keywords: dict[str, Any] = {}
        if get_origin(annotation) is Annotated:
            annotation, *metadata = get_args(annotation)
            for item in metadata:
                if isinstance(item, SchemaKeywords):
                    keywords = item.values()

        origin = get_origin(annotation)
        if origin is Literal:
            node = {"enum": list(get_args(annotation))}
        elif origin is list:
            node = {"type": "array"}
            args = get_args(annotation)
            if args and args[0] is not Any:
                node["items"] = self._render(args[0])
        elif annotation is Any:
            node = {}
        elif isinstance(annotation, type) and issubclass(annotation, NativeObject):
            node = self._render_object(annotation)
        else:
            node = {"type": _SCALAR_NAMES[annotation]}

        node.update(keywords)
        if nullable and "nullable" not in node and "type" in node:
            node["type"] = [node["type"], "null"]
        return node
