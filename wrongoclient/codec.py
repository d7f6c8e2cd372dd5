"""
Value encoder: turns one Python value into an encoded BSON document.

Mappings and dataclass instances are first converted into plain dicts,
honouring ``BSONOptions``, and then handed to ``bson.encode``. Dataclass
fields are configured through ``field(metadata=...)``:

  - ``"bson"``: key to use instead of the field name (``"-"`` skips the field)
  - ``"json"``: fallback key when ``use_json_struct_tags`` is set
  - ``"omitempty"``: drop the field when its value is empty
  - ``"inline"``: merge a nested mapping or dataclass into the parent
"""

from __future__ import annotations

import dataclasses
import functools
import types
import typing
from collections.abc import Mapping, Sequence
from typing import Any, Protocol, runtime_checkable

import bson
from bson.codec_options import CodecOptions, TypeRegistry
from bson.errors import InvalidDocument
from bson.int64 import Int64
from bson.raw_bson import RawBSONDocument

from .bsoncore import TYPE_EMBEDDED_DOCUMENT, Document, Value, type_name
from .errors import DecodeError
from .options import DEFAULT_BSON_OPTIONS, BSONOptions

BYTE_BUFFER_TYPES = (bytes, bytearray, memoryview)

_INT32_MIN = -(2**31)
_INT32_MAX = 2**31 - 1


@runtime_checkable
class Marshaler(Protocol):
    """Objects that encode themselves into a whole BSON document."""

    def marshal_bson(self) -> bytes: ...


@runtime_checkable
class ValueMarshaler(Protocol):
    """Objects that encode themselves into a single typed BSON value."""

    def marshal_bson_value(self) -> tuple[int, bytes]: ...


# --- shape predicates -------------------------------------------------


def is_byte_buffer(value: object) -> bool:
    return isinstance(value, BYTE_BUFFER_TYPES)


def is_sequence(value: object) -> bool:
    """True for list-like values; strings and byte buffers do not count."""
    return isinstance(value, Sequence) and not isinstance(value, (str, *BYTE_BUFFER_TYPES))


def _is_struct(value: object) -> bool:
    return dataclasses.is_dataclass(value) and not isinstance(value, type)


# --- encoding ---------------------------------------------------------


def encode(
    value: Any,
    bson_opts: BSONOptions | None = None,
    registry: TypeRegistry | None = None,
) -> Document:
    """
    Encode ``value`` as a top-level BSON document.

    Raises ``bson.errors.InvalidDocument`` (or the ``TypeError`` /
    ``OverflowError`` that ``bson.encode`` raises) for values that have no
    document representation.
    """
    opts = bson_opts or DEFAULT_BSON_OPTIONS

    if isinstance(value, Marshaler):
        return Document(value.marshal_bson())
    if isinstance(value, ValueMarshaler):
        btype, data = value.marshal_bson_value()
        if btype != TYPE_EMBEDDED_DOCUMENT:
            raise InvalidDocument(f"cannot encode a {type_name(btype)} as a top-level document")
        return Document(data)
    if isinstance(value, RawBSONDocument):
        return Document(value.raw)

    if isinstance(value, Mapping):
        doc = _convert_mapping(value, opts)
    elif _is_struct(value):
        doc = _convert_struct(value, opts)
    else:
        raise InvalidDocument(f"cannot encode object: {value!r}, of type: {type(value)}")

    # bson.encode moves a top-level _id to the front; nested documents keep
    # their key order, so encode one level down and unwrap.
    codec_options = CodecOptions(type_registry=registry)
    wrapper = Document(bson.encode({"d": doc}, check_keys=False, codec_options=codec_options))
    return Document(wrapper.lookup("d").data)


def _convert_value(value: Any, opts: BSONOptions) -> Any:
    if isinstance(value, Marshaler):
        return RawBSONDocument(value.marshal_bson())
    if isinstance(value, ValueMarshaler):
        btype, data = value.marshal_bson_value()
        try:
            return Value(btype, bytes(data)).decode()
        except DecodeError as exc:
            raise InvalidDocument(f"invalid value from {type(value).__name__}: {exc}") from exc
    if isinstance(value, RawBSONDocument):
        return value
    if isinstance(value, Mapping):
        return _convert_mapping(value, opts)
    if _is_struct(value):
        return _convert_struct(value, opts)
    if isinstance(value, Int64) and opts.int_min_size and _INT32_MIN <= value <= _INT32_MAX:
        return int(value)
    if isinstance(value, (list, tuple)):
        return [_convert_value(item, opts) for item in value]
    return value


def _convert_mapping(mapping: Mapping[Any, Any], opts: BSONOptions) -> dict[str, Any]:
    out: dict[str, Any] = {}
    for key, item in mapping.items():
        if not isinstance(key, str):
            if not opts.stringify_map_keys:
                raise InvalidDocument(f"documents must have only string keys, key was {key!r}")
            key = str(key)
        out[key] = _convert_value(item, opts)
    return out


def _convert_struct(obj: Any, opts: BSONOptions) -> dict[str, Any]:
    out: dict[str, Any] = {}
    inlined: list[Any] = []

    for field in dataclasses.fields(obj):
        key = _field_key(field, opts)
        if key == "-":
            continue
        value = getattr(obj, field.name)
        if field.metadata.get("inline"):
            inlined.append(value)
            continue
        if value is None:
            value = _empty_for_nil(type(obj), field.name, opts)
        if (opts.omit_empty or field.metadata.get("omitempty")) and _is_empty(value, opts):
            continue
        out[key] = _convert_value(value, opts)

    # Regular fields take precedence over inlined keys.
    for value in inlined:
        if value is None:
            continue
        nested = _convert_value(value, opts)
        if not isinstance(nested, Mapping):
            raise InvalidDocument(f"inline field must be a mapping or dataclass, got {type(value)}")
        for key, item in nested.items():
            if key in out:
                if opts.error_on_inline_duplicates:
                    raise InvalidDocument(f"key {key!r} of inlined value conflicts with a field name")
                continue
            out[key] = item
    return out


def _field_key(field: dataclasses.Field[Any], opts: BSONOptions) -> str:
    key = field.metadata.get("bson")
    if key is None and opts.use_json_struct_tags:
        key = field.metadata.get("json")
    return key or field.name


def _is_empty(value: Any, opts: BSONOptions) -> bool:
    if value is None:
        return True
    if isinstance(value, (bool, int, float)):
        return not value
    if isinstance(value, (str, *BYTE_BUFFER_TYPES, Mapping, list, tuple)):
        return len(value) == 0
    if _is_struct(value):
        return opts.omit_zero_struct and all(
            _is_empty(getattr(value, f.name), opts) for f in dataclasses.fields(value)
        )
    return False


# --- nil handling -----------------------------------------------------


def _empty_for_nil(cls: type, name: str, opts: BSONOptions) -> Any:
    if not (opts.nil_bytes_as_empty or opts.nil_map_as_empty or opts.nil_slice_as_empty):
        return None
    kind = _container_kind(_type_hints(cls).get(name))
    if kind == "bytes" and opts.nil_bytes_as_empty:
        return b""
    if kind == "map" and opts.nil_map_as_empty:
        return {}
    if kind == "slice" and opts.nil_slice_as_empty:
        return []
    return None


@functools.lru_cache(maxsize=None)
def _type_hints(cls: type) -> dict[str, Any]:
    return typing.get_type_hints(cls)


def _container_kind(hint: Any) -> str | None:
    if hint is None:
        return None
    origin = typing.get_origin(hint)
    if origin in (typing.Union, types.UnionType):
        args = [arg for arg in typing.get_args(hint) if arg is not type(None)]
        return _container_kind(args[0]) if len(args) == 1 else None

    target = origin or hint
    if not isinstance(target, type):
        return None
    if issubclass(target, (bytes, bytearray)):
        return "bytes"
    if issubclass(target, Mapping):
        return "map"
    if issubclass(target, Sequence) and not issubclass(target, str):
        return "slice"
    return None
