"""
Low-level BSON document and array primitives.

Layout of an encoded document:
  - int32 total length, little endian, counting itself and the terminator.
  - Zero or more elements: type byte, NUL-terminated key, value bytes.
  - A single 0x00 terminator.

An array is a document whose keys are "0", "1", ... in order.

Documents are built append-only into a growable buffer. A length slot is
reserved before the contents are written and patched in place once they are
known; the builder hands out the slot offset as an opaque token so that call
sites never compute offsets themselves.
"""

from __future__ import annotations

import struct
from collections.abc import Iterator
from dataclasses import dataclass
from typing import Any, NamedTuple

import bson
from bson.codec_options import CodecOptions
from bson.errors import BSONError
from bson.objectid import ObjectId

from .errors import (
    DecodeError,
    ElementNotFoundError,
    MalformedArrayError,
    MalformedDocumentError,
)


TYPE_DOUBLE = 0x01
TYPE_STRING = 0x02
TYPE_EMBEDDED_DOCUMENT = 0x03
TYPE_ARRAY = 0x04
TYPE_BINARY = 0x05
TYPE_UNDEFINED = 0x06
TYPE_OBJECT_ID = 0x07
TYPE_BOOLEAN = 0x08
TYPE_DATETIME = 0x09
TYPE_NULL = 0x0A
TYPE_REGEX = 0x0B
TYPE_DBPOINTER = 0x0C
TYPE_JAVASCRIPT = 0x0D
TYPE_SYMBOL = 0x0E
TYPE_CODE_WITH_SCOPE = 0x0F
TYPE_INT32 = 0x10
TYPE_TIMESTAMP = 0x11
TYPE_INT64 = 0x12
TYPE_DECIMAL128 = 0x13
TYPE_MIN_KEY = 0xFF
TYPE_MAX_KEY = 0x7F

_TYPE_NAMES = {
    TYPE_DOUBLE: "double",
    TYPE_STRING: "string",
    TYPE_EMBEDDED_DOCUMENT: "embedded document",
    TYPE_ARRAY: "array",
    TYPE_BINARY: "binary",
    TYPE_UNDEFINED: "undefined",
    TYPE_OBJECT_ID: "objectID",
    TYPE_BOOLEAN: "boolean",
    TYPE_DATETIME: "UTC datetime",
    TYPE_NULL: "null",
    TYPE_REGEX: "regex",
    TYPE_DBPOINTER: "dbPointer",
    TYPE_JAVASCRIPT: "javascript",
    TYPE_SYMBOL: "symbol",
    TYPE_CODE_WITH_SCOPE: "code with scope",
    TYPE_INT32: "32-bit integer",
    TYPE_TIMESTAMP: "timestamp",
    TYPE_INT64: "64-bit integer",
    TYPE_DECIMAL128: "128-bit decimal",
    TYPE_MIN_KEY: "min key",
    TYPE_MAX_KEY: "max key",
}

# Value sizes for types that carry no length prefix.
_FIXED_SIZES = {
    TYPE_DOUBLE: 8,
    TYPE_UNDEFINED: 0,
    TYPE_OBJECT_ID: 12,
    TYPE_BOOLEAN: 1,
    TYPE_DATETIME: 8,
    TYPE_NULL: 0,
    TYPE_INT32: 4,
    TYPE_TIMESTAMP: 8,
    TYPE_INT64: 8,
    TYPE_DECIMAL128: 16,
    TYPE_MIN_KEY: 0,
    TYPE_MAX_KEY: 0,
}

_INT32 = struct.Struct("<i")
_INT64 = struct.Struct("<q")
_LENGTH_SIZE = _INT32.size
_MIN_DOCUMENT_SIZE = _LENGTH_SIZE + 1
_EMPTY_DOCUMENT = _INT32.pack(_MIN_DOCUMENT_SIZE) + b"\x00"


def type_name(btype: int) -> str:
    return _TYPE_NAMES.get(btype, f"invalid type 0x{btype:02x}")


# --- reading ----------------------------------------------------------


class Value(NamedTuple):
    """A single BSON value: its type byte and its encoded bytes."""

    type: int
    data: bytes

    def as_document(self) -> Document | None:
        if self.type != TYPE_EMBEDDED_DOCUMENT:
            return None
        return Document(self.data)

    def as_array(self) -> Array | None:
        if self.type != TYPE_ARRAY:
            return None
        return Array(self.data)

    def decode(self, codec_options: CodecOptions | None = None) -> Any:
        """
        Decode just this value into a Python object.

        The value is wrapped in a one-element document so that the full
        decoder never sees anything but the bytes of this element.
        """
        builder = DocumentBuilder()
        start = builder.start_document()
        builder.append_value_element("v", self)
        builder.end_document(start)
        raw = builder.build()
        try:
            if codec_options is None:
                return bson.decode(raw)["v"]
            return bson.decode(raw, codec_options)["v"]
        except (BSONError, ValueError) as exc:
            raise DecodeError(f"cannot decode {type_name(self.type)} value: {exc}") from exc


@dataclass(frozen=True, slots=True)
class Element:
    key: str
    type: int
    data: bytes

    @property
    def value(self) -> Value:
        return Value(self.type, self.data)


def _read_length(buf: bytes, pos: int, end: int) -> int:
    if pos + _LENGTH_SIZE > end:
        raise MalformedDocumentError("insufficient bytes to read length")
    length = _INT32.unpack_from(buf, pos)[0]
    if length < 0:
        raise MalformedDocumentError(f"negative length {length}")
    return length


def _cstring_end(buf: bytes, pos: int, end: int) -> int:
    idx = buf.find(b"\x00", pos, end)
    if idx < 0:
        raise MalformedDocumentError("cstring is not null terminated")
    return idx + 1


def _value_size(btype: int, buf: bytes, pos: int, end: int) -> int:
    if btype in _FIXED_SIZES:
        size = _FIXED_SIZES[btype]
    elif btype in (TYPE_STRING, TYPE_JAVASCRIPT, TYPE_SYMBOL):
        size = _LENGTH_SIZE + _read_length(buf, pos, end)
    elif btype in (TYPE_EMBEDDED_DOCUMENT, TYPE_ARRAY, TYPE_CODE_WITH_SCOPE):
        size = _read_length(buf, pos, end)
    elif btype == TYPE_BINARY:
        # length, subtype byte, payload
        size = _LENGTH_SIZE + 1 + _read_length(buf, pos, end)
    elif btype == TYPE_DBPOINTER:
        size = _LENGTH_SIZE + _read_length(buf, pos, end) + 12
    elif btype == TYPE_REGEX:
        pattern_end = _cstring_end(buf, pos, end)
        size = _cstring_end(buf, pattern_end, end) - pos
    else:
        raise MalformedDocumentError(f"unknown element type 0x{btype:02x}")

    if pos + size > end:
        raise MalformedDocumentError(f"insufficient bytes to read {type_name(btype)} value")
    return size


def _iter_elements(buf: bytes) -> Iterator[Element]:
    if len(buf) < _MIN_DOCUMENT_SIZE:
        raise MalformedDocumentError("insufficient bytes to read document")
    length = _INT32.unpack_from(buf, 0)[0]
    if length != len(buf):
        raise MalformedDocumentError(f"length header {length} does not match {len(buf)} bytes")
    if buf[-1] != 0:
        raise MalformedDocumentError("document is not null terminated")

    end = len(buf) - 1
    pos = _LENGTH_SIZE
    while pos < end:
        btype = buf[pos]
        key_end = _cstring_end(buf, pos + 1, end)
        try:
            key = buf[pos + 1 : key_end - 1].decode("utf-8")
        except UnicodeDecodeError as exc:
            raise MalformedDocumentError(f"invalid key: {exc}") from exc
        size = _value_size(btype, buf, key_end, end)
        yield Element(key=key, type=btype, data=bytes(buf[key_end : key_end + size]))
        pos = key_end + size


class _EncodedBuffer(bytes):
    """Read access shared by encoded documents and arrays."""

    __slots__ = ()

    def elements(self) -> list[Element]:
        return list(_iter_elements(self))

    def values(self) -> list[Value]:
        return [elem.value for elem in _iter_elements(self)]

    def element_at(self, index: int) -> Element:
        if index >= 0:
            for i, elem in enumerate(_iter_elements(self)):
                if i == index:
                    return elem
        raise IndexError(f"element index {index} out of range")

    def first_key(self) -> str | None:
        """Return the key of the first element, or None for an empty document."""
        for elem in _iter_elements(self):
            return elem.key
        return None

    def lookup(self, key: str) -> Value:
        for elem in _iter_elements(self):
            if elem.key == key:
                return elem.value
        raise ElementNotFoundError(key)

    def validate(self) -> None:
        for elem in _iter_elements(self):
            _validate_value(elem)


class Document(_EncodedBuffer):
    """An encoded BSON document."""

    __slots__ = ()


class Array(_EncodedBuffer):
    """An encoded BSON array."""

    __slots__ = ()

    def validate(self) -> None:
        try:
            for idx, elem in enumerate(_iter_elements(self)):
                if elem.key != str(idx):
                    raise MalformedArrayError(f"array key {elem.key!r} at position {idx} is not its index")
                _validate_value(elem)
        except MalformedArrayError:
            raise
        except MalformedDocumentError as exc:
            raise MalformedArrayError(str(exc)) from exc


def _validate_value(elem: Element) -> None:
    if elem.type == TYPE_EMBEDDED_DOCUMENT:
        Document(elem.data).validate()
    elif elem.type == TYPE_ARRAY:
        Array(elem.data).validate()
    elif elem.type in (TYPE_STRING, TYPE_JAVASCRIPT, TYPE_SYMBOL):
        if len(elem.data) <= _LENGTH_SIZE or elem.data[-1] != 0:
            raise MalformedDocumentError(f"string value of {elem.key!r} is not null terminated")


# --- building ---------------------------------------------------------


def _cstring(key: str) -> bytes:
    encoded = key.encode("utf-8")
    if b"\x00" in encoded:
        raise ValueError(f"key {key!r} contains a NUL byte")
    return encoded + b"\x00"


class DocumentBuilder:
    """
    Append-only builder for BSON documents and arrays.

    ``reserve_length``/``update_length`` are the only primitives that touch a
    length header; every ``start_*`` call returns the token that the matching
    ``end_*`` call consumes.
    """

    def __init__(self) -> None:
        self._buf = bytearray()
        self._open: set[int] = set()

    # --- length slots --------------------------------------------------

    def reserve_length(self) -> int:
        offset = len(self._buf)
        self._buf += b"\x00" * _LENGTH_SIZE
        self._open.add(offset)
        return offset

    def update_length(self, offset: int) -> None:
        """Patch the reserved slot at ``offset`` with the size written since."""
        if offset not in self._open:
            raise ValueError(f"no length reserved at offset {offset}")
        self._open.remove(offset)
        _INT32.pack_into(self._buf, offset, len(self._buf) - offset)

    # --- containers ----------------------------------------------------

    def start_document(self) -> int:
        return self.reserve_length()

    def end_document(self, offset: int) -> None:
        self._buf.append(0)
        self.update_length(offset)

    start_array = start_document
    end_array = end_document

    def start_document_element(self, key: str) -> int:
        self._append_header(TYPE_EMBEDDED_DOCUMENT, key)
        return self.reserve_length()

    def start_array_element(self, key: str) -> int:
        self._append_header(TYPE_ARRAY, key)
        return self.reserve_length()

    # --- elements ------------------------------------------------------

    def append_element(self, btype: int, key: str, data: bytes) -> None:
        self._append_header(btype, key)
        self._buf += data

    def append_value_element(self, key: str, value: Value) -> None:
        self.append_element(value.type, key, value.data)

    def append_document_element(self, key: str, doc: bytes) -> None:
        self.append_element(TYPE_EMBEDDED_DOCUMENT, key, doc)

    def append_array_element(self, key: str, arr: bytes) -> None:
        self.append_element(TYPE_ARRAY, key, arr)

    def append_int32_element(self, key: str, value: int) -> None:
        self.append_element(TYPE_INT32, key, _pack(_INT32, value))

    def append_int64_element(self, key: str, value: int) -> None:
        self.append_element(TYPE_INT64, key, _pack(_INT64, value))

    def append_object_id_element(self, key: str, oid: ObjectId) -> None:
        self.append_element(TYPE_OBJECT_ID, key, oid.binary)

    def append_raw(self, data: bytes) -> None:
        """Append already-encoded element bytes verbatim."""
        self._buf += data

    # --- output --------------------------------------------------------

    def build(self) -> bytes:
        if self._open:
            raise ValueError(f"{len(self._open)} length slot(s) were never finalized")
        return bytes(self._buf)

    def document(self) -> Document:
        return Document(self.build())

    def array(self) -> Array:
        return Array(self.build())

    def _append_header(self, btype: int, key: str) -> None:
        self._buf.append(btype)
        self._buf += _cstring(key)


def _pack(fmt: struct.Struct, value: int) -> bytes:
    try:
        return fmt.pack(value)
    except struct.error as exc:
        raise OverflowError(f"{value} does not fit in {fmt.size * 8} bits") from exc


def empty_array() -> Array:
    return Array(_EMPTY_DOCUMENT)
