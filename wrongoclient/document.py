"""
Document normalization helpers: encoding, _id injection and dollar-key checks.
"""

from __future__ import annotations

import logging
from typing import Any

from bson.codec_options import CodecOptions, TypeRegistry
from bson.errors import BSONError
from bson.objectid import ObjectId

from . import codec
from .bsoncore import Document, DocumentBuilder, Value
from .errors import (
    ElementNotFoundError,
    EmptyDocumentError,
    MarshalError,
    MissingOperatorPrefixError,
    NilDocumentError,
    OperatorPrefixNotAllowedError,
)
from .options import BSONOptions, default_registry

logger = logging.getLogger(__name__)

NIL_OBJECT_ID = ObjectId(b"\x00" * 12)

_ID_KEY = "_id"
_OPERATOR_PREFIX = "$"
_ENCODE_ERRORS = (BSONError, TypeError, OverflowError)


def normalize_document(
    value: Any,
    bson_opts: BSONOptions | None = None,
    registry: TypeRegistry | None = None,
) -> Document:
    """
    Encode ``value`` as a BSON document.

    Byte buffers are taken to be encoded documents already and skip the
    encoder entirely.
    """
    if registry is None:
        registry = default_registry()
    if value is None:
        raise NilDocumentError()
    if isinstance(value, Document):
        return value
    if codec.is_byte_buffer(value):
        return Document(value)

    try:
        return codec.encode(value, bson_opts, registry)
    except _ENCODE_ERRORS as exc:
        raise MarshalError(value, exc) from exc


def normalize_value(
    value: Any,
    bson_opts: BSONOptions | None = None,
    registry: TypeRegistry | None = None,
) -> Value:
    """
    Encode any single value, scalars included, as a typed BSON value.
    """
    if registry is None:
        registry = default_registry()
    if isinstance(value, codec.ValueMarshaler):
        btype, data = value.marshal_bson_value()
        return Value(btype, bytes(data))

    try:
        wrapper = codec.encode({"v": value}, bson_opts, registry)
    except _ENCODE_ERRORS as exc:
        raise MarshalError(value, exc) from exc
    return wrapper.lookup("v")


def ensure_id(
    doc: bytes,
    oid: ObjectId | None = None,
    registry: TypeRegistry | None = None,
) -> tuple[Document, Any]:
    """
    Make sure ``doc`` carries an ``_id`` element.

    If one is present, only that element is decoded and the document is
    returned untouched. Otherwise a new document is produced with ``_id``
    as its first element followed by the original element bytes; a fresh
    ObjectId is generated when ``oid`` is missing or nil.
    """
    if registry is None:
        registry = default_registry()
    doc = doc if isinstance(doc, Document) else Document(doc)

    try:
        existing = doc.lookup(_ID_KEY)
    except ElementNotFoundError:
        existing = None
    if existing is not None:
        return doc, existing.decode(CodecOptions(type_registry=registry))

    if oid is None or oid == NIL_OBJECT_ID:
        oid = ObjectId()
        logger.debug("generated _id %s for document without one", oid)

    builder = DocumentBuilder()
    start = builder.reserve_length()
    builder.append_object_id_element(_ID_KEY, oid)
    # Everything after the old length header, terminator included.
    builder.append_raw(doc[4:])
    builder.update_length(start)
    return builder.document(), oid


def ensure_dollar_key(doc: bytes) -> None:
    """Update documents must start with an operator such as ``$set``."""
    first = Document(doc).first_key()
    if first is None:
        raise EmptyDocumentError("update document must have at least one element")
    if not first.startswith(_OPERATOR_PREFIX):
        raise MissingOperatorPrefixError("update document must contain key beginning with '$'")


def ensure_no_dollar_key(doc: bytes) -> None:
    """Replacement documents must not start with an operator."""
    first = Document(doc).first_key()
    if first is not None and first.startswith(_OPERATOR_PREFIX):
        raise OperatorPrefixNotAllowedError(
            "replacement document cannot contain keys beginning with '$'"
        )
