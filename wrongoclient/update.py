"""
Normalization of update specifications.

An update is either one document (classic ``{"$set": ...}`` syntax, or a
replacement document) or a list of stage documents (pipeline-style update).
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Mapping
from typing import Any

from bson.codec_options import TypeRegistry
from bson.raw_bson import RawBSONDocument

from . import codec
from .bsoncore import (
    TYPE_ARRAY,
    TYPE_EMBEDDED_DOCUMENT,
    Array,
    Document,
    DocumentBuilder,
    Value,
    type_name,
)
from .document import ensure_dollar_key, ensure_no_dollar_key, normalize_document
from .errors import NilDocumentError, TypeMismatchError
from .options import BSONOptions, default_registry

logger = logging.getLogger(__name__)


def normalize_update(
    update: Any,
    bson_opts: BSONOptions | None = None,
    registry: TypeRegistry | None = None,
    dollar_keys_allowed: bool = True,
) -> Value:
    """
    Encode ``update`` as a document or array value.

    With ``dollar_keys_allowed`` every document must start with an operator
    key; without it (replacements) no document may.
    """
    if registry is None:
        registry = default_registry()
    check: Callable[[bytes], None] = ensure_dollar_key if dollar_keys_allowed else ensure_no_dollar_key

    if update is None:
        raise NilDocumentError()

    if isinstance(update, RawBSONDocument):
        doc = Document(update.raw)
    elif isinstance(update, Mapping):
        doc = normalize_document(update, bson_opts, registry)
    elif isinstance(update, Array):
        return _normalize_encoded_stages(update, check)
    elif isinstance(update, Document) or codec.is_byte_buffer(update):
        doc = Document(update)
    elif isinstance(update, codec.Marshaler):
        doc = Document(update.marshal_bson())
    elif isinstance(update, codec.ValueMarshaler):
        btype, data = update.marshal_bson_value()
        if btype not in (TYPE_ARRAY, TYPE_EMBEDDED_DOCUMENT):
            raise TypeMismatchError(
                f"ValueMarshaler returned a {type_name(btype)}, but was expecting "
                f"{type_name(TYPE_ARRAY)} or {type_name(TYPE_EMBEDDED_DOCUMENT)}"
            )
        if btype == TYPE_EMBEDDED_DOCUMENT:
            check(data)
        return Value(btype, bytes(data))
    elif codec.is_sequence(update):
        return _normalize_stages(update, bson_opts, registry, check)
    else:
        doc = normalize_document(update, bson_opts, registry)

    check(doc)
    return Value(TYPE_EMBEDDED_DOCUMENT, doc)


def _normalize_stages(
    stages: Any,
    bson_opts: BSONOptions | None,
    registry: TypeRegistry,
    check: Callable[[bytes], None],
) -> Value:
    builder = DocumentBuilder()
    start = builder.start_array()
    for idx, stage in enumerate(stages):
        doc = normalize_document(stage, bson_opts, registry)
        check(doc)
        builder.append_document_element(str(idx), doc)
    builder.end_array(start)

    logger.debug("normalized pipeline-style update of %d stages", len(stages))
    return Value(TYPE_ARRAY, builder.array())


def _normalize_encoded_stages(array: Array, check: Callable[[bytes], None]) -> Value:
    array.validate()
    for value in array.values():
        stage = value.as_document()
        if stage is None:
            raise TypeMismatchError(
                f"update pipeline stage is a {type_name(value.type)}, "
                f"expected {type_name(TYPE_EMBEDDED_DOCUMENT)}"
            )
        check(stage)
    return Value(TYPE_ARRAY, array)
