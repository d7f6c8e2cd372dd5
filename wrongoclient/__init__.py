"""
Normalization of command payloads into canonical BSON before they go on the wire.
"""

import logging

from .bsoncore import Array, Document, DocumentBuilder, Element, Value
from .codec import Marshaler, ValueMarshaler
from .document import (
    NIL_OBJECT_ID,
    ensure_dollar_key,
    ensure_id,
    ensure_no_dollar_key,
    normalize_document,
    normalize_value,
)
from .errors import WrongoClientError
from .options import BSONOptions, default_registry
from .pipeline import Pipeline, count_documents_pipeline, normalize_pipeline
from .update import normalize_update

logging.getLogger(__name__).addHandler(logging.NullHandler())

__all__ = [
    "Array",
    "BSONOptions",
    "Document",
    "DocumentBuilder",
    "Element",
    "Marshaler",
    "NIL_OBJECT_ID",
    "Pipeline",
    "Value",
    "ValueMarshaler",
    "WrongoClientError",
    "count_documents_pipeline",
    "default_registry",
    "ensure_dollar_key",
    "ensure_id",
    "ensure_no_dollar_key",
    "normalize_document",
    "normalize_pipeline",
    "normalize_update",
    "normalize_value",
]
