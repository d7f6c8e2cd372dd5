"""
Aggregation pipeline normalization and the countDocuments pipeline.
"""

from __future__ import annotations

import itertools
import logging
from collections.abc import Mapping
from typing import Any

from bson.codec_options import TypeRegistry

from . import codec
from .bsoncore import TYPE_ARRAY, Array, Document, DocumentBuilder, Value, empty_array, type_name
from .document import normalize_document
from .errors import (
    InvalidPipelineShapeError,
    MarshalError,
    TypeMismatchError,
    UnsupportedPipelineTypeError,
)
from .options import BSONOptions, default_registry

logger = logging.getLogger(__name__)

_OUTPUT_STAGES = frozenset({"$out", "$merge"})
_INT64_MIN = -(2**63)
_INT64_MAX = 2**63 - 1


class Pipeline(list):
    """
    A list of stage documents, for example::

        Pipeline([
            {"$group": {"_id": "$state", "totalPop": {"$sum": "$pop"}}},
            {"$match": {"totalPop": {"$gte": 10 * 1000 * 1000}}},
        ])
    """


def normalize_pipeline(
    pipeline: Any,
    bson_opts: BSONOptions | None = None,
    registry: TypeRegistry | None = None,
) -> tuple[Array, bool]:
    """
    Encode ``pipeline`` as a BSON array of stage documents.

    Returns the array and whether its last stage is ``$out`` or ``$merge``.
    """
    if registry is None:
        registry = default_registry()

    if isinstance(pipeline, codec.ValueMarshaler):
        btype, data = pipeline.marshal_bson_value()
        if btype != TYPE_ARRAY:
            raise TypeMismatchError(
                f"ValueMarshaler returned a {type_name(btype)}, but was expecting {type_name(TYPE_ARRAY)}"
            )
        array = Array(data)
        return array, _ends_with_output_stage(array.values())

    if isinstance(pipeline, Array):
        pipeline.validate()
        return pipeline, _ends_with_output_stage(pipeline.values())

    if isinstance(pipeline, Mapping) or codec.is_byte_buffer(pipeline):
        # These represent one document, not a list of stages.
        if len(pipeline) > 0:
            raise InvalidPipelineShapeError(
                f"{type(pipeline).__name__} is not an allowed pipeline type as it represents "
                "a single document. Use a list or Pipeline instead"
            )
        return empty_array(), False

    if not codec.is_sequence(pipeline):
        raise UnsupportedPipelineTypeError(
            f"can only marshal sequences and arrays into aggregation pipelines, "
            f"but got {type(pipeline).__name__}"
        )

    builder = DocumentBuilder()
    start = builder.start_array()
    has_output_stage = False
    last = len(pipeline) - 1
    for idx, stage in enumerate(pipeline):
        doc = normalize_document(stage, bson_opts, registry)
        if idx == last:
            has_output_stage = _is_output_stage(doc)
        builder.append_document_element(str(idx), doc)
    builder.end_array(start)

    logger.debug("normalized pipeline of %d stages (output stage: %s)", len(pipeline), has_output_stage)
    return builder.array(), has_output_stage


def _ends_with_output_stage(values: list[Value]) -> bool:
    if not values:
        return False
    final = values[-1].as_document()
    return final is not None and _is_output_stage(final)


def _is_output_stage(stage: Document) -> bool:
    return stage.first_key() in _OUTPUT_STAGES


def count_documents_pipeline(
    filter: Any,
    bson_opts: BSONOptions | None = None,
    registry: TypeRegistry | None = None,
    skip: int | None = None,
    limit: int | None = None,
) -> Array:
    """
    Build the pipeline that backs countDocuments::

        [{$match: filter}, {$skip: n}?, {$limit: n}?, {$group: {_id: 1, n: {$sum: 1}}}]
    """
    for count in (skip, limit):
        if count is not None and not _INT64_MIN <= count <= _INT64_MAX:
            raise MarshalError(count, OverflowError(f"{count} does not fit in 64 bits"))
    filter_doc = normalize_document(filter, bson_opts, registry)

    indexes = (str(i) for i in itertools.count())
    builder = DocumentBuilder()
    arr = builder.start_array()

    stage = builder.start_document_element(next(indexes))
    builder.append_document_element("$match", filter_doc)
    builder.end_document(stage)

    if skip is not None:
        stage = builder.start_document_element(next(indexes))
        builder.append_int64_element("$skip", skip)
        builder.end_document(stage)

    if limit is not None:
        stage = builder.start_document_element(next(indexes))
        builder.append_int64_element("$limit", limit)
        builder.end_document(stage)

    stage = builder.start_document_element(next(indexes))
    group = builder.start_document_element("$group")
    builder.append_int32_element("_id", 1)
    total = builder.start_document_element("n")
    builder.append_int32_element("$sum", 1)
    builder.end_document(total)
    builder.end_document(group)
    builder.end_document(stage)

    builder.end_array(arr)
    return builder.array()
