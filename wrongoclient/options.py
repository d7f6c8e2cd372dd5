"""
Encoder configuration and the process-wide default type registry.
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass

from bson.codec_options import TypeRegistry

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class BSONOptions:
    """
    Toggles forwarded to the value encoder.

    The normalizers pass these through untouched; only ``codec.encode``
    interprets them.
    """

    error_on_inline_duplicates: bool = False
    int_min_size: bool = False
    nil_bytes_as_empty: bool = False
    nil_map_as_empty: bool = False
    nil_slice_as_empty: bool = False
    omit_zero_struct: bool = False
    omit_empty: bool = False
    stringify_map_keys: bool = False
    use_json_struct_tags: bool = False


DEFAULT_BSON_OPTIONS = BSONOptions()

_default_registry: TypeRegistry | None = None
_default_registry_lock = threading.Lock()


def default_registry() -> TypeRegistry:
    """
    Return the shared registry used when a caller does not supply one.

    Built on first use; concurrent first calls all receive the same instance.
    """
    global _default_registry
    if _default_registry is None:
        with _default_registry_lock:
            if _default_registry is None:
                logger.debug("initializing default type registry")
                _default_registry = TypeRegistry()
    return _default_registry
