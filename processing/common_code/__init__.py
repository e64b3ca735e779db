"""
Common Code Module
==================

Shared utilities for the staging and merge stages.
"""

from .utils import (
    utc_now,
    to_jsonable,
    dumps_canonical,
    canonical_key,
    clean_payload,
    batch_window,
    parse_timestamp
)

__all__ = [
    "utc_now",
    "to_jsonable",
    "dumps_canonical",
    "canonical_key",
    "clean_payload",
    "batch_window",
    "parse_timestamp"
]
