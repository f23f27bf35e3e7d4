"""Idempotent merge of extraction results."""

from .merge_engine import MergeEngine, MergeSummary, aggregate_entity
from .normalization import normalize_key

__all__ = ["MergeEngine", "MergeSummary", "aggregate_entity", "normalize_key"]
