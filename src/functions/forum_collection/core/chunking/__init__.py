"""Comment tree chunking."""

from .partitioner import estimate_tokens, partition, size_distribution, validate_partition

__all__ = ["estimate_tokens", "partition", "size_distribution", "validate_partition"]
