"""Mention extraction through the external LLM service."""

from .gateway import ExtractionGateway, OpenAIExtractionGateway, classify_extraction_error, parse_mentions

__all__ = ["ExtractionGateway", "OpenAIExtractionGateway", "classify_extraction_error", "parse_mentions"]
