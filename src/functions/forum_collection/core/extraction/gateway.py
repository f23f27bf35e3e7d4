"""Extraction gateway: one chunk in, one typed ExtractionResult out.

The gateway never raises for failures of the extraction service. Rate limits,
timeouts, connection problems, 5xx answers and unparseable output come back as
transient outcomes; authentication and request errors come back as permanent.
"""

from __future__ import annotations

import json
import logging
import time
from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional, Tuple

from openai import (
    APIConnectionError,
    APIStatusError,
    APITimeoutError,
    AuthenticationError,
    BadRequestError,
    OpenAI,
    OpenAIError,
    PermissionDeniedError,
    RateLimitError,
)

from src.shared.utils.config_validator import ConfigurationError, check_config_override
from ..contracts.extraction import Chunk, ExtractionResult, Mention, Outcome
from ..errors import ExtractionRateLimitError, ExtractionResponseError
from ..merge.normalization import normalize_key
from .prompts import build_mention_extraction_prompt

logger = logging.getLogger(__name__)


class ExtractionGateway(ABC):
    """Boundary to the extraction service."""

    @abstractmethod
    def extract(self, chunk: Chunk) -> ExtractionResult:
        """Extract mentions from ``chunk``. Failures are reported in the outcome."""


def _retry_after_seconds(headers: Any) -> Optional[float]:
    if headers is None:
        return None
    value = headers.get("retry-after")
    if value is None:
        return None
    try:
        return max(float(value), 0.0)
    except (TypeError, ValueError):
        return None


def classify_extraction_error(exc: BaseException) -> Outcome:
    """Map an extraction-client exception onto a typed outcome."""

    if isinstance(exc, RateLimitError):
        response = getattr(exc, "response", None)
        return Outcome.transient(str(exc), "rate_limit", _retry_after_seconds(getattr(response, "headers", None)))
    if isinstance(exc, ExtractionRateLimitError):
        return Outcome.transient(str(exc), "rate_limit", exc.retry_after)
    if isinstance(exc, APITimeoutError):
        return Outcome.transient(str(exc) or "extraction call timed out", "network_error")
    if isinstance(exc, APIConnectionError):
        return Outcome.transient(str(exc), "network_error")
    if isinstance(exc, (AuthenticationError, PermissionDeniedError)):
        return Outcome.permanent(str(exc), "auth_error")
    if isinstance(exc, BadRequestError):
        return Outcome.permanent(str(exc), "source_api_error")
    if isinstance(exc, APIStatusError):
        if exc.status_code >= 500:
            return Outcome.transient(str(exc), "source_api_error")
        return Outcome.permanent(str(exc), "source_api_error")
    if isinstance(exc, ExtractionResponseError):
        return Outcome.transient(str(exc), "source_api_error")
    if isinstance(exc, (TimeoutError, ConnectionError)):
        return Outcome.transient(str(exc), "network_error")
    if isinstance(exc, OpenAIError):
        return Outcome.transient(str(exc), "unknown_error")
    return Outcome.permanent(f"{type(exc).__name__}: {exc}", "unknown_error")


def _clean_labels(values: Any) -> Tuple[str, ...]:
    if not isinstance(values, list):
        return ()
    cleaned = {str(value).strip().lower() for value in values if str(value).strip()}
    return tuple(sorted(cleaned))


def parse_mentions(response_text: str, chunk: Chunk) -> List[Mention]:
    """Parse model output into mentions that belong to ``chunk``.

    Raises:
        ExtractionResponseError: If the text is not the expected JSON object
    """
    try:
        data = json.loads(response_text)
    except json.JSONDecodeError as exc:
        raise ExtractionResponseError(f"Extraction output for {chunk.chunk_id} is not JSON: {exc}") from exc
    if not isinstance(data, dict) or not isinstance(data.get("mentions", []), list):
        raise ExtractionResponseError(f"Extraction output for {chunk.chunk_id} has no mentions list")

    created_at = {comment.id: comment.created_at for comment in chunk.comments}
    allowed = set(chunk.comment_ids)
    if chunk.extract_from_post:
        allowed.add(chunk.post.id)
        created_at[chunk.post.id] = chunk.post.created_at

    mentions: List[Mention] = []
    for item in data.get("mentions", []):
        if not isinstance(item, dict):
            continue
        source_id = str(item.get("source_id") or "")
        if source_id not in allowed:
            logger.debug("Dropping mention from %r outside chunk %s", source_id, chunk.chunk_id)
            continue
        restaurant_name = str(item.get("restaurant_name") or "").strip()
        restaurant_key = normalize_key(restaurant_name)
        if not restaurant_key:
            continue
        dish_name = str(item.get("dish_name") or "").strip()
        mentions.append(
            Mention(
                source_id=source_id,
                source_type="post" if source_id == chunk.post.id else "comment",
                restaurant_key=restaurant_key,
                dish_key=normalize_key(dish_name),
                restaurant_name=restaurant_name,
                dish_name=dish_name,
                attributes=_clean_labels(item.get("attributes")),
                categories=_clean_labels(item.get("categories")),
                mentioned_at=created_at.get(source_id),
            )
        )
    return mentions


class OpenAIExtractionGateway(ExtractionGateway):
    """Extracts restaurant/dish mentions with the OpenAI Responses API."""

    def __init__(
        self,
        *,
        model: str = "gpt-5-mini",
        api_key: Optional[str] = None,
        timeout: float = 120.0,
        client: Optional[OpenAI] = None,
    ) -> None:
        if client is None:
            try:
                api_key = check_config_override(api_key, "OPENAI_API_KEY", required=True)
            except ConfigurationError as exc:
                raise ConfigurationError(
                    f"{exc}\nRequired for mention extraction. "
                    "See .env.example for configuration template."
                )
            client = OpenAI(api_key=api_key)
        self._client = client
        self._model = model
        self._timeout = timeout
        logger.info("Initialized OpenAIExtractionGateway with model: %s, timeout: %ss", model, timeout)

    def _request_kwargs(self, chunk: Chunk) -> Dict[str, Any]:
        return {
            "model": self._model,
            "input": build_mention_extraction_prompt(chunk),
            "text": {"format": {"type": "json_object"}},
            "timeout": self._timeout,
        }

    def extract(self, chunk: Chunk) -> ExtractionResult:
        started = time.perf_counter()
        try:
            response = self._client.responses.create(**self._request_kwargs(chunk))
            mentions = parse_mentions(response.output_text or "", chunk)
        except (OpenAIError, ExtractionResponseError, TimeoutError, ConnectionError) as exc:
            outcome = classify_extraction_error(exc)
            logger.warning(
                "Extraction for %s failed (%s/%s): %s",
                chunk.chunk_id,
                outcome.kind.value,
                outcome.category,
                exc,
            )
            return ExtractionResult(
                chunk_id=chunk.chunk_id,
                outcome=outcome,
                timing_ms=(time.perf_counter() - started) * 1000,
                chunk_size=chunk.size,
            )

        logger.debug("Extracted %d mentions from %s", len(mentions), chunk.chunk_id)
        return ExtractionResult(
            chunk_id=chunk.chunk_id,
            outcome=Outcome.success(),
            mentions=tuple(mentions),
            timing_ms=(time.perf_counter() - started) * 1000,
            chunk_size=chunk.size,
        )
