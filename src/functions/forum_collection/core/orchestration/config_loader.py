"""Utility helpers to construct collection configuration from the environment."""

from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml
from pydantic import ValidationError

from src.shared.utils.config_validator import (
    ConfigurationError,
    validate_bool_env,
    validate_choice_env,
    validate_float_env,
    validate_int_env,
)
from ..contracts.config import (
    CollectionConfig,
    DispatchConfig,
    ForumSourceConfig,
    JobRetryConfig,
    MonitorConfig,
    PartitionConfig,
    PriorityConfig,
    SchedulerConfig,
)

logger = logging.getLogger(__name__)

DEFAULT_SOURCES_PATH = Path(__file__).resolve().parents[2] / "config" / "sources.yaml"
STORAGE_BACKENDS = ["memory", "file", "supabase"]


def bool_from_env(name: str, default: bool = False) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    return value.lower() in {"1", "true", "yes", "on"}


def int_from_env(name: str, default: int) -> int:
    value = os.getenv(name)
    if value is None:
        return default
    try:
        return int(value)
    except ValueError:
        logger.warning("Invalid integer for %s=%s, using %s", name, value, default)
        return default


def _pick(overrides: Dict[str, Any], key: str, fallback: Any) -> Any:
    value = overrides.get(key)
    return fallback if value is None else value


def load_sources(path: Optional[str | Path] = None) -> List[ForumSourceConfig]:
    """Load forum sources from YAML.

    The file holds a ``sources`` list; each entry has ``name`` and optionally
    ``enabled``, ``interval_hours`` and ``average_posts_per_day``.

    Raises:
        ConfigurationError: If the file is missing, malformed or has no valid source
    """
    if path is None:
        path = os.getenv("FORUM_SOURCES_CONFIG") or DEFAULT_SOURCES_PATH
    path = Path(path)
    if not path.exists():
        raise ConfigurationError(f"Forum source configuration not found: {path}")

    logger.info("Loading forum sources from %s", path)
    try:
        with open(path, "r", encoding="utf-8") as f:
            raw = yaml.safe_load(f)
    except yaml.YAMLError as e:
        raise ConfigurationError(f"Invalid YAML in {path}: {e}") from e

    if not isinstance(raw, dict) or not isinstance(raw.get("sources"), list):
        raise ConfigurationError(f"{path} must contain a 'sources' list")

    sources: List[ForumSourceConfig] = []
    invalid: List[str] = []
    for i, entry in enumerate(raw["sources"]):
        try:
            sources.append(ForumSourceConfig.model_validate(entry))
        except ValidationError as e:
            invalid.append(f"Source {i + 1}: {e.errors()[0]['msg']}")

    if invalid:
        logger.warning("Skipped %d invalid sources: %s", len(invalid), "; ".join(invalid))

    names = [source.name.lower() for source in sources]
    duplicates = sorted({name for name in names if names.count(name) > 1})
    if duplicates:
        raise ConfigurationError(f"Duplicate source names: {', '.join(duplicates)}")
    if not sources:
        raise ConfigurationError(f"No valid sources found in {path}")
    if not any(source.enabled for source in sources):
        logger.warning("No forum sources are enabled")
    return sources


def build_collection_config(overrides: Optional[Dict[str, Any]] = None) -> CollectionConfig:
    """Assemble :class:`CollectionConfig` from the environment; ``overrides`` win.

    Raises:
        ConfigurationError: If an environment value or the resulting config is invalid
    """
    overrides = overrides or {}

    sources = overrides.get("sources")
    if sources is None:
        sources = load_sources(overrides.get("sources_path"))

    try:
        config = CollectionConfig(
            partition=PartitionConfig(
                max_chunk_size=_pick(overrides, "max_chunk_size", validate_int_env("LLM_MAX_CHUNK_COMMENTS", 80, 1, 1000)),
                max_chunk_chars=_pick(overrides, "max_chunk_chars", validate_int_env("LLM_MAX_CHUNK_CHARS", 12000, 1)),
                max_chunk_tokens=_pick(
                    overrides, "max_chunk_tokens", validate_int_env("LLM_CHUNK_TARGET_TOKENS", 35000, 1)
                ),
                extract_from_post=_pick(overrides, "extract_from_post", bool_from_env("EXTRACT_FROM_POST", True)),
            ),
            dispatch=DispatchConfig(
                concurrency_limit=_pick(overrides, "concurrency", validate_int_env("CONCURRENCY", 16, 1, 128)),
                chunk_retry_budget=int_from_env("CHUNK_RETRY_BUDGET", 2),
                chunk_retry_base_seconds=validate_float_env("CHUNK_RETRY_BASE_SECONDS", 1.0, 0),
                chunk_retry_max_seconds=validate_float_env("CHUNK_RETRY_MAX_SECONDS", 30.0, 0),
                max_chunk_failure_ratio=_pick(
                    overrides,
                    "max_chunk_failure_ratio",
                    validate_float_env("MAX_CHUNK_FAILURE_RATIO", 0.05, 0.0, 1.0),
                ),
                chunk_timeout_seconds=validate_float_env("CHUNK_TIMEOUT_SECONDS", 120.0, 1),
            ),
            job_retry=JobRetryConfig(
                max_retries=_pick(overrides, "max_retries", int_from_env("JOB_MAX_RETRIES", 5)),
                base_delay_seconds=validate_float_env("JOB_RETRY_BASE_SECONDS", 5.0, 0),
                max_delay_seconds=validate_float_env("JOB_RETRY_MAX_SECONDS", 900.0, 0),
            ),
            priority=PriorityConfig(
                recency_weight=validate_float_env("PRIORITY_RECENCY_WEIGHT", 0.40, 0),
                completeness_weight=validate_float_env("PRIORITY_COMPLETENESS_WEIGHT", 0.35, 0),
                demand_weight=validate_float_env("PRIORITY_DEMAND_WEIGHT", 0.25, 0),
                recency_horizon_days=validate_float_env("PRIORITY_RECENCY_HORIZON_DAYS", 30.0, 1),
                expected_mentions=int_from_env("PRIORITY_EXPECTED_MENTIONS", 20),
            ),
            monitor=MonitorConfig(
                window_size=int_from_env("MONITOR_WINDOW_SIZE", 20),
                success_rate_threshold=validate_float_env("ALERT_SUCCESS_RATE_THRESHOLD", 80.0, 0, 100),
                consecutive_failure_threshold=int_from_env("ALERT_CONSECUTIVE_FAILURES", 3),
                alert_cooldown_seconds=validate_float_env("ALERT_COOLDOWN_SECONDS", 3600.0, 0),
                stalled_job_minutes=validate_float_env("STALLED_JOB_MINUTES", 30.0, 1),
            ),
            scheduler=SchedulerConfig(
                enrichment_interval_days=validate_float_env("ENRICHMENT_INTERVAL_DAYS", 30.0, 1),
                enrichment_offset_days=validate_float_env("ENRICHMENT_OFFSET_DAYS", 0.0, 0),
                top_k=_pick(overrides, "top_k", int_from_env("ENRICHMENT_TOP_K", 25)),
                executor_count=_pick(overrides, "executor_count", validate_int_env("JOB_EXECUTORS", 2, 1, 16)),
                posts_per_run=_pick(overrides, "posts_per_run", int_from_env("POSTS_PER_RUN", 100)),
            ),
            sources=sources,
            storage_backend=_pick(
                overrides,
                "storage_backend",
                validate_choice_env("COLLECTION_STORAGE_BACKEND", STORAGE_BACKENDS, "file"),
            ),
            checkpoint_dir=Path(_pick(overrides, "checkpoint_dir", os.getenv("CHECKPOINT_DIR", "./data/checkpoints"))),
            extraction_model=_pick(overrides, "extraction_model", os.getenv("OPENAI_MODEL", "gpt-5-mini")),
            dry_run=bool(overrides.get("dry_run") or validate_bool_env("COLLECTION_DRY_RUN", False)),
        )
    except ValidationError as exc:
        raise ConfigurationError(f"Invalid collection configuration: {exc}") from exc

    logger.debug("Collection config: %s", config.snapshot())
    return config
