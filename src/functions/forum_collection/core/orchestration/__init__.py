"""Configuration loading and service wiring."""

from .config_loader import build_collection_config, load_sources
from .service import CollectionService, build_service, build_stores

__all__ = ["build_collection_config", "load_sources", "CollectionService", "build_service", "build_stores"]
