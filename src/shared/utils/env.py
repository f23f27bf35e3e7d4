"""Environment variable loading utilities."""

from __future__ import annotations
import logging
from pathlib import Path
from typing import List, Optional

from dotenv import load_dotenv

logger = logging.getLogger(__name__)


def _candidate_env_files(env_file: Optional[str]) -> List[Path]:
    if env_file:
        env_path = Path(env_file)
        return [env_path] if env_path.exists() else []

    # Outermost directory first so nearer files win when override=True
    current = Path.cwd()
    paths = [parent / ".env" for parent in reversed(list(current.parents))]
    paths.append(current / ".env")
    return [path for path in paths if path.exists()]


def load_env(env_file: Optional[str] = None, override: bool = False) -> None:
    """Load environment variables from .env files.

    Args:
        env_file: Path to .env file. If None, searches for .env in current
                 directory and parent directories.
        override: Whether to override existing environment variables.
    """
    env_paths = _candidate_env_files(env_file)
    if not env_paths:
        logger.debug("No .env file found, using system environment")
        return

    seen = set()
    for path in env_paths:
        if path in seen:
            continue
        load_dotenv(path, override=override)
        seen.add(path)
        logger.debug("Loaded environment from %s", path)
