"""Keyed checkpoint documents with atomic writes."""

from __future__ import annotations

import json
import logging
import os
import threading
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional

logger = logging.getLogger(__name__)


class CheckpointReadError(Exception):
    """Raised when a stored checkpoint cannot be parsed or has the wrong version."""


class CheckpointManager:
    """Stores one JSON document per key inside a directory.

    Every write goes to a temporary file that is fsynced and then renamed over
    the target, so a reader either sees the previous document or the new one,
    never a partial write.

    Example:
        checkpoints = CheckpointManager("./data/checkpoints")

        state = checkpoints.read("job-42") or {}
        state["last_completed_item_id"] = "t3_abc"
        checkpoints.write("job-42", state)
    """

    CHECKPOINT_VERSION = "1.0"

    def __init__(self, directory: str | Path, *, suffix: str = ".json"):
        """Initialize checkpoint manager.

        Args:
            directory: Directory holding checkpoint files (created if missing)
            suffix: File suffix for checkpoint documents
        """
        self.directory = Path(directory)
        self.suffix = suffix
        self.directory.mkdir(parents=True, exist_ok=True)
        self.lock = threading.Lock()

    def _path_for(self, key: str) -> Path:
        safe_key = "".join(ch if ch.isalnum() or ch in "-_." else "_" for ch in key)
        return self.directory / f"{safe_key}{self.suffix}"

    def read(self, key: str) -> Optional[Dict[str, Any]]:
        """Return the stored payload for ``key`` or None if nothing was written.

        Raises:
            CheckpointReadError: If the document exists but is unreadable
        """
        path = self._path_for(key)
        if not path.exists():
            return None

        try:
            with open(path, "r", encoding="utf-8") as f:
                document = json.load(f)
        except (OSError, json.JSONDecodeError) as exc:
            raise CheckpointReadError(f"Unreadable checkpoint {path}: {exc}") from exc

        if not isinstance(document, dict) or document.get("version") != self.CHECKPOINT_VERSION:
            raise CheckpointReadError(
                f"Checkpoint {path} has unsupported version {document.get('version') if isinstance(document, dict) else None!r}"
            )
        payload = document.get("payload")
        if not isinstance(payload, dict):
            raise CheckpointReadError(f"Checkpoint {path} has no payload")

        logger.debug("Loaded checkpoint %s (last_updated=%s)", key, document.get("last_updated"))
        return payload

    def write(self, key: str, payload: Dict[str, Any]) -> None:
        """Atomically write ``payload`` under ``key``."""
        path = self._path_for(key)
        document = {
            "version": self.CHECKPOINT_VERSION,
            "key": key,
            "last_updated": datetime.now(timezone.utc).isoformat(),
            "payload": payload,
        }
        temp_path = path.with_name(path.name + ".tmp")
        with self.lock:
            with open(temp_path, "w", encoding="utf-8") as f:
                json.dump(document, f, indent=2, default=str)
                f.flush()
                os.fsync(f.fileno())

            # Atomic rename
            temp_path.replace(path)
        logger.debug("Checkpoint %s flushed to %s", key, path)

    def delete(self, key: str) -> bool:
        """Remove the checkpoint for ``key``. Returns True if a file was deleted."""
        path = self._path_for(key)
        with self.lock:
            try:
                path.unlink()
            except FileNotFoundError:
                return False
        logger.debug("Checkpoint %s deleted", key)
        return True

    def keys(self) -> List[str]:
        """Return the keys of every stored checkpoint, sorted."""
        keys: List[str] = []
        for path in sorted(self.directory.glob(f"*{self.suffix}")):
            try:
                with open(path, "r", encoding="utf-8") as f:
                    document = json.load(f)
            except (OSError, json.JSONDecodeError):
                logger.warning("Skipping unreadable checkpoint file %s", path)
                continue
            if isinstance(document, dict) and document.get("key"):
                keys.append(str(document["key"]))
        return keys
