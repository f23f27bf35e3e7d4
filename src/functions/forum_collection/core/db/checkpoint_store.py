"""Durable per-job checkpoints.

Three backends share one contract: ``load`` returns the last committed
checkpoint (or None), ``save`` replaces it atomically. The file backend writes
a temp file and renames it; the Supabase backend relies on a single-row upsert.
"""

from __future__ import annotations

import logging
import threading
from abc import ABC, abstractmethod
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any, Dict, List, Optional

from postgrest.exceptions import APIError
from pydantic import ValidationError

from src.shared.batch.checkpoint import CheckpointManager, CheckpointReadError
from src.shared.batch.retry import retry_on_network_error
from ..contracts.job import Checkpoint
from ..errors import CheckpointCorruptError, StoreError

logger = logging.getLogger(__name__)

RESUME_MAX_AGE = timedelta(hours=24)
RETENTION = timedelta(days=7)


def _parse(job_id: str, payload: Dict[str, Any]) -> Checkpoint:
    try:
        checkpoint = Checkpoint.model_validate(payload)
    except ValidationError as exc:
        raise CheckpointCorruptError(f"Checkpoint for {job_id} failed validation: {exc}") from exc
    if checkpoint.job_id != job_id:
        raise CheckpointCorruptError(
            f"Checkpoint stored under {job_id} belongs to {checkpoint.job_id}"
        )
    return checkpoint


class CheckpointStore(ABC):
    @abstractmethod
    def load(self, job_id: str) -> Optional[Checkpoint]:
        """Return the committed checkpoint for ``job_id``.

        Raises:
            CheckpointCorruptError: If a checkpoint exists but cannot be trusted
        """

    @abstractmethod
    def save(self, checkpoint: Checkpoint) -> None:
        ...

    @abstractmethod
    def delete(self, job_id: str) -> bool:
        ...

    @abstractmethod
    def list_checkpoints(self) -> List[Checkpoint]:
        ...

    def resumable_jobs(self, now: datetime, max_age: timedelta = RESUME_MAX_AGE) -> List[Checkpoint]:
        """Non-terminal checkpoints updated within ``max_age`` of ``now``, oldest first."""

        resumable = [
            checkpoint
            for checkpoint in self.list_checkpoints()
            if not checkpoint.status.is_terminal
            and checkpoint.updated_at is not None
            and now - checkpoint.updated_at <= max_age
        ]
        return sorted(resumable, key=lambda c: (c.updated_at, c.job_id))

    def cleanup(self, now: datetime, retention: timedelta = RETENTION) -> int:
        """Delete terminal checkpoints older than ``retention``. Returns the count removed."""

        removed = 0
        for checkpoint in self.list_checkpoints():
            if not checkpoint.status.is_terminal or checkpoint.updated_at is None:
                continue
            if now - checkpoint.updated_at > retention and self.delete(checkpoint.job_id):
                removed += 1
        if removed:
            logger.info("Removed %d expired checkpoints", removed)
        return removed


class InMemoryCheckpointStore(CheckpointStore):
    """Keeps serialised checkpoints so loads never alias live objects."""

    def __init__(self) -> None:
        self._documents: Dict[str, str] = {}
        self._lock = threading.Lock()
        self.save_count = 0

    def load(self, job_id: str) -> Optional[Checkpoint]:
        with self._lock:
            document = self._documents.get(job_id)
        if document is None:
            return None
        try:
            return Checkpoint.model_validate_json(document)
        except ValidationError as exc:
            raise CheckpointCorruptError(f"Checkpoint for {job_id} failed validation: {exc}") from exc

    def save(self, checkpoint: Checkpoint) -> None:
        with self._lock:
            self._documents[checkpoint.job_id] = checkpoint.model_dump_json()
            self.save_count += 1

    def delete(self, job_id: str) -> bool:
        with self._lock:
            return self._documents.pop(job_id, None) is not None

    def list_checkpoints(self) -> List[Checkpoint]:
        with self._lock:
            documents = dict(self._documents)
        checkpoints: List[Checkpoint] = []
        for job_id, document in documents.items():
            try:
                checkpoints.append(Checkpoint.model_validate_json(document))
            except ValidationError:
                logger.warning("Ignoring corrupt checkpoint %s", job_id)
        return checkpoints

    def corrupt(self, job_id: str, raw: str) -> None:
        """Overwrite the stored document with ``raw`` (used to simulate damage)."""
        with self._lock:
            self._documents[job_id] = raw


class FileCheckpointStore(CheckpointStore):
    """One JSON file per job under ``directory``, written with rename-on-commit."""

    def __init__(self, directory: str | Path) -> None:
        self._manager = CheckpointManager(directory)

    def load(self, job_id: str) -> Optional[Checkpoint]:
        try:
            payload = self._manager.read(job_id)
        except CheckpointReadError as exc:
            raise CheckpointCorruptError(str(exc)) from exc
        if payload is None:
            return None
        return _parse(job_id, payload)

    def save(self, checkpoint: Checkpoint) -> None:
        self._manager.write(checkpoint.job_id, checkpoint.model_dump(mode="json"))

    def delete(self, job_id: str) -> bool:
        return self._manager.delete(job_id)

    def list_checkpoints(self) -> List[Checkpoint]:
        checkpoints: List[Checkpoint] = []
        for key in self._manager.keys():
            try:
                checkpoint = self.load(key)
            except CheckpointCorruptError as exc:
                logger.warning("Ignoring corrupt checkpoint %s: %s", key, exc)
                continue
            if checkpoint is not None:
                checkpoints.append(checkpoint)
        return checkpoints


class SupabaseCheckpointStore(CheckpointStore):
    """Checkpoint rows in ``collection_checkpoints`` keyed by ``job_id``."""

    def __init__(self, client: Any, *, table_name: str = "collection_checkpoints") -> None:
        self.client = client
        self.table_name = table_name

    def _execute(self, build_query):
        try:
            return retry_on_network_error(lambda: build_query().execute())
        except APIError as exc:
            raise StoreError(f"Checkpoint request failed: {exc}") from exc

    def load(self, job_id: str) -> Optional[Checkpoint]:
        response = self._execute(
            lambda: self.client.table(self.table_name).select("payload").eq("job_id", job_id).limit(1)
        )
        rows = getattr(response, "data", None) or []
        if not rows:
            return None
        payload = rows[0].get("payload")
        if not isinstance(payload, dict):
            raise CheckpointCorruptError(f"Checkpoint row for {job_id} has no payload")
        return _parse(job_id, payload)

    def save(self, checkpoint: Checkpoint) -> None:
        row = {
            "job_id": checkpoint.job_id,
            "status": checkpoint.status.value,
            "payload": checkpoint.model_dump(mode="json"),
            "updated_at": checkpoint.updated_at.isoformat() if checkpoint.updated_at else None,
        }
        self._execute(lambda: self.client.table(self.table_name).upsert(row, on_conflict="job_id"))

    def delete(self, job_id: str) -> bool:
        response = self._execute(lambda: self.client.table(self.table_name).delete().eq("job_id", job_id))
        return bool(getattr(response, "data", None))

    def list_checkpoints(self) -> List[Checkpoint]:
        response = self._execute(lambda: self.client.table(self.table_name).select("job_id,payload"))
        checkpoints: List[Checkpoint] = []
        for row in getattr(response, "data", None) or []:
            try:
                checkpoints.append(_parse(row["job_id"], row.get("payload") or {}))
            except CheckpointCorruptError as exc:
                logger.warning("Ignoring corrupt checkpoint row %s: %s", row.get("job_id"), exc)
        return checkpoints
