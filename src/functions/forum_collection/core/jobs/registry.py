"""Live-job registry enforcing one non-terminal job per target.

``claim`` is the only way a job comes into existence: it atomically records
``target_key -> job_id`` and fails if another job already holds the key.
"""

from __future__ import annotations

import logging
import threading
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from postgrest.exceptions import APIError

from src.shared.batch.retry import retry_on_network_error
from ..errors import StoreError

logger = logging.getLogger(__name__)

UNIQUE_VIOLATION = "23505"


class LiveJobRegistry(ABC):
    @abstractmethod
    def claim(self, target_key: str, job_id: str) -> bool:
        """Atomically take ``target_key`` for ``job_id``. False if already held."""

    @abstractmethod
    def release(self, target_key: str, job_id: str) -> bool:
        """Drop the claim if ``job_id`` still holds it."""

    @abstractmethod
    def holder(self, target_key: str) -> Optional[str]:
        ...

    @abstractmethod
    def active(self) -> Dict[str, str]:
        """Snapshot of ``target_key -> job_id``."""


class InMemoryLiveJobRegistry(LiveJobRegistry):
    def __init__(self) -> None:
        self._claims: Dict[str, str] = {}
        self._lock = threading.Lock()

    def claim(self, target_key: str, job_id: str) -> bool:
        with self._lock:
            if target_key in self._claims:
                return False
            self._claims[target_key] = job_id
            return True

    def release(self, target_key: str, job_id: str) -> bool:
        with self._lock:
            if self._claims.get(target_key) != job_id:
                return False
            del self._claims[target_key]
            return True

    def holder(self, target_key: str) -> Optional[str]:
        with self._lock:
            return self._claims.get(target_key)

    def active(self) -> Dict[str, str]:
        with self._lock:
            return dict(self._claims)


class SupabaseLiveJobRegistry(LiveJobRegistry):
    """Claims as rows of ``collection_live_jobs`` with a unique ``target_key``.

    The insert is the conditional write: a second insert for the same key hits
    the unique constraint and is reported as a lost claim.
    """

    def __init__(self, client: Any, *, table_name: str = "collection_live_jobs") -> None:
        self.client = client
        self.table_name = table_name

    def claim(self, target_key: str, job_id: str) -> bool:
        row = {
            "target_key": target_key,
            "job_id": job_id,
            "claimed_at": datetime.now(timezone.utc).isoformat(),
        }
        try:
            retry_on_network_error(lambda: self.client.table(self.table_name).insert(row).execute())
        except APIError as exc:
            if getattr(exc, "code", None) == UNIQUE_VIOLATION:
                logger.debug("Claim for %s lost: already held", target_key)
                return False
            raise StoreError(f"Live-job claim failed: {exc}") from exc
        return True

    def release(self, target_key: str, job_id: str) -> bool:
        try:
            response = retry_on_network_error(
                lambda: self.client.table(self.table_name)
                .delete()
                .eq("target_key", target_key)
                .eq("job_id", job_id)
                .execute()
            )
        except APIError as exc:
            raise StoreError(f"Live-job release failed: {exc}") from exc
        return bool(getattr(response, "data", None))

    def holder(self, target_key: str) -> Optional[str]:
        return self.active().get(target_key)

    def active(self) -> Dict[str, str]:
        try:
            response = retry_on_network_error(
                lambda: self.client.table(self.table_name).select("target_key,job_id").execute()
            )
        except APIError as exc:
            raise StoreError(f"Live-job listing failed: {exc}") from exc
        return {row["target_key"]: row["job_id"] for row in getattr(response, "data", None) or []}
