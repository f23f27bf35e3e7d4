"""Persistence of job specs and operator cancellation requests.

The file backend keeps one document per job next to the checkpoints so the
``resume`` path can find the job behind every interrupted checkpoint.
"""

from __future__ import annotations

import logging
import threading
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any, Dict, List, Optional

from postgrest.exceptions import APIError

from src.shared.batch.checkpoint import CheckpointManager, CheckpointReadError
from src.shared.batch.retry import retry_on_network_error
from ..contracts.job import JobSpec, JobStatus
from ..errors import StoreError

logger = logging.getLogger(__name__)


class JobStore(ABC):
    @abstractmethod
    def save(self, job: JobSpec) -> None:
        ...

    @abstractmethod
    def get(self, job_id: str) -> Optional[JobSpec]:
        ...

    @abstractmethod
    def list_jobs(self, status: Optional[JobStatus] = None) -> List[JobSpec]:
        ...

    @abstractmethod
    def request_cancel(self, job_id: str) -> bool:
        """Flag ``job_id`` for cancellation. Returns False for unknown or terminal jobs."""

    @abstractmethod
    def is_cancel_requested(self, job_id: str) -> bool:
        ...


class InMemoryJobStore(JobStore):
    def __init__(self) -> None:
        self._jobs: Dict[str, JobSpec] = {}
        self._cancel: set = set()
        self._lock = threading.Lock()

    def save(self, job: JobSpec) -> None:
        with self._lock:
            self._jobs[job.id] = job

    def get(self, job_id: str) -> Optional[JobSpec]:
        with self._lock:
            return self._jobs.get(job_id)

    def list_jobs(self, status: Optional[JobStatus] = None) -> List[JobSpec]:
        with self._lock:
            jobs = list(self._jobs.values())
        if status is not None:
            jobs = [job for job in jobs if job.status is status]
        return sorted(jobs, key=lambda job: (job.created_at, job.id))

    def request_cancel(self, job_id: str) -> bool:
        with self._lock:
            job = self._jobs.get(job_id)
            if job is None or job.status.is_terminal:
                return False
            self._cancel.add(job_id)
            return True

    def is_cancel_requested(self, job_id: str) -> bool:
        with self._lock:
            return job_id in self._cancel


class SupabaseJobStore(JobStore):
    """Job rows in ``collection_jobs``."""

    def __init__(self, client: Any, *, table_name: str = "collection_jobs") -> None:
        self.client = client
        self.table_name = table_name

    def _execute(self, build_query):
        try:
            return retry_on_network_error(lambda: build_query().execute())
        except APIError as exc:
            raise StoreError(f"Job store request failed: {exc}") from exc

    @staticmethod
    def _to_row(job: JobSpec) -> Dict[str, Any]:
        data = job.to_dict()
        return {
            "id": data["id"],
            "kind": data["kind"],
            "target": data["target"],
            "target_key": job.target_key,
            "priority": data["priority"],
            "status": data["status"],
            "created_at": data["created_at"],
        }

    @staticmethod
    def _from_row(row: Dict[str, Any]) -> JobSpec:
        return JobSpec.model_validate(
            {
                "id": row["id"],
                "kind": row["kind"],
                "target": row["target"],
                "priority": row.get("priority", 0),
                "status": row.get("status", JobStatus.QUEUED.value),
                "created_at": row["created_at"],
            }
        )

    def save(self, job: JobSpec) -> None:
        self._execute(lambda: self.client.table(self.table_name).upsert(self._to_row(job), on_conflict="id"))

    def get(self, job_id: str) -> Optional[JobSpec]:
        response = self._execute(lambda: self.client.table(self.table_name).select("*").eq("id", job_id).limit(1))
        rows = getattr(response, "data", None) or []
        return self._from_row(rows[0]) if rows else None

    def list_jobs(self, status: Optional[JobStatus] = None) -> List[JobSpec]:
        def query():
            builder = self.client.table(self.table_name).select("*")
            if status is not None:
                builder = builder.eq("status", status.value)
            return builder.order("created_at")

        response = self._execute(query)
        return [self._from_row(row) for row in getattr(response, "data", None) or []]

    def request_cancel(self, job_id: str) -> bool:
        job = self.get(job_id)
        if job is None or job.status.is_terminal:
            return False
        self._execute(
            lambda: self.client.table(self.table_name).update({"cancel_requested": True}).eq("id", job_id)
        )
        logger.info("Cancellation requested for job %s", job_id)
        return True

    def is_cancel_requested(self, job_id: str) -> bool:
        response = self._execute(
            lambda: self.client.table(self.table_name).select("cancel_requested").eq("id", job_id).limit(1)
        )
        rows = getattr(response, "data", None) or []
        return bool(rows and rows[0].get("cancel_requested"))


class FileJobStore(JobStore):
    """One JSON document per job under ``directory``, so a restarted process can resume it."""

    def __init__(self, directory: str | Path) -> None:
        self._manager = CheckpointManager(directory)
        self._lock = threading.Lock()

    def _read(self, job_id: str) -> Optional[Dict[str, Any]]:
        try:
            return self._manager.read(job_id)
        except CheckpointReadError as exc:
            raise StoreError(f"Job record {job_id} is unreadable: {exc}") from exc

    def save(self, job: JobSpec) -> None:
        with self._lock:
            previous = self._read(job.id) or {}
            self._manager.write(
                job.id,
                {"job": job.to_dict(), "cancel_requested": bool(previous.get("cancel_requested"))},
            )

    def get(self, job_id: str) -> Optional[JobSpec]:
        document = self._read(job_id)
        if document is None:
            return None
        return JobSpec.model_validate(document["job"])

    def list_jobs(self, status: Optional[JobStatus] = None) -> List[JobSpec]:
        jobs: List[JobSpec] = []
        for key in self._manager.keys():
            try:
                job = self.get(key)
            except StoreError as exc:
                logger.warning("Ignoring job record %s: %s", key, exc)
                continue
            if job is not None and (status is None or job.status is status):
                jobs.append(job)
        return sorted(jobs, key=lambda job: (job.created_at, job.id))

    def request_cancel(self, job_id: str) -> bool:
        with self._lock:
            document = self._read(job_id)
            if document is None or JobSpec.model_validate(document["job"]).status.is_terminal:
                return False
            self._manager.write(job_id, {**document, "cancel_requested": True})
        logger.info("Cancellation requested for job %s", job_id)
        return True

    def is_cancel_requested(self, job_id: str) -> bool:
        document = self._read(job_id)
        return bool(document and document.get("cancel_requested"))
