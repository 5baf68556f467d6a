"""Job record store interface and in-memory implementation.

Every write goes through ``JobStore.update``, which enforces the forward-only
status graph, stamps ``completed_at`` exactly once, and bumps ``version`` so
that concurrent writers detect each other (compare-and-swap).
"""

import logging
import threading
from abc import ABC, abstractmethod
from datetime import timedelta
from typing import Any, Dict, List, Optional

from app.errors import InvalidTransitionError, JobNotFoundError, StaleJobError
from app.jobs.models import (
    ALLOWED_TRANSITIONS,
    IMMUTABLE_FIELDS,
    Job,
    JobStatus,
    TERMINAL_STATUSES,
    utcnow,
)

logger = logging.getLogger(__name__)

MERGE_ATTEMPTS = 5


def apply_update(current: Job, fields: Dict[str, Any]) -> Job:
    """Return ``current`` with ``fields`` applied, or raise if the change is illegal."""
    changes = dict(fields)

    for name in IMMUTABLE_FIELDS & changes.keys():
        if changes[name] != getattr(current, name):
            raise ValueError(f"Job field '{name}' is immutable")
        del changes[name]
    changes.pop("version", None)

    requested = changes.get("status")
    if requested is not None:
        requested = JobStatus(requested)
        changes["status"] = requested
        if current.is_terminal:
            raise InvalidTransitionError(current.id, current.status.value, requested.value)
        if requested != current.status and requested not in ALLOWED_TRANSITIONS[current.status]:
            raise InvalidTransitionError(current.id, current.status.value, requested.value)
    new_status = requested or current.status

    # completed_at is non-null iff terminal, and never rewritten once set
    if current.completed_at is not None:
        changes.pop("completed_at", None)
    elif new_status in TERMINAL_STATUSES:
        changes["completed_at"] = changes.get("completed_at") or utcnow()
    else:
        changes.pop("completed_at", None)

    if "options" in changes:
        changes["options"] = dict(changes["options"] or {})

    changes["version"] = current.version + 1
    return current.model_copy(update=changes, deep=True)


class JobStore(ABC):
    """Persistence contract for Job records (whole-document writes only)."""

    @abstractmethod
    async def create(self, job: Job) -> Job:
        ...

    @abstractmethod
    async def find_by_id(self, job_id: str) -> Optional[Job]:
        ...

    @abstractmethod
    async def list_jobs(
        self,
        user_id: Optional[str] = None,
        workspace_id: Optional[str] = None,
        status: Optional[JobStatus] = None,
    ) -> List[Job]:
        """Newest first."""
        ...

    @abstractmethod
    async def _write(self, job: Job, expected_version: int) -> Job:
        """Persist ``job`` if the stored version still equals ``expected_version``."""
        ...

    async def update(
        self,
        job_id: str,
        fields: Dict[str, Any],
        expected_version: Optional[int] = None,
    ) -> Job:
        current = await self.find_by_id(job_id)
        if current is None:
            raise JobNotFoundError(job_id)
        if expected_version is not None and current.version != expected_version:
            raise StaleJobError(job_id, expected_version, current.version)
        return await self._write(apply_update(current, fields), current.version)

    async def merge_update(
        self,
        job_id: str,
        options: Optional[Dict[str, Any]] = None,
        **fields: Any,
    ) -> Job:
        """Read-merge-write of ``options`` plus top-level ``fields``, retried on conflict."""
        for attempt in range(1, MERGE_ATTEMPTS + 1):
            current = await self.find_by_id(job_id)
            if current is None:
                raise JobNotFoundError(job_id)
            changes = dict(fields)
            if options:
                changes["options"] = {**current.options, **options}
            try:
                return await self.update(job_id, changes, expected_version=current.version)
            except StaleJobError:
                logger.debug("Job %s: concurrent write, retrying merge (%d)", job_id, attempt)
        raise StaleJobError(job_id, current.version, -1)

    async def list_processing(self) -> List[Job]:
        return await self.list_jobs(status=JobStatus.PROCESSING)

    async def acquire_lease(self, job_id: str, owner: str, ttl_seconds: float) -> bool:
        """Claim the poller lease; False if another live owner holds it."""
        for _ in range(MERGE_ATTEMPTS):
            job = await self.find_by_id(job_id)
            if job is None:
                raise JobNotFoundError(job_id)
            now = utcnow()
            held = (
                job.lease_owner is not None
                and job.lease_owner != owner
                and job.lease_expires_at is not None
                and job.lease_expires_at > now
            )
            if held:
                return False
            try:
                await self.update(
                    job_id,
                    {
                        "lease_owner": owner,
                        "lease_expires_at": now + timedelta(seconds=ttl_seconds),
                    },
                    expected_version=job.version,
                )
                return True
            except StaleJobError:
                continue
        return False

    async def release_lease(self, job_id: str, owner: str) -> None:
        for _ in range(MERGE_ATTEMPTS):
            job = await self.find_by_id(job_id)
            if job is None or job.lease_owner != owner:
                return
            try:
                await self.update(
                    job_id,
                    {"lease_owner": None, "lease_expires_at": None},
                    expected_version=job.version,
                )
                return
            except StaleJobError:
                continue


class InMemoryJobStore(JobStore):
    """Dict-backed store for local development and tests."""

    def __init__(self):
        self._jobs: Dict[str, Job] = {}
        self._lock = threading.Lock()

    async def create(self, job: Job) -> Job:
        with self._lock:
            if job.id in self._jobs:
                raise ValueError(f"Job {job.id} already exists")
            stored = job.model_copy(update={"version": 1}, deep=True)
            self._jobs[job.id] = stored
        return stored.model_copy(deep=True)

    async def find_by_id(self, job_id: str) -> Optional[Job]:
        with self._lock:
            job = self._jobs.get(job_id)
            return job.model_copy(deep=True) if job else None

    async def list_jobs(
        self,
        user_id: Optional[str] = None,
        workspace_id: Optional[str] = None,
        status: Optional[JobStatus] = None,
    ) -> List[Job]:
        with self._lock:
            jobs = [j.model_copy(deep=True) for j in self._jobs.values()]
        if user_id:
            jobs = [j for j in jobs if j.user_id == user_id]
        if workspace_id:
            jobs = [j for j in jobs if j.workspace_id == workspace_id]
        if status:
            jobs = [j for j in jobs if j.status == status]
        return sorted(jobs, key=lambda j: j.created_at, reverse=True)

    async def delete(self, job_id: str) -> None:
        with self._lock:
            self._jobs.pop(job_id, None)

    async def _write(self, job: Job, expected_version: int) -> Job:
        with self._lock:
            stored = self._jobs.get(job.id)
            if stored is None:
                raise JobNotFoundError(job.id)
            if stored.version != expected_version:
                raise StaleJobError(job.id, expected_version, stored.version)
            self._jobs[job.id] = job.model_copy(deep=True)
        return job
