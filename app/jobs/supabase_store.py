"""Supabase-backed Job store (``jobs`` table).

Column names follow the table used by the web client (snake_case). The
compare-and-swap write filters on both ``id`` and ``version``; an empty result
means another writer got there first or the row is gone.
"""

import logging
from datetime import datetime
from typing import Any, Dict, List, Optional

from supabase import Client

from app.config import settings
from app.db.supabase_client import get_supabase, run_query
from app.errors import JobNotFoundError, StaleJobError
from app.jobs.models import Job, JobStatus
from app.jobs.store import JobStore

logger = logging.getLogger(__name__)


def _ts(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def job_to_row(job: Job) -> Dict[str, Any]:
    return {
        "id": job.id,
        "user_id": job.user_id,
        "workspace_id": job.workspace_id,
        "status": job.status.value,
        "type": job.type.value,
        "model_id": job.model_id,
        "prompt": job.prompt,
        "runpod_job_id": job.external_job_id,
        "options": job.options,
        "result_url": job.result_url,
        "error": job.error,
        "created_at": _ts(job.created_at),
        "completed_at": _ts(job.completed_at),
        "version": job.version,
        "lease_owner": job.lease_owner,
        "lease_expires_at": _ts(job.lease_expires_at),
    }


def row_to_job(row: Dict[str, Any]) -> Job:
    data = dict(row)
    data["external_job_id"] = data.pop("runpod_job_id", "") or ""
    data["options"] = data.get("options") or {}
    return Job.model_validate(data)


class SupabaseJobStore(JobStore):
    def __init__(self, client: Optional[Client] = None, table: Optional[str] = None):
        self._client = client
        self._table = table or settings.jobs_table

    @property
    def client(self) -> Client:
        if self._client is None:
            self._client = get_supabase()
        return self._client

    async def create(self, job: Job) -> Job:
        row = job_to_row(job.model_copy(update={"version": 1}))
        response = await run_query(self.client.table(self._table).insert(row).execute)
        return row_to_job(response.data[0])

    async def find_by_id(self, job_id: str) -> Optional[Job]:
        response = await run_query(
            self.client.table(self._table).select("*").eq("id", job_id).limit(1).execute
        )
        if not response.data:
            return None
        return row_to_job(response.data[0])

    async def list_jobs(
        self,
        user_id: Optional[str] = None,
        workspace_id: Optional[str] = None,
        status: Optional[JobStatus] = None,
    ) -> List[Job]:
        query = self.client.table(self._table).select("*")
        if user_id:
            query = query.eq("user_id", user_id)
        if workspace_id:
            query = query.eq("workspace_id", workspace_id)
        if status:
            query = query.eq("status", JobStatus(status).value)
        response = await run_query(query.order("created_at", desc=True).execute)
        return [row_to_job(r) for r in response.data or []]

    async def _write(self, job: Job, expected_version: int) -> Job:
        row = job_to_row(job)
        del row["id"]
        response = await run_query(
            self.client.table(self._table)
            .update(row)
            .eq("id", job.id)
            .eq("version", expected_version)
            .execute
        )
        if response.data:
            return row_to_job(response.data[0])

        current = await self.find_by_id(job.id)
        if current is None:
            raise JobNotFoundError(job.id)
        raise StaleJobError(job.id, expected_version, current.version)
