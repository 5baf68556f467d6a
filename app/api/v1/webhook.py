"""Completion webhook for workers that report results directly."""

import logging

from fastapi import APIRouter, HTTPException
from pydantic import BaseModel

from app.jobs.models import JobStatus

logger = logging.getLogger(__name__)

router = APIRouter()

_store = None


def set_job_store(store):
    global _store
    _store = store


class CompletionNotice(BaseModel):
    jobId: str
    resultUrl: str


@router.post("/webhook/complete")
async def complete_job(notice: CompletionNotice):
    """Mark a job completed with the given result URL (404 unknown, 409 already terminal)."""
    if _store is None:
        raise HTTPException(status_code=503, detail="Job store not initialized")
    job = await _store.merge_update(
        notice.jobId,
        options={"result_source": "webhook"},
        status=JobStatus.COMPLETED,
        result_url=notice.resultUrl,
    )
    logger.info("Job %s completed via webhook", job.id)
    return {"success": True, "job": job.to_api()}
