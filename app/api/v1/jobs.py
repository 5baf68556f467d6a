"""Job API: status polling, listing and re-runs."""

from typing import Optional

from fastapi import APIRouter, HTTPException

from app.errors import JobNotFoundError
from app.jobs.models import JobStatus

router = APIRouter()

# These will be set by main.py during lifespan
_store = None
_submission = None


def set_job_store(store):
    global _store
    _store = store


def set_submission_service(service):
    global _submission
    _submission = service


@router.get("/jobs")
async def list_jobs(
    userId: Optional[str] = None,
    workspaceId: Optional[str] = None,
    status: Optional[JobStatus] = None,
):
    """List jobs, newest first."""
    if _store is None:
        raise HTTPException(status_code=503, detail="Job store not initialized")
    jobs = await _store.list_jobs(user_id=userId, workspace_id=workspaceId, status=status)
    return {"jobs": [job.to_api() for job in jobs], "count": len(jobs)}


@router.get("/jobs/{job_id}")
async def get_job(job_id: str):
    if _store is None:
        raise HTTPException(status_code=503, detail="Job store not initialized")
    job = await _store.find_by_id(job_id)
    if job is None:
        raise JobNotFoundError(job_id)
    return {"job": job.to_api()}


@router.post("/jobs/{job_id}/rerun")
async def rerun_job(job_id: str):
    """Submit a previous job's inputs again as a new job."""
    if _submission is None:
        raise HTTPException(status_code=503, detail="Submission service not initialized")
    result = await _submission.resubmit(job_id)
    return {
        "success": True,
        "jobId": result.job_id,
        "externalJobId": result.external_job_id,
        "runpodJobId": result.external_job_id,
        "status": result.status,
        "rerunOf": job_id,
    }
