"""Serving of persisted result files.

GET /results/{filename}         the stored artifact itself
GET /api/results/{job_ref}      resolve a job's result: redirect to a remote
                                result_url or serve the local file
"""

import mimetypes
import os

from fastapi import APIRouter, HTTPException
from fastapi.responses import FileResponse, RedirectResponse

router = APIRouter()

# Wired in during lifespan
_local_store = None
_store = None


def set_local_store(store):
    global _local_store
    _local_store = store


def set_job_store(store):
    global _store
    _store = store


def _file_response(path: str) -> FileResponse:
    media_type = mimetypes.guess_type(path)[0] or "application/octet-stream"
    return FileResponse(path, media_type=media_type, filename=os.path.basename(path))


@router.get("/results/{filename}")
async def get_result_file(filename: str):
    if _local_store is None:
        raise HTTPException(status_code=503, detail="Result store not initialized")
    if not _local_store.exists(filename):
        raise HTTPException(status_code=404, detail="Result file not found")
    return _file_response(_local_store.path_for(filename))


@router.get("/api/results/{job_ref}")
async def get_job_result(job_ref: str):
    """``job_ref`` is a job id, optionally followed by a file extension."""
    if _store is None or _local_store is None:
        raise HTTPException(status_code=503, detail="Result store not initialized")

    job = await _store.find_by_id(job_ref.split(".", 1)[0])
    if job is None:
        raise HTTPException(status_code=404, detail="Job not found")

    result_url = job.result_url or ""
    if result_url.startswith("http"):
        return RedirectResponse(result_url)

    filename = os.path.basename(result_url)
    if filename and _local_store.exists(filename):
        return _file_response(_local_store.path_for(filename))

    result_path = job.options.get("result_path")
    if isinstance(result_path, str) and os.path.isfile(result_path):
        return _file_response(result_path)

    raise HTTPException(status_code=404, detail="Result not available")
