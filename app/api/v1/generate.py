"""Generation API: submit a prompt plus media to a model's RunPod endpoint.

POST /generate/{model_id} accepts multipart form data:
  userId, workspaceId, prompt   plain fields
  params                        optional JSON object of model parameters
  <any other text field>        treated as a model parameter
  <file fields>                 media, matched to the model's media slots by field name

A JSON body with the same keys (no files) is accepted too.
"""

import json
import logging
from typing import Any, Dict, List

from fastapi import APIRouter, HTTPException, Request
from starlette.datastructures import UploadFile

from app.errors import ValidationError
from app.services.submission import GenerationRequest, MediaUpload

logger = logging.getLogger(__name__)

router = APIRouter()

# Wired in during lifespan
_submission = None

_RESERVED_FIELDS = {"userId", "workspaceId", "prompt", "params"}


def set_submission_service(service):
    global _submission
    _submission = service


def _parse_params(raw: Any) -> Dict[str, Any]:
    if raw in (None, ""):
        return {}
    if isinstance(raw, dict):
        return raw
    try:
        params = json.loads(raw)
    except (TypeError, ValueError) as exc:
        raise ValidationError("params must be a JSON object") from exc
    if not isinstance(params, dict):
        raise ValidationError("params must be a JSON object")
    return params


async def _read_request(request: Request):
    content_type = request.headers.get("content-type", "")
    if content_type.startswith("application/json"):
        try:
            body = await request.json()
        except ValueError as exc:
            raise ValidationError("Request body is not valid JSON") from exc
        if not isinstance(body, dict):
            raise ValidationError("Request body must be a JSON object")
        return body, []

    form = await request.form()
    fields: Dict[str, Any] = {}
    media: List[MediaUpload] = []
    for key, value in form.multi_items():
        if isinstance(value, UploadFile):
            media.append(MediaUpload(
                field=key,
                filename=value.filename or key,
                content_type=value.content_type,
                data=await value.read(),
            ))
        else:
            fields[key] = value
    return fields, media


@router.post("/generate/{model_id}")
async def generate(model_id: str, request: Request):
    """Create a Job and submit it; returns before the result is ready."""
    if _submission is None:
        raise HTTPException(status_code=503, detail="Submission service not initialized")

    fields, media = await _read_request(request)
    user_id = fields.get("userId")
    if not user_id:
        raise ValidationError("Missing required fields: userId")

    params = {k: v for k, v in fields.items() if k not in _RESERVED_FIELDS}
    params.update(_parse_params(fields.get("params")))

    result = await _submission.submit(GenerationRequest(
        model_id=model_id,
        user_id=str(user_id),
        workspace_id=fields.get("workspaceId") or None,
        prompt=fields.get("prompt") or "",
        params=params,
        media=media,
    ))
    return {
        "success": True,
        "jobId": result.job_id,
        "externalJobId": result.external_job_id,
        "runpodJobId": result.external_job_id,
        "status": result.status,
        "message": "Job submitted. Poll GET /api/v1/jobs/{id} for status.",
    }
