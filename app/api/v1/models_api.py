"""Models API: list registered generation models."""

from typing import Optional

from fastapi import APIRouter

from app.jobs.models import JobType
from app.models.registry import registry

router = APIRouter()


@router.get("/models")
async def list_models(type: Optional[JobType] = None):
    """List all registered models, optionally only image or video ones."""
    specs = registry.list_models(job_type=type)
    return {
        "models": [
            {
                "model_id": s.model_id,
                "name": s.name,
                "type": s.job_type.value,
                "cost": s.cost,
                "requires_prompt": s.requires_prompt,
                "required_params": s.required_params,
                "media": [
                    {"name": m.name, "kind": m.kind, "required": m.required}
                    for m in s.media
                ],
                "description": s.description,
            }
            for s in specs
        ],
        "count": len(specs),
    }
