"""Aggregate all v1 API routers."""

from fastapi import APIRouter
from app.api.v1.health import router as health_router
from app.api.v1.models_api import router as models_router
from app.api.v1.generate import router as generate_router
from app.api.v1.jobs import router as jobs_router
from app.api.v1.webhook import router as webhook_router
from app.api.v1.results import router as results_router

v1_router = APIRouter(prefix="/api/v1")
v1_router.include_router(health_router, tags=["health"])
v1_router.include_router(models_router, tags=["models"])
v1_router.include_router(generate_router, tags=["generate"])
v1_router.include_router(jobs_router, tags=["jobs"])
v1_router.include_router(webhook_router, tags=["webhook"])

# /results/{filename} and /api/results/{job_ref} live outside the v1 prefix
results_router_root = APIRouter()
results_router_root.include_router(results_router, tags=["results"])
