"""Generation job orchestration service - FastAPI application."""

import logging
from contextlib import asynccontextmanager
from typing import Optional

import httpx
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from app.config import settings
from app.log_config import configure_logging
from app.api.v1.router import v1_router, results_router_root
from app.api.v1.health import router as health_root_router
from app.api.v1 import generate as generate_api
from app.api.v1 import health as health_api
from app.api.v1 import jobs as jobs_api
from app.api.v1 import results as results_api
from app.api.v1 import webhook as webhook_api
from app.compute.runpod_client import client_factory
from app.errors import (
    ConfigurationError,
    GenerationError,
    InvalidTransitionError,
    JobNotFoundError,
    StaleJobError,
    SubmissionFailed,
    ValidationError,
)
from app.ingestion.pipeline import IngestionPipeline
from app.jobs.in_process_queue import InProcessPollerQueue
from app.jobs.store import InMemoryJobStore, JobStore
from app.models.registry import registry
from app.services.ledger import InMemoryLedger, Ledger, SupabaseLedger
from app.services.poller import CompletionPoller
from app.services.settings_service import (
    EnvSettingsProvider,
    SettingsProvider,
    SupabaseSettingsProvider,
)
from app.services.submission import SubmissionService
from app.storage.local_results import LocalResultStore
from app.storage.object_storage import ObjectStorage

logger = logging.getLogger(__name__)


def _build_store() -> JobStore:
    if settings.job_store_backend == "supabase":
        from app.jobs.supabase_store import SupabaseJobStore
        return SupabaseJobStore()
    return InMemoryJobStore()


def _uses_supabase() -> bool:
    return settings.job_store_backend == "supabase"


async def _resume_inflight(store: JobStore, dispatcher: InProcessPollerQueue) -> None:
    """Re-spawn pollers for jobs left in processing by a previous process."""
    jobs = [job for job in await store.list_processing() if job.external_job_id]
    for job in jobs:
        dispatcher.spawn(job.id)
    if jobs:
        logger.info("Resumed polling for %d in-flight job(s)", len(jobs))


def _error(status_code: int, message: str, **extra) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"error": message, **extra})


def register_exception_handlers(app: FastAPI) -> None:
    """Map domain errors to JSON error bodies."""

    @app.exception_handler(ValidationError)
    async def validation_error(request: Request, exc: ValidationError):
        return _error(400, str(exc))

    @app.exception_handler(ConfigurationError)
    async def configuration_error(request: Request, exc: ConfigurationError):
        return _error(400, str(exc), requiresSetup=True)

    @app.exception_handler(SubmissionFailed)
    async def submission_failed(request: Request, exc: SubmissionFailed):
        return _error(500, str(exc), jobId=exc.job_id, status="failed")

    @app.exception_handler(JobNotFoundError)
    async def job_not_found(request: Request, exc: JobNotFoundError):
        return _error(404, str(exc))

    @app.exception_handler(InvalidTransitionError)
    async def invalid_transition(request: Request, exc: InvalidTransitionError):
        return _error(409, str(exc), status=exc.current)

    @app.exception_handler(StaleJobError)
    async def stale_job(request: Request, exc: StaleJobError):
        return _error(409, str(exc))

    @app.exception_handler(GenerationError)
    async def generation_error(request: Request, exc: GenerationError):
        logger.error("Unhandled %s: %s", type(exc).__name__, exc)
        return _error(500, str(exc))


def create_app(
    job_store: Optional[JobStore] = None,
    settings_provider: Optional[SettingsProvider] = None,
    ledger: Optional[Ledger] = None,
    object_storage: Optional[ObjectStorage] = None,
    http_transport: Optional[httpx.AsyncBaseTransport] = None,
    poll_interval: Optional[float] = None,
) -> FastAPI:
    """Build the application. Arguments override the settings-driven defaults."""

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        configure_logging()
        logger.info("Starting generation service on port %d", settings.service_port)
        logger.info("Job store: %s, results dir: %s", settings.job_store_backend, settings.results_dir)

        registry.discover()
        logger.info("Found %d model(s)", len(registry))

        store = job_store or _build_store()
        provider = settings_provider or (
            SupabaseSettingsProvider() if _uses_supabase() else EnvSettingsProvider()
        )
        credit_ledger = ledger or (SupabaseLedger() if _uses_supabase() else InMemoryLedger())
        storage = object_storage or ObjectStorage.from_settings()
        if storage is None:
            logger.info("Object storage not configured; network-volume models unavailable")

        local_store = LocalResultStore()
        make_client = client_factory(transport=http_transport, poll_interval=poll_interval)
        pipeline = IngestionPipeline(local_store, object_storage=storage, http_transport=http_transport)
        poller = CompletionPoller(store, provider, pipeline, make_client=make_client)
        dispatcher = InProcessPollerQueue(poll_fn=poller.run)
        await dispatcher.start()

        submission = SubmissionService(
            store,
            provider,
            credit_ledger,
            dispatcher,
            local_store,
            object_storage=storage,
            make_client=make_client,
        )

        # Wire services into API endpoints
        generate_api.set_submission_service(submission)
        jobs_api.set_job_store(store)
        jobs_api.set_submission_service(submission)
        webhook_api.set_job_store(store)
        results_api.set_job_store(store)
        results_api.set_local_store(local_store)
        health_api.set_dispatcher(dispatcher)

        app.state.job_store = store
        app.state.dispatcher = dispatcher

        if settings.resume_inflight_on_startup:
            await _resume_inflight(store, dispatcher)

        yield

        logger.info("Shutting down generation service")
        await dispatcher.stop()

    app = FastAPI(
        title="Generation Job Service",
        description="Submits image and video generation jobs to RunPod and collects their results",
        version="0.1.0",
        lifespan=lifespan,
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["http://localhost:5173", "http://localhost:3000", "*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    register_exception_handlers(app)

    app.include_router(health_root_router, tags=["health"])  # GET /health at root
    app.include_router(v1_router)  # All /api/v1/* endpoints
    app.include_router(results_router_root)  # /results/*, /api/results/*
    return app


app = create_app()
