"""Background completion poller: drives one submitted Job to a terminal state."""

import logging
import uuid
from typing import Optional

from app.compute.runpod_client import ClientFactory, client_factory
from app.config import settings
from app.errors import (
    BackendReportedFailure,
    InvalidTransitionError,
    JobNotFoundError,
)
from app.ingestion.pipeline import IngestionPipeline
from app.jobs.models import JobStatus, utcnow
from app.jobs.store import JobStore
from app.models.registry import ModelRegistry, registry as default_registry
from app.services.settings_service import SettingsProvider

logger = logging.getLogger(__name__)


class CompletionPoller:
    def __init__(
        self,
        store: JobStore,
        settings_provider: SettingsProvider,
        pipeline: IngestionPipeline,
        make_client: Optional[ClientFactory] = None,
        models: Optional[ModelRegistry] = None,
        owner: Optional[str] = None,
        lease_margin: Optional[float] = None,
    ):
        self.store = store
        self.settings_provider = settings_provider
        self.pipeline = pipeline
        self.make_client = make_client or client_factory()
        self.models = models or default_registry
        # Identifies this process when holding poller leases
        self.owner = owner or f"poller-{uuid.uuid4().hex[:8]}"
        self.lease_margin = settings.poller_lease_margin_seconds if lease_margin is None else lease_margin

    async def run(self, job_id: str) -> None:
        job = await self.store.find_by_id(job_id)
        if job is None:
            logger.warning("Job %s no longer exists, poller aborted", job_id)
            return
        if job.is_terminal:
            logger.debug("Job %s already %s, nothing to poll", job_id, job.status.value)
            return
        if not job.external_job_id:
            await self._fail(job_id, "Job has no RunPod job ID")
            return

        model = self.models.get(job.model_id)
        spec = model.spec() if model else None
        default_timeout = spec.default_timeout if spec else 3600

        try:
            runpod = await self.settings_provider.runpod_for(job.user_id, job.model_id, default_timeout)
        except Exception as exc:
            logger.error("Job %s: cannot resolve RunPod settings: %s", job_id, exc)
            await self._fail(job_id, str(exc))
            return

        ttl = runpod.generate_timeout + self.lease_margin
        try:
            acquired = await self.store.acquire_lease(job_id, self.owner, ttl)
        except JobNotFoundError:
            logger.warning("Job %s deleted before polling started", job_id)
            return
        if not acquired:
            logger.info("Job %s is already being polled elsewhere, skipping", job_id)
            return

        try:
            await self._poll(job_id, job.external_job_id, spec, runpod)
        finally:
            await self.store.release_lease(job_id, self.owner)

    async def _poll(self, job_id, external_job_id, spec, runpod) -> None:
        logger.info("Polling job %s (RunPod %s)", job_id, external_job_id)
        try:
            if spec is None:
                raise ValueError(f"Model for job {job_id} is no longer registered")
            async with self.make_client(runpod.api_key, runpod.endpoint_id, runpod.generate_timeout) as client:
                result = await client.wait_for_completion(external_job_id)

            job = await self.store.find_by_id(job_id)
            if job is None:
                logger.warning("Job %s deleted while polling, result dropped", job_id)
                return
            outcome = await self.pipeline.ingest(job, spec, result.output)
            await self.store.merge_update(
                job_id,
                options=outcome.options,
                status=JobStatus.COMPLETED,
                result_url=outcome.result_url,
            )
            logger.info("Job %s completed: %s", job_id, outcome.result_url)
        except InvalidTransitionError as exc:
            logger.info("Job %s finished elsewhere: %s", job_id, exc)
        except BackendReportedFailure as exc:
            await self._fail(job_id, exc.backend_error)
        except Exception as exc:
            logger.exception("Job %s: polling failed", job_id)
            await self._fail(job_id, str(exc) or type(exc).__name__)

    async def _fail(self, job_id: str, message: str) -> None:
        options = {"error": message, "failed_at": utcnow().isoformat()}
        try:
            await self.store.merge_update(
                job_id,
                options=options,
                status=JobStatus.FAILED,
                error=message,
            )
            logger.warning("Job %s failed: %s", job_id, message)
        except JobNotFoundError:
            logger.warning("Job %s deleted before its failure could be recorded", job_id)
        except InvalidTransitionError as exc:
            logger.info("Job %s: failure not recorded, %s", job_id, exc)
