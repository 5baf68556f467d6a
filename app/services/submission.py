"""Submission: validate a generation request, record it as a Job, hand it to RunPod.

Order of side effects for a new request:

1. persist input media (local results directory, plus object storage for
   models that read from the network volume)
2. create the Job in ``processing``
3. debit the ledger
4. submit to RunPod

Anything raised before step 2 leaves no Job behind. A failure in step 3 or 4,
or while recording the RunPod job id afterwards, marks the Job failed and
surfaces as ``SubmissionFailed``; no poller is spawned.
"""

import asyncio
import base64
import logging
import uuid
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple

from app.compute.runpod_client import ClientFactory, client_factory
from app.config import settings
from app.errors import (
    ConfigurationError,
    InvalidTransitionError,
    JobNotFoundError,
    StorageError,
    SubmissionFailed,
    ValidationError,
)
from app.ingestion.pipeline import image_size
from app.jobs.dispatcher import PollerDispatcher
from app.jobs.models import Job, JobStatus, utcnow
from app.jobs.store import JobStore
from app.models.base import GenerationModel, MediaTransport, ModelSpec
from app.models.registry import ModelRegistry, registry as default_registry
from app.services.ledger import Ledger
from app.services.settings_service import RunPodSettings, SettingsProvider
from app.storage.local_results import LocalResultStore
from app.storage.object_storage import ObjectStorage

logger = logging.getLogger(__name__)


@dataclass
class MediaUpload:
    field: str
    filename: str
    content_type: Optional[str]
    data: bytes


@dataclass
class GenerationRequest:
    model_id: str
    user_id: str
    prompt: str = ""
    workspace_id: Optional[str] = None
    params: Dict[str, Any] = field(default_factory=dict)
    media: List[MediaUpload] = field(default_factory=list)


@dataclass
class SubmissionResult:
    job_id: str
    external_job_id: str
    status: str = JobStatus.PROCESSING.value


class SubmissionService:
    def __init__(
        self,
        store: JobStore,
        settings_provider: SettingsProvider,
        ledger: Ledger,
        dispatcher: PollerDispatcher,
        local_store: LocalResultStore,
        object_storage: Optional[ObjectStorage] = None,
        make_client: Optional[ClientFactory] = None,
        models: Optional[ModelRegistry] = None,
        max_upload_bytes: Optional[int] = None,
    ):
        self.store = store
        self.settings_provider = settings_provider
        self.ledger = ledger
        self.dispatcher = dispatcher
        self.local_store = local_store
        self.object_storage = object_storage
        self.make_client = make_client or client_factory()
        self.models = models or default_registry
        self.max_upload_bytes = max_upload_bytes or settings.max_upload_bytes

    async def submit(self, request: GenerationRequest) -> SubmissionResult:
        model = self.models.require(request.model_id)
        spec = model.spec()
        uploads = self._match_uploads(spec, request.media)

        params = model.coerce_params(request.params)
        params = model.apply_defaults(params, await self._probe_image(spec, uploads))
        model.validate(request.prompt, params, list(uploads))

        runpod = await self.settings_provider.runpod_for(request.user_id, spec.model_id, spec.default_timeout)
        self._check_transport(spec)

        job_id = str(uuid.uuid4())
        worker_media, media_options = await self._persist_media(job_id, spec, uploads)

        job = await self.store.create(Job(
            id=job_id,
            user_id=request.user_id,
            workspace_id=request.workspace_id,
            status=JobStatus.PROCESSING,
            type=spec.job_type,
            model_id=spec.model_id,
            prompt=request.prompt or "",
            options={"params": params, "cost": spec.cost, **media_options},
        ))
        logger.info("Job %s created for %s (user %s)", job.id, spec.model_id, request.user_id)

        return await self._dispatch(job, model, runpod, worker_media)

    async def resubmit(self, job_id: str) -> SubmissionResult:
        """Re-run a previous job as a new queued Job reusing its recorded inputs."""
        source = await self.store.find_by_id(job_id)
        if source is None:
            raise JobNotFoundError(job_id)
        model = self.models.require(source.model_id)
        spec = model.spec()
        params = dict(source.options.get("params") or {})

        runpod = await self.settings_provider.runpod_for(source.user_id, spec.model_id, spec.default_timeout)
        self._check_transport(spec)
        worker_media = await self._recorded_media(source, spec)

        inherited = {
            k: v for k, v in source.options.items()
            if k in ("params", "cost", "input_paths", "volume_paths", "volume_urls")
        }
        job = await self.store.create(Job(
            user_id=source.user_id,
            workspace_id=source.workspace_id,
            status=JobStatus.QUEUED,
            type=source.type,
            model_id=source.model_id,
            prompt=source.prompt,
            options={**inherited, "rerun_of": source.id},
        ))
        logger.info("Job %s queued as re-run of %s", job.id, source.id)

        return await self._dispatch(job, model, runpod, worker_media)

    async def _dispatch(
        self,
        job: Job,
        model: GenerationModel,
        runpod: RunPodSettings,
        worker_media: Dict[str, str],
    ) -> SubmissionResult:
        spec = model.spec()
        try:
            await self.ledger.debit(job.user_id, spec.cost, f"{spec.name} generation")
            payload = model.build_payload(job.prompt, job.options.get("params") or {}, worker_media)
            async with self.make_client(runpod.api_key, runpod.endpoint_id, runpod.generate_timeout) as client:
                external_job_id = await client.submit(payload)
        except Exception as exc:
            message = str(exc) or type(exc).__name__
            logger.error("Job %s: submission failed: %s", job.id, message)
            await self._mark_failed(job.id, message)
            raise SubmissionFailed(job.id, message) from exc

        try:
            await self.store.merge_update(
                job.id,
                options={
                    "runpod_endpoint_id": runpod.endpoint_id,
                    "submitted_at": utcnow().isoformat(),
                },
                status=JobStatus.PROCESSING,
                external_job_id=external_job_id,
            )
        except Exception as exc:
            message = f"RunPod job {external_job_id} submitted but the job record was not updated: {exc}"
            logger.error("Job %s: %s", job.id, message)
            await self._mark_failed(job.id, message, external_job_id=external_job_id)
            raise SubmissionFailed(job.id, message) from exc

        self.dispatcher.spawn(job.id)
        return SubmissionResult(job_id=job.id, external_job_id=external_job_id)

    async def _mark_failed(self, job_id: str, message: str, external_job_id: Optional[str] = None) -> None:
        options = {"error": message, "failed_at": utcnow().isoformat()}
        fields: Dict[str, Any] = {"status": JobStatus.FAILED, "error": message}
        if external_job_id:
            # keep the orphaned RunPod job traceable
            options["runpod_job_id"] = external_job_id
            fields["external_job_id"] = external_job_id
        try:
            await self.store.merge_update(job_id, options=options, **fields)
        except (JobNotFoundError, InvalidTransitionError) as exc:
            logger.warning("Job %s: could not record submission failure: %s", job_id, exc)
        except Exception:
            logger.exception("Job %s: failed to record submission failure", job_id)

    def _match_uploads(self, spec: ModelSpec, media: List[MediaUpload]) -> Dict[str, MediaUpload]:
        slots = {slot.name for slot in spec.media}
        uploads: Dict[str, MediaUpload] = {}
        for upload in media:
            if upload.field not in slots:
                logger.debug("Ignoring unexpected upload field %r for %s", upload.field, spec.model_id)
                continue
            if not upload.data:
                continue
            if len(upload.data) > self.max_upload_bytes:
                raise ValidationError(
                    f"File '{upload.filename}' exceeds the {self.max_upload_bytes} byte upload limit"
                )
            uploads[upload.field] = upload
        return uploads

    async def _probe_image(
        self,
        spec: ModelSpec,
        uploads: Dict[str, MediaUpload],
    ) -> Optional[Tuple[int, int]]:
        for slot in spec.media:
            if slot.kind == "image" and slot.name in uploads:
                loop = asyncio.get_running_loop()
                return await loop.run_in_executor(None, image_size, uploads[slot.name].data)
        return None

    def _check_transport(self, spec: ModelSpec) -> None:
        if spec.media_transport == MediaTransport.VOLUME and spec.media and self.object_storage is None:
            raise ConfigurationError(
                f"'{spec.model_id}' reads inputs from the network volume; "
                f"configure S3 storage in Settings."
            )

    async def _persist_media(
        self,
        job_id: str,
        spec: ModelSpec,
        uploads: Dict[str, MediaUpload],
    ) -> Tuple[Dict[str, str], Dict[str, Any]]:
        """Store uploads; returns (worker-facing media per slot, options metadata)."""
        worker_media: Dict[str, str] = {}
        input_paths: Dict[str, str] = {}
        volume_paths: Dict[str, str] = {}
        volume_urls: Dict[str, str] = {}

        for name, upload in uploads.items():
            filename = self.local_store.input_name(job_id, name, upload.filename)
            try:
                input_paths[name] = await self.local_store.write_bytes(filename, upload.data)
            except (OSError, ValueError) as exc:
                raise StorageError(f"Failed to store input '{name}': {exc}") from exc

            if spec.media_transport == MediaTransport.VOLUME:
                stored = await self.object_storage.upload(
                    upload.data,
                    upload.filename,
                    content_type=upload.content_type,
                    prefix=settings.s3_input_prefix,
                )
                volume_paths[name] = stored.path
                volume_urls[name] = stored.url
                worker_media[name] = stored.path
            else:
                worker_media[name] = base64.b64encode(upload.data).decode("ascii")

        options: Dict[str, Any] = {}
        if input_paths:
            options["input_paths"] = input_paths
        if volume_paths:
            options["volume_paths"] = volume_paths
            options["volume_urls"] = volume_urls
        return worker_media, options

    async def _recorded_media(self, job: Job, spec: ModelSpec) -> Dict[str, str]:
        if spec.media_transport == MediaTransport.VOLUME:
            return dict(job.options.get("volume_paths") or {})

        worker_media: Dict[str, str] = {}
        for name, path in (job.options.get("input_paths") or {}).items():
            try:
                data = await self.local_store.read_bytes(path)
            except OSError as exc:
                raise ValidationError(
                    f"Input '{name}' of job {job.id} is no longer available"
                ) from exc
            worker_media[name] = base64.b64encode(data).decode("ascii")
        return worker_media
