"""Result ingestion: backend output -> persisted file -> one ``result_url``.

Ingestion never fails a job. Whatever goes wrong while decoding, downloading or
writing, the outcome degrades to a fallback reference (the retrieval endpoint
path, or the remote URL itself) and the error is recorded in the metadata.
"""

import asyncio
import io
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, Optional, Tuple

import httpx
from PIL import Image, UnidentifiedImageError

from app.config import settings
from app.errors import IngestionError, StorageError
from app.ingestion.decoder import (
    InlineMedia,
    RemoteMedia,
    ResultSource,
    VolumeMedia,
    decode_base64,
    decode_output,
    describe,
)
from app.jobs.models import Job, JobType, utcnow
from app.models.base import ModelSpec
from app.storage.local_results import LocalResultStore
from app.storage.object_storage import ObjectStorage

logger = logging.getLogger(__name__)

REDACT_OVER = 1000
REDACT_KEEP = 100

FAILED_TO_SAVE = "failed_to_save"


def redact_output(value: Any) -> Any:
    """Replace long strings (inline media) with a short prefix plus original length."""
    if isinstance(value, str):
        if len(value) > REDACT_OVER:
            return f"{value[:REDACT_KEEP]}... [truncated, {len(value)} chars]"
        return value
    if isinstance(value, dict):
        return {k: redact_output(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [redact_output(v) for v in value]
    return value


def image_size(data: bytes) -> Optional[Tuple[int, int]]:
    try:
        with Image.open(io.BytesIO(data)) as img:
            return img.size
    except (UnidentifiedImageError, Image.DecompressionBombError, OSError, ValueError):
        return None


@dataclass
class IngestionOutcome:
    result_url: str
    options: Dict[str, Any] = field(default_factory=dict)
    error: Optional[str] = None


class IngestionPipeline:
    def __init__(
        self,
        local_store: LocalResultStore,
        object_storage: Optional[ObjectStorage] = None,
        http_transport: Optional[httpx.AsyncBaseTransport] = None,
        retrieval_prefix: Optional[str] = None,
        download_timeout: Optional[float] = None,
    ):
        self.local_store = local_store
        self.object_storage = object_storage
        self._http_transport = http_transport
        self._retrieval_prefix = (retrieval_prefix or settings.retrieval_url_prefix).rstrip("/")
        self._download_timeout = download_timeout or settings.download_timeout

    def fallback_url(self, job_id: str, spec: ModelSpec) -> str:
        return f"{self._retrieval_prefix}/{job_id}.{spec.result_extension}"

    async def ingest(self, job: Job, spec: ModelSpec, output: Optional[Dict[str, Any]]) -> IngestionOutcome:
        source = decode_output(output, spec.output)
        filename = self.local_store.result_name(spec.result_prefix, job.id, spec.result_extension)
        logger.info("Job %s: ingesting result from %s", job.id, describe(source))

        try:
            outcome = await self._materialize(job, spec, source, filename)
        except IngestionError as exc:
            logger.warning("Job %s: result ingestion degraded: %s", job.id, exc)
            outcome = self._degraded(job, spec, source, str(exc))

        now = utcnow()
        outcome.options.update({
            "result_source": describe(source),
            "runpod_output": redact_output(output or {}),
            "completed_at": now.isoformat(),
            "processing_time": round((now - job.created_at).total_seconds(), 1),
        })
        if outcome.error:
            outcome.options["error"] = outcome.error
        return outcome

    async def _materialize(
        self,
        job: Job,
        spec: ModelSpec,
        source: ResultSource,
        filename: str,
    ) -> IngestionOutcome:
        if isinstance(source, InlineMedia):
            data = decode_base64(source.data)
        elif isinstance(source, RemoteMedia):
            data = await self._download(source.url)
        elif isinstance(source, VolumeMedia):
            data = await self._fetch_volume(source.path)
        else:
            logger.warning("Job %s: no recognised result field (keys: %s)", job.id, list(source.keys))
            return IngestionOutcome(
                result_url=self.fallback_url(job.id, spec),
                options={"result_path": spec.missing_output_marker},
            )

        try:
            path = await self.local_store.write_bytes(filename, data)
        except (OSError, ValueError) as exc:
            raise IngestionError(f"Failed to save result locally: {exc}") from exc
        logger.info("Job %s: saved %d bytes to %s", job.id, len(data), path)

        options: Dict[str, Any] = {"result_path": path, "result_size": len(data)}
        if isinstance(source, RemoteMedia):
            options["runpod_result_url"] = source.url
        elif isinstance(source, VolumeMedia):
            options["runpod_result_url"] = source.path
        if spec.job_type == JobType.IMAGE:
            size = await asyncio.get_running_loop().run_in_executor(None, image_size, data)
            if size:
                options["result_width"], options["result_height"] = size
        return IngestionOutcome(result_url=self.local_store.url_for(filename), options=options)

    def _degraded(self, job: Job, spec: ModelSpec, source: ResultSource, error: str) -> IngestionOutcome:
        if isinstance(source, RemoteMedia):
            # the remote URL still works as a reference
            return IngestionOutcome(
                result_url=source.url,
                options={"result_path": source.url},
                error=error,
            )
        return IngestionOutcome(
            result_url=self.fallback_url(job.id, spec),
            options={"result_path": FAILED_TO_SAVE},
            error=error,
        )

    async def _download(self, url: str) -> bytes:
        try:
            async with httpx.AsyncClient(
                transport=self._http_transport,
                timeout=self._download_timeout,
                follow_redirects=True,
            ) as client:
                response = await client.get(url)
                response.raise_for_status()
        except (httpx.HTTPError, httpx.InvalidURL) as exc:
            raise IngestionError(f"Failed to download {url}: {exc}") from exc
        if not response.content:
            raise IngestionError(f"Downloaded an empty body from {url}")
        return response.content

    async def _fetch_volume(self, path: str) -> bytes:
        if self.object_storage is None:
            raise IngestionError(f"Object storage is not configured; cannot fetch {path}")
        key = self.object_storage.key_for_volume_path(path)
        try:
            return await self.object_storage.download(key)
        except StorageError as exc:
            raise IngestionError(f"Failed to fetch {path} from object storage: {exc}") from exc
