"""S3-compatible object storage backing the RunPod network volume.

Objects uploaded under ``key`` appear to workers as ``{volume_mount}/{key}``;
volume paths returned by workers are mapped back to keys the same way.
"""

import asyncio
import logging
import uuid
from dataclasses import dataclass
from functools import partial
from typing import Optional

import boto3
from botocore.exceptions import BotoCoreError, ClientError

from app.config import settings
from app.errors import StorageError
from app.storage.local_results import safe_filename

logger = logging.getLogger(__name__)


@dataclass
class StoredObject:
    url: str    # s3 URL of the object
    path: str   # network-volume path as seen by the worker


class ObjectStorage:
    """Thin async wrapper around a boto3 S3 client."""

    def __init__(
        self,
        bucket: str,
        endpoint_url: Optional[str] = None,
        access_key_id: Optional[str] = None,
        secret_access_key: Optional[str] = None,
        region: str = "us-east-1",
        volume_mount: str = "/runpod-volume",
        client=None,
    ):
        self.bucket = bucket
        self.endpoint_url = endpoint_url
        self.volume_mount = volume_mount.rstrip("/")
        self._s3 = client or boto3.client(
            "s3",
            region_name=region,
            endpoint_url=endpoint_url,
            aws_access_key_id=access_key_id,
            aws_secret_access_key=secret_access_key,
        )

    @classmethod
    def from_settings(cls) -> Optional["ObjectStorage"]:
        """Build from app settings; None when object storage is not configured."""
        if not (settings.s3_bucket_name and settings.s3_access_key_id and settings.s3_secret_access_key):
            return None
        return cls(
            bucket=settings.s3_bucket_name,
            endpoint_url=settings.s3_endpoint_url,
            access_key_id=settings.s3_access_key_id,
            secret_access_key=settings.s3_secret_access_key,
            region=settings.s3_region,
            volume_mount=settings.s3_volume_mount,
        )

    def key_for_volume_path(self, path: str) -> str:
        prefix = f"{self.volume_mount}/"
        return path[len(prefix):] if path.startswith(prefix) else path.lstrip("/")

    def volume_path_for_key(self, key: str) -> str:
        return f"{self.volume_mount}/{key}"

    async def _call(self, fn, **kwargs):
        loop = asyncio.get_running_loop()
        try:
            return await loop.run_in_executor(None, partial(fn, **kwargs))
        except (BotoCoreError, ClientError) as exc:
            raise StorageError(f"Object storage error: {exc}") from exc

    async def download(self, key: str) -> bytes:
        response = await self._call(self._s3.get_object, Bucket=self.bucket, Key=key)
        body = response["Body"]
        try:
            loop = asyncio.get_running_loop()
            return await loop.run_in_executor(None, body.read)
        finally:
            body.close()

    async def upload(
        self,
        data: bytes,
        name: str,
        content_type: Optional[str] = None,
        prefix: str = "",
    ) -> StoredObject:
        """Upload bytes under ``{prefix}/{unique}_{name}``."""
        object_name = f"{uuid.uuid4().hex[:12]}_{safe_filename(name)}"
        key = f"{prefix.strip('/')}/{object_name}" if prefix.strip("/") else object_name
        await self._call(
            self._s3.put_object,
            Bucket=self.bucket,
            Key=key,
            Body=data,
            ContentType=content_type or "application/octet-stream",
        )
        logger.info("Uploaded %d bytes to s3://%s/%s", len(data), self.bucket, key)
        return StoredObject(
            url=f"s3://{self.bucket}/{key}",
            path=self.volume_path_for_key(key),
        )
