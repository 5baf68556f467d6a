import io
import json
import os
import tempfile
import time

# Settings are read at import time, so the environment is fixed before any app import
os.environ["RESULTS_DIR"] = tempfile.mkdtemp(prefix="genjob-results-")
os.environ["JOB_STORE_BACKEND"] = "memory"
os.environ["RUNPOD_POLL_INTERVAL"] = "0.01"
os.environ["RESUME_INFLIGHT_ON_STARTUP"] = "false"
os.environ["POLLER_SHUTDOWN_GRACE_SECONDS"] = "0.5"
for _name in ("RUNPOD_API_KEY", "RUNPOD_ENDPOINTS", "S3_BUCKET_NAME", "SUPABASE_URL"):
    os.environ.pop(_name, None)

import httpx
import pytest
from botocore.exceptions import ClientError
from fastapi.testclient import TestClient
from PIL import Image

from app.jobs.store import InMemoryJobStore
from app.models.registry import registry
from app.services.ledger import InMemoryLedger
from app.services.settings_service import EnvSettingsProvider
from app.storage.object_storage import ObjectStorage

registry.discover()

RUNPOD_HOST = "api.runpod.ai"
ENDPOINTS = {spec.model_id: f"ep-{spec.model_id}" for spec in registry.list_models()}


class FakeRunPod:
    """Scripted RunPod API plus arbitrary download URLs, served through httpx.MockTransport."""

    def __init__(self):
        self.submitted = []
        self.submit_response = (200, {"id": "rp-1", "status": "IN_QUEUE"})
        # (status_code, body) pairs handed out in order; the last one repeats
        self.statuses = [(200, {"status": "COMPLETED", "output": {}})]
        self.status_calls = 0
        self.downloads = {}

    def handler(self, request: httpx.Request) -> httpx.Response:
        url = str(request.url)
        if request.url.host != RUNPOD_HOST:
            code, content = self.downloads.get(url, (404, b""))
            return httpx.Response(code, content=content)

        if request.method == "POST" and request.url.path.endswith("/run"):
            self.submitted.append(json.loads(request.content))
            code, body = self.submit_response
            if isinstance(body, str):
                return httpx.Response(code, text=body)
            return httpx.Response(code, json=body)

        if "/status/" in request.url.path:
            self.status_calls += 1
            code, body = self.statuses.pop(0) if len(self.statuses) > 1 else self.statuses[0]
            return httpx.Response(code, json=body)

        return httpx.Response(404, json={"error": "not found"})

    @property
    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self.handler)

    def complete_with(self, output):
        self.statuses = [
            (200, {"status": "IN_QUEUE"}),
            (200, {"status": "IN_PROGRESS"}),
            (200, {"status": "COMPLETED", "output": output}),
        ]

    def fail_with(self, error):
        self.statuses = [
            (200, {"status": "IN_PROGRESS"}),
            (200, {"status": "FAILED", "error": error}),
        ]


class FakeS3:
    """The two boto3 S3 client calls ObjectStorage makes."""

    def __init__(self):
        self.objects = {}

    def put_object(self, Bucket, Key, Body, ContentType=None):
        self.objects[Key] = Body
        return {}

    def get_object(self, Bucket, Key):
        if Key not in self.objects:
            raise ClientError({"Error": {"Code": "NoSuchKey", "Message": "Not Found"}}, "GetObject")
        return {"Body": io.BytesIO(self.objects[Key])}


def png_bytes(width=4, height=3) -> bytes:
    buf = io.BytesIO()
    Image.new("RGB", (width, height), (200, 30, 30)).save(buf, format="PNG")
    return buf.getvalue()


def wait_for_terminal(client, job_id, timeout=5.0):
    deadline = time.monotonic() + timeout
    while True:
        job = client.get(f"/api/v1/jobs/{job_id}").json()["job"]
        if job["status"] in ("completed", "failed"):
            return job
        if time.monotonic() > deadline:
            raise AssertionError(f"job {job_id} still {job['status']} after {timeout}s")
        time.sleep(0.02)


@pytest.fixture
def runpod():
    return FakeRunPod()


@pytest.fixture
def fake_s3():
    return FakeS3()


@pytest.fixture
def object_storage(fake_s3):
    return ObjectStorage(bucket="test-bucket", client=fake_s3)


@pytest.fixture
def job_store():
    return InMemoryJobStore()


@pytest.fixture
def ledger():
    return InMemoryLedger()


@pytest.fixture
def settings_provider():
    return EnvSettingsProvider(api_key="test-key", endpoints=dict(ENDPOINTS))


@pytest.fixture
def client(runpod, job_store, ledger, settings_provider, object_storage):
    from app.main import create_app

    app = create_app(
        job_store=job_store,
        settings_provider=settings_provider,
        ledger=ledger,
        object_storage=object_storage,
        http_transport=runpod.transport,
        poll_interval=0.01,
    )
    with TestClient(app) as c:
        yield c
