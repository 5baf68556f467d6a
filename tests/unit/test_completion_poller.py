import asyncio
import base64

import pytest

from conftest import ENDPOINTS, FakeRunPod
from app.compute.runpod_client import client_factory
from app.ingestion.pipeline import IngestionPipeline
from app.jobs.models import Job, JobStatus, JobType
from app.jobs.store import InMemoryJobStore
from app.services.poller import CompletionPoller
from app.services.settings_service import EnvSettingsProvider
from app.storage.local_results import LocalResultStore


@pytest.fixture
def harness(tmp_path):
    runpod = FakeRunPod()
    store = InMemoryJobStore()
    local_store = LocalResultStore(base_dir=str(tmp_path), url_prefix="/results")
    poller = CompletionPoller(
        store,
        EnvSettingsProvider(api_key="k", endpoints=dict(ENDPOINTS)),
        IngestionPipeline(local_store, http_transport=runpod.transport),
        make_client=client_factory(transport=runpod.transport, poll_interval=0.01),
        owner="test-poller",
    )
    return runpod, store, poller


def create(store, **kwargs):
    kwargs.setdefault("user_id", "u1")
    kwargs.setdefault("type", JobType.IMAGE)
    kwargs.setdefault("model_id", "flux-krea")
    kwargs.setdefault("prompt", "fox")
    kwargs.setdefault("external_job_id", "rp-1")
    return asyncio.run(store.create(Job(**kwargs)))


def run_poller(poller, store, job_id):
    asyncio.run(poller.run(job_id))
    return asyncio.run(store.find_by_id(job_id))


def test_completed_job_is_ingested(harness):
    runpod, store, poller = harness
    runpod.complete_with({"image": base64.b64encode(b"0123456789").decode()})
    job = create(store)

    done = run_poller(poller, store, job.id)

    assert done.status == JobStatus.COMPLETED
    assert done.result_url == f"/results/result_{job.id}.png"
    assert done.completed_at is not None
    assert done.lease_owner is None
    assert done.options["result_source"] == "inline:image"


def test_backend_failure_is_recorded_verbatim(harness):
    runpod, store, poller = harness
    runpod.fail_with("oom")
    job = create(store)

    failed = run_poller(poller, store, job.id)

    assert failed.status == JobStatus.FAILED
    assert failed.options["error"] == "oom"
    assert failed.error == "oom"
    assert failed.completed_at is not None


def test_protocol_error_fails_job(harness):
    runpod, store, poller = harness
    runpod.statuses = [(200, {"status": "TELEPORTED"})]
    job = create(store)

    failed = run_poller(poller, store, job.id)
    assert failed.status == JobStatus.FAILED
    assert "TELEPORTED" in failed.options["error"]
    assert "failed_at" in failed.options


def test_timeout_fails_job_and_releases_lease(tmp_path):
    runpod = FakeRunPod()
    runpod.statuses = [(200, {"status": "IN_PROGRESS"})]
    store = InMemoryJobStore()
    poller = CompletionPoller(
        store,
        EnvSettingsProvider(api_key="k", endpoints=dict(ENDPOINTS), generate_timeout=0.05),
        IngestionPipeline(LocalResultStore(base_dir=str(tmp_path)), http_transport=runpod.transport),
        make_client=client_factory(transport=runpod.transport, poll_interval=0.01),
        owner="test-poller",
    )
    job = create(store)

    failed = run_poller(poller, store, job.id)

    assert failed.status == JobStatus.FAILED
    assert "timeout" in failed.error.lower()
    assert failed.options["error"] == failed.error
    assert failed.completed_at is not None
    assert failed.lease_owner is None
    assert failed.lease_expires_at is None
    assert runpod.status_calls >= 1

def test_terminal_job_is_left_alone(harness):
    runpod, store, poller = harness
    job = create(store, status=JobStatus.COMPLETED, result_url="/results/x.png")

    after = run_poller(poller, store, job.id)
    assert after.version == job.version
    assert runpod.status_calls == 0


def test_missing_job_is_ignored(harness):
    runpod, store, poller = harness
    asyncio.run(poller.run("does-not-exist"))
    assert runpod.status_calls == 0


def test_job_without_external_id_fails(harness):
    runpod, store, poller = harness
    job = create(store, external_job_id="")

    failed = run_poller(poller, store, job.id)
    assert failed.status == JobStatus.FAILED
    assert runpod.status_calls == 0


def test_lease_held_elsewhere_skips(harness):
    runpod, store, poller = harness
    job = create(store)
    assert asyncio.run(store.acquire_lease(job.id, "other-process", 600))

    after = run_poller(poller, store, job.id)
    assert after.status == JobStatus.PROCESSING
    assert after.lease_owner == "other-process"
    assert runpod.status_calls == 0


def test_job_deleted_mid_flight(harness):
    runpod, store, poller = harness
    job = create(store)
    runpod.complete_with({"image": base64.b64encode(b"abc").decode()})

    async def scenario():
        task = asyncio.create_task(poller.run(job.id))
        while runpod.status_calls == 0:
            await asyncio.sleep(0.001)
        await store.delete(job.id)
        await task

    asyncio.run(scenario())
    assert asyncio.run(store.find_by_id(job.id)) is None
