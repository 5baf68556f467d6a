import asyncio
import base64
import os
import struct
import zlib

import httpx
import pytest

from conftest import FakeS3, png_bytes
from app.ingestion.pipeline import FAILED_TO_SAVE, IngestionPipeline, image_size, redact_output
from app.jobs.models import Job, JobType
from app.models.registry import registry
from app.storage.local_results import LocalResultStore
from app.storage.object_storage import ObjectStorage


def run(coro):
    return asyncio.run(coro)


@pytest.fixture
def local_store(tmp_path):
    return LocalResultStore(base_dir=str(tmp_path), url_prefix="/results")


def make_pipeline(local_store, handler=None, object_storage=None):
    transport = httpx.MockTransport(handler) if handler else None
    return IngestionPipeline(
        local_store,
        object_storage=object_storage,
        http_transport=transport,
        retrieval_prefix="/api/results",
    )


def image_job():
    return Job(user_id="u1", type=JobType.IMAGE, model_id="flux-krea", prompt="fox")


def video_job(model_id="wan22"):
    return Job(user_id="u1", type=JobType.VIDEO, model_id=model_id, prompt="waves")


def spec_of(model_id):
    return registry.require(model_id).spec()


def test_inline_image_round_trip(local_store):
    data = bytes(range(10))
    job = image_job()
    outcome = run(make_pipeline(local_store).ingest(
        job, spec_of("flux-krea"), {"image": base64.b64encode(data).decode()},
    ))

    assert outcome.result_url == f"/results/result_{job.id}.png"
    with open(outcome.options["result_path"], "rb") as fh:
        assert fh.read() == data
    assert outcome.options["result_source"] == "inline:image"
    assert outcome.error is None
    assert "error" not in outcome.options
    assert outcome.options["processing_time"] >= 0


def test_real_png_records_dimensions(local_store):
    outcome = run(make_pipeline(local_store).ingest(
        image_job(), spec_of("flux-krea"), {"image": base64.b64encode(png_bytes(7, 5)).decode()},
    ))
    assert (outcome.options["result_width"], outcome.options["result_height"]) == (7, 5)


def test_legacy_field_is_used(local_store):
    job = image_job()
    outcome = run(make_pipeline(local_store).ingest(
        job, spec_of("flux-krea"), {"image_base64": base64.b64encode(b"legacy-bytes").decode()},
    ))
    assert outcome.options["result_source"] == "legacy:image_base64"
    assert os.path.getsize(outcome.options["result_path"]) == len(b"legacy-bytes")


def test_bad_base64_falls_back_without_raising(local_store):
    job = image_job()
    outcome = run(make_pipeline(local_store).ingest(job, spec_of("flux-krea"), {"image": "%%% not base64 %%%"}))
    assert outcome.result_url == f"/api/results/{job.id}.png"
    assert outcome.options["result_path"] == FAILED_TO_SAVE
    assert outcome.options["error"]


@pytest.mark.parametrize(
    "model_id, job_factory, marker, ext",
    [
        ("flux-krea", image_job, "no_image_data", "png"),
        ("wan22", video_job, "no_output", "mp4"),
    ],
)
def test_unrecognised_output_completes_with_marker(local_store, model_id, job_factory, marker, ext):
    job = job_factory()
    outcome = run(make_pipeline(local_store).ingest(job, spec_of(model_id), {"unexpected": 1}))
    assert outcome.result_url == f"/api/results/{job.id}.{ext}"
    assert outcome.options["result_path"] == marker
    assert outcome.options["result_source"] == "unknown"


def test_none_output_completes_with_marker(local_store):
    outcome = run(make_pipeline(local_store).ingest(image_job(), spec_of("flux-krea"), None))
    assert outcome.options["result_path"] == "no_image_data"
    assert outcome.options["runpod_output"] == {}


def test_remote_url_is_downloaded(local_store):
    def handler(request):
        assert str(request.url) == "https://cdn.example.com/out.png"
        return httpx.Response(200, content=b"remote-bytes")

    job = image_job()
    outcome = run(make_pipeline(local_store, handler).ingest(
        job, spec_of("flux-krea"), {"image_url": "https://cdn.example.com/out.png"},
    ))
    assert outcome.result_url == f"/results/result_{job.id}.png"
    assert outcome.options["runpod_result_url"] == "https://cdn.example.com/out.png"
    assert local_store.exists(f"result_{job.id}.png")


def test_failed_download_keeps_remote_url(local_store):
    outcome = run(make_pipeline(local_store, lambda request: httpx.Response(403)).ingest(
        image_job(), spec_of("flux-krea"), {"output_url": "https://cdn.example.com/out.png"},
    ))
    assert outcome.result_url == "https://cdn.example.com/out.png"
    assert "error" in outcome.options


def test_volume_path_is_fetched_from_object_storage(local_store):
    s3 = FakeS3()
    s3.objects["output/clip.mp4"] = b"video-bytes"
    storage = ObjectStorage(bucket="b", client=s3)
    job = video_job()

    outcome = run(make_pipeline(local_store, object_storage=storage).ingest(
        job, spec_of("wan22"), {"video_path": "/runpod-volume/output/clip.mp4"},
    ))
    assert outcome.result_url == f"/results/wan22_result_{job.id}.mp4"
    with open(outcome.options["result_path"], "rb") as fh:
        assert fh.read() == b"video-bytes"


def test_missing_volume_object_falls_back(local_store):
    storage = ObjectStorage(bucket="b", client=FakeS3())
    job = video_job()
    outcome = run(make_pipeline(local_store, object_storage=storage).ingest(
        job, spec_of("wan22"), {"video_path": "/runpod-volume/output/missing.mp4"},
    ))
    assert outcome.result_url == f"/api/results/{job.id}.mp4"
    assert outcome.options["result_path"] == FAILED_TO_SAVE


def test_runpod_output_is_redacted(local_store):
    big = base64.b64encode(b"x" * 3000).decode()
    outcome = run(make_pipeline(local_store).ingest(
        image_job(), spec_of("flux-krea"), {"image": big, "seed": 42},
    ))
    stored = outcome.options["runpod_output"]
    assert stored["seed"] == 42
    assert stored["image"].startswith(big[:100])
    assert str(len(big)) in stored["image"]
    assert len(stored["image"]) < 200


def test_redact_output_recurses():
    value = {"a": ["y" * 1500, {"b": "z" * 2000}], "c": "short"}
    redacted = redact_output(value)
    assert redacted["c"] == "short"
    assert "1500" in redacted["a"][0]
    assert "2000" in redacted["a"][1]["b"]
    assert redact_output("x" * 1000) == "x" * 1000


def oversized_png_header(width=20000, height=20000):
    def chunk(kind, body):
        return struct.pack(">I", len(body)) + kind + body + struct.pack(">I", zlib.crc32(kind + body))

    ihdr = struct.pack(">IIBBBBB", width, height, 8, 2, 0, 0, 0)
    return b"\x89PNG\r\n\x1a\n" + chunk(b"IHDR", ihdr) + chunk(b"IDAT", b"") + chunk(b"IEND", b"")


def test_image_size_ignores_decompression_bombs():
    assert image_size(oversized_png_header()) is None


def test_oversized_image_is_saved_without_dimensions(local_store):
    job = image_job()
    outcome = run(make_pipeline(local_store).ingest(
        job, spec_of("flux-krea"), {"image": base64.b64encode(oversized_png_header()).decode()},
    ))
    assert outcome.result_url == f"/results/result_{job.id}.png"
    assert "result_width" not in outcome.options
    assert outcome.error is None


def test_malformed_remote_url_keeps_the_url(local_store):
    outcome = run(make_pipeline(local_store, lambda request: httpx.Response(404)).ingest(
        image_job(), spec_of("flux-krea"), {"image_url": "http://[::1"},
    ))
    assert outcome.result_url == "http://[::1"
    assert outcome.options["result_path"] == "http://[::1"
    assert "error" in outcome.options


def test_upscale_volume_path_in_video_key_is_fetched(local_store):
    path = "/runpod-volume/output/upscaled/" + "clip_" * 20 + ".mp4"
    s3 = FakeS3()
    s3.objects[path[len("/runpod-volume/"):]] = b"upscaled-bytes"
    job = video_job("video-upscale")

    outcome = run(make_pipeline(local_store, object_storage=ObjectStorage(bucket="b", client=s3)).ingest(
        job, spec_of("video-upscale"), {"video": path},
    ))
    assert outcome.result_url == f"/results/upscale_result_{job.id}.mp4"
    assert outcome.options["result_source"] == "volume:video"
    assert outcome.options["runpod_result_url"] == path
    with open(outcome.options["result_path"], "rb") as fh:
        assert fh.read() == b"upscaled-bytes"
