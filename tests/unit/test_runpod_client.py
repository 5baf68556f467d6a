import asyncio
import time

import httpx
import pytest

from app.compute.runpod_client import IN_QUEUE, RunPodClient, summarize_payload
from app.errors import (
    BackendProtocolError,
    BackendReportedFailure,
    JobTimeoutError,
    SubmissionError,
)


def make_client(handler, **kwargs):
    kwargs.setdefault("poll_interval", 0.01)
    kwargs.setdefault("retry_wait", 0)
    return RunPodClient("key", "ep-1", transport=httpx.MockTransport(handler), **kwargs)


def status_sequence(*bodies):
    remaining = list(bodies)
    calls = []

    def handler(request):
        calls.append(request)
        body = remaining.pop(0) if len(remaining) > 1 else remaining[0]
        return httpx.Response(200, json=body)

    return handler, calls


def run(coro):
    return asyncio.run(coro)


def test_requires_credentials():
    with pytest.raises(ValueError):
        RunPodClient("", "ep-1")


def test_submit_posts_input_with_bearer_auth():
    seen = {}

    def handler(request):
        seen["url"] = str(request.url)
        seen["auth"] = request.headers["authorization"]
        seen["body"] = request.content
        return httpx.Response(200, json={"id": "abc-123", "status": "IN_QUEUE"})

    async def scenario():
        async with make_client(handler) as client:
            return await client.submit({"input": {"prompt": "hi"}})

    assert run(scenario()) == "abc-123"
    assert seen["url"] == "https://api.runpod.ai/v2/ep-1/run"
    assert seen["auth"] == "Bearer key"
    assert b'"prompt"' in seen["body"]


@pytest.mark.parametrize(
    "response",
    [
        httpx.Response(401, text="unauthorized"),
        httpx.Response(200, text="<html>oops</html>"),
        httpx.Response(200, json={"status": "IN_QUEUE"}),
        httpx.Response(200, json={"id": 12345}),
        httpx.Response(200, json={"id": {"nested": "x"}}),
        httpx.Response(200, json={"id": ""}),
        httpx.Response(200, json=["abc"]),
    ],
)
def test_submit_rejects_unusable_responses(response):
    async def scenario():
        async with make_client(lambda request: response) as client:
            await client.submit({"input": {}})

    with pytest.raises(SubmissionError):
        run(scenario())


def test_status_404_means_in_queue():
    async def scenario():
        async with make_client(lambda request: httpx.Response(404)) as client:
            return await client.get_status("abc")

    assert run(scenario()).status == IN_QUEUE


def test_status_server_error_is_protocol_error():
    async def scenario():
        async with make_client(lambda request: httpx.Response(502, text="bad gateway")) as client:
            await client.get_status("abc")

    with pytest.raises(BackendProtocolError):
        run(scenario())


def test_wait_returns_completed_output():
    handler, calls = status_sequence(
        {"status": "IN_QUEUE"},
        {"status": "IN_PROGRESS"},
        {"status": "COMPLETED", "output": {"image": "aGVsbG8="}},
    )

    async def scenario():
        async with make_client(handler) as client:
            return await client.wait_for_completion("abc", timeout=5)

    result = run(scenario())
    assert result.output == {"image": "aGVsbG8="}
    assert len(calls) == 3


def test_wait_wraps_non_dict_output():
    handler, _ = status_sequence({"status": "COMPLETED", "output": "https://x/y.png"})

    async def scenario():
        async with make_client(handler) as client:
            return await client.wait_for_completion("abc", timeout=5)

    assert run(scenario()).output == {"result": "https://x/y.png"}


def test_failed_keeps_backend_error_verbatim():
    handler, _ = status_sequence({"status": "IN_PROGRESS"}, {"status": "FAILED", "error": "oom"})

    async def scenario():
        async with make_client(handler) as client:
            await client.wait_for_completion("abc", timeout=5)

    with pytest.raises(BackendReportedFailure) as info:
        run(scenario())
    assert info.value.backend_error == "oom"
    assert str(info.value) == "oom"


def test_failed_without_error_text():
    handler, _ = status_sequence({"status": "FAILED"})

    async def scenario():
        async with make_client(handler) as client:
            await client.wait_for_completion("abc", timeout=5)

    with pytest.raises(BackendReportedFailure) as info:
        run(scenario())
    assert info.value.backend_error == "unknown error"


def test_unknown_status_is_protocol_error():
    handler, _ = status_sequence({"status": "CANCELLED"})

    async def scenario():
        async with make_client(handler) as client:
            await client.wait_for_completion("abc", timeout=5)

    with pytest.raises(BackendProtocolError):
        run(scenario())


def test_timeout_is_bounded_by_timeout_plus_interval():
    handler, _ = status_sequence({"status": "IN_PROGRESS"})
    timeout, interval = 0.1, 0.02

    async def scenario():
        async with make_client(handler, poll_interval=interval) as client:
            await client.wait_for_completion("abc", timeout=timeout)

    started = time.monotonic()
    with pytest.raises(JobTimeoutError) as info:
        run(scenario())
    elapsed = time.monotonic() - started
    assert isinstance(info.value, TimeoutError)
    # generous slack for a loaded test machine
    assert elapsed < timeout + interval + 0.5


def test_transport_errors_are_retried():
    attempts = []

    def handler(request):
        attempts.append(request)
        if len(attempts) < 3:
            raise httpx.ConnectError("connection refused", request=request)
        return httpx.Response(200, json={"id": "abc"})

    async def scenario():
        async with make_client(handler, max_attempts=3) as client:
            return await client.submit({"input": {}})

    assert run(scenario()) == "abc"
    assert len(attempts) == 3


def test_transport_errors_exhaust_into_submission_error():
    def handler(request):
        raise httpx.ConnectError("connection refused", request=request)

    async def scenario():
        async with make_client(handler, max_attempts=2) as client:
            await client.submit({"input": {}})

    with pytest.raises(SubmissionError):
        run(scenario())


def test_summarize_payload_hides_media():
    summary = summarize_payload({"prompt": "cat", "image": "A" * 5000, "seed": None})
    assert summary["prompt"] == "cat"
    assert summary["image"] == "[data] (5000 characters)"
    assert "seed" not in summary


def test_http_status_errors_are_not_retried():
    attempts = []

    def handler(request):
        attempts.append(request)
        return httpx.Response(503, text="unavailable")

    async def scenario():
        async with make_client(handler, max_attempts=3) as client:
            await client.submit({"input": {}})

    with pytest.raises(SubmissionError):
        run(scenario())
    assert len(attempts) == 1


def test_zero_generate_timeout_is_kept():
    handler, calls = status_sequence({"status": "IN_PROGRESS"})

    async def scenario():
        async with make_client(handler, generate_timeout=0) as client:
            assert client.generate_timeout == 0
            await client.wait_for_completion("abc")

    with pytest.raises(JobTimeoutError):
        run(scenario())
    assert len(calls) <= 2


def test_missing_generate_timeout_defaults_to_an_hour():
    client = make_client(lambda request: httpx.Response(200, json={}))
    assert client.generate_timeout == 3600
    run(client.close())
