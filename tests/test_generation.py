from __future__ import annotations

import time

import httpx
import pytest

from jobengine.core.errors import GenerationError, GenerationFailedError
from jobengine.services import generation
from jobengine.services.generation import (
    GenerationAdapter,
    GenerationResult,
    HttpGenerationBackend,
    close_adapter,
    is_retryable,
    set_adapter,
)

pytestmark = pytest.mark.anyio


def make_adapter(backend, **overrides) -> GenerationAdapter:
    options = dict(poll_interval=0.0, max_polls=5, hard_timeout=5.0, retry_delay=0.0)
    options.update(overrides)
    return GenerationAdapter(backend, **options)


async def test_inline_payload_after_polling(fake_backend_cls):
    backend = fake_backend_cls(payload=b"png-bytes", polls_until_done=3)
    result = await make_adapter(backend).generate({"prompt": "oil change"})

    assert result.success
    assert result.payload.data == b"png-bytes"
    assert result.payload.mime_type == "image/png"
    assert result.attempts == 1
    assert backend.poll_calls == 3
    assert backend.downloads == []


async def test_payload_fetched_from_uri_when_not_inline(fake_backend_cls):
    backend = fake_backend_cls(payload=b"mp4", polls_until_done=1, use_uri=True)
    result = await make_adapter(backend).generate({"prompt": "tire rotation"})

    assert result.success
    assert result.payload.data == b"mp4"
    assert result.payload.mime_type == "video/mp4"
    assert backend.downloads == ["https://files.test/out.bin"]


async def test_poll_budget_exhaustion_is_timeout_retried_once(fake_backend_cls):
    backend = fake_backend_cls(polls_until_done=None)
    result = await make_adapter(backend, max_polls=3).generate({"prompt": "x"})

    assert not result.success
    assert "timed out" in result.reason
    assert result.retryable
    assert result.attempts == 2
    assert len(backend.submitted) == 2
    assert backend.poll_calls == 6


async def test_hard_timeout_bounds_wall_clock(fake_backend_cls):
    # each attempt would poll 10 times at 0.1s plus a slow poll call
    backend = fake_backend_cls(polls_until_done=10, poll_delay=0.1)
    adapter = make_adapter(backend, poll_interval=0.1, max_polls=20, hard_timeout=0.1)

    started = time.perf_counter()
    result = await adapter.generate({"prompt": "x"})
    elapsed = time.perf_counter() - started

    assert not result.success
    assert "hard timeout" in result.reason
    assert result.attempts == 2
    assert elapsed < 0.8


async def test_safety_rejection_is_not_retried(fake_backend_cls):
    backend = fake_backend_cls(
        submit_errors=[GenerationError("prompt blocked by SAFETY filters", code="SAFETY")]
    )
    result = await make_adapter(backend).generate({"prompt": "x"})

    assert not result.success
    assert not result.retryable
    assert result.attempts == 1
    assert len(backend.submitted) == 1


async def test_transient_failure_then_success(fake_backend_cls):
    backend = fake_backend_cls(
        submit_errors=[GenerationError("backend overloaded", status_code=503)]
    )
    result = await make_adapter(backend).generate({"prompt": "x"})

    assert result.success
    assert result.attempts == 2
    assert len(backend.submitted) == 2


async def test_second_transient_failure_is_surfaced(fake_backend_cls):
    backend = fake_backend_cls(
        submit_errors=[
            GenerationError("quota", code="RESOURCE_EXHAUSTED", status_code=429),
            GenerationError("still busy", code="UNAVAILABLE", status_code=503),
        ]
    )
    result = await make_adapter(backend).generate({"prompt": "x"})

    assert not result.success
    assert result.reason == "still busy"
    assert len(backend.submitted) == 2


async def test_operation_error_invalid_request(fake_backend_cls):
    backend = fake_backend_cls(
        polls_until_done=1,
        operation_error={"code": 400, "status": "INVALID_ARGUMENT", "message": "bad aspect ratio"},
    )
    result = await make_adapter(backend).generate({"prompt": "x"})

    assert not result.success
    assert result.reason == "bad aspect ratio"
    assert len(backend.submitted) == 1


def test_unwrap_raises_for_failures():
    failed = GenerationResult(success=False, reason="no payload", retryable=False)
    with pytest.raises(GenerationFailedError) as exc_info:
        failed.unwrap()
    assert exc_info.value.reason == "no payload"


@pytest.mark.parametrize(
    ("reason", "code", "status_code", "expected"),
    [
        ("quota exceeded", "RESOURCE_EXHAUSTED", None, True),
        ("whatever", None, 429, True),
        ("whatever", None, 502, True),
        ("request timed out", None, None, True),
        ("upstream returned 503", None, None, True),
        ("blocked by safety filters", None, None, False),
        ("bad prompt", "INVALID_ARGUMENT", 400, False),
        ("not allowed", None, 403, False),
        ("something odd", None, None, False),
    ],
)
def test_is_retryable(reason, code, status_code, expected):
    assert is_retryable(reason, code, status_code) is expected


async def test_http_backend_round_trip():
    seen = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append((request.method, str(request.url), request.headers.get("x-goog-api-key")))
        if request.method == "POST":
            return httpx.Response(200, json={"name": "op-1", "done": False})
        if request.url.path == "/v1/operations/op-1":
            return httpx.Response(
                200,
                json={"name": "op-1", "done": True, "response": {"uri": "https://files.test/v.mp4"}},
            )
        return httpx.Response(200, content=b"video-bytes")

    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    backend = HttpGenerationBackend("https://gen.test/v1/", "secret", client=client)
    result = await make_adapter(backend).generate({"prompt": "promo"})
    await backend.aclose()

    assert result.success
    assert result.payload.data == b"video-bytes"
    assert [method for method, _, _ in seen] == ["POST", "GET", "GET"]
    assert seen[0][1] == "https://gen.test/v1/operations"
    assert all(key == "secret" for _, _, key in seen)


async def test_http_backend_maps_error_body():
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(
            429,
            json={"error": {"code": 429, "status": "RESOURCE_EXHAUSTED", "message": "slow down"}},
        )

    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    backend = HttpGenerationBackend("https://gen.test", "secret", client=client)
    with pytest.raises(GenerationError) as exc_info:
        await backend.submit({"prompt": "x"})
    await backend.aclose()

    assert exc_info.value.status_code == 429
    assert exc_info.value.code == "RESOURCE_EXHAUSTED"
    assert "slow down" in str(exc_info.value)


class ScriptedBackend:
    """Returns a fixed finished operation from every submit call."""

    def __init__(self, operation):
        self.operation = operation
        self.submitted = []

    async def submit(self, request):
        self.submitted.append(request)
        return self.operation

    async def poll(self, operation):
        return operation

    async def download(self, uri):
        return b""


async def test_non_json_poll_body_is_a_failed_result():
    def handler(request: httpx.Request) -> httpx.Response:
        if request.method == "POST":
            return httpx.Response(200, json={"name": "op-1", "done": False})
        return httpx.Response(200, text="<html>gateway hiccup</html>")

    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    backend = HttpGenerationBackend("https://gen.test", "secret", client=client)
    result = await make_adapter(backend).generate({"prompt": "x"})
    await backend.aclose()

    assert not result.success
    assert "invalid JSON" in result.reason
    assert result.retryable
    assert result.attempts == 2


async def test_invalid_inline_base64_is_a_failed_result():
    backend = ScriptedBackend(
        {"name": "op-1", "done": True, "response": {"inline_data": {"data": "!!!not base64!!!x"}}}
    )
    result = await make_adapter(backend).generate({"prompt": "x"})

    assert not result.success
    assert "invalid inline data" in result.reason
    assert not result.retryable
    assert len(backend.submitted) == 1


async def test_non_object_response_is_a_failed_result():
    backend = ScriptedBackend({"name": "op-1", "done": True, "response": "oops"})
    result = await make_adapter(backend).generate({"prompt": "x"})

    assert not result.success
    assert "not an object" in result.reason
    assert len(backend.submitted) == 1


async def test_string_operation_error_is_classified(fake_backend_cls):
    backend = fake_backend_cls(polls_until_done=1, operation_error="UNAVAILABLE: try later")
    result = await make_adapter(backend).generate({"prompt": "x"})

    assert not result.success
    assert result.reason == "UNAVAILABLE: try later"
    assert result.retryable
    assert result.attempts == 2
    assert len(backend.submitted) == 2


async def test_unexpected_backend_exception_is_a_failed_result():
    class BrokenBackend(ScriptedBackend):
        async def submit(self, request):
            self.submitted.append(request)
            raise KeyError("name")

    backend = BrokenBackend({})
    result = await make_adapter(backend).generate({"prompt": "x"})

    assert not result.success
    assert result.reason == "'name'"
    assert not result.retryable


async def test_close_adapter_releases_http_client():
    client = httpx.AsyncClient(transport=httpx.MockTransport(lambda request: httpx.Response(200)))
    set_adapter(make_adapter(HttpGenerationBackend("https://gen.test", "secret", client=client)))

    await close_adapter()

    assert client.is_closed
    assert generation._default_adapter is None
    await close_adapter()
