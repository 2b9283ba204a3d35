"""Shared fixtures: a fresh sqlite file per test and an ASGI client."""

from __future__ import annotations

import asyncio
import base64
from typing import Any, Dict, List

import pytest
from httpx import ASGITransport, AsyncClient

from jobengine.db import connection
from jobengine.main import app
from jobengine.services import jobs as jobs_service


@pytest.fixture
def anyio_backend():
    return "asyncio"


@pytest.fixture
async def db(tmp_path):
    await connection.connect_db(str(tmp_path / "jobs.db"))
    yield
    await jobs_service.shutdown_jobs()
    await connection.close_db()


@pytest.fixture
async def async_client(db):
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        yield client


class FakeBackend:
    """Scripted long-running-operation backend.

    ``submit_errors`` are raised by successive submit calls before the backend
    starts succeeding. An operation reports done after ``polls_until_done``
    polls; ``None`` means never.
    """

    def __init__(
        self,
        payload: bytes = b"artifact",
        polls_until_done: int | None = 1,
        submit_errors: List[Exception] | None = None,
        use_uri: bool = False,
        operation_error: Dict[str, Any] | None = None,
        poll_delay: float = 0.0,
    ) -> None:
        self.payload = payload
        self.polls_until_done = polls_until_done
        self.submit_errors = list(submit_errors or [])
        self.use_uri = use_uri
        self.operation_error = operation_error
        self.poll_delay = poll_delay
        self.submitted: List[Dict[str, Any]] = []
        self.poll_calls = 0
        self.downloads: List[str] = []

    def _operation(self, polls: int) -> Dict[str, Any]:
        done = self.polls_until_done is not None and polls >= self.polls_until_done
        operation: Dict[str, Any] = {"name": f"op{len(self.submitted)}", "done": done, "polls": polls}
        if not done:
            return operation
        if self.operation_error:
            operation["error"] = self.operation_error
        elif self.use_uri:
            operation["response"] = {"uri": "https://files.test/out.bin", "mime_type": "video/mp4"}
        else:
            operation["response"] = {
                "inline_data": {
                    "data": base64.b64encode(self.payload).decode(),
                    "mime_type": "image/png",
                }
            }
        return operation

    async def submit(self, request: Dict[str, Any]) -> Dict[str, Any]:
        self.submitted.append(request)
        if self.submit_errors:
            raise self.submit_errors.pop(0)
        return self._operation(0)

    async def poll(self, operation: Dict[str, Any]) -> Dict[str, Any]:
        self.poll_calls += 1
        if self.poll_delay:
            await asyncio.sleep(self.poll_delay)
        return self._operation(operation["polls"] + 1)

    async def download(self, uri: str) -> bytes:
        self.downloads.append(uri)
        return self.payload


@pytest.fixture
def fake_backend_cls():
    return FakeBackend
