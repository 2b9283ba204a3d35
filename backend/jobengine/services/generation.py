"""Adapter for slow external generation operations.

The remote capability follows a long-running-operation protocol: a submit call
returns an operation handle, the handle is polled until it reports ``done``,
and the final payload is either inline on the handle or behind a URI that has
to be fetched with the API key.
"""

import asyncio
import base64
import binascii
import logging
import re
from dataclasses import dataclass
from typing import Any, Dict, Optional, Protocol

import httpx

from jobengine.core.config import (
    GENERATION_API_KEY,
    GENERATION_BASE_URL,
    GENERATION_HARD_TIMEOUT_SEC,
    GENERATION_MAX_POLLS,
    GENERATION_POLL_INTERVAL_SEC,
    GENERATION_RETRY_DELAY_SEC,
)
from jobengine.core.errors import GenerationError, GenerationFailedError

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT = httpx.Timeout(30.0, connect=10.0)
DEFAULT_MIME_TYPE = "application/octet-stream"

RETRYABLE_CODES = frozenset(
    {
        "INTERNAL",
        "UNAVAILABLE",
        "DEADLINE_EXCEEDED",
        "RESOURCE_EXHAUSTED",
    }
)
NON_RETRYABLE_CODES = frozenset(
    {
        "INVALID_ARGUMENT",
        "FAILED_PRECONDITION",
        "PERMISSION_DENIED",
        "UNAUTHENTICATED",
        "NOT_FOUND",
        "SAFETY",
    }
)
RETRYABLE_PATTERNS = (
    "internal",
    "unavailable",
    "deadline_exceeded",
    "deadline exceeded",
    "resource_exhausted",
    "rate limit",
    "overloaded",
    "timed out",
    "timeout",
)
NON_RETRYABLE_PATTERNS = (
    "safety",
    "blocked",
    "invalid_argument",
    "invalid request",
)
_STATUS_IN_TEXT = re.compile(r"\b(429|5\d\d)\b")


def is_retryable(
    reason: str, code: Optional[str] = None, status_code: Optional[int] = None
) -> bool:
    """Classify a failure as transient (worth one retry) or final."""
    normalized_code = (code or "").upper()
    if normalized_code in NON_RETRYABLE_CODES:
        return False
    if normalized_code in RETRYABLE_CODES:
        return True
    if status_code is not None:
        if status_code == 429 or status_code >= 500:
            return True
        if 400 <= status_code < 500:
            return False
    lower = reason.lower()
    if any(pattern in lower for pattern in NON_RETRYABLE_PATTERNS):
        return False
    if any(pattern in lower for pattern in RETRYABLE_PATTERNS):
        return True
    return bool(_STATUS_IN_TEXT.search(lower))


@dataclass
class GeneratedPayload:
    data: bytes
    mime_type: str = DEFAULT_MIME_TYPE


@dataclass
class GenerationResult:
    success: bool
    payload: Optional[GeneratedPayload] = None
    reason: Optional[str] = None
    retryable: bool = False
    attempts: int = 1

    def unwrap(self) -> GeneratedPayload:
        if not self.success or self.payload is None:
            raise GenerationFailedError(
                self.reason or "generation failed", retryable=self.retryable
            )
        return self.payload


class GenerationBackend(Protocol):
    async def submit(self, request: Dict[str, Any]) -> Dict[str, Any]:
        """Start an operation and return its handle."""

    async def poll(self, operation: Dict[str, Any]) -> Dict[str, Any]:
        """Return the refreshed handle."""

    async def download(self, uri: str) -> bytes:
        """Fetch a payload referenced by the finished handle."""


class HttpGenerationBackend:
    """Long-running-operation client over plain HTTP."""

    def __init__(
        self,
        base_url: str,
        api_key: str,
        client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        self._client = client

    @property
    def client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=DEFAULT_TIMEOUT)
        return self._client

    def _headers(self) -> Dict[str, str]:
        return {"x-goog-api-key": self.api_key, "Accept": "application/json"}

    async def _send(
        self,
        method: str,
        url: str,
        json_body: Optional[Dict[str, Any]] = None,
    ) -> httpx.Response:
        try:
            response = await self.client.request(
                method, url, headers=self._headers(), json=json_body
            )
        except httpx.TimeoutException as exc:
            raise GenerationError(
                f"request timed out: {method} {url}", code="DEADLINE_EXCEEDED"
            ) from exc
        except httpx.TransportError as exc:
            raise GenerationError(
                f"generation service unavailable: {exc}", code="UNAVAILABLE"
            ) from exc
        if response.status_code >= 400:
            raise _error_from_response(response)
        return response

    async def submit(self, request: Dict[str, Any]) -> Dict[str, Any]:
        response = await self._send(
            "POST", f"{self.base_url}/operations", json_body=request
        )
        return _operation_from_response(response)

    async def poll(self, operation: Dict[str, Any]) -> Dict[str, Any]:
        name = operation.get("name")
        if not name:
            raise GenerationError("operation handle has no name", code="INTERNAL")
        response = await self._send("GET", f"{self.base_url}/operations/{name}")
        return _operation_from_response(response)

    async def download(self, uri: str) -> bytes:
        response = await self._send("GET", uri)
        logger.info("generation payload downloaded (%d bytes)", len(response.content))
        return response.content

    async def aclose(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None


def _operation_from_response(response: httpx.Response) -> Dict[str, Any]:
    try:
        body = response.json()
    except ValueError as exc:
        raise GenerationError(
            f"generation API returned invalid JSON ({response.status_code})",
            code="INTERNAL",
        ) from exc
    if not isinstance(body, dict):
        raise GenerationError("generation API returned a non-object operation")
    return body


def _error_from_response(response: httpx.Response) -> GenerationError:
    code: Optional[str] = None
    message = response.text.strip() or response.reason_phrase
    try:
        body = response.json()
    except ValueError:
        body = None
    if isinstance(body, dict) and isinstance(body.get("error"), dict):
        error = body["error"]
        code = error.get("status")
        message = error.get("message") or message
    return GenerationError(
        f"generation API error {response.status_code}: {message}",
        code=code,
        status_code=response.status_code,
    )


class GenerationAdapter:
    """Runs one generation with a poll budget, a hard timeout and one retry.

    ``max_polls`` bounds how many times the handle is polled; ``hard_timeout``
    bounds wall-clock time of a whole attempt even if a single poll hangs.
    Expected failures come back as ``GenerationResult(success=False)``.
    """

    def __init__(
        self,
        backend: GenerationBackend,
        poll_interval: float = GENERATION_POLL_INTERVAL_SEC,
        max_polls: int = GENERATION_MAX_POLLS,
        hard_timeout: float = GENERATION_HARD_TIMEOUT_SEC,
        retry_delay: float = GENERATION_RETRY_DELAY_SEC,
    ) -> None:
        self.backend = backend
        self.poll_interval = poll_interval
        self.max_polls = max_polls
        self.hard_timeout = hard_timeout
        self.retry_delay = retry_delay

    async def generate(self, request: Dict[str, Any]) -> GenerationResult:
        result = await self._attempt(request)
        if result.success or not result.retryable:
            return result
        logger.info("retrying generation after retryable error: %s", result.reason)
        await asyncio.sleep(self.retry_delay)
        retry = await self._attempt(request)
        retry.attempts = 2
        return retry

    async def _attempt(self, request: Dict[str, Any]) -> GenerationResult:
        try:
            payload = await asyncio.wait_for(
                self._run(request), timeout=self.hard_timeout
            )
        except asyncio.TimeoutError:
            return GenerationResult(
                success=False,
                reason=f"generation hard timeout after {self.hard_timeout:g}s",
                retryable=True,
            )
        except GenerationError as exc:
            logger.warning("generation failed: %s", exc)
            return GenerationResult(
                success=False,
                reason=str(exc),
                retryable=is_retryable(str(exc), exc.code, exc.status_code),
            )
        except Exception as exc:
            reason = str(exc) or exc.__class__.__name__
            logger.warning("generation returned an unusable response: %s", reason)
            return GenerationResult(
                success=False, reason=reason, retryable=is_retryable(reason)
            )
        return GenerationResult(success=True, payload=payload)

    async def _run(self, request: Dict[str, Any]) -> GeneratedPayload:
        operation = await self.backend.submit(request)
        polls = 0
        while not operation.get("done"):
            if polls >= self.max_polls:
                raise GenerationError(
                    f"generation timed out after {polls} polls",
                    code="DEADLINE_EXCEEDED",
                )
            await asyncio.sleep(self.poll_interval)
            polls += 1
            operation = await self.backend.poll(operation)
            logger.debug(
                "generation poll %d done=%s", polls, bool(operation.get("done"))
            )

        error = operation.get("error")
        if error:
            if not isinstance(error, dict):
                raise GenerationError(str(error))
            status_code = error.get("code")
            raise GenerationError(
                error.get("message") or "generation operation failed",
                code=error.get("status"),
                status_code=status_code if isinstance(status_code, int) else None,
            )
        return await self._extract(operation)

    async def _extract(self, operation: Dict[str, Any]) -> GeneratedPayload:
        response = operation.get("response") or {}
        if not isinstance(response, dict):
            raise GenerationError("generation response is not an object")
        inline = response.get("inline_data") or {}
        if isinstance(inline, dict) and inline.get("data"):
            try:
                data = base64.b64decode(inline["data"], validate=True)
            except (binascii.Error, TypeError, ValueError) as exc:
                raise GenerationError(
                    "generation response has invalid inline data"
                ) from exc
            return GeneratedPayload(
                data=data,
                mime_type=inline.get("mime_type") or DEFAULT_MIME_TYPE,
            )
        uri = response.get("uri")
        if uri:
            data = await self.backend.download(uri)
            return GeneratedPayload(
                data=data, mime_type=response.get("mime_type") or DEFAULT_MIME_TYPE
            )
        raise GenerationError("no payload in generation response")


_default_adapter: Optional[GenerationAdapter] = None


def get_adapter() -> GenerationAdapter:
    global _default_adapter
    if _default_adapter is None:
        _default_adapter = GenerationAdapter(
            HttpGenerationBackend(GENERATION_BASE_URL, GENERATION_API_KEY)
        )
    return _default_adapter


def set_adapter(adapter: Optional[GenerationAdapter]) -> None:
    global _default_adapter
    _default_adapter = adapter


async def close_adapter() -> None:
    """Release the default adapter's HTTP client, if one was created."""
    global _default_adapter
    adapter, _default_adapter = _default_adapter, None
    if adapter is None:
        return
    aclose = getattr(adapter.backend, "aclose", None)
    if aclose is not None:
        await aclose()
