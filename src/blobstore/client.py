"""Async client for an append-blob store authorized by delegated SAS tokens.

This client implements a small async utility framework:

- Public methods create an `asyncio.Future`, enqueue a request, and await the
  future's result.
- A single background worker consumes the queue serially, so appends to a blob
  land in the order they were requested (single writer).
- A token-bucket limiter gates outbound requests.

Every request URL is composed at send time from the credential cache, so a
credential renewed between retries is picked up transparently.

The HTTP call uses `requests` executed in a thread.
"""

from __future__ import annotations

import asyncio
import logging
import random
import time
from dataclasses import dataclass, field
from email.utils import formatdate
from typing import Any, Final
from urllib.parse import quote

import requests  # type: ignore

from config import BlobStoreConfig
from forwarding.credentials import CredentialCache
from forwarding.errors import AppendFailure, AuthFailure, TargetCreateFailure, redact

from .rate_limit import TokenBucketRateLimiter

logger = logging.getLogger(__name__)

API_VERSION: Final[str] = "2021-08-06"
APPEND_BLOB: Final[str] = "AppendBlob"

# 403 codes meaning "valid credential, action not permitted" rather than a bad credential.
PERMISSION_ERROR_CODES: Final[frozenset[str]] = frozenset({"AuthorizationPermissionMismatch", "AuthorizationFailure"})


class BlobHttpError(RuntimeError):
    """HTTP-level error returned by the blob store."""

    def __init__(self, *, status_code: int, error_code: str | None, message: str | None = None):
        """Create an error capturing the HTTP status, `x-ms-error-code` and body excerpt."""
        self.status_code = status_code
        self.error_code = error_code
        self.message = message
        super().__init__(f"Blob store HTTP {status_code} ({error_code or 'no error code'}): {message or ''}".rstrip())


@dataclass
class _Request:
    method: str
    path: str | None
    params: dict[str, str]
    headers: dict[str, str]
    body: bytes = b""
    attempts: int = 0
    future: asyncio.Future[Any] | None = field(default=None, repr=False)


class AppendBlobClient:
    """Creates append targets and appends bytes to them.

    Members:
    - Config: `config`
    - Credential cache: `credentials` (source of the SAS query for every URL)
    - Request Queue: `request_queue` (single asyncio.Queue)
    - Dedicated Worker Task: `_request_worker_task` (single background task)
    - Rate Limiter: `rate_limiter` (token bucket)
    """

    def __init__(self, config: BlobStoreConfig, credentials: CredentialCache):
        """Create a client for `config.container` authorized through `credentials`."""
        self.config = config
        self.credentials = credentials
        self.account_url: str = config.account_url
        self.container: str = config.container

        self.request_queue: asyncio.Queue[_Request] = asyncio.Queue()
        self.rate_limiter = TokenBucketRateLimiter(rate=config.rate_limit)
        self._request_worker_task: asyncio.Task[None] | None = None

    def _ensure_worker_started(self) -> None:
        """Start the single background worker task (lazily)."""
        if self._request_worker_task is not None and not self._request_worker_task.done():
            return
        loop = asyncio.get_running_loop()
        self._request_worker_task = loop.create_task(self._request_worker(), name="blob-request-worker")

    async def _enqueue_request(self, request: _Request) -> Any:
        """Enqueue a request and await its result."""
        self._ensure_worker_started()
        request.future = asyncio.get_running_loop().create_future()
        await self.request_queue.put(request)
        return await request.future

    async def _request_worker(self) -> None:
        """Consume the queue serially, resolve futures with results/errors."""
        while True:
            request = await self.request_queue.get()
            fut = request.future
            try:
                result = await self._send_with_retries(request)
            except Exception as exc:  # noqa: BLE001 - propagate into awaiting task
                if fut is not None and not fut.cancelled():
                    fut.set_exception(exc)
            else:
                if fut is not None and not fut.cancelled():
                    fut.set_result(result)
            finally:
                self.request_queue.task_done()

    async def aclose(self) -> None:
        """Stop the worker. Requests already being sent finish first."""
        await self.request_queue.join()
        if self._request_worker_task is not None:
            self._request_worker_task.cancel()
            try:
                await self._request_worker_task
            except asyncio.CancelledError:
                pass
            self._request_worker_task = None

    def _build_url(self, path: str | None, params: dict[str, str], token: str) -> str:
        """Compose `{account}/{container}[/{path}]?{params}&{sas}` for one request."""
        url = f"{self.account_url}/{self.container}"
        if path:
            url += "/" + quote(path, safe="/")
        query = "&".join(f"{k}={quote(v, safe='')}" for k, v in params.items())
        if token:
            query = f"{query}&{token}" if query else token
        return f"{url}?{query}" if query else url

    def _standard_headers(self, content_length: int) -> dict[str, str]:
        return {
            "x-ms-date": formatdate(usegmt=True),
            "x-ms-version": API_VERSION,
            "Content-Length": str(content_length),
        }

    async def _send_request(self, request: _Request) -> requests.Response:
        """Send one request with a fresh credential, returning the response.

        Raises:
        - `BlobHttpError` for non-2xx responses
        - `requests.RequestException` for transport errors
        - `AuthFailure` when no valid credential can be obtained
        """
        credential = await self.credentials.acquire()
        url = self._build_url(request.path, request.params, credential.token)
        headers = {**self._standard_headers(len(request.body)), **request.headers}
        timeout = self.config.request_timeout

        def _do_request() -> requests.Response:
            """Execute the HTTP request synchronously (runs in a worker thread)."""
            resp = requests.request(request.method, url, headers=headers, data=request.body, timeout=timeout)
            if 200 <= resp.status_code < 300:
                return resp
            raise BlobHttpError(
                status_code=resp.status_code,
                error_code=resp.headers.get("x-ms-error-code"),
                message=(resp.text or "")[:200] or None,
            )

        try:
            return await asyncio.to_thread(_do_request)
        except BlobHttpError as exc:
            if exc.status_code == 403 and exc.error_code not in PERMISSION_ERROR_CODES:
                # The SAS may have been revoked or rotated remotely.
                self.credentials.invalidate()
            raise

    async def _send_with_retries(self, request: _Request) -> requests.Response:
        """Send a request with exponential backoff on transient errors."""
        attempt = 0
        start = time.monotonic()

        while True:
            try:
                await self.rate_limiter.acquire()
                request.attempts += 1
                return await self._send_request(request)
            except Exception as exc:  # noqa: BLE001 - classify and retry/raise
                attempt += 1
                if not _is_retryable_error(exc):
                    raise
                if attempt >= self.config.max_attempt:
                    raise

                delay = self.config.base_delay * (self.config.backoff_multiplier ** (attempt - 1))
                delay += random.uniform(0.0, delay * 0.1)  # small jitter

                if (time.monotonic() - start) + delay > self.config.max_delay:
                    raise
                logger.debug("Retrying %s %s in %.2fs after: %s", request.method, request.path, delay, redact(str(exc)))
                await asyncio.sleep(delay)

    async def ensure_container(self) -> bool:
        """Create the container if needed. Returns True if it was created now.

        A container-scoped SAS may not create containers. The store answers
        that with a 403 permission error, and the container is then assumed
        to exist: any real problem surfaces on the first append.
        """
        request = _Request(method="PUT", path=None, params={"restype": "container"}, headers={})
        try:
            await self._enqueue_request(request)
        except BlobHttpError as exc:
            if exc.status_code == 409:
                return False
            if exc.status_code == 403 and exc.error_code in PERMISSION_ERROR_CODES:
                logger.info("Credential may not create containers; assuming %s exists", self.container)
                return False
            raise
        logger.info("Created container %s", self.container)
        return True

    async def ensure_target(self, path: str) -> bool:
        """Create an empty append blob at `path` unless it already exists.

        `If-None-Match: *` makes the store refuse to overwrite an existing blob,
        so existing content is never truncated. "Already exists" is success.
        Returns True if the blob was created now.
        """
        request = _Request(
            method="PUT",
            path=path,
            params={},
            headers={"x-ms-blob-type": APPEND_BLOB, "If-None-Match": "*"},
        )
        try:
            await self._enqueue_request(request)
        except BlobHttpError as exc:
            if exc.status_code in (409, 412):
                return False
            raise TargetCreateFailure(f"creating {path} failed: {exc}") from exc
        except requests.RequestException as exc:
            raise TargetCreateFailure(f"creating {path} failed: {exc}") from exc
        logger.info("Created append blob %s", path)
        return True

    async def append(self, path: str, data: bytes) -> int:
        """Append `data` to the blob at `path`. Returns the number of blocks written.

        Payloads larger than `max_block_bytes` are split on line boundaries and
        appended in order. Each block is conditioned on the blob's current
        length (`x-ms-blob-condition-appendpos`), so a retry after a lost
        response cannot land the same block twice. If a later block fails after
        an earlier one landed, the raised `AppendFailure` is marked not
        retry-safe.
        """
        if not data:
            return 0

        try:
            position = await self._blob_length(path)
        except (BlobHttpError, requests.RequestException) as exc:
            raise AppendFailure(f"appending to {path} failed: {exc}") from exc

        written = 0
        for block in split_blocks(data, self.config.max_block_bytes):
            try:
                await self._append_block(path, block, position)
            except AuthFailure:
                if written == 0:
                    raise
                raise _partial_append(path, written, "credential unavailable")
            except (BlobHttpError, requests.RequestException) as exc:
                if written == 0:
                    raise AppendFailure(f"appending to {path} failed: {exc}") from exc
                raise _partial_append(path, written, str(exc)) from exc
            position += len(block)
            written += 1
        return written

    async def _blob_length(self, path: str) -> int:
        """Return the current size of the blob at `path` in bytes."""
        response = await self._enqueue_request(_Request(method="HEAD", path=path, params={}, headers={}))
        return int(response.headers.get("Content-Length", 0))

    async def _append_block(self, path: str, block: bytes, position: int) -> None:
        request = _Request(
            method="PUT",
            path=path,
            params={"comp": "appendblock"},
            headers={"x-ms-blob-condition-appendpos": str(position)},
            body=block,
        )
        try:
            await self._enqueue_request(request)
        except BlobHttpError as exc:
            retried = request.attempts > 1
            if not (retried and exc.status_code == 412 and exc.error_code == "AppendPositionConditionNotMet"):
                raise
            # An earlier attempt landed but its response was lost.
            if await self._blob_length(path) != position + len(block):
                raise
            logger.info("Block at offset %d of %s had already landed; not appending it again", position, path)


def _partial_append(path: str, written: int, reason: str) -> AppendFailure:
    err = AppendFailure(f"appending to {path} failed after {written} block(s) landed: {reason}")
    err.retry_safe = False
    return err


def split_blocks(data: bytes, max_bytes: int) -> list[bytes]:
    """Split `data` into chunks of at most `max_bytes`, preferring line boundaries."""
    if max_bytes <= 0:
        raise ValueError(f"max_bytes must be > 0. Got: {max_bytes}")
    if len(data) <= max_bytes:
        return [data]

    blocks: list[bytes] = []
    current = bytearray()
    for line in data.splitlines(keepends=True):
        while len(line) > max_bytes:
            # A single line larger than a block has to be cut.
            if current:
                blocks.append(bytes(current))
                current.clear()
            blocks.append(line[:max_bytes])
            line = line[max_bytes:]
        if len(current) + len(line) > max_bytes:
            blocks.append(bytes(current))
            current.clear()
        current.extend(line)
    if current:
        blocks.append(bytes(current))
    return blocks


def _is_retryable_error(exc: BaseException) -> bool:
    """Return True if the error is transient."""
    if isinstance(exc, BlobHttpError):
        # Retry 408, 429 and all 5xx.
        return exc.status_code in (408, 429) or exc.status_code >= 500

    # Network/transport errors.
    return isinstance(exc, requests.RequestException)
