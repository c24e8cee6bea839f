"""Download workbooks from signed URLs."""
from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Awaitable, Callable

import httpx

from sheet_analyst.core.errors import FetchError, FetchStatusError, FetchTimeout, PayloadTooLarge
from sheet_analyst.core.hashing import sha256_bytes
from sheet_analyst.domain.sessions import CancelToken

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class FetchedFile:
    url: str
    payload: bytes
    content_hash: str
    content_type: str | None = None


class _RetryableStatus(Exception):
    def __init__(self, status_code: int) -> None:
        super().__init__(status_code)
        self.status_code = status_code


class WorkbookFetcher:
    """Fetch raw bytes with bounded retries, a size cap and an overall deadline.

    5xx responses, timeouts and connection failures are retried with
    exponential backoff; 4xx responses fail immediately.
    """

    def __init__(
        self,
        *,
        max_bytes: int = 10 * 1024 * 1024,
        timeout: float = 30.0,
        retries: int = 3,
        backoff: float = 0.5,
        http_client: httpx.AsyncClient | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self._max_bytes = max_bytes
        self._timeout = timeout
        self._retries = retries
        self._backoff = backoff
        self._client = http_client or httpx.AsyncClient(timeout=timeout, follow_redirects=True)
        self._owns_client = http_client is None
        self._sleep = sleep

    # ------------------------------------------------------------------
    # helpers
    # ------------------------------------------------------------------
    async def _download(self, url: str) -> tuple[bytes, str | None]:
        async with self._client.stream("GET", url) as response:
            if response.status_code >= 500:
                raise _RetryableStatus(response.status_code)
            if response.status_code >= 400:
                raise FetchStatusError(response.status_code, url=url)

            declared = response.headers.get("content-length")
            if declared and declared.isdigit() and int(declared) > self._max_bytes:
                raise PayloadTooLarge(
                    f"remote file is {int(declared)} bytes, limit is {self._max_bytes}", url=url
                )

            chunks: list[bytes] = []
            received = 0
            async for chunk in response.aiter_bytes():
                received += len(chunk)
                if received > self._max_bytes:
                    raise PayloadTooLarge(f"remote file exceeds {self._max_bytes} bytes", url=url)
                chunks.append(chunk)
            return b"".join(chunks), response.headers.get("content-type")

    async def _fetch_with_retries(self, url: str, cancel_token: CancelToken | None) -> tuple[bytes, str | None]:
        attempt = 0
        while True:
            if cancel_token is not None:
                cancel_token.raise_if_cancelled()
            try:
                return await self._download(url)
            except _RetryableStatus as exc:
                failure: FetchError = FetchStatusError(exc.status_code, url=url)
            except httpx.TimeoutException:
                failure = FetchTimeout("remote file request timed out", url=url)
            except httpx.TransportError as exc:
                failure = FetchError(f"connection failed: {exc}", url=url)

            if attempt >= self._retries:
                raise failure
            delay = self._backoff * (2**attempt)
            attempt += 1
            logger.info("event=fetch status=retry attempt=%s delay=%.2f reason=%s", attempt, delay, failure.code)
            await self._sleep(delay)

    # ------------------------------------------------------------------
    # public API
    # ------------------------------------------------------------------
    async def fetch(self, url: str, expected_type: str, *, cancel_token: CancelToken | None = None) -> FetchedFile:
        started = time.perf_counter()
        try:
            payload, content_type = await asyncio.wait_for(
                self._fetch_with_retries(url, cancel_token), timeout=self._timeout
            )
        except asyncio.TimeoutError as exc:
            raise FetchTimeout(f"remote file was not received within {self._timeout:.0f}s", url=url) from exc

        content_hash = sha256_bytes(payload)
        logger.info(
            "event=fetch status=ok type=%s size_kb=%s elapsed_ms=%.0f",
            expected_type,
            len(payload) // 1024,
            (time.perf_counter() - started) * 1000,
        )
        return FetchedFile(url=url, payload=payload, content_hash=content_hash, content_type=content_type)

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()
