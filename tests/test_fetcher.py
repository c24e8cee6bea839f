from __future__ import annotations

import asyncio
import hashlib
import sys
from pathlib import Path

sys.path.append(str(Path(__file__).resolve().parents[1]))

import httpx
import pytest

from sheet_analyst.core.errors import AnalysisCancelled, FetchStatusError, FetchTimeout, PayloadTooLarge
from sheet_analyst.domain.sessions import CancelToken
from sheet_analyst.infrastructure.fetcher import WorkbookFetcher

URL = "https://files.example.com/data/sales.csv?signature=abc"


def _fetcher(handler, **kwargs) -> tuple[WorkbookFetcher, list[float]]:
    delays: list[float] = []

    async def fake_sleep(delay: float) -> None:
        delays.append(delay)

    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return WorkbookFetcher(http_client=client, sleep=fake_sleep, **kwargs), delays


def test_fetch_returns_payload_and_content_hash():
    body = b"region,amount\nnorth,10\n"

    def handler(request: httpx.Request) -> httpx.Response:
        assert request.url.params["signature"] == "abc"
        return httpx.Response(200, content=body, headers={"content-type": "text/csv"})

    fetcher, delays = _fetcher(handler)
    fetched = asyncio.run(fetcher.fetch(URL, "csv"))

    assert fetched.payload == body
    assert fetched.content_hash == hashlib.sha256(body).hexdigest()
    assert fetched.content_type == "text/csv"
    assert delays == []


def test_server_errors_are_retried_with_exponential_backoff():
    calls = {"count": 0}

    def handler(request: httpx.Request) -> httpx.Response:
        calls["count"] += 1
        if calls["count"] < 3:
            return httpx.Response(503)
        return httpx.Response(200, content=b"ok")

    fetcher, delays = _fetcher(handler, retries=3, backoff=0.5)
    fetched = asyncio.run(fetcher.fetch(URL, "csv"))

    assert fetched.payload == b"ok"
    assert calls["count"] == 3
    assert delays == [0.5, 1.0]


def test_client_errors_are_not_retried():
    calls = {"count": 0}

    def handler(request: httpx.Request) -> httpx.Response:
        calls["count"] += 1
        return httpx.Response(404)

    fetcher, delays = _fetcher(handler, retries=3)
    with pytest.raises(FetchStatusError) as excinfo:
        asyncio.run(fetcher.fetch(URL, "csv"))

    assert excinfo.value.status_code == 404
    assert excinfo.value.code == "fetch.unsupported_status"
    assert calls["count"] == 1
    assert delays == []


def test_retries_are_bounded():
    calls = {"count": 0}

    def handler(request: httpx.Request) -> httpx.Response:
        calls["count"] += 1
        return httpx.Response(500)

    fetcher, delays = _fetcher(handler, retries=2)
    with pytest.raises(FetchStatusError) as excinfo:
        asyncio.run(fetcher.fetch(URL, "csv"))

    assert excinfo.value.status_code == 500
    assert calls["count"] == 3
    assert len(delays) == 2


def test_transport_timeouts_surface_as_fetch_timeout():
    calls = {"count": 0}

    def handler(request: httpx.Request) -> httpx.Response:
        calls["count"] += 1
        raise httpx.ReadTimeout("slow upstream", request=request)

    fetcher, _ = _fetcher(handler, retries=1)
    with pytest.raises(FetchTimeout):
        asyncio.run(fetcher.fetch(URL, "csv"))
    assert calls["count"] == 2


def test_declared_length_over_limit_is_rejected():
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, content=b"x" * 100)

    fetcher, _ = _fetcher(handler, max_bytes=10)
    with pytest.raises(PayloadTooLarge) as excinfo:
        asyncio.run(fetcher.fetch(URL, "csv"))
    assert excinfo.value.code == "fetch.too_large"


def test_streamed_body_over_limit_is_rejected():
    async def chunks():
        for _ in range(4):
            yield b"y" * 8

    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, content=chunks())

    fetcher, _ = _fetcher(handler, max_bytes=16)
    with pytest.raises(PayloadTooLarge):
        asyncio.run(fetcher.fetch(URL, "csv"))


def test_overall_deadline_applies_across_attempts():
    async def handler(request: httpx.Request) -> httpx.Response:
        await asyncio.sleep(1)
        return httpx.Response(200, content=b"late")

    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    fetcher = WorkbookFetcher(http_client=client, timeout=0.05)
    with pytest.raises(FetchTimeout) as excinfo:
        asyncio.run(fetcher.fetch(URL, "csv"))
    assert excinfo.value.code == "fetch.timeout"


def test_cancelled_token_stops_before_fetching():
    calls = {"count": 0}

    def handler(request: httpx.Request) -> httpx.Response:
        calls["count"] += 1
        return httpx.Response(200, content=b"ok")

    token = CancelToken("chat-1")
    token.cancel()
    fetcher, _ = _fetcher(handler)
    with pytest.raises(AnalysisCancelled):
        asyncio.run(fetcher.fetch(URL, "csv", cancel_token=token))
    assert calls["count"] == 0
