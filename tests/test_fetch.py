import asyncio

import httpx
import pytest

from chart_cache.errors import UpstreamBadResponse, UpstreamTimeout, UpstreamUnavailable
from chart_cache.services.fetch import ChartFetcher

from conftest import PNG, URL_TEMPLATE, staged_files


def _fetcher(tmp_path, handler, **kwargs) -> ChartFetcher:
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return ChartFetcher(
        client, url_template=URL_TEMPLATE, staging_dir=tmp_path / "staging", **kwargs
    )


@pytest.mark.asyncio
async def test_fetch_streams_to_staging(tmp_path):
    seen = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(str(request.url))
        return httpx.Response(200, headers={"content-type": "image/png"}, content=PNG)

    result = await _fetcher(tmp_path, handler).fetch("AAPL")

    assert seen == ["https://charts.test/AAPL.png"]
    assert result.filename == "AAPL_chart.png"
    assert result.staged_path.parent == tmp_path / "staging"
    assert result.read_bytes() == PNG
    assert result.nbytes == len(PNG)

    result.discard()
    result.discard()
    assert staged_files(tmp_path / "staging") == []


@pytest.mark.asyncio
async def test_bad_status_is_bad_response_and_leaves_nothing(tmp_path):
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(404, text="no such chart")

    with pytest.raises(UpstreamBadResponse, match="404"):
        await _fetcher(tmp_path, handler).fetch("ZZZZ")
    assert staged_files(tmp_path / "staging") == []


@pytest.mark.asyncio
async def test_html_instead_of_image_is_rejected(tmp_path):
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, headers={"content-type": "text/html"}, content=b"<html/>")

    with pytest.raises(UpstreamBadResponse, match="content-type"):
        await _fetcher(tmp_path, handler).fetch("AAPL")
    assert staged_files(tmp_path / "staging") == []


@pytest.mark.asyncio
async def test_empty_body_is_rejected(tmp_path):
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, headers={"content-type": "image/png"}, content=b"")

    with pytest.raises(UpstreamBadResponse, match="Empty"):
        await _fetcher(tmp_path, handler).fetch("AAPL")


@pytest.mark.asyncio
async def test_oversized_body_removes_partial_file(tmp_path):
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, headers={"content-type": "image/png"}, content=b"x" * 100)

    with pytest.raises(UpstreamBadResponse):
        await _fetcher(tmp_path, handler, max_bytes=10).fetch("AAPL")
    assert staged_files(tmp_path / "staging") == []


@pytest.mark.asyncio
async def test_connection_error_is_unavailable(tmp_path):
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("connection refused", request=request)

    with pytest.raises(UpstreamUnavailable):
        await _fetcher(tmp_path, handler).fetch("AAPL")
    assert staged_files(tmp_path / "staging") == []


@pytest.mark.asyncio
async def test_slow_provider_times_out(tmp_path):
    async def handler(request: httpx.Request) -> httpx.Response:
        await asyncio.sleep(1)
        return httpx.Response(200, headers={"content-type": "image/png"}, content=PNG)

    with pytest.raises(UpstreamTimeout):
        await _fetcher(tmp_path, handler, timeout_ms=50).fetch("AAPL")
    assert staged_files(tmp_path / "staging") == []


@pytest.mark.asyncio
async def test_owned_client_is_closed(tmp_path):
    fetcher = ChartFetcher(staging_dir=tmp_path / "staging")
    client = fetcher.client
    await fetcher.aclose()
    assert client.is_closed
