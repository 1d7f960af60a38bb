import asyncio
import logging
import uuid
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

import httpx

from chart_cache.config import (
    CHART_URL_TEMPLATE,
    FETCH_TIMEOUT_MS,
    MAX_CHART_BYTES,
    STAGING_DIR,
    USER_AGENT,
)
from chart_cache.errors import UpstreamBadResponse, UpstreamTimeout, UpstreamUnavailable
from chart_cache.services.identity import derive_key

log = logging.getLogger(__name__)


@dataclass
class FetchResult:
    """Bytes downloaded for one ticker, held in staging until committed."""

    staged_path: Path
    filename: str
    nbytes: int

    def read_bytes(self) -> bytes:
        return self.staged_path.read_bytes()

    def discard(self) -> None:
        self.staged_path.unlink(missing_ok=True)


def _is_image(content_type: Optional[str]) -> bool:
    if not content_type:
        return True  # header missing
    return content_type.split(";")[0].strip().lower().startswith("image/")


class ChartFetcher:
    """Downloads chart images from the upstream provider into staging files.

    One attempt per call; retrying is left to the caller.
    """

    def __init__(
        self,
        client: Optional[httpx.AsyncClient] = None,
        *,
        url_template: str = CHART_URL_TEMPLATE,
        timeout_ms: int = FETCH_TIMEOUT_MS,
        staging_dir: Path = STAGING_DIR,
        max_bytes: int = MAX_CHART_BYTES,
    ):
        self.url_template = url_template
        self.timeout = timeout_ms / 1000
        self.staging_dir = Path(staging_dir)
        self.max_bytes = max_bytes
        self._client = client
        self._owns_client = client is None

    def url_for(self, ticker: str) -> str:
        return self.url_template.format(ticker=ticker)

    def _mk_client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            follow_redirects=True,
            timeout=httpx.Timeout(self.timeout),
            headers={"User-Agent": USER_AGENT},
        )

    @property
    def client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = self._mk_client()
        return self._client

    async def aclose(self) -> None:
        if self._owns_client and self._client is not None:
            await self._client.aclose()
            self._client = None

    async def fetch(self, ticker: str) -> FetchResult:
        """Stream the chart for ``ticker`` into a staging file.

        Raises:
            UpstreamTimeout: nothing complete within the timeout.
            UpstreamUnavailable: transport or connection error.
            UpstreamBadResponse: non-2xx status, non-image content type,
                empty body, or a body over ``max_bytes``.
        """
        url = self.url_for(ticker)
        filename = derive_key(ticker)
        self.staging_dir.mkdir(parents=True, exist_ok=True)
        staged = self.staging_dir / f"{uuid.uuid4().hex}_{filename}"

        downloaded = False
        try:
            nbytes = await asyncio.wait_for(
                self._download(url, staged), timeout=self.timeout
            )
            downloaded = True
        except (httpx.TimeoutException, asyncio.TimeoutError) as e:
            log.warning("fetch.timeout ticker=%s timeout=%ss", ticker, self.timeout)
            raise UpstreamTimeout(
                f"Chart provider did not answer within {self.timeout:g}s"
            ) from e
        except httpx.HTTPStatusError as e:
            log.warning(
                "fetch.bad_status ticker=%s status=%s", ticker, e.response.status_code
            )
            raise UpstreamBadResponse(
                f"Upstream error: {e.response.status_code}"
            ) from e
        except httpx.RequestError as e:
            log.warning("fetch.unavailable ticker=%s error=%s", ticker, e)
            raise UpstreamUnavailable(f"Network error: {e}") from e
        finally:
            if not downloaded:
                staged.unlink(missing_ok=True)

        log.info("fetch.saved ticker=%s bytes=%s path=%s", ticker, nbytes, staged)
        return FetchResult(staged_path=staged, filename=filename, nbytes=nbytes)

    async def _download(self, url: str, staged: Path) -> int:
        async with self.client.stream("GET", url) as resp:
            resp.raise_for_status()
            content_type = resp.headers.get("content-type")
            if not _is_image(content_type):
                raise UpstreamBadResponse(f"Unsupported content-type: {content_type}")

            bytes_written = 0
            with open(staged, "wb") as f:
                async for chunk in resp.aiter_bytes():
                    if not chunk:
                        continue
                    bytes_written += len(chunk)
                    if bytes_written > self.max_bytes:
                        raise UpstreamBadResponse(f"Downloaded > {self.max_bytes} bytes")
                    f.write(chunk)

        if bytes_written == 0:
            raise UpstreamBadResponse("Empty response body")
        return bytes_written
