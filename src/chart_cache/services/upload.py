import asyncio
import logging
import uuid
from pathlib import Path
from typing import AsyncIterable, Optional

from chart_cache.config import MAX_CHART_BYTES, STAGING_DIR, UPLOAD_ALLOWED_TYPES
from chart_cache.errors import InvalidSymbolFormat, ValidationFailure
from chart_cache.services.identity import key_to_ticker
from chart_cache.services.store import ArtifactStore

PNG_SIGNATURE = b"\x89PNG\r\n\x1a\n"

log = logging.getLogger(__name__)


def _mime(content_type: Optional[str]) -> str:
    return (content_type or "").split(";")[0].strip().lower()


class UploadValidator:
    """Accepts externally produced chart images into the file store."""

    def __init__(
        self,
        store: ArtifactStore,
        *,
        staging_dir: Path = STAGING_DIR,
        allowed_types: tuple[str, ...] = UPLOAD_ALLOWED_TYPES,
        max_bytes: int = MAX_CHART_BYTES,
    ):
        self.store = store
        self.staging_dir = Path(staging_dir)
        self.allowed_types = allowed_types
        self.max_bytes = max_bytes

    async def stage(self, chunks: AsyncIterable[bytes]) -> Path:
        """Write an upload body to a fresh staging file and return its path."""
        self.staging_dir.mkdir(parents=True, exist_ok=True)
        staged = self.staging_dir / f"upload_{uuid.uuid4().hex}"
        bytes_written = 0
        try:
            with open(staged, "wb") as f:
                async for chunk in chunks:
                    if not chunk:
                        continue
                    bytes_written += len(chunk)
                    if bytes_written > self.max_bytes:
                        raise ValidationFailure(f"Upload exceeds {self.max_bytes} bytes")
                    f.write(chunk)
        except BaseException:
            staged.unlink(missing_ok=True)
            raise
        return staged

    async def accept_upload(
        self, filename: Optional[str], mime_type: Optional[str], staged_path: Path
    ) -> str:
        """Validate a staged upload and commit it; return the ticker.

        The staged file is removed whatever the result.

        Raises:
            ValidationFailure: wrong mime type, a filename that is not
                ``<TICKER>_chart.png``, or content that is not a PNG image.
        """
        try:
            if _mime(mime_type) not in self.allowed_types:
                raise ValidationFailure(f"Unsupported content-type: {mime_type}")
            try:
                ticker = key_to_ticker(filename or "")
            except InvalidSymbolFormat as e:
                raise ValidationFailure(
                    f"Filename must look like TICKER_chart.png, got {filename!r}"
                ) from e
            data = await asyncio.to_thread(staged_path.read_bytes)
            if not data.startswith(PNG_SIGNATURE):
                raise ValidationFailure(f"{filename} is not a PNG image")
            committed = await self.store.put(ticker, data)
        except ValidationFailure as e:
            log.warning("upload.rejected filename=%s reason=%s", filename, e.detail)
            raise
        finally:
            staged_path.unlink(missing_ok=True)

        log.info("upload.accepted ticker=%s bytes=%s %s", ticker, len(data), committed)
        return ticker
