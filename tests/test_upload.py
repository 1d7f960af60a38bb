import pytest

from chart_cache.errors import ValidationFailure
from chart_cache.services.store import FileArtifactStore
from chart_cache.services.upload import UploadValidator

from conftest import PNG, staged_files


async def _body(*chunks: bytes):
    for chunk in chunks:
        yield chunk


def _validator(tmp_path, **kwargs) -> UploadValidator:
    return UploadValidator(
        FileArtifactStore(tmp_path / "charts"), staging_dir=tmp_path / "staging", **kwargs
    )


@pytest.mark.asyncio
async def test_accepted_upload_is_retrievable(tmp_path):
    uploads = _validator(tmp_path)
    staged = await uploads.stage(_body(PNG[:4], PNG[4:]))

    ticker = await uploads.accept_upload("AAPL_chart.png", "image/png", staged)

    assert ticker == "AAPL"
    assert (await uploads.store.get("AAPL")).data == PNG
    assert staged_files(tmp_path / "staging") == []


@pytest.mark.asyncio
async def test_text_upload_leaves_nothing_behind(tmp_path):
    uploads = _validator(tmp_path)
    staged = await uploads.stage(_body(b"just some notes"))

    with pytest.raises(ValidationFailure):
        await uploads.accept_upload("notes.txt", "text/plain", staged)

    assert await uploads.store.list() == []
    assert staged_files(tmp_path / "staging") == []


@pytest.mark.parametrize(
    "filename, mime, body",
    [
        ("notes.png", "image/png", PNG),
        ("AAPL_chart.png\n", "image/png", PNG),
        ("aapl_chart.png", "image/png", PNG),
        ("AAPL_chart.png", "image/jpeg", PNG),
        ("AAPL_chart.png", "image/png", b"GIF89a not really png"),
        (None, "image/png", PNG),
    ],
)
@pytest.mark.asyncio
async def test_rejections(tmp_path, filename, mime, body):
    uploads = _validator(tmp_path)
    staged = await uploads.stage(_body(body))

    with pytest.raises(ValidationFailure):
        await uploads.accept_upload(filename, mime, staged)

    assert not staged.exists()
    assert await uploads.store.exists("AAPL") is False


@pytest.mark.asyncio
async def test_mime_parameters_are_ignored(tmp_path):
    uploads = _validator(tmp_path)
    staged = await uploads.stage(_body(PNG))
    assert await uploads.accept_upload("MSFT_chart.png", "image/png; q=1", staged) == "MSFT"


@pytest.mark.asyncio
async def test_oversized_upload_is_rejected_while_staging(tmp_path):
    uploads = _validator(tmp_path, max_bytes=8)

    with pytest.raises(ValidationFailure):
        await uploads.stage(_body(PNG, PNG))
    assert staged_files(tmp_path / "staging") == []


@pytest.mark.asyncio
async def test_reupload_overwrites(tmp_path):
    uploads = _validator(tmp_path)
    await uploads.accept_upload("AAPL_chart.png", "image/png", await uploads.stage(_body(PNG)))
    await uploads.accept_upload(
        "AAPL_chart.png", "image/png", await uploads.stage(_body(PNG + b"v2"))
    )

    assert (await uploads.store.get("AAPL")).data == PNG + b"v2"
    assert [r.ticker for r in await uploads.store.list()] == ["AAPL"]
