import base64
import binascii
import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator, Optional

from fastapi import APIRouter, Depends, FastAPI, File, HTTPException, Request, UploadFile
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse, PlainTextResponse, Response

from chart_cache.context import AppContext
from chart_cache.errors import ChartCacheError, InvalidSymbolFormat, NotFound
from chart_cache.logging_conf import setup_logging
from chart_cache.schemas.chart import (
    BatchChartRequest,
    BatchOutcome,
    ChartRequest,
    ChartResult,
    ImageUploadRequest,
    SymbolEntry,
    UploadOutcome,
)
from chart_cache.services.database import mask_url
from chart_cache.services.identity import derive_key, key_to_ticker, resolve

UPLOAD_CHUNK = 64 * 1024

log = logging.getLogger(__name__)

router = APIRouter()


def get_context(request: Request) -> AppContext:
    return request.app.state.ctx


def _public_url(request: Request, ctx: AppContext, ticker: str) -> str:
    base = ctx.public_base_url or str(request.base_url).rstrip("/")
    return f"{base}/static/{derive_key(ticker)}"


async def _chunks(upload: UploadFile) -> AsyncIterator[bytes]:
    while chunk := await upload.read(UPLOAD_CHUNK):
        yield chunk


@router.get("/", response_class=PlainTextResponse)
def root():
    return "Chart cache server is running"


@router.get("/health")
def health(ctx: AppContext = Depends(get_context)):
    return {
        "status": "degraded" if ctx.degraded else "ok",
        "database": not ctx.degraded,
    }


@router.get("/db-status")
def db_status(ctx: AppContext = Depends(get_context)):
    return {
        "configured": ctx.database.configured,
        "ready": ctx.database.ready,
        "url": mask_url(ctx.database.url),
    }


@router.get("/db-test")
async def db_test(ctx: AppContext = Depends(get_context)):
    now = await ctx.database.ping()
    return {
        "status": "ok",
        "timestamp": now,
        "message": "Database connection is working",
    }


@router.post("/setup", response_class=PlainTextResponse)
async def setup(ctx: AppContext = Depends(get_context)):
    await ctx.database.setup()
    return "Database setup complete!"


@router.post("/charts", response_model=ChartResult)
async def create_chart(
    req: ChartRequest, request: Request, ctx: AppContext = Depends(get_context)
):
    if req.symbol is None or req.symbol == "":
        raise HTTPException(status_code=400, detail="Missing symbol")
    ticker = resolve(req.symbol)
    lookup = await ctx.relational().get_or_fetch(ticker)
    return ChartResult(
        ticker=ticker,
        source=lookup.source,
        committed=lookup.committed,
        bytes=len(lookup.artifact.data),
        updated_at=lookup.artifact.updated_at,
        url=str(request.url_for("get_chart", symbol=ticker)),
    )


@router.get("/charts/{symbol}", name="get_chart")
async def get_chart(symbol: str, ctx: AppContext = Depends(get_context)):
    artifact = await ctx.relational().get(symbol)
    return Response(content=artifact.data, media_type="image/png")


@router.put("/charts/{symbol}")
async def put_chart(
    symbol: str, req: ImageUploadRequest, ctx: AppContext = Depends(get_context)
):
    cache = ctx.relational()
    ticker = resolve(symbol)
    try:
        data = base64.b64decode(req.imageBase64, validate=True)
    except (binascii.Error, ValueError):
        raise HTTPException(status_code=400, detail="imageBase64 is not valid base64")
    committed = await cache.store.put(ticker, data)
    return {"ticker": ticker, "committed": committed}


@router.get("/symbols", response_model=list[SymbolEntry])
async def symbols(ctx: AppContext = Depends(get_context)):
    rows = await ctx.relational().list()
    return [
        SymbolEntry(ticker=r.ticker, created_at=r.created_at, updated_at=r.updated_at)
        for r in rows
    ]


@router.post("/batch-charts")
async def batch_charts(req: BatchChartRequest, ctx: AppContext = Depends(get_context)):
    if not isinstance(req.symbols, list) or not req.symbols:
        raise HTTPException(status_code=400, detail="symbols must be a non-empty array")
    results: list[BatchOutcome] = await ctx.relational().batch_get_or_fetch(req.symbols)
    succeeded = sum(1 for r in results if r.status == "success")
    return {
        "results": results,
        "succeeded": succeeded,
        "failed": len(results) - succeeded,
    }


async def _accept(
    upload: UploadFile, request: Request, ctx: AppContext
) -> tuple[str, str]:
    staged = await ctx.uploads.stage(_chunks(upload))
    ticker = await ctx.uploads.accept_upload(upload.filename, upload.content_type, staged)
    return ticker, _public_url(request, ctx, ticker)


@router.post("/upload")
async def upload(
    request: Request,
    file: UploadFile = File(...),
    ctx: AppContext = Depends(get_context),
):
    try:
        ticker, url = await _accept(file, request, ctx)
    finally:
        await file.close()
    return {"ticker": ticker, "url": url}


@router.post("/upload-batch", response_model=list[UploadOutcome])
async def upload_batch(
    request: Request,
    files: list[UploadFile] = File(...),
    ctx: AppContext = Depends(get_context),
):
    outcomes = []
    for f in files:
        try:
            ticker, url = await _accept(f, request, ctx)
        except ChartCacheError as e:
            outcomes.append(
                UploadOutcome(
                    status="failure", filename=f.filename, reason=e.code, detail=e.detail
                )
            )
        else:
            outcomes.append(
                UploadOutcome(status="success", filename=f.filename, ticker=ticker, url=url)
            )
        finally:
            await f.close()
    return outcomes


@router.get("/static/charts/{symbol}", response_class=PlainTextResponse)
async def static_chart_url(
    symbol: str, request: Request, ctx: AppContext = Depends(get_context)
):
    lookup = await ctx.file_cache.get_or_fetch(symbol)
    return _public_url(request, ctx, lookup.artifact.ticker)


@router.get("/static/{filename}")
async def static_file(filename: str, ctx: AppContext = Depends(get_context)):
    try:
        ticker = key_to_ticker(filename)
    except InvalidSymbolFormat:
        raise NotFound(f"{filename} not found") from None
    lookup = await ctx.file_cache.get_or_fetch(ticker)
    return Response(content=lookup.artifact.data, media_type="image/png")


async def chart_error_handler(request: Request, exc: ChartCacheError) -> JSONResponse:
    if exc.status_code >= 500:
        log.error("request.failed path=%s error=%s", request.url.path, exc.detail)
    return JSONResponse(
        status_code=exc.status_code, content={"error": exc.code, "detail": exc.detail}
    )


async def request_validation_handler(
    request: Request, exc: RequestValidationError
) -> JSONResponse:
    return JSONResponse(
        status_code=400,
        content={"error": "ValidationFailure", "detail": jsonable_encoder(exc.errors())},
    )


def create_app(context: Optional[AppContext] = None) -> FastAPI:
    @asynccontextmanager
    async def lifespan(app: FastAPI):
        ctx = context or AppContext()
        await ctx.start()
        app.state.ctx = ctx
        try:
            yield
        finally:
            await ctx.aclose()

    app = FastAPI(title="chart-cache", lifespan=lifespan)
    app.include_router(router)
    app.add_exception_handler(ChartCacheError, chart_error_handler)
    app.add_exception_handler(RequestValidationError, request_validation_handler)
    return app


setup_logging()
app = create_app()
