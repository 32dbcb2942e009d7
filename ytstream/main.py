"""
FastAPI streaming download service
Fetches YouTube metadata, picks renditions and streams them back, muxing
separate video and audio through ffmpeg on the fly
"""

import asyncio
import re
import time
import logging
from contextlib import asynccontextmanager
from typing import Optional, Tuple

from fastapi import Depends, FastAPI, Request, Response
from fastapi.responses import JSONResponse, StreamingResponse
import yt_dlp

from . import config
from .errors import (
    ClientError,
    FormatNotFound,
    MuxFailed,
    UpstreamTransportError,
    YTStreamError,
    user_message_for,
)
from .models import ErrorResponse, HealthResponse, InfoResponse, RenditionInfo, SelectionResult, VideoMetadata
from .muxer import MuxEngine
from .retry import RetryPolicy, fetch_with_retry
from .selector import select_default, select_formats
from .streaming import PrimedStream
from .upstream import UpstreamClient

# Logging configuration
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)

# App metadata
VERSION = "1.0.0"
start_time = time.time()

CORS_HEADERS = {
    "Access-Control-Allow-Origin": "*",
    "Access-Control-Allow-Methods": "GET, OPTIONS",
    "Access-Control-Allow-Headers": "Content-Type",
}

# The endpoints answer every method themselves so 405/204 carry CORS headers.
# HEAD is not treated as GET: it gets the 405 body like any other non-GET method.
ALL_METHODS = ["GET", "HEAD", "POST", "PUT", "PATCH", "DELETE", "OPTIONS"]


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Lifecycle manager for startup/shutdown tasks"""
    logger.info("🚀 Starting streaming download service...")
    logger.info(f"Version: {VERSION}")
    logger.info(f"yt-dlp version: {yt_dlp.version.__version__}")
    logger.info(f"🍪 YouTube cookie: {'configured' if config.YT_COOKIE else 'NOT configured (bot detection risk)'}")

    app.state.ffmpeg_path = config.resolve_ffmpeg_path()
    if app.state.ffmpeg_path:
        logger.info(f"🎬 ffmpeg: {app.state.ffmpeg_path}")
    else:
        logger.warning("⚠️ ffmpeg not found, set FFMPEG_PATH (video+audio muxing disabled)")

    yield

    logger.info("Shutting down streaming download service...")


# Create FastAPI app
app = FastAPI(
    title="YouTube Streaming Download Service",
    description="Streams YouTube renditions, muxing video and audio on the fly",
    version=VERSION,
    lifespan=lifespan,
)


# ============================================================================
# DEPENDENCIES (one instance per request, nothing shared between requests)
# ============================================================================


def get_upstream_client() -> UpstreamClient:
    return UpstreamClient()


def get_mux_engine(request: Request) -> MuxEngine:
    return MuxEngine(getattr(request.app.state, "ffmpeg_path", None))


def get_retry_policy() -> RetryPolicy:
    return RetryPolicy()


# ============================================================================
# HELPERS
# ============================================================================


def sanitize_filename(title: str) -> str:
    """Keep word characters and whitespace, collapse whitespace into underscores."""
    cleaned = re.sub(r"[^\w\s]", "", title, flags=re.ASCII)
    cleaned = re.sub(r"\s+", "_", cleaned, flags=re.ASCII)
    return cleaned or "video"


def error_response(error: BaseException) -> JSONResponse:
    """Single mapping point from failure to status code and user-facing body."""
    message = user_message_for(error)
    status_code = error.status_code if isinstance(error, YTStreamError) else 500
    return JSONResponse(
        status_code=status_code,
        content=ErrorResponse(error=message, message=message).model_dump(),
        headers=CORS_HEADERS,
    )


def method_guard(request: Request) -> Optional[Response]:
    """Answer CORS preflight and reject anything but GET."""
    if request.method == "OPTIONS":
        return Response(status_code=204, headers=CORS_HEADERS)
    if request.method != "GET":
        return JSONResponse(
            status_code=405,
            content={"message": "Method Not Allowed"},
            headers=CORS_HEADERS,
        )
    return None


def missing_url_response() -> JSONResponse:
    return JSONResponse(
        status_code=400,
        content=ErrorResponse(error="Missing URL parameter").model_dump(exclude_none=True),
        headers=CORS_HEADERS,
    )


async def fetch_metadata(url: str, upstream: UpstreamClient, policy: RetryPolicy) -> VideoMetadata:
    """Metadata fetch with retry, bounded by the request time budget."""
    try:
        return await asyncio.wait_for(
            fetch_with_retry(upstream.fetch_metadata, url, policy),
            timeout=config.REQUEST_TIME_BUDGET_SECONDS,
        )
    except asyncio.TimeoutError as e:
        raise UpstreamTransportError(
            f"metadata not fetched within {config.REQUEST_TIME_BUDGET_SECONDS:.0f}s"
        ) from e


def choose_renditions(
    metadata: VideoMetadata,
    video_itag: Optional[str],
    audio_itag: Optional[str],
    strict: Optional[bool] = None,
) -> SelectionResult:
    if strict is None:
        strict = config.STRICT_FORMAT_SELECTION
    try:
        return select_formats(metadata.renditions, video_itag, audio_itag)
    except FormatNotFound as e:
        if not (video_itag or audio_itag):
            raise
        if strict:
            raise ClientError("Requested format is not available") from e
        logger.warning(f"⚠️ {e}; falling back to default quality")
        return select_default(metadata.renditions)


async def open_body(
    selection: SelectionResult,
    upstream: UpstreamClient,
    muxer: MuxEngine,
    label: str,
) -> PrimedStream:
    """Open the stream(s) the selection needs and wait for the first output bytes."""
    if not selection.needs_mux:
        handle = await upstream.open_stream(selection.single)
        return await PrimedStream.prime(
            label, handle, closers=[handle.aclose], content_length=handle.content_length
        )

    if not muxer.available:
        raise MuxFailed("ffmpeg binary not configured")

    results = await asyncio.gather(
        upstream.open_stream(selection.video),
        upstream.open_stream(selection.audio),
        return_exceptions=True,
    )
    failures = [r for r in results if isinstance(r, BaseException)]
    handles = [r for r in results if not isinstance(r, BaseException)]
    if failures:
        for handle in handles:
            await handle.aclose()
        raise failures[0]

    video_handle, audio_handle = handles
    logger.info(f"🎞️ Muxing itag {selection.video.itag} + {selection.audio.itag}")
    return await PrimedStream.prime(
        label,
        muxer.stream(video_handle, audio_handle),
        closers=[video_handle.aclose, audio_handle.aclose],
    )


def parse_hints(request: Request) -> Tuple[Optional[str], Optional[str], Optional[str]]:
    params = request.query_params
    return (
        params.get("url") or None,
        params.get("itag") or None,
        params.get("audioItag") or None,
    )


# ============================================================================
# API ENDPOINTS
# ============================================================================


@app.api_route("/api/download", methods=ALL_METHODS)
async def download_video(
    request: Request,
    upstream: UpstreamClient = Depends(get_upstream_client),
    muxer: MuxEngine = Depends(get_mux_engine),
    policy: RetryPolicy = Depends(get_retry_policy),
) -> Response:
    """
    Stream a YouTube video to the client

    **Flow:**
    1. Fetch metadata (with jitter and retry/backoff)
    2. Select renditions from `itag` / `audioItag`, or the best combined one
    3. Pass a single rendition through, or mux video+audio with ffmpeg
    4. Stream the bytes back as an attachment
    """
    guarded = method_guard(request)
    if guarded is not None:
        return guarded

    url, video_itag, audio_itag = parse_hints(request)
    if not url:
        return missing_url_response()

    logger.info(f"📥 Download request: {url} (itag={video_itag}, audioItag={audio_itag})")

    try:
        metadata = await fetch_metadata(url, upstream, policy)
        selection = choose_renditions(metadata, video_itag, audio_itag)
        body = await open_body(selection, upstream, muxer, label=metadata.video_id or url)
    except YTStreamError as e:
        logger.error(f"❌ Download failed: {type(e).__name__}: {e}")
        return error_response(e)
    except Exception as e:
        logger.exception(f"💥 Unexpected error during download: {e}")
        return error_response(e)

    filename = sanitize_filename(metadata.title)
    logger.info(f"✅ Streaming {filename}.mp4 ({'muxed' if selection.needs_mux else 'pass-through'})")

    headers = {
        **CORS_HEADERS,
        "Content-Disposition": f'attachment; filename="{filename}.mp4"',
    }
    # muxed output size is unknown until ffmpeg finishes
    if body.content_length is not None:
        headers["Content-Length"] = str(body.content_length)

    return StreamingResponse(
        body.body(),
        media_type="application/octet-stream",
        headers=headers,
    )


@app.api_route("/api/info", methods=ALL_METHODS)
async def get_video_info(
    request: Request,
    upstream: UpstreamClient = Depends(get_upstream_client),
    policy: RetryPolicy = Depends(get_retry_policy),
) -> Response:
    """
    Get video metadata and the available renditions without downloading

    **Use case:** discover `itag` / `audioItag` values for /api/download
    """
    guarded = method_guard(request)
    if guarded is not None:
        return guarded

    url, _, _ = parse_hints(request)
    if not url:
        return missing_url_response()

    logger.info(f"ℹ️ Info request: {url}")

    try:
        metadata = await fetch_metadata(url, upstream, policy)
    except YTStreamError as e:
        logger.error(f"❌ Info extraction failed: {type(e).__name__}: {e}")
        return error_response(e)
    except Exception as e:
        logger.exception(f"💥 Unexpected error during info extraction: {e}")
        return error_response(e)

    return JSONResponse(
        content=InfoResponse(
            title=metadata.title,
            video_id=metadata.video_id,
            duration_seconds=metadata.duration_seconds,
            renditions=[
                RenditionInfo(**r.model_dump(exclude={"url", "http_headers", "http_chunk_size"}))
                for r in metadata.renditions
            ],
        ).model_dump(mode="json"),
        headers=CORS_HEADERS,
    )


@app.get("/api/health", response_model=HealthResponse)
async def health_check(request: Request):
    """Health check endpoint for monitoring"""
    return HealthResponse(
        status="healthy",
        version=VERSION,
        uptime_seconds=time.time() - start_time,
        yt_dlp_version=yt_dlp.version.__version__,
        ffmpeg_available=bool(getattr(request.app.state, "ffmpeg_path", None)),
    )


@app.get("/")
async def root():
    """Root endpoint with service info"""
    return {
        "service": "YouTube Streaming Download Service",
        "version": VERSION,
        "status": "running",
        "endpoints": {
            "download": "/api/download?url=...&itag=...&audioItag=...",
            "info": "/api/info?url=...",
            "health": "/api/health",
        },
        "docs": "/docs",
    }


# ============================================================================
# ERROR HANDLERS
# ============================================================================


@app.exception_handler(404)
async def not_found_handler(request, exc):
    """Custom 404 handler"""
    return JSONResponse(
        status_code=404,
        content={"detail": "Endpoint not found. See /docs for API documentation."}
    )


@app.exception_handler(500)
async def server_error_handler(request, exc):
    """Custom 500 handler"""
    logger.exception("Internal server error")
    message = user_message_for(exc)
    return JSONResponse(
        status_code=500,
        content=ErrorResponse(error=message, message=message).model_dump(),
        headers=CORS_HEADERS,
    )


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8000)
