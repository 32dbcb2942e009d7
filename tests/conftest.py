"""
Shared fixtures and fakes for the ytstream tests.

Nothing here talks to YouTube: the upstream facade, its byte streams and the
mux engine are replaced with in-memory fakes that record how they were used.
"""

import asyncio
import pathlib
import sys
from typing import Dict, List, Optional

import pytest

# ─── Path setup (must happen before any ytstream import) ─────────────────────

_ROOT = pathlib.Path(__file__).parent.parent
sys.path.insert(0, str(_ROOT))

from ytstream.models import Rendition, RenditionKind, VideoMetadata  # noqa: E402

TEST_VIDEO_URL = "https://www.youtube.com/watch?v=dQw4w9WgXcQ"


# ─── Builders ────────────────────────────────────────────────────────────────

def make_rendition(itag: str, kind: RenditionKind, height: Optional[int] = None, **kwargs) -> Rendition:
    return Rendition(
        itag=itag,
        kind=kind,
        url=f"https://media.example.com/videoplayback?itag={itag}",
        height=height,
        **kwargs,
    )


def sample_renditions() -> List[Rendition]:
    """A typical rendition list: two progressive, two video-only, two audio-only."""
    return [
        make_rendition("18", RenditionKind.AUDIO_VIDEO, height=360, ext="mp4"),
        make_rendition("22", RenditionKind.AUDIO_VIDEO, height=720, ext="mp4"),
        make_rendition("137", RenditionKind.VIDEO, height=1080, ext="mp4"),
        make_rendition("136", RenditionKind.VIDEO, height=720, ext="mp4"),
        make_rendition("140", RenditionKind.AUDIO, ext="m4a"),
        make_rendition("251", RenditionKind.AUDIO, ext="webm"),
    ]


def sample_metadata(title: str = "Never Gonna Give You Up (Official Video)") -> VideoMetadata:
    return VideoMetadata(
        title=title,
        video_id="dQw4w9WgXcQ",
        duration_seconds=212.0,
        renditions=tuple(sample_renditions()),
    )


# ─── Fakes ───────────────────────────────────────────────────────────────────

class FakeHandle:
    """In-memory StreamHandle: yields ``chunks`` then optionally raises ``error``."""

    def __init__(
        self,
        itag: str,
        chunks: Optional[List[bytes]] = None,
        error: Optional[BaseException] = None,
        delay: float = 0.0,
        endless: bool = False,
        content_length: Optional[int] = None,
        suspend_on_close: bool = False,
    ):
        self.itag = itag
        self.chunks = list(chunks or [])
        self.error = error
        self.delay = delay
        self.endless = endless
        self.close_count = 0
        self.yielded = 0
        self.content_length = content_length
        self.suspend_on_close = suspend_on_close

    @property
    def closed(self) -> bool:
        return self.close_count > 0

    def __aiter__(self):
        return self._iter()

    async def _iter(self):
        for chunk in self.chunks:
            if self.delay:
                await asyncio.sleep(self.delay)
            self.yielded += 1
            yield chunk
        while self.endless:
            await asyncio.sleep(self.delay or 0.005)
            self.yielded += 1
            yield b"\x00" * 1024
        if self.error is not None:
            raise self.error

    async def aclose(self) -> None:
        # httpx's Response.aclose suspends before the connection is released
        if self.suspend_on_close:
            await asyncio.sleep(0)
        self.close_count += 1


class FakeUpstream:
    """Stands in for UpstreamClient; metadata errors are raised in order before succeeding."""

    def __init__(
        self,
        metadata: Optional[VideoMetadata] = None,
        errors: Optional[List[BaseException]] = None,
        always_fail: Optional[BaseException] = None,
        streams: Optional[Dict[str, dict]] = None,
    ):
        self.metadata = metadata if metadata is not None else sample_metadata()
        self.errors = list(errors or [])
        self.always_fail = always_fail
        self.streams = streams or {}
        self.metadata_calls = 0
        self.opened: List[str] = []
        self.handles: List[FakeHandle] = []

    async def fetch_metadata(self, url: str) -> VideoMetadata:
        self.metadata_calls += 1
        if self.always_fail is not None:
            raise self.always_fail
        if self.errors:
            raise self.errors.pop(0)
        return self.metadata

    async def open_stream(self, rendition: Rendition) -> FakeHandle:
        self.opened.append(rendition.itag)
        behaviour = self.streams.get(rendition.itag, {})
        if "open_error" in behaviour:
            raise behaviour["open_error"]
        handle = FakeHandle(
            rendition.itag,
            chunks=behaviour.get("chunks", [f"<{rendition.itag}>".encode()]),
            error=behaviour.get("error"),
            content_length=behaviour.get("content_length"),
        )
        self.handles.append(handle)
        return handle


class FakeMuxEngine:
    """Records mux invocations and emits a recognisable payload."""

    def __init__(self, available: bool = True):
        self.available = available
        self.calls: List[tuple] = []

    async def stream(self, video, audio):
        self.calls.append((video, audio))
        try:
            video_bytes = b"".join([c async for c in video])
            audio_bytes = b"".join([c async for c in audio])
            yield b"MUX["
            yield video_bytes + b"+" + audio_bytes
            yield b"]"
        finally:
            await video.aclose()
            await audio.aclose()


# ─── Fixtures ────────────────────────────────────────────────────────────────

@pytest.fixture
def renditions():
    return sample_renditions()


@pytest.fixture
def metadata():
    return sample_metadata()


@pytest.fixture
def fake_upstream():
    return FakeUpstream()


@pytest.fixture
def fake_muxer():
    return FakeMuxEngine()


@pytest.fixture
def app_client(fake_upstream, fake_muxer):
    """TestClient wired to the fakes, with instant retries."""
    from fastapi.testclient import TestClient

    from ytstream.main import app, get_mux_engine, get_retry_policy, get_upstream_client
    from ytstream.retry import RetryPolicy

    app.dependency_overrides[get_upstream_client] = lambda: fake_upstream
    app.dependency_overrides[get_mux_engine] = lambda: fake_muxer
    app.dependency_overrides[get_retry_policy] = lambda: RetryPolicy(
        max_attempts=4, initial_delay=0.0, multiplier=1.5
    )
    try:
        yield TestClient(app)
    finally:
        app.dependency_overrides.clear()


def find_exception(exc: BaseException, exc_type: type) -> Optional[BaseException]:
    """Locate ``exc_type`` in ``exc``, its exception-group members or its cause chain."""
    seen = set()
    stack = [exc]
    while stack:
        current = stack.pop()
        if current is None or id(current) in seen:
            continue
        seen.add(id(current))
        if isinstance(current, exc_type):
            return current
        stack.extend(getattr(current, "exceptions", ()))
        stack.append(current.__cause__)
        stack.append(current.__context__)
    return None
