"""
Pydantic models for upstream metadata and request/response schemas
"""

from pydantic import BaseModel, ConfigDict, Field
from typing import Any, Dict, Optional, Tuple
from enum import Enum

STREAMABLE_PROTOCOLS = ("https", "http")


class RenditionKind(str, Enum):
    """What a rendition carries"""
    VIDEO = "video"
    AUDIO = "audio"
    AUDIO_VIDEO = "audio_video"


class Rendition(BaseModel):
    """One downloadable encoding of the source video"""
    model_config = ConfigDict(frozen=True)

    itag: str
    kind: RenditionKind
    url: str = Field(..., repr=False)
    http_headers: Dict[str, str] = Field(default_factory=dict, repr=False)
    ext: Optional[str] = None
    height: Optional[int] = None
    fps: Optional[float] = None
    vcodec: Optional[str] = None
    acodec: Optional[str] = None
    bitrate_kbps: Optional[float] = None
    filesize: Optional[int] = None
    # byte-range window the CDN expects, None for a single plain GET
    http_chunk_size: Optional[int] = Field(None, repr=False)

    @property
    def has_video(self) -> bool:
        return self.kind in (RenditionKind.VIDEO, RenditionKind.AUDIO_VIDEO)

    @property
    def has_audio(self) -> bool:
        return self.kind in (RenditionKind.AUDIO, RenditionKind.AUDIO_VIDEO)

    @classmethod
    def from_ytdlp(cls, fmt: Dict[str, Any]) -> Optional["Rendition"]:
        """Build a Rendition from a yt-dlp format dict, None if it is not streamable."""
        url = fmt.get("url")
        itag = fmt.get("format_id")
        if not url or not itag:
            return None
        # m3u8 / dash segment urls point at a playlist, not at media bytes
        if (fmt.get("protocol") or "https") not in STREAMABLE_PROTOCOLS:
            return None

        vcodec = fmt.get("vcodec")
        acodec = fmt.get("acodec")
        has_video = bool(vcodec) and vcodec != "none"
        has_audio = bool(acodec) and acodec != "none"
        if has_video and has_audio:
            kind = RenditionKind.AUDIO_VIDEO
        elif has_video:
            kind = RenditionKind.VIDEO
        elif has_audio:
            kind = RenditionKind.AUDIO
        else:
            # storyboards and other image-only formats
            return None

        return cls(
            itag=str(itag),
            kind=kind,
            url=url,
            http_headers=dict(fmt.get("http_headers") or {}),
            ext=fmt.get("ext"),
            height=fmt.get("height"),
            fps=fmt.get("fps"),
            vcodec=vcodec if has_video else None,
            acodec=acodec if has_audio else None,
            bitrate_kbps=fmt.get("tbr"),
            filesize=fmt.get("filesize") or fmt.get("filesize_approx"),
            http_chunk_size=(fmt.get("downloader_options") or {}).get("http_chunk_size"),
        )


class VideoMetadata(BaseModel):
    """Metadata for one remote video, owned by the request that fetched it"""
    model_config = ConfigDict(frozen=True)

    title: str
    video_id: Optional[str] = None
    duration_seconds: float = 0.0
    renditions: Tuple[Rendition, ...] = ()

    @classmethod
    def from_ytdlp(cls, info: Dict[str, Any]) -> "VideoMetadata":
        """Build VideoMetadata from a yt-dlp info dict."""
        renditions = []
        for fmt in info.get("formats") or []:
            rendition = Rendition.from_ytdlp(fmt)
            if rendition is not None:
                renditions.append(rendition)
        return cls(
            title=info.get("title") or "Unknown",
            video_id=info.get("id"),
            duration_seconds=float(info.get("duration") or 0),
            renditions=tuple(renditions),
        )


class SelectionResult(BaseModel):
    """Renditions chosen for a request, tagged by role"""
    model_config = ConfigDict(frozen=True)

    video: Optional[Rendition] = None
    audio: Optional[Rendition] = None

    @property
    def needs_mux(self) -> bool:
        return self.video is not None and self.audio is not None

    @property
    def single(self) -> Optional[Rendition]:
        """The only populated rendition, None when muxing or empty."""
        if self.needs_mux:
            return None
        return self.video or self.audio


class ErrorResponse(BaseModel):
    """Error body. Both fields carry the same human-readable message."""
    error: str
    message: Optional[str] = None


class RenditionInfo(BaseModel):
    """Public view of a rendition for /api/info"""
    itag: str
    kind: RenditionKind
    ext: Optional[str] = None
    height: Optional[int] = None
    fps: Optional[float] = None
    vcodec: Optional[str] = None
    acodec: Optional[str] = None
    bitrate_kbps: Optional[float] = None
    filesize: Optional[int] = None


class InfoResponse(BaseModel):
    """Response schema for /api/info"""
    title: str
    video_id: Optional[str] = None
    duration_seconds: float
    renditions: list[RenditionInfo]


class HealthResponse(BaseModel):
    """Response schema for /api/health"""
    status: str
    version: str
    uptime_seconds: float
    yt_dlp_version: str
    ffmpeg_available: bool
