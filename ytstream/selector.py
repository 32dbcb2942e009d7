"""
Format selection.

Pure functions of the rendition list and the caller's quality hints.
"""

from typing import Callable, Optional, Sequence

from .errors import FormatNotFound
from .models import Rendition, RenditionKind, SelectionResult


def _find(
    renditions: Sequence[Rendition],
    itag: str,
    accepts: Callable[[Rendition], bool],
    role: str,
) -> Rendition:
    for rendition in renditions:
        if rendition.itag == itag and accepts(rendition):
            return rendition
    raise FormatNotFound(f"no {role} rendition with itag {itag}", itag=itag)


def _quality_key(rendition: Rendition):
    return (rendition.height or 0, rendition.fps or 0, rendition.bitrate_kbps or 0)


def select_default(renditions: Sequence[Rendition]) -> SelectionResult:
    """Highest video quality among renditions carrying both audio and video."""
    best = None
    for rendition in renditions:
        if rendition.kind != RenditionKind.AUDIO_VIDEO:
            continue
        # strict comparison keeps the first of equal candidates
        if best is None or _quality_key(rendition) > _quality_key(best):
            best = rendition
    if best is None:
        raise FormatNotFound("no rendition with combined audio and video")
    return SelectionResult(video=best)


def select_formats(
    renditions: Sequence[Rendition],
    video_itag: Optional[str] = None,
    audio_itag: Optional[str] = None,
) -> SelectionResult:
    """
    Pick zero, one or two renditions.

    A hint that matches nothing raises FormatNotFound; with no hints at all the
    default policy applies. Both roles populated means the caller must mux.
    """
    if not video_itag and not audio_itag:
        return select_default(renditions)

    video = _find(renditions, video_itag, lambda r: r.has_video, "video") if video_itag else None
    audio = _find(renditions, audio_itag, lambda r: r.has_audio, "audio") if audio_itag else None
    return SelectionResult(video=video, audio=audio)
