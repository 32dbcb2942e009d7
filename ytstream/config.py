"""
Service configuration read from the environment.

Everything upstream-facing (headers, cookie, delays) is configuration so the
bot-detection workarounds can be tuned without a code change.
"""

import os
import shutil
from typing import Optional
import logging

logger = logging.getLogger(__name__)


def _env_bool(name: str, default: bool = False) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


# Upstream session
YT_COOKIE: Optional[str] = os.getenv("YT_COOKIE") or None
UPSTREAM_TIMEOUT_SECONDS = float(os.getenv("UPSTREAM_TIMEOUT_SECONDS", "30"))

# Pre-call jitter, independent from the retry backoff
PRE_FETCH_DELAY_MIN = int(os.getenv("PRE_FETCH_DELAY_MIN_MS", "500")) / 1000
PRE_FETCH_DELAY_MAX = int(os.getenv("PRE_FETCH_DELAY_MAX_MS", "1500")) / 1000

# Metadata retry/backoff
RETRY_MAX_ATTEMPTS = int(os.getenv("RETRY_MAX_ATTEMPTS", "4"))
RETRY_INITIAL_DELAY = int(os.getenv("RETRY_INITIAL_DELAY_MS", "2000")) / 1000
RETRY_BACKOFF_MULTIPLIER = float(os.getenv("RETRY_BACKOFF_MULTIPLIER", "1.5"))

# Streaming
STREAM_CHUNK_SIZE = int(os.getenv("STREAM_CHUNK_SIZE", "65536"))
REQUEST_TIME_BUDGET_SECONDS = float(os.getenv("REQUEST_TIME_BUDGET_SECONDS", "60"))
STRICT_FORMAT_SELECTION = _env_bool("STRICT_FORMAT_SELECTION")

# Browser-like headers sent to the upstream. One user agent is drawn per call.
USER_AGENTS = (
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36",
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/119.0.0.0 Safari/537.36",
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64; rv:120.0) Gecko/20100101 Firefox/120.0",
    "Mozilla/5.0 (Macintosh; Intel Mac OS X 10_15_7) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36",
    "Mozilla/5.0 (X11; Linux x86_64) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36",
)

NAVIGATION_HEADERS = {
    "Accept": "text/html,application/xhtml+xml,application/xml;q=0.9,image/avif,image/webp,image/apng,*/*;q=0.8",
    "Accept-Language": "en-US,en;q=0.9",
    "Accept-Encoding": "gzip, deflate",
    "Connection": "keep-alive",
    "Upgrade-Insecure-Requests": "1",
    "Sec-Fetch-Dest": "document",
    "Sec-Fetch-Mode": "navigate",
    "Sec-Fetch-Site": "none",
    "Sec-Fetch-User": "?1",
    "Cache-Control": "max-age=0",
    "DNT": "1",
    "Sec-GPC": "1",
}


def resolve_ffmpeg_path() -> Optional[str]:
    """
    Locate the ffmpeg binary.

    FFMPEG_PATH wins when set (a bare name is looked up on PATH); otherwise
    PATH is searched for ``ffmpeg``. Returns None when nothing is found, the
    muxer then refuses to start.
    """
    configured = os.getenv("FFMPEG_PATH", "").strip()
    if configured:
        found = shutil.which(configured)
        if found is None:
            logger.error(f"❌ FFMPEG_PATH is set but not executable: {configured}")
        return found
    return shutil.which("ffmpeg")
