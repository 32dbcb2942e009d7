"""
Transcode/mux engine.

Feeds a video-only and an audio-only stream into ffmpeg through two OS pipes
and yields fragmented MP4 chunks as ffmpeg flushes them. The video track is
copied bit-for-bit, audio is transcoded to AAC.

    video handle --pump--> pipe:<fd> --\
                                        ffmpeg --stdout--> chunks
    audio handle --pump--> pipe:<fd> --/

Pumps await drain() on every write, so a slow consumer of the output stalls
ffmpeg, which stalls the pumps, which stall the upstream reads.
"""

import asyncio
import collections
import contextlib
import os
from typing import AsyncIterator, Deque, List, Optional, Protocol
import logging

import anyio

from . import config
from .errors import MuxFailed

logger = logging.getLogger(__name__)


class ByteSource(Protocol):
    def __aiter__(self) -> AsyncIterator[bytes]: ...

    async def aclose(self) -> None: ...


async def _open_pipe_writer(fd: int) -> asyncio.StreamWriter:
    """Wrap the write end of an OS pipe in a StreamWriter. Takes ownership of fd."""
    loop = asyncio.get_running_loop()
    pipe = os.fdopen(fd, "wb", buffering=0)
    reader = asyncio.StreamReader()
    protocol = asyncio.StreamReaderProtocol(reader)
    try:
        transport, _ = await loop.connect_write_pipe(lambda: protocol, pipe)
    except BaseException:
        pipe.close()
        raise
    return asyncio.StreamWriter(transport, protocol, reader, loop)


class _MuxRun:
    """Mutable state of one mux invocation."""

    def __init__(self) -> None:
        self.process: Optional[asyncio.subprocess.Process] = None
        self.input_error: Optional[BaseException] = None
        self.stderr_tail: Deque[str] = collections.deque(maxlen=20)

    def kill(self) -> None:
        if self.process is not None and self.process.returncode is None:
            with contextlib.suppress(ProcessLookupError):
                self.process.kill()


class MuxEngine:
    """Runs one ffmpeg process per call to stream()."""

    def __init__(
        self,
        ffmpeg_path: Optional[str],
        chunk_size: int = config.STREAM_CHUNK_SIZE,
        reap_timeout: float = 5.0,
    ):
        self.ffmpeg_path = ffmpeg_path
        self.chunk_size = chunk_size
        self.reap_timeout = reap_timeout

    @property
    def available(self) -> bool:
        return bool(self.ffmpeg_path)

    def build_command(self, video_input: str, audio_input: str) -> List[str]:
        return [
            self.ffmpeg_path,
            "-nostdin",
            "-hide_banner",
            "-loglevel", "error",
            "-i", video_input,
            "-i", audio_input,
            "-map", "0:v:0",
            "-map", "1:a:0",
            "-c:v", "copy",
            "-c:a", "aac",
            "-f", "mp4",
            "-movflags", "frag_keyframe+empty_moov",
            "pipe:1",
        ]

    # =========================================================================
    # HELPERS
    # =========================================================================

    async def _pump(
        self, name: str, source: ByteSource, writer: asyncio.StreamWriter, run: _MuxRun
    ) -> None:
        """Copy one input stream into its pipe, then close the pipe."""
        sent = 0
        chunks = source.__aiter__()
        try:
            while True:
                try:
                    chunk = await chunks.__anext__()
                except StopAsyncIteration:
                    logger.debug(f"[mux] {name} input finished ({sent} bytes)")
                    break
                except Exception as e:
                    if run.input_error is None:
                        run.input_error = e
                    logger.error(f"❌ [mux] {name} input failed after {sent} bytes: {e}")
                    run.kill()
                    break

                try:
                    writer.write(chunk)
                    await writer.drain()
                except ConnectionError:
                    # ffmpeg closed its end; the exit code tells why
                    logger.debug(f"[mux] {name} pipe closed by ffmpeg after {sent} bytes")
                    break
                sent += len(chunk)
        finally:
            writer.close()
            with contextlib.suppress(ConnectionError, OSError):
                await writer.wait_closed()

    async def _drain_stderr(self, run: _MuxRun) -> None:
        stream = run.process.stderr
        while True:
            line = await stream.readline()
            if not line:
                break
            text = line.decode("utf-8", errors="replace").rstrip()
            if text:
                run.stderr_tail.append(text)
                logger.debug(f"[ffmpeg] {text}")

    async def _reap(
        self, run: _MuxRun, tasks: List[asyncio.Task], writers: List[asyncio.StreamWriter]
    ) -> None:
        """Kill ffmpeg if still running and wait for it and all helper tasks."""
        for task in tasks:
            if not task.done():
                task.cancel()
        run.kill()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        # a pump cancelled before it started never closed its writer
        for writer in writers:
            writer.close()
        if run.process is not None:
            try:
                await asyncio.wait_for(run.process.wait(), timeout=self.reap_timeout)
            except asyncio.TimeoutError:
                logger.error(f"❌ [mux] ffmpeg pid={run.process.pid} did not exit after kill")

    # =========================================================================
    # PUBLIC INTERFACE
    # =========================================================================

    async def stream(self, video: ByteSource, audio: ByteSource) -> AsyncIterator[bytes]:
        """
        Mux ``video`` and ``audio`` and yield output chunks as they are produced.

        Raises MuxFailed if an input errors or ffmpeg exits non-zero. Closing the
        generator early kills ffmpeg and closes both inputs.
        """
        if not self.available:
            await video.aclose()
            await audio.aclose()
            raise MuxFailed("ffmpeg binary not configured")

        run = _MuxRun()
        tasks: List[asyncio.Task] = []
        writers: List[asyncio.StreamWriter] = []
        video_r, video_w = os.pipe()
        audio_r, audio_w = os.pipe()
        parent_fds = [video_r, audio_r, video_w, audio_w]

        try:
            cmd = self.build_command(f"pipe:{video_r}", f"pipe:{audio_r}")
            try:
                run.process = await asyncio.create_subprocess_exec(
                    *cmd,
                    stdin=asyncio.subprocess.DEVNULL,
                    stdout=asyncio.subprocess.PIPE,
                    stderr=asyncio.subprocess.PIPE,
                    pass_fds=(video_r, audio_r),
                )
            except OSError as e:
                raise MuxFailed(f"failed to start ffmpeg: {e}", cause=e) from e
            finally:
                # the child owns the read ends now; ours would mask its exit
                for fd in (video_r, audio_r):
                    os.close(fd)
                    parent_fds.remove(fd)

            logger.info(f"🎬 [mux] ffmpeg started (pid={run.process.pid})")

            # ownership of each write end moves to its StreamWriter
            parent_fds.remove(video_w)
            video_writer = await _open_pipe_writer(video_w)
            writers.append(video_writer)
            parent_fds.remove(audio_w)
            audio_writer = await _open_pipe_writer(audio_w)
            writers.append(audio_writer)

            stderr_task = asyncio.create_task(self._drain_stderr(run))
            tasks.append(stderr_task)
            tasks.append(asyncio.create_task(self._pump("video", video, video_writer, run)))
            tasks.append(asyncio.create_task(self._pump("audio", audio, audio_writer, run)))

            produced = 0
            while True:
                chunk = await run.process.stdout.read(self.chunk_size)
                if not chunk:
                    break
                produced += len(chunk)
                yield chunk

            returncode = await run.process.wait()
            with contextlib.suppress(asyncio.TimeoutError):
                await asyncio.wait_for(asyncio.shield(stderr_task), timeout=self.reap_timeout)
            # inputs ffmpeg stopped reading can be abandoned
            await self._reap(run, tasks, writers)

            if run.input_error is not None:
                raise MuxFailed(f"input stream failed: {run.input_error}", cause=run.input_error)
            if returncode != 0:
                detail = " | ".join(run.stderr_tail) or "no output"
                raise MuxFailed(f"ffmpeg exited with code {returncode}: {detail[:500]}")

            logger.info(f"✅ [mux] finished ({produced / 1024 / 1024:.2f} MB)")
        finally:
            # a disconnect cancels the response scope; cleanup must still finish
            with anyio.CancelScope(shield=True):
                await self._reap(run, tasks, writers)
                for fd in parent_fds:
                    with contextlib.suppress(OSError):
                        os.close(fd)
                await video.aclose()
                await audio.aclose()
