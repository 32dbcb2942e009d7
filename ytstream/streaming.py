"""
Streaming response assembler.

Bridges one active byte source (a pass-through StreamHandle or the mux output)
to the outbound response body through a single narrow interface: an async
iterator where a yielded chunk is data, exhaustion is end and a raised
exception is error.

The first chunk is pulled before the response is committed, so failures that
happen before any byte is produced still become a regular JSON error. After
that, errors can only abort the body.
"""

from typing import AsyncIterable, AsyncIterator, Awaitable, Callable, List, Optional, Sequence
import logging

import anyio

logger = logging.getLogger(__name__)

Closer = Callable[[], Awaitable[None]]


class PrimedStream:
    """A source whose first chunk has already been received."""

    def __init__(
        self,
        label: str,
        iterator: AsyncIterator[bytes],
        first_chunk: Optional[bytes],
        closers: Sequence[Closer] = (),
        content_length: Optional[int] = None,
    ):
        self.label = label
        self.content_length = content_length
        self._iterator = iterator
        self._first_chunk = first_chunk
        self._closers: List[Closer] = list(closers)
        self._closed = False
        self.bytes_sent = 0

    @classmethod
    async def prime(
        cls,
        label: str,
        source: AsyncIterable[bytes],
        closers: Sequence[Closer] = (),
        content_length: Optional[int] = None,
    ) -> "PrimedStream":
        """Start ``source`` and wait for its first chunk; errors propagate before headers are sent."""
        iterator = source.__aiter__()
        closers = [*_iterator_closer(iterator), *closers]
        try:
            first_chunk = await iterator.__anext__()
        except StopAsyncIteration:
            first_chunk = None
        except BaseException:
            await _run_closers(closers)
            raise
        return cls(label, iterator, first_chunk, closers, content_length=content_length)

    async def aclose(self) -> None:
        """Release the source and everything it holds. Only the first call has effect."""
        if self._closed:
            return
        self._closed = True
        await _run_closers(self._closers)

    async def body(self) -> AsyncIterator[bytes]:
        """Chunks in arrival order, closing the source exactly once at the end."""
        completed = False
        try:
            if self._first_chunk:
                chunk, self._first_chunk = self._first_chunk, None
                self.bytes_sent += len(chunk)
                yield chunk
            async for chunk in self._iterator:
                self.bytes_sent += len(chunk)
                yield chunk
            completed = True
            logger.info(
                f"📤 {self.label}: stream complete ({self.bytes_sent / 1024 / 1024:.2f} MB)"
            )
        except Exception as e:
            logger.error(
                f"❌ {self.label}: stream aborted after {self.bytes_sent} bytes: {e}"
            )
            raise
        finally:
            if not completed:
                logger.info(f"🔌 {self.label}: closed after {self.bytes_sent} bytes")
            await self.aclose()


def _iterator_closer(iterator: AsyncIterator[bytes]) -> List[Closer]:
    aclose = getattr(iterator, "aclose", None)
    return [aclose] if aclose is not None else []


async def _run_closers(closers: Sequence[Closer]) -> None:
    # a disconnect cancels the response scope; every closer must still run
    with anyio.CancelScope(shield=True):
        for close in closers:
            try:
                await close()
            except Exception as e:
                logger.warning(f"⚠️ error while closing stream resource: {e}")
