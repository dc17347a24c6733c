"""Cancellable subscription handle for live container logs."""

import asyncio
import logging
from typing import AsyncIterator, Awaitable, Callable, Optional

logger = logging.getLogger(__name__)


class LogStream:
    """Async iterator over log lines produced by a running container.

    Lines arrive in the order the engine emitted them and are pulled by the
    consumer one at a time. The stream cannot be restarted: once closed, a
    new ``stream_logs`` call begins again from its own ``tail``/``since``.

    Closing (``aclose``, leaving ``async with``, exhausting the stream or
    cancelling the consuming task) releases the engine-side reader.
    """

    def __init__(self, app_id: str, lines: AsyncIterator[str],
                 closer: Callable[[], Awaitable[None]]):
        self.app_id = app_id
        self._lines = lines
        self._closer = closer
        self._closed = False
        self._on_close: Optional[Callable[['LogStream'], None]] = None

    @property
    def closed(self) -> bool:
        return self._closed

    def add_close_callback(self, callback: Callable[['LogStream'], None]) -> None:
        self._on_close = callback

    def __aiter__(self) -> 'LogStream':
        return self

    async def __anext__(self) -> str:
        if self._closed:
            raise StopAsyncIteration
        try:
            return await self._lines.__anext__()
        except StopAsyncIteration:
            await self.aclose()
            raise
        except asyncio.CancelledError:
            await asyncio.shield(self.aclose())
            raise

    async def aclose(self) -> None:
        if self._closed:
            return
        self._closed = True
        try:
            await self._closer()
        finally:
            aclose = getattr(self._lines, "aclose", None)
            if aclose is not None:
                try:
                    await aclose()
                except RuntimeError as e:
                    # generator still running in another task
                    logger.debug(f"Log line source for {self.app_id} not closed: {e}")
            if self._on_close is not None:
                self._on_close(self)
            logger.debug(f"Closed log stream for {self.app_id}")

    async def __aenter__(self) -> 'LogStream':
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.aclose()


async def iter_lines(chunks: AsyncIterator[bytes]) -> AsyncIterator[str]:
    """Split a byte-chunk stream into decoded lines, holding partial lines back."""
    buffer = ""
    async for chunk in chunks:
        if isinstance(chunk, bytes):
            chunk = chunk.decode("utf-8", errors="replace")
        buffer += chunk
        *complete, buffer = buffer.split("\n")
        for line in complete:
            line = line.rstrip("\r")
            if line:
                yield line
    if buffer.rstrip("\r"):
        yield buffer.rstrip("\r")
