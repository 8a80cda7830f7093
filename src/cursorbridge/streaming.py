"""Decode loop and cancellation for the vendor response stream."""

import asyncio
import logging
from typing import AsyncGenerator, AsyncIterable, AsyncIterator, Optional

from .decoder import StreamDecoder
from .errors import UpstreamError

logger = logging.getLogger(__name__)

_END = object()
_CANCELLED = object()


class CancellationToken:
    """
    Request-scoped cancellation signal passed from the HTTP layer into the
    decode loop. Cancelling it aborts the pending upstream read.
    """

    def __init__(self):
        self._event = asyncio.Event()
        self.reason: Optional[str] = None

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self, reason: Optional[str] = None) -> None:
        if self._event.is_set():
            return
        self.reason = reason
        self._event.set()

    async def wait(self) -> None:
        await self._event.wait()

    def __repr__(self) -> str:
        return f"CancellationToken(cancelled={self.cancelled}, reason={self.reason!r})"


async def _read(iterator: AsyncIterator[bytes]):
    try:
        return await iterator.__anext__()
    except StopAsyncIteration:
        return _END


async def _next_chunk(iterator: AsyncIterator[bytes], token: Optional[CancellationToken]):
    if token is None:
        return await _read(iterator)
    if token.cancelled:
        return _CANCELLED

    read = asyncio.ensure_future(_read(iterator))
    waiter = asyncio.ensure_future(token.wait())
    try:
        await asyncio.wait({read, waiter}, return_when=asyncio.FIRST_COMPLETED)
    finally:
        waiter.cancel()
        if not read.done():
            read.cancel()
            await asyncio.gather(read, return_exceptions=True)

    if read.cancelled():
        return _CANCELLED
    return read.result()


def _report_errors(decoder: StreamDecoder) -> None:
    for error in decoder.pop_errors():
        logger.warning(f"Skipping malformed frame: {str(error)}")


async def decode_stream(
    chunks: AsyncIterable[bytes],
    decoder: StreamDecoder,
    cancel_token: Optional[CancellationToken] = None,
) -> AsyncGenerator[str, None]:
    """
    Feed raw chunks through `decoder` in arrival order and yield text fragments.

    Malformed frames are logged and skipped. An error trailer from the vendor
    raises `UpstreamError`. When `cancel_token` fires, the pending read is
    cancelled and iteration stops without flushing.
    """
    iterator = chunks.__aiter__()
    try:
        while True:
            chunk = await _next_chunk(iterator, cancel_token)
            if chunk is _CANCELLED:
                logger.info(f"Upstream read cancelled: {cancel_token.reason}")
                return
            if chunk is _END:
                break

            for fragment in decoder.feed(chunk):
                yield fragment
            _report_errors(decoder)

            error = decoder.end_stream_error
            if error:
                raise UpstreamError(f"vendor reported an error: {error}")

        tail = decoder.finish()
        _report_errors(decoder)
        if tail:
            yield tail
    finally:
        aclose = getattr(iterator, "aclose", None)
        if aclose is not None:
            await aclose()


async def collect_text(fragments: AsyncIterable[str]) -> str:
    return "".join([fragment async for fragment in fragments])


async def watch_disconnect(request, token: CancellationToken, interval: float = 0.5) -> None:
    """Cancel `token` once the client behind `request` goes away."""
    while not token.cancelled:
        if await request.is_disconnected():
            token.cancel("client disconnected")
            return
        await asyncio.sleep(interval)
