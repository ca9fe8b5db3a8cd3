"""Streaming emitter: turns one reply into an ordered chunk sequence.

Chunk order per turn::

    metadata (intent, treatments, CTA flags)
    content* (words of a precomputed reply, or live LLM tokens)
    done | error   (exactly one)

A producer task writes chunks into a bounded :class:`StreamChannel`; the
transport consumes them.  Cancelling the :class:`CancellationToken` (client
disconnect) stops the producer and ends iteration silently: no further
chunks, no exception.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
from collections.abc import AsyncIterator, Awaitable, Callable

from clinic_assistant.config import STREAM_CHUNK_DELAY_SECONDS
from clinic_assistant.models import ChunkType, IntentLabel, Reply, StreamChunk
from clinic_assistant.prompts import STREAM_ERROR_REPLY

logger = logging.getLogger(__name__)

CHANNEL_CAPACITY = 64

_CLOSED = object()


def split_words(text: str) -> list[str]:
    """Split on single spaces; every word after the first keeps one leading space.

    ``"".join(split_words(text)) == text`` for any input.
    """
    if not text:
        return []
    words = text.split(" ")
    return [words[0]] + [f" {word}" for word in words[1:]]


class CancellationToken:
    def __init__(self) -> None:
        self._event = asyncio.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    async def wait(self) -> None:
        await self._event.wait()


class StreamChannel:
    """Bounded single-producer / single-consumer chunk queue."""

    def __init__(self, capacity: int = CHANNEL_CAPACITY) -> None:
        self._queue: asyncio.Queue = asyncio.Queue(maxsize=capacity)

    async def send(self, chunk: StreamChunk) -> None:
        await self._queue.put(chunk)

    def close(self) -> None:
        # Receivers stop at a terminal chunk, so the end marker only matters
        # for a producer that stopped without one.
        with contextlib.suppress(asyncio.QueueFull):
            self._queue.put_nowait(_CLOSED)

    async def receive(self, cancel: CancellationToken) -> AsyncIterator[StreamChunk]:
        while not cancel.cancelled:
            getter = asyncio.ensure_future(self._queue.get())
            stopper = asyncio.ensure_future(cancel.wait())
            done, pending = await asyncio.wait({getter, stopper}, return_when=asyncio.FIRST_COMPLETED)
            for fut in pending:
                fut.cancel()
            if cancel.cancelled or getter not in done:
                return
            item = getter.result()
            if item is _CLOSED:
                return
            yield item
            if item.is_terminal:
                return


def metadata_chunk(reply: Reply) -> StreamChunk:
    treatments = (
        [t.summary() for t in reply.treatments_to_show] if reply.treatments_to_show else None
    )
    return StreamChunk(
        ChunkType.METADATA,
        {
            "intent": reply.intent.value,
            "treatments": treatments,
            "booking_cta": reply.booking_cta,
            "quote_cta": reply.quote_cta,
        },
    )


class StreamEmitter:
    def __init__(
        self,
        delay: float = STREAM_CHUNK_DELAY_SECONDS,
        *,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self._delay = delay
        self._sleep = sleep

    async def _pieces(self, reply: Reply) -> AsyncIterator[str]:
        if reply.tokens is not None:
            async for token in reply.tokens:
                if token:
                    yield token
            return
        for index, word in enumerate(split_words(reply.text)):
            if index and self._delay > 0:
                await self._sleep(self._delay)
            yield word

    async def _produce(
        self,
        make_reply: Callable[[], Awaitable[Reply]],
        channel: StreamChannel,
        cancel: CancellationToken,
    ) -> None:
        try:
            try:
                reply = await make_reply()
            except Exception:
                logger.exception("Reply production failed before streaming")
                await channel.send(metadata_chunk(Reply(intent=IntentLabel.ERROR)))
                await channel.send(StreamChunk(ChunkType.ERROR, {"message": STREAM_ERROR_REPLY}))
                return

            await channel.send(metadata_chunk(reply))
            try:
                async for piece in self._pieces(reply):
                    if cancel.cancelled:
                        return
                    await channel.send(StreamChunk(ChunkType.CONTENT, {"content": piece}))
            except Exception:
                logger.exception("Streaming failed after metadata (intent=%s)", reply.intent.value)
                await channel.send(StreamChunk(ChunkType.ERROR, {"message": STREAM_ERROR_REPLY}))
                return
            await channel.send(StreamChunk(ChunkType.DONE, {}))
        finally:
            channel.close()

    async def emit(
        self,
        make_reply: Callable[[], Awaitable[Reply]],
        cancel: CancellationToken | None = None,
    ) -> AsyncIterator[StreamChunk]:
        """Yield the chunk sequence for the reply produced by *make_reply*."""
        cancel = cancel or CancellationToken()
        channel = StreamChannel()
        producer = asyncio.create_task(self._produce(make_reply, channel, cancel))
        try:
            async for chunk in channel.receive(cancel):
                yield chunk
        finally:
            if not producer.done():
                cancel.cancel()
                producer.cancel()
                with contextlib.suppress(asyncio.CancelledError):
                    await producer
