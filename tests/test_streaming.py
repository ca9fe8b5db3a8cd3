"""Tests for the streaming emitter and its cancellable channel."""

from __future__ import annotations

import asyncio
from contextlib import aclosing

import pytest

from clinic_assistant.engine.streaming import (
    CHANNEL_CAPACITY,
    CancellationToken,
    StreamChannel,
    StreamEmitter,
    metadata_chunk,
    split_words,
)
from clinic_assistant.models import ChunkType, IntentLabel, Reply, StreamChunk, TreatmentNode
from clinic_assistant.prompts import STREAM_ERROR_REPLY

TWELVE_WORDS = "one two three four five six seven eight nine ten eleven twelve"


async def _collect(emitter: StreamEmitter, make_reply, cancel=None) -> list[StreamChunk]:
    return [chunk async for chunk in emitter.emit(make_reply, cancel)]


async def _drain(chunks) -> list[StreamChunk]:
    return [c async for c in chunks]


def _reply_factory(reply: Reply):
    async def make_reply() -> Reply:
        return reply

    return make_reply


class TestSplitWords:
    def test_join_restores_text(self):
        text = "Hello  there, **bold** text"
        assert "".join(split_words(text)) == text

    def test_leading_space_after_first(self):
        assert split_words("a b c") == ["a", " b", " c"]

    def test_empty(self):
        assert split_words("") == []


class TestEmitterOrdering:
    @pytest.mark.asyncio
    async def test_twelve_word_reply(self):
        chunks = await _collect(StreamEmitter(delay=0), _reply_factory(Reply(text=TWELVE_WORDS)))
        types = [c.type for c in chunks]
        assert types == [ChunkType.METADATA] + [ChunkType.CONTENT] * 12 + [ChunkType.DONE]
        words = [c.payload["content"].strip() for c in chunks if c.type is ChunkType.CONTENT]
        assert words == TWELVE_WORDS.split()

    @pytest.mark.asyncio
    async def test_delay_between_words(self):
        sleeps: list[float] = []

        async def fake_sleep(seconds: float) -> None:
            sleeps.append(seconds)

        await _collect(StreamEmitter(delay=0.05, sleep=fake_sleep), _reply_factory(Reply(text="a b c")))
        assert sleeps == [0.05, 0.05]

    @pytest.mark.asyncio
    async def test_token_stream_passthrough(self):
        async def tokens():
            for token in ["Hel", "lo", "", " there"]:
                yield token

        chunks = await _collect(StreamEmitter(delay=0), _reply_factory(Reply(tokens=tokens())))
        contents = [c.payload["content"] for c in chunks if c.type is ChunkType.CONTENT]
        assert contents == ["Hel", "lo", " there"]
        assert chunks[-1].type is ChunkType.DONE

    @pytest.mark.asyncio
    async def test_metadata_carries_reply_fields(self):
        node = TreatmentNode(id=5, t_name="HIFU", name="HIFU (T)")
        reply = Reply(text="x", intent=IntentLabel.COST_INQUIRY, treatments_to_show=[node], quote_cta="HIFU")
        chunks = await _collect(StreamEmitter(delay=0), _reply_factory(reply))
        meta = chunks[0].to_dict()
        assert meta["type"] == "metadata"
        assert meta["intent"] == "cost_inquiry"
        assert meta["treatments"][0]["t_name"] == "HIFU"
        assert meta["quote_cta"] == "HIFU"
        assert meta["booking_cta"] is False

    @pytest.mark.asyncio
    async def test_empty_reply_is_metadata_then_done(self):
        chunks = await _collect(StreamEmitter(delay=0), _reply_factory(Reply(text="")))
        assert [c.type for c in chunks] == [ChunkType.METADATA, ChunkType.DONE]


class TestEmitterErrors:
    @pytest.mark.asyncio
    async def test_failure_before_metadata(self):
        async def make_reply():
            raise RuntimeError("graph failed")

        chunks = await _collect(StreamEmitter(delay=0), make_reply)
        assert [c.type for c in chunks] == [ChunkType.METADATA, ChunkType.ERROR]
        assert chunks[0].payload["intent"] == "error"
        assert chunks[1].payload["message"] == STREAM_ERROR_REPLY

    @pytest.mark.asyncio
    async def test_failure_mid_stream_ends_with_single_error(self):
        async def tokens():
            yield "partial"
            raise RuntimeError("provider dropped")

        chunks = await _collect(StreamEmitter(delay=0), _reply_factory(Reply(tokens=tokens())))
        assert [c.type for c in chunks] == [ChunkType.METADATA, ChunkType.CONTENT, ChunkType.ERROR]
        assert sum(1 for c in chunks if c.is_terminal) == 1


class TestCancellation:
    @pytest.mark.asyncio
    async def test_cancel_before_start_yields_nothing(self):
        cancel = CancellationToken()
        cancel.cancel()
        chunks = await _collect(StreamEmitter(delay=0), _reply_factory(Reply(text=TWELVE_WORDS)), cancel)
        assert chunks == []

    @pytest.mark.asyncio
    async def test_cancel_mid_stream_stops_silently(self):
        cancel = CancellationToken()
        received = []

        async def slow_sleep(_seconds: float) -> None:
            await asyncio.sleep(0)

        emitter = StreamEmitter(delay=0.01, sleep=slow_sleep)
        async for chunk in emitter.emit(_reply_factory(Reply(text=TWELVE_WORDS)), cancel):
            received.append(chunk)
            if len(received) == 3:
                cancel.cancel()

        assert len(received) == 3
        assert not any(c.is_terminal for c in received)

    @pytest.mark.asyncio
    async def test_consumer_close_cancels_producer(self):
        gate = asyncio.Event()
        closed = []

        async def never_ending():
            try:
                yield "first"
                await gate.wait()
                yield "never"
            finally:
                closed.append(True)

        emitter = StreamEmitter(delay=0)
        async with aclosing(emitter.emit(_reply_factory(Reply(tokens=never_ending())))) as chunks:
            async for chunk in chunks:
                if chunk.type is ChunkType.CONTENT:
                    break
        assert closed == [True]


class TestChannel:
    @pytest.mark.asyncio
    async def test_close_ends_receive(self):
        channel = StreamChannel(capacity=4)
        await channel.send(StreamChunk(ChunkType.DONE))
        channel.close()
        items = [c async for c in channel.receive(CancellationToken())]
        assert [c.type for c in items] == [ChunkType.DONE]

    @pytest.mark.asyncio
    async def test_terminal_chunk_ends_receive_without_close(self):
        channel = StreamChannel(capacity=4)
        await channel.send(StreamChunk(ChunkType.CONTENT, {"content": "hi"}))
        await channel.send(StreamChunk(ChunkType.ERROR, {"message": "boom"}))
        items = await asyncio.wait_for(
            _drain(channel.receive(CancellationToken())), timeout=2,
        )
        assert [c.type for c in items] == [ChunkType.CONTENT, ChunkType.ERROR]


class TestLongReplies:
    @pytest.mark.asyncio
    @pytest.mark.parametrize("word_count", [CHANNEL_CAPACITY - 2, CHANNEL_CAPACITY, CHANNEL_CAPACITY * 3])
    async def test_reply_longer_than_channel_terminates(self, word_count):
        text = " ".join(f"w{i}" for i in range(word_count))
        chunks = await asyncio.wait_for(
            _collect(StreamEmitter(delay=0), _reply_factory(Reply(text=text))), timeout=2,
        )
        assert chunks[0].type is ChunkType.METADATA
        assert chunks[-1].type is ChunkType.DONE
        assert len(chunks) == word_count + 2
        assert "".join(c.payload["content"] for c in chunks[1:-1]) == text

    @pytest.mark.asyncio
    async def test_long_token_stream_terminates(self):
        async def tokens():
            for i in range(CHANNEL_CAPACITY * 2):
                yield f"t{i} "

        reply = Reply(tokens=tokens())
        chunks = await asyncio.wait_for(_collect(StreamEmitter(delay=0), _reply_factory(reply)), timeout=2)
        assert sum(1 for c in chunks if c.type is ChunkType.CONTENT) == CHANNEL_CAPACITY * 2
        assert chunks[-1].type is ChunkType.DONE

    def test_metadata_chunk_without_treatments(self):
        chunk = metadata_chunk(Reply(text="x"))
        assert chunk.payload["treatments"] is None
