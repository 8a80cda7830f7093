"""
Tests for streaming chat completion functionality.
"""
import asyncio
import json

import httpx
import pytest
from grappa import should

from cursorbridge.api import _watched
from cursorbridge.assembler import DONE_EVENT, ResponseAssembler
from cursorbridge.decoder import StreamDecoder
from cursorbridge.errors import UpstreamError
from cursorbridge.streaming import CancellationToken, collect_text, decode_stream
from .conftest import MOCK_REPLY_PARTS, end_frame, sse_events, text_frame

CHAT_REQUEST = {
    "model": "gpt-4",
    "messages": [{"role": "user", "content": "hi"}],
    "stream": True,
}


async def chunks_of(*chunks):
    for chunk in chunks:
        yield chunk


@pytest.mark.asyncio
async def test_decode_stream_in_arrival_order():
    stream = b"".join(text_frame(str(i)) for i in range(10)) + end_frame()
    pieces = [stream[i : i + 4] for i in range(0, len(stream), 4)]
    text = await collect_text(decode_stream(chunks_of(*pieces), StreamDecoder()))
    text | should.equal("0123456789")


@pytest.mark.asyncio
async def test_decode_stream_skips_malformed_frames():
    broken = b"\x00\x00\x00\x00\x02\x0a\x05"
    text = await collect_text(
        decode_stream(chunks_of(text_frame("a"), broken, text_frame("b")), StreamDecoder())
    )
    text | should.equal("ab")


@pytest.mark.asyncio
async def test_decode_stream_raises_on_error_trailer():
    fragments = decode_stream(
        chunks_of(text_frame("a"), end_frame({"error": {"message": "quota"}})),
        StreamDecoder(),
    )
    with pytest.raises(UpstreamError):
        await collect_text(fragments)


@pytest.mark.asyncio
async def test_cancellation_aborts_stalled_read():
    """Cancelling the token ends iteration while the upstream is still waiting."""
    closed = asyncio.Event()

    async def stalled():
        try:
            yield text_frame("first")
            await asyncio.sleep(3600)
            yield text_frame("never")
        finally:
            closed.set()

    token = CancellationToken()
    received = []

    async def consume():
        async for fragment in decode_stream(stalled(), StreamDecoder(), token):
            received.append(fragment)

    task = asyncio.ensure_future(consume())
    await asyncio.sleep(0.05)
    task.done() | should.be.false

    token.cancel("client disconnected")
    await asyncio.wait_for(task, timeout=5)
    received | should.equal(["first"])
    closed.is_set() | should.be.true
    token.reason | should.equal("client disconnected")


@pytest.mark.asyncio
async def test_cancelled_token_stops_before_reading():
    token = CancellationToken()
    token.cancel()
    text = await collect_text(decode_stream(chunks_of(text_frame("x")), StreamDecoder(), token))
    text | should.equal("")


class DisconnectingRequest:
    """Request double whose client goes away after `polls` checks."""

    def __init__(self, polls=None):
        self.polls = polls
        self.checks = 0

    async def is_disconnected(self):
        self.checks += 1
        return self.polls is not None and self.checks > self.polls


@pytest.mark.asyncio
async def test_client_disconnect_closes_upstream():
    """A departed client cancels the pending upstream read and closes the body."""
    closed = asyncio.Event()

    async def stalled():
        try:
            yield text_frame("first")
            await asyncio.sleep(3600)
            yield text_frame("never")
        finally:
            closed.set()

    token = CancellationToken()
    request = DisconnectingRequest(polls=1)
    events = ResponseAssembler().to_stream_events(
        decode_stream(stalled(), StreamDecoder(), token), "gpt-4", "chatcmpl-gone"
    )

    async def consume():
        return [event async for event in _watched(request, token, events, 0.01)]

    received = await asyncio.wait_for(consume(), timeout=5)

    closed.is_set() | should.be.true
    token.reason | should.equal("client disconnected")
    received | should.have.length(2)
    json.loads(received[0][len(b"data: "):])["choices"][0]["delta"]["content"] | should.equal(
        "first"
    )
    received[-1] | should.equal(DONE_EVENT)


@pytest.mark.asyncio
async def test_watcher_stops_when_response_finishes():
    token = CancellationToken()
    request = DisconnectingRequest()
    events = ResponseAssembler().to_stream_events(
        decode_stream(chunks_of(text_frame("done"), end_frame()), StreamDecoder(), token),
        "gpt-4",
        "chatcmpl-ok",
    )

    received = [event async for event in _watched(request, token, events, 0.01)]

    received | should.have.length(2)
    token.reason | should.equal("response finished")


def test_chat_completion_streaming(test_client, vendor):
    """Streaming request yields data events followed by exactly one [DONE]."""
    response = test_client.post(
        "/v1/chat/completions",
        json=CHAT_REQUEST,
        headers={"Authorization": "Bearer test-key"},
    )

    response.status_code | should.equal(200)
    response.headers["content-type"].split(";")[0] | should.equal("text/event-stream")
    response.headers["cache-control"] | should.equal("no-cache")

    events = sse_events(response)
    events[-1] | should.equal("[DONE]")
    events.count("[DONE]") | should.equal(1)

    chunks = [json.loads(event) for event in events[:-1]]
    chunks | should.have.length(len(MOCK_REPLY_PARTS))
    for chunk in chunks:
        chunk | should.have.keys("id", "object", "created", "model", "choices")
        chunk["object"] | should.equal("chat.completion.chunk")
        chunk["model"] | should.equal("gpt-4")
        chunk["choices"][0]["index"] | should.equal(0)
    len({chunk["id"] for chunk in chunks}) | should.equal(1)
    "".join(c["choices"][0]["delta"]["content"] for c in chunks) | should.equal(
        "".join(MOCK_REPLY_PARTS)
    )


def test_streaming_read_timeout(test_client, vendor):
    """A read timeout mid-stream ends with an error event and [DONE]."""
    vendor.chunks = [text_frame("partial")]
    vendor.stream_error = httpx.ReadTimeout("no data")

    response = test_client.post(
        "/v1/chat/completions",
        json=CHAT_REQUEST,
        headers={"Authorization": "Bearer test-key"},
    )

    response.status_code | should.equal(200)
    events = sse_events(response)
    events | should.have.length(3)
    json.loads(events[0])["choices"][0]["delta"]["content"] | should.equal("partial")
    json.loads(events[1]) | should.equal({"error": "Server response timeout"})
    events[2] | should.equal("[DONE]")


def test_streaming_connect_timeout(test_client, vendor):
    vendor.chat_error = httpx.ConnectTimeout("connect")

    response = test_client.post(
        "/v1/chat/completions",
        json=CHAT_REQUEST,
        headers={"Authorization": "Bearer test-key"},
    )

    events = sse_events(response)
    events | should.equal(['{"error": "Request timeout"}', "[DONE]"])


def test_streaming_upstream_failure(test_client, vendor):
    vendor.status_code = 503

    response = test_client.post(
        "/v1/chat/completions",
        json=CHAT_REQUEST,
        headers={"Authorization": "Bearer test-key"},
    )

    response.status_code | should.equal(200)
    events = sse_events(response)
    events | should.equal(['{"error": "Stream processing error"}', "[DONE]"])


def test_streaming_rejected_model(test_client, vendor):
    """o1 models cannot stream; rejected before any upstream call."""
    response = test_client.post(
        "/v1/chat/completions",
        json={"model": "o1-preview", "stream": True},
        headers={"Authorization": "Bearer test-key"},
    )

    response.status_code | should.equal(400)
    response.json() | should.equal({"error": "Model not supported stream"})
    vendor.requests | should.equal([])
