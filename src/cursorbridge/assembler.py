"""Rendering of decoded text as OpenAI chat completions."""

import json
import logging
import re
import time
import uuid
from typing import AsyncGenerator, AsyncIterable, Callable

from .errors import TransportTimeoutError
from .models import (
    AssistantMessage,
    ChatCompletionChunk,
    ChatCompletionResponse,
    Choice,
    ChunkChoice,
    Delta,
    Usage,
)

logger = logging.getLogger(__name__)

END_USER_MARKER = "<|END_USER|>"
DONE_EVENT = b"data: [DONE]\n\n"

_ECHO_PATTERN = re.compile(r"^.*" + re.escape(END_USER_MARKER), re.DOTALL)
_LEADING_ARTIFACT = re.compile(r"^\n[a-zA-Z]?")


def new_response_id() -> str:
    return f"chatcmpl-{uuid.uuid4()}"


def strip_vendor_artifacts(text: str) -> str:
    """
    Remove the echoed prompt up to the last <|END_USER|> marker, then a
    leading newline with its optional filler letter, then outer whitespace.
    """
    text = _ECHO_PATTERN.sub("", text, count=1)
    text = _LEADING_ARTIFACT.sub("", text, count=1)
    return text.strip()


def sse_event(payload) -> bytes:
    return f"data: {json.dumps(payload, ensure_ascii=False)}\n\n".encode("utf-8")


class ResponseAssembler:
    """Turns decoded fragments into SSE events or one aggregated completion."""

    def __init__(self, clock: Callable[[], float] = time.time):
        self.clock = clock

    def chunk(self, text: str, model: str, response_id: str) -> ChatCompletionChunk:
        return ChatCompletionChunk(
            id=response_id,
            created=int(self.clock()),
            model=model,
            choices=[ChunkChoice(index=0, delta=Delta(content=text))],
        )

    async def to_stream_events(
        self, fragments: AsyncIterable[str], model: str, response_id: str
    ) -> AsyncGenerator[bytes, None]:
        """
        Yield one `data:` event per non-empty fragment, then `data: [DONE]`.

        A failure while reading fragments becomes one in-band error event
        before the terminal [DONE]. Cancellation is not caught.
        """
        count = 0
        try:
            async for text in fragments:
                if not text:
                    continue
                count += 1
                yield sse_event(self.chunk(text, model, response_id).model_dump())
        except TransportTimeoutError as e:
            logger.error(f"Stream timeout ({e.phase}) for {response_id}: {str(e)}")
            yield sse_event({"error": e.client_message})
        except Exception as e:
            logger.error(f"Stream error for {response_id}: {str(e)}")
            yield sse_event({"error": "Stream processing error"})

        logger.info(f"Finished stream {response_id} after {count} chunks")
        yield DONE_EVENT

    def to_completion(self, full_text: str, model: str) -> ChatCompletionResponse:
        """Build a chat.completion from the whole decoded text."""
        return ChatCompletionResponse(
            id=new_response_id(),
            created=int(self.clock()),
            model=model,
            choices=[
                Choice(
                    index=0,
                    message=AssistantMessage(content=strip_vendor_artifacts(full_text)),
                    finish_reason="stop",
                )
            ],
            usage=Usage(),
        )
