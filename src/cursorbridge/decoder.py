"""Incremental decoding of the vendor's streamed StreamChat response."""

import codecs
import gzip
import json
import logging
import zlib
from typing import Any, Dict, List, Optional

from . import wire
from .errors import StreamProtocolError

logger = logging.getLogger(__name__)

DEFAULT_MAX_FRAME_SIZE = 4 * 1024 * 1024

# StreamChatResponse field carrying the generated text.
F_TEXT = 1


class StreamDecoder:
    """
    Decoding session for one response stream.

    Raw chunks arrive in arbitrary boundaries. The decoder keeps the
    unconsumed tail of the buffer (an incomplete envelope) and, inside the
    UTF-8 decoder, any incomplete multi-byte sequence, so every fragment it
    returns holds only complete characters. Concatenating all fragments from
    `feed` plus `finish` gives the full text in arrival order.

    Frames that cannot be parsed are skipped and recorded as
    `StreamProtocolError`; collect them with `pop_errors`.
    """

    def __init__(self, max_frame_size: int = DEFAULT_MAX_FRAME_SIZE):
        self.max_frame_size = max_frame_size
        self.trailer: Optional[Dict[str, Any]] = None
        self.frames = 0
        self._buffer = bytearray()
        self._text = codecs.getincrementaldecoder("utf-8")("strict")
        self._errors: List[StreamProtocolError] = []
        self._finished = False

    @property
    def buffered(self) -> int:
        """Number of raw bytes waiting for the rest of their frame."""
        return len(self._buffer)

    @property
    def end_stream_error(self) -> Optional[Any]:
        if self.trailer:
            return self.trailer.get("error")
        return None

    def pop_errors(self) -> List[StreamProtocolError]:
        errors, self._errors = self._errors, []
        return errors

    def feed(self, chunk: bytes) -> List[str]:
        """Consume one raw chunk and return the text fragments it completes."""
        if self._finished:
            raise RuntimeError("feed() called after finish()")

        self._buffer += chunk
        fragments = []

        while len(self._buffer) >= wire.ENVELOPE_HEADER_SIZE:
            flags, length = wire.unpack_envelope_header(self._buffer)
            if flags & ~wire.KNOWN_FLAGS or length > self.max_frame_size:
                self._errors.append(
                    StreamProtocolError(
                        f"unrecognized frame header (flags=0x{flags:02x}, length={length}), "
                        f"dropping {len(self._buffer)} bytes"
                    )
                )
                self._buffer.clear()
                break

            end = wire.ENVELOPE_HEADER_SIZE + length
            if len(self._buffer) < end:
                break

            payload = bytes(self._buffer[wire.ENVELOPE_HEADER_SIZE : end])
            del self._buffer[:end]
            self.frames += 1

            try:
                text = self._read_frame(flags, payload)
            except StreamProtocolError as e:
                self._errors.append(e)
                continue
            if text:
                fragments.append(text)

        return fragments

    def finish(self) -> str:
        """
        Flush the session. A truncated trailing frame or incomplete trailing
        character is discarded and recorded as an error.
        """
        if self._finished:
            return ""
        self._finished = True

        if self._buffer:
            self._errors.append(
                StreamProtocolError(f"stream ended inside a frame, {len(self._buffer)} bytes discarded")
            )
            self._buffer.clear()

        try:
            return self._text.decode(b"", final=True)
        except UnicodeDecodeError:
            self._errors.append(StreamProtocolError("stream ended inside a UTF-8 sequence"))
            self._text.reset()
            return ""

    def _read_frame(self, flags: int, payload: bytes) -> str:
        if flags & wire.FLAG_COMPRESSED:
            try:
                payload = gzip.decompress(payload)
            except (OSError, EOFError, zlib.error) as e:
                raise StreamProtocolError(f"cannot decompress frame: {str(e)}") from e

        if flags & wire.FLAG_END_STREAM:
            self._read_trailer(payload)
            return ""

        try:
            text_bytes = b"".join(
                value
                for number, wire_type, value in wire.iter_fields(payload)
                if number == F_TEXT and wire_type == wire.LENGTH_DELIMITED
            )
        except ValueError as e:
            raise StreamProtocolError(f"malformed message frame: {str(e)}") from e

        try:
            return self._text.decode(text_bytes)
        except UnicodeDecodeError as e:
            self._text.reset()
            raise StreamProtocolError(f"invalid UTF-8 in frame: {e.reason}") from e

    def _read_trailer(self, payload: bytes) -> None:
        if not payload:
            self.trailer = {}
            return
        try:
            trailer = json.loads(payload)
        except (UnicodeDecodeError, json.JSONDecodeError) as e:
            raise StreamProtocolError(f"malformed end-of-stream trailer: {str(e)}") from e
        self.trailer = trailer if isinstance(trailer, dict) else {}
        logger.debug(f"End of stream trailer: {self.trailer}")
