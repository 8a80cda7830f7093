import gzip
import json

import httpx
import pytest
from fastapi.testclient import TestClient

from cursorbridge import wire
from cursorbridge.api import create_app
from cursorbridge.config import Settings

CHAT_PATH = "/aiserver.v1.AiService/StreamChat"
FEATURE_PATH = "/aiserver.v1.AiService/CheckFeatureStatus"

# A vendor answer: echoed prompt, marker, filler artifact, then the reply.
MOCK_REPLY_PARTS = ["user: hi<|END_USER|>", "\nA", "Hello, ", "wörld ", "👋"]
MOCK_REPLY_TEXT = "Hello, wörld 👋"


def text_frame(text, compressed=False, extra_fields=b""):
    """Build one StreamChatResponse envelope carrying `text` (str or bytes)."""
    data = text.encode("utf-8") if isinstance(text, str) else text
    payload = wire.encode_bytes_field(1, data) + extra_fields
    if compressed:
        return wire.pack_envelope(gzip.compress(payload), wire.FLAG_COMPRESSED)
    return wire.pack_envelope(payload)


def end_frame(trailer=None):
    return wire.pack_envelope(json.dumps(trailer or {}).encode(), wire.FLAG_END_STREAM)


def vendor_stream(parts):
    return b"".join(text_frame(part) for part in parts) + end_frame()


class MockVendor:
    """Stand-in for the vendor service, mounted through httpx.MockTransport."""

    def __init__(self):
        self.requests = []
        self.chunks = [vendor_stream(MOCK_REPLY_PARTS)]
        self.status_code = 200
        self.chat_error = None
        self.stream_error = None
        self.feature_error = None

    @property
    def chat_requests(self):
        return [r for r in self.requests if r.url.path == CHAT_PATH]

    @property
    def feature_requests(self):
        return [r for r in self.requests if r.url.path == FEATURE_PATH]

    async def _body(self):
        for chunk in self.chunks:
            yield chunk
        if self.stream_error is not None:
            raise self.stream_error

    def handler(self, request):
        self.requests.append(request)
        if request.url.path == FEATURE_PATH:
            if self.feature_error is not None:
                raise self.feature_error
            return httpx.Response(200, content=b"")
        if self.chat_error is not None:
            raise self.chat_error
        if self.status_code != 200:
            return httpx.Response(self.status_code, content=b'{"error": "denied"}')
        return httpx.Response(200, content=self._body())

    @property
    def transport(self):
        return httpx.MockTransport(self.handler)


@pytest.fixture
def vendor():
    return MockVendor()


@pytest.fixture
def settings():
    return Settings(feature_check=False, disconnect_poll_interval=0.01)


@pytest.fixture
def test_client(settings, vendor):
    """Test client whose upstream is the mock vendor."""
    app = create_app(settings, transport=vendor.transport)
    with TestClient(app) as client:
        yield client


def sse_events(response):
    """Non-empty `data:` payloads of a streamed response."""
    return [line[len("data: "):] for line in response.iter_lines() if line.strip()]
