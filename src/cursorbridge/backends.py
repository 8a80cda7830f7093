"""Transport to the vendor's AiService endpoints."""

import asyncio
import logging
import uuid
from typing import AsyncGenerator, Dict, Optional, Set

import httpx

from .config import Settings
from .errors import TransportError, TransportTimeoutError

logger = logging.getLogger(__name__)

FEATURE_CHECK_PAYLOAD = b"cppExistingUserMarketingPopup"


def _common_headers(settings: Settings, credential: str, checksum: str) -> Dict[str, str]:
    return {
        "authorization": f"Bearer {credential}",
        "connect-protocol-version": "1",
        "x-cursor-checksum": checksum,
        "x-cursor-client-version": settings.client_version,
        "x-cursor-timezone": settings.timezone,
        "x-ghost-mode": "true" if settings.ghost_mode else "false",
    }


def build_chat_headers(settings: Settings, credential: str, checksum: str) -> Dict[str, str]:
    """Headers for StreamChat. Trace and request ids are fresh per call."""
    headers = _common_headers(settings, credential, checksum)
    headers.update(
        {
            "content-type": "application/connect+proto",
            "connect-accept-encoding": "gzip,br",
            "user-agent": "connect-es/1.4.0",
            "x-amzn-trace-id": f"Root={uuid.uuid4()}",
            "x-request-id": str(uuid.uuid4()),
        }
    )
    return headers


def build_feature_check_headers(settings: Settings, credential: str, checksum: str) -> Dict[str, str]:
    headers = _common_headers(settings, credential, checksum)
    headers.update(
        {
            "accept-encoding": "gzip",
            "content-type": "application/proto",
            "user-agent": "connect-es/1.6.1",
            "x-session-id": str(uuid.uuid4()),
        }
    )
    return headers


class VendorGateway:
    """
    Performs the outbound calls for one process.

    A fresh `httpx.AsyncClient` is opened per call; `transport` lets tests
    substitute an `httpx.MockTransport`.
    """

    def __init__(self, settings: Settings, transport: Optional[httpx.AsyncBaseTransport] = None):
        self.settings = settings
        self.transport = transport
        self._background: Set[asyncio.Task] = set()

    def _client(self, timeout: httpx.Timeout) -> httpx.AsyncClient:
        return httpx.AsyncClient(transport=self.transport, timeout=timeout)

    async def _post_feature_check(self, credential: str, checksum: str) -> int:
        headers = build_feature_check_headers(self.settings, credential, checksum)
        async with self._client(httpx.Timeout(self.settings.feature_check_timeout)) as client:
            response = await client.post(
                self.settings.feature_check_url,
                content=FEATURE_CHECK_PAYLOAD,
                headers=headers,
            )
            return response.status_code

    async def check_feature_status(self, credential: str, checksum: str) -> None:
        """Best-effort CheckFeatureStatus call. Never raises."""
        try:
            status = await asyncio.wait_for(
                self._post_feature_check(credential, checksum),
                timeout=self.settings.feature_check_timeout,
            )
            logger.debug(f"CheckFeatureStatus returned {status}")
        except Exception as e:
            logger.warning(f"CheckFeatureStatus error: {e!r}")

    def schedule_feature_check(self, credential: str, checksum: str) -> Optional[asyncio.Task]:
        """Fire the feature check in the background; its result is ignored."""
        if not self.settings.feature_check:
            return None
        task = asyncio.create_task(self.check_feature_status(credential, checksum))
        self._background.add(task)
        task.add_done_callback(self._background.discard)
        return task

    async def stream_chat(
        self, body: bytes, credential: str, checksum: str
    ) -> AsyncGenerator[bytes, None]:
        """
        POST `body` to StreamChat and yield the raw response bytes.

        Raises:
            TransportTimeoutError: connect timeout (phase "connect") or read
                inactivity (phase "read")
            TransportError: non-200 status or any other transport failure
        """
        settings = self.settings
        timeout = httpx.Timeout(settings.read_timeout, connect=settings.connect_timeout)
        headers = build_chat_headers(settings, credential, checksum)
        logger.info(f"Calling StreamChat at {settings.chat_url} ({len(body)} bytes)")

        try:
            async with self._client(timeout) as client:
                async with client.stream(
                    "POST", settings.chat_url, content=body, headers=headers
                ) as response:
                    if response.status_code != 200:
                        detail = await response.aread()
                        raise TransportError(
                            f"StreamChat returned {response.status_code}: {detail[:500]!r}",
                            status=response.status_code,
                        )
                    async for chunk in response.aiter_bytes():
                        yield chunk
        except (httpx.ConnectTimeout, httpx.PoolTimeout) as e:
            raise TransportTimeoutError("connect", str(e) or "connect timeout") from e
        except httpx.TimeoutException as e:
            raise TransportTimeoutError("read", str(e) or "read timeout") from e
        except httpx.HTTPError as e:
            raise TransportError(f"StreamChat failed: {e!r}") from e
