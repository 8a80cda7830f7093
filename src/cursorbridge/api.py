"""FastAPI application and routes for the Cursor bridge."""

import asyncio
import json
import logging
import time
from typing import Any, AsyncGenerator, Dict, Optional

import httpx
from fastapi import FastAPI, Request, Response
from fastapi.responses import StreamingResponse
from pydantic import ValidationError

from .assembler import ResponseAssembler, new_response_id
from .backends import VendorGateway
from .checksum import ChecksumGenerator, resolve_checksum, select_credential
from .config import Settings
from .decoder import StreamDecoder
from .encoder import MessageEncoder, decode_request
from .errors import (
    BridgeError,
    PayloadTooLargeError,
    TransportTimeoutError,
    UpstreamRejection,
)
from .models import ChatCompletionRequest, ErrorResponse
from .streaming import CancellationToken, collect_text, decode_stream, watch_disconnect

logger = logging.getLogger(__name__)
access_logger = logging.getLogger("cursorbridge.access")

INVALID_REQUEST = (
    "Invalid request. Messages should be a non-empty array and authorization is required"
)


def json_response(payload: Dict[str, Any], status_code: int = 200) -> Response:
    return Response(
        content=json.dumps(payload, ensure_ascii=False),
        status_code=status_code,
        media_type="application/json",
    )


def error_json(message: str, status_code: int) -> Response:
    return json_response(ErrorResponse(error=message).model_dump(), status_code)


def error_response(exc: BridgeError) -> Response:
    """Translate a bridge error into the `{"error": ...}` body."""
    if isinstance(exc, TransportTimeoutError):
        return error_json(exc.client_message, exc.status_code)
    return error_json(exc.message, exc.status_code)


async def read_body(request: Request, limit: int) -> bytes:
    """Read the request body, refusing anything larger than `limit` bytes."""
    declared = request.headers.get("content-length", "")
    if declared.isdigit() and int(declared) > limit:
        raise PayloadTooLargeError(f"declared body of {declared} bytes")

    body = bytearray()
    async for chunk in request.stream():
        body.extend(chunk)
        if len(body) > limit:
            raise PayloadTooLargeError(f"body exceeds {limit} bytes")
    return bytes(body)


def ensure_stream_supported(settings: Settings, model: Any, stream: Any) -> None:
    """Some models only answer non-streaming requests."""
    if not stream or not isinstance(model, str):
        return
    for prefix in settings.stream_unsupported_prefixes:
        if model.startswith(prefix):
            raise UpstreamRejection(f"{model} does not support streaming")


async def _watched(
    request: Request,
    token: CancellationToken,
    events: AsyncGenerator[bytes, None],
    interval: float,
) -> AsyncGenerator[bytes, None]:
    watcher = asyncio.create_task(watch_disconnect(request, token, interval))
    try:
        async for event in events:
            yield event
    finally:
        token.cancel("response finished")
        watcher.cancel()
        await asyncio.gather(watcher, return_exceptions=True)
        await events.aclose()


def create_app(
    settings: Optional[Settings] = None,
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> FastAPI:
    """
    Build the application. `settings` is read-only for the life of the app;
    `transport` replaces the network transport of the vendor client.
    """
    settings = settings or Settings()
    gateway = VendorGateway(settings, transport=transport)
    encoder = MessageEncoder(
        instruction=settings.instruction, project_path=settings.project_path
    )
    checksums = ChecksumGenerator()
    assembler = ResponseAssembler()

    app = FastAPI(title="Cursor Bridge")
    app.state.settings = settings
    app.state.gateway = gateway

    @app.middleware("http")
    async def log_requests(request: Request, call_next):
        started = time.perf_counter()
        response = await call_next(request)
        if settings.access_log:
            access_logger.info(
                "%s %s %s %s - %.3f ms",
                request.method,
                request.url.path,
                response.status_code,
                response.headers.get("content-length", "-"),
                (time.perf_counter() - started) * 1000,
            )
        return response

    @app.exception_handler(Exception)
    async def handle_unexpected(request: Request, exc: Exception) -> Response:
        logger.error(f"Error: {exc!r}")
        return error_json("Internal server error", 500)

    async def chat_completions(request: Request) -> Response:
        """
        OpenAI-compatible chat completions backed by StreamChat:
        - Rejects unsupported model/stream combinations before any upstream call
        - Streams SSE chunks when `stream` is true
        - Otherwise returns one aggregated chat.completion
        """
        try:
            raw = await read_body(request, settings.max_body_size)
        except PayloadTooLargeError as e:
            logger.info(f"Rejected request: {e.detail}")
            return error_response(e)

        try:
            request_data = json.loads(raw)
        except (json.JSONDecodeError, UnicodeDecodeError):
            return error_json(INVALID_REQUEST, 400)
        if not isinstance(request_data, dict):
            return error_json(INVALID_REQUEST, 400)

        try:
            ensure_stream_supported(
                settings, request_data.get("model"), request_data.get("stream")
            )
        except UpstreamRejection as e:
            logger.info(f"Rejected request: {e.detail}")
            return error_response(e)

        try:
            chat_request = ChatCompletionRequest.model_validate(request_data)
        except ValidationError as e:
            logger.info(f"Invalid request: {e.error_count()} validation errors")
            return error_json(INVALID_REQUEST, 400)

        model = chat_request.model
        try:
            credential = select_credential(request.headers.get("authorization"))
            body = encoder.encode(chat_request.messages, model)
            checksum = resolve_checksum(
                credential,
                request.headers.get("x-cursor-checksum"),
                settings.checksum,
                checksums,
            )
        except BridgeError as e:
            logger.info(f"Rejected request: {e.detail}")
            return error_response(e)

        if logger.isEnabledFor(logging.DEBUG):
            decoded = decode_request(body)
            logger.debug(
                f"StreamChat request {decoded.request_id}: model={decoded.model} "
                f"roles={[m['role'] for m in decoded.messages]}"
            )

        gateway.schedule_feature_check(credential, checksum)
        decoder = StreamDecoder(max_frame_size=settings.max_frame_size)

        if chat_request.stream:
            token = CancellationToken()
            fragments = decode_stream(
                gateway.stream_chat(body, credential, checksum), decoder, token
            )
            events = assembler.to_stream_events(fragments, model, new_response_id())
            return StreamingResponse(
                _watched(request, token, events, settings.disconnect_poll_interval),
                media_type="text/event-stream",
                headers={"Cache-Control": "no-cache", "Connection": "keep-alive"},
            )

        try:
            text = await collect_text(
                decode_stream(gateway.stream_chat(body, credential, checksum), decoder)
            )
        except TransportTimeoutError as e:
            logger.error(f"Non-stream timeout ({e.phase}): {e.detail}")
            return error_response(e)
        except BridgeError as e:
            logger.error(f"Non-stream error: {e.detail}")
            return error_json("Internal server error", 500)

        completion = assembler.to_completion(text, model)
        return json_response(completion.model_dump())

    app.add_api_route("/v1/chat/completions", chat_completions, methods=["POST"])
    app.add_api_route("/chat/completions", chat_completions, methods=["POST"])

    @app.get("/health")
    async def health_check():
        """Health check endpoint"""
        return {"status": "healthy"}

    return app
