"""Encoding of OpenAI-style conversations into the vendor's StreamChat request."""

import logging
import uuid
from dataclasses import dataclass, field
from typing import Any, Callable, List, Mapping, Sequence, Tuple

from . import wire
from .errors import EncodingError

logger = logging.getLogger(__name__)

ROLE_CODES = {"user": 1, "assistant": 2, "system": 3}
ROLE_NAMES = {code: name for name, code in ROLE_CODES.items()}

# ChatMessage field numbers.
F_MESSAGES = 2
F_INSTRUCTIONS = 4
F_PROJECT_PATH = 5
F_MODEL = 7
F_REQUEST_ID = 9
F_SUMMARY = 11
F_CONVERSATION_ID = 15

# ChatMessage.UserMessage field numbers.
F_MESSAGE_CONTENT = 1
F_MESSAGE_ROLE = 2
F_MESSAGE_ID = 13

# ChatMessage.Instructions / ChatMessage.Model field numbers.
F_INSTRUCTION_TEXT = 1
F_MODEL_NAME = 1
F_MODEL_EMPTY = 4


def _role_and_content(message: Any) -> Tuple[Any, Any]:
    if isinstance(message, Mapping):
        return message.get("role"), message.get("content")
    return getattr(message, "role", None), getattr(message, "content", None)


def _utf8(value: str, what: str) -> bytes:
    try:
        return value.encode("utf-8")
    except UnicodeEncodeError as e:
        raise EncodingError(f"{what} is not valid unicode: {e.reason}") from e


class MessageEncoder:
    """
    Serializes a conversation and a model name into one Connect envelope
    carrying a ChatMessage protobuf.

    Every string field is written even when empty, so no two distinct
    conversations produce the same bytes (modulo the random identifiers).
    """

    def __init__(
        self,
        instruction: str = "",
        project_path: str = "/path/to/project",
        id_factory: Callable[[], str] = lambda: str(uuid.uuid4()),
    ):
        self.instruction = instruction
        self.project_path = project_path
        self.id_factory = id_factory

    def _encode_message(self, index: int, message: Any) -> bytes:
        role, content = _role_and_content(message)
        if role not in ROLE_CODES:
            raise EncodingError(f"messages[{index}] has unsupported role {role!r}")
        if not isinstance(content, str):
            raise EncodingError(f"messages[{index}] content must be a string")

        body = (
            wire.encode_bytes_field(F_MESSAGE_CONTENT, _utf8(content, f"messages[{index}] content"))
            + wire.encode_varint_field(F_MESSAGE_ROLE, ROLE_CODES[role])
            + wire.encode_string_field(F_MESSAGE_ID, self.id_factory())
        )
        return wire.encode_bytes_field(F_MESSAGES, body)

    def encode_message(self, messages: Sequence[Any], model: str) -> bytes:
        """Return the bare ChatMessage protobuf (no envelope)."""
        if not messages:
            raise EncodingError("messages must be a non-empty array")
        if not isinstance(model, str):
            raise EncodingError("model must be a string")

        parts = [self._encode_message(i, message) for i, message in enumerate(messages)]

        instructions = wire.encode_bytes_field(
            F_INSTRUCTION_TEXT, _utf8(self.instruction, "instruction")
        )
        model_body = wire.encode_bytes_field(
            F_MODEL_NAME, _utf8(model, "model")
        ) + wire.encode_string_field(F_MODEL_EMPTY, "")

        parts.append(wire.encode_bytes_field(F_INSTRUCTIONS, instructions))
        parts.append(wire.encode_bytes_field(F_PROJECT_PATH, _utf8(self.project_path, "project path")))
        parts.append(wire.encode_bytes_field(F_MODEL, model_body))
        parts.append(wire.encode_string_field(F_REQUEST_ID, self.id_factory()))
        parts.append(wire.encode_string_field(F_SUMMARY, ""))
        parts.append(wire.encode_string_field(F_CONVERSATION_ID, self.id_factory()))
        return b"".join(parts)

    def encode(self, messages: Sequence[Any], model: str) -> bytes:
        """
        Encode `messages` for `model` into a StreamChat request body.

        Args:
            messages: Ordered conversation; mappings or objects with role/content
            model: Vendor model identifier

        Returns:
            The Connect-enveloped request body

        Raises:
            EncodingError: if the conversation is empty, a role is unknown,
                content is not a string, or text is not encodable as UTF-8
        """
        payload = self.encode_message(messages, model)
        try:
            body = wire.pack_envelope(payload)
        except ValueError as e:
            raise EncodingError(str(e)) from e
        logger.debug(f"Encoded {len(messages)} messages for {model} into {len(body)} bytes")
        return body


def encode(messages: Sequence[Any], model: str) -> bytes:
    return MessageEncoder().encode(messages, model)


@dataclass
class DecodedRequest:
    """Readable view of an encoded StreamChat request."""

    model: str = ""
    messages: List[dict] = field(default_factory=list)
    instruction: str = ""
    project_path: str = ""
    request_id: str = ""
    conversation_id: str = ""
    message_ids: List[str] = field(default_factory=list)


def _decode_user_message(data: bytes) -> Tuple[dict, str]:
    content, role, message_id = "", None, ""
    for number, _, value in wire.iter_fields(data):
        if number == F_MESSAGE_CONTENT:
            content = value.decode("utf-8")
        elif number == F_MESSAGE_ROLE:
            role = ROLE_NAMES.get(value)
        elif number == F_MESSAGE_ID:
            message_id = value.decode("utf-8")
    return {"role": role, "content": content}, message_id


def decode_request(body: bytes) -> DecodedRequest:
    """
    Decode a request produced by `MessageEncoder.encode`.

    Used for debugging and tests.

    Raises:
        ValueError: if the body is not a single well-formed envelope
    """
    if len(body) < wire.ENVELOPE_HEADER_SIZE:
        raise ValueError("body shorter than an envelope header")
    flags, length = wire.unpack_envelope_header(body)
    payload = body[wire.ENVELOPE_HEADER_SIZE :]
    if flags != 0 or length != len(payload):
        raise ValueError("body is not a single uncompressed envelope")

    decoded = DecodedRequest()
    for number, _, value in wire.iter_fields(payload):
        if number == F_MESSAGES:
            message, message_id = _decode_user_message(value)
            decoded.messages.append(message)
            decoded.message_ids.append(message_id)
        elif number == F_INSTRUCTIONS:
            for sub, _, text in wire.iter_fields(value):
                if sub == F_INSTRUCTION_TEXT:
                    decoded.instruction = text.decode("utf-8")
        elif number == F_PROJECT_PATH:
            decoded.project_path = value.decode("utf-8")
        elif number == F_MODEL:
            for sub, _, name in wire.iter_fields(value):
                if sub == F_MODEL_NAME:
                    decoded.model = name.decode("utf-8")
        elif number == F_REQUEST_ID:
            decoded.request_id = value.decode("utf-8")
        elif number == F_CONVERSATION_ID:
            decoded.conversation_id = value.decode("utf-8")
    return decoded
