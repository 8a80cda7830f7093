"""Data models and schemas for the Cursor bridge."""

from typing import Dict, List, Any, Literal, Optional, Union
from pydantic import BaseModel, Field, field_validator


class Message(BaseModel):
    """Chat message model."""
    role: Literal["system", "user", "assistant"]
    content: Union[str, List[Dict[str, Any]]]
    name: Optional[str] = None

    @field_validator("content")
    @classmethod
    def flatten_content_parts(cls, value):
        """Collapse OpenAI content-part lists into their text."""
        if isinstance(value, str):
            return value
        return "".join(
            part.get("text", "") for part in value if part.get("type") == "text"
        )


class ChatCompletionRequest(BaseModel):
    """Request model for chat completions."""
    model: str
    messages: List[Message] = Field(min_length=1)
    stream: Optional[bool] = False
    temperature: Optional[float] = None
    top_p: Optional[float] = None
    max_tokens: Optional[int] = None
    user: Optional[str] = None


class Delta(BaseModel):
    """Delta model for streaming responses."""
    content: str


class ChunkChoice(BaseModel):
    index: int = 0
    delta: Delta


class ChatCompletionChunk(BaseModel):
    """One streamed chat.completion.chunk event."""
    id: str
    object: Literal["chat.completion.chunk"] = "chat.completion.chunk"
    created: int
    model: str
    choices: List[ChunkChoice]


class AssistantMessage(BaseModel):
    role: Literal["assistant"] = "assistant"
    content: str


class Choice(BaseModel):
    """Choice model for chat completions."""
    index: int = 0
    message: AssistantMessage
    finish_reason: str = "stop"


class Usage(BaseModel):
    prompt_tokens: int = 0
    completion_tokens: int = 0
    total_tokens: int = 0


class ChatCompletionResponse(BaseModel):
    """Response model for chat completions."""
    id: str
    object: Literal["chat.completion"] = "chat.completion"
    created: int
    model: str
    choices: List[Choice]
    usage: Usage = Field(default_factory=Usage)


class ErrorResponse(BaseModel):
    error: str
