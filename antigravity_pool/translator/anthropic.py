from __future__ import annotations

from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic import ValidationError as PydanticValidationError

from antigravity_pool.catalog import resolve_model
from antigravity_pool.chat_types import (
    ChatMessage,
    ChatRequest,
    ChatResponse,
    ContentBlock,
    ImageBlock,
    TextBlock,
    ToolChoice,
    ToolDefinition,
    ToolResultBlock,
    ToolUseBlock,
)
from antigravity_pool.errors import ValidationError

MAX_MESSAGES = 1000
MAX_TOOLS = 100
MAX_MODEL_NAME_LENGTH = 256
MAX_OUTPUT_TOKENS = 1_000_000
DEFAULT_MAX_TOKENS = 64000


class AnthropicTool(BaseModel):
    model_config = ConfigDict(extra="ignore")

    name: str = Field(min_length=1)
    description: str = ""
    input_schema: dict[str, Any] = Field(default_factory=dict)


class AnthropicMessage(BaseModel):
    model_config = ConfigDict(extra="ignore")

    role: Literal["user", "assistant"]
    content: str | list[dict[str, Any]]


class AnthropicMessagesRequest(BaseModel):
    model_config = ConfigDict(extra="ignore")

    model: str = Field(min_length=1, max_length=MAX_MODEL_NAME_LENGTH)
    messages: list[AnthropicMessage] = Field(min_length=1, max_length=MAX_MESSAGES)
    max_tokens: int = Field(default=DEFAULT_MAX_TOKENS, gt=0, le=MAX_OUTPUT_TOKENS)
    system: str | list[dict[str, Any]] | None = None
    tools: list[AnthropicTool] | None = Field(default=None, max_length=MAX_TOOLS)
    tool_choice: dict[str, Any] | None = None
    stream: bool = False
    temperature: float | None = Field(default=None, ge=0, le=2)
    top_p: float | None = Field(default=None, ge=0, le=1)
    stop_sequences: list[str] | None = None
    thinking: dict[str, Any] | None = None

    @field_validator("stream", mode="before")
    @classmethod
    def _strict_stream(cls, value: Any) -> Any:
        if value is not None and not isinstance(value, bool):
            raise ValueError("stream must be a boolean")
        return bool(value)


def parse_messages_request(body: Any) -> tuple[ChatRequest, bool]:
    """Validate an Anthropic Messages payload and convert it to a chat request."""
    try:
        payload = AnthropicMessagesRequest.model_validate(body)
    except PydanticValidationError as exc:
        raise ValidationError(_describe(exc)) from exc

    thinking = bool(payload.thinking and payload.thinking.get("type") == "enabled")
    request = ChatRequest(
        model=resolve_model(payload.model, thinking=thinking),
        messages=[
            ChatMessage(role=message.role, content=_content(message.content))
            for message in payload.messages
        ],
        max_tokens=payload.max_tokens,
        tools=[
            ToolDefinition(
                name=tool.name,
                description=tool.description,
                input_schema=tool.input_schema,
            )
            for tool in payload.tools
        ]
        if payload.tools
        else None,
        tool_choice=_tool_choice(payload.tool_choice),
        system=_system_text(payload.system),
        temperature=payload.temperature,
        top_p=payload.top_p,
        stop_sequences=payload.stop_sequences,
    )
    return request, payload.stream


def to_messages_response(response: ChatResponse) -> dict[str, Any]:
    return {
        "id": response.id,
        "type": "message",
        "role": "assistant",
        "model": response.model,
        "content": [_block_payload(block) for block in response.content],
        "stop_reason": response.stop_reason,
        "stop_sequence": None,
        "usage": {
            "input_tokens": response.usage.input_tokens,
            "output_tokens": response.usage.output_tokens,
        },
    }


def _content(content: str | list[dict[str, Any]]) -> str | list[ContentBlock]:
    if isinstance(content, str):
        return content
    blocks: list[ContentBlock] = []
    for index, raw in enumerate(content):
        block = _content_block(raw, index)
        if block is not None:
            blocks.append(block)
    return blocks


def _content_block(raw: dict[str, Any], index: int) -> ContentBlock | None:
    block_type = raw.get("type")
    if block_type == "text":
        return TextBlock(text=_require_str(raw, "text", index))
    if block_type == "image":
        source = raw.get("source")
        if not isinstance(source, dict) or source.get("type") != "base64":
            raise ValidationError(f"content[{index}]: only base64 image sources are supported")
        return ImageBlock(
            media_type=_require_str(source, "media_type", index),
            data=_require_str(source, "data", index),
        )
    if block_type == "tool_use":
        tool_input = raw.get("input")
        return ToolUseBlock(
            id=_require_str(raw, "id", index),
            name=_require_str(raw, "name", index),
            input=tool_input if isinstance(tool_input, dict) else {},
        )
    if block_type == "tool_result":
        return ToolResultBlock(
            tool_use_id=_require_str(raw, "tool_use_id", index),
            content=_tool_result_content(raw.get("content"), index),
            is_error=bool(raw.get("is_error", False)),
        )
    if block_type in {"thinking", "redacted_thinking"}:
        return None
    raise ValidationError(f"content[{index}]: unsupported block type {block_type!r}")


def _tool_result_content(value: Any, index: int) -> str | list[TextBlock | ImageBlock]:
    if value is None:
        return ""
    if isinstance(value, str):
        return value
    if not isinstance(value, list):
        raise ValidationError(f"content[{index}]: tool_result content must be text or blocks")
    blocks: list[TextBlock | ImageBlock] = []
    for item in value:
        if not isinstance(item, dict):
            continue
        block = _content_block(item, index)
        if isinstance(block, (TextBlock, ImageBlock)):
            blocks.append(block)
    return blocks


def _tool_choice(raw: dict[str, Any] | None) -> ToolChoice | None:
    if raw is None:
        return None
    choice_type = raw.get("type")
    if choice_type in {"auto", "any", "none"}:
        return ToolChoice(type=choice_type)
    if choice_type == "tool":
        name = raw.get("name")
        if not isinstance(name, str) or not name:
            raise ValidationError("tool_choice of type 'tool' requires a name")
        return ToolChoice(type="tool", name=name)
    raise ValidationError(f"unsupported tool_choice type {choice_type!r}")


def _system_text(system: str | list[dict[str, Any]] | None) -> str | None:
    if system is None:
        return None
    if isinstance(system, str):
        return system or None
    text = "\n\n".join(
        block["text"]
        for block in system
        if block.get("type") == "text" and isinstance(block.get("text"), str)
    )
    return text or None


def _block_payload(block: ContentBlock) -> dict[str, Any]:
    if isinstance(block, TextBlock):
        return {"type": "text", "text": block.text}
    if isinstance(block, ToolUseBlock):
        return {"type": "tool_use", "id": block.id, "name": block.name, "input": block.input}
    if isinstance(block, ImageBlock):
        return {
            "type": "image",
            "source": {"type": "base64", "media_type": block.media_type, "data": block.data},
        }
    return {
        "type": "tool_result",
        "tool_use_id": block.tool_use_id,
        "content": block.text(),
        "is_error": block.is_error,
    }


def _require_str(raw: dict[str, Any], key: str, index: int) -> str:
    value = raw.get(key)
    if not isinstance(value, str):
        raise ValidationError(f"content[{index}]: field {key!r} must be a string")
    return value


def _describe(exc: PydanticValidationError) -> str:
    first = exc.errors()[0]
    location = ".".join(str(part) for part in first.get("loc", ()))
    message = first.get("msg", "invalid request")
    return f"{location}: {message}" if location else str(message)
