from __future__ import annotations

import json
import time
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
from antigravity_pool.translator.anthropic import (
    DEFAULT_MAX_TOKENS,
    MAX_MESSAGES,
    MAX_MODEL_NAME_LENGTH,
    MAX_OUTPUT_TOKENS,
    MAX_TOOLS,
)
from antigravity_pool.translator.stream import StreamEvent

FINISH_REASONS = {"end_turn": "stop", "tool_use": "tool_calls", "max_tokens": "length"}


class OpenAIFunction(BaseModel):
    model_config = ConfigDict(extra="ignore")

    name: str = Field(min_length=1)
    description: str = ""
    parameters: dict[str, Any] = Field(default_factory=dict)


class OpenAITool(BaseModel):
    model_config = ConfigDict(extra="ignore")

    type: Literal["function"] = "function"
    function: OpenAIFunction


class OpenAIMessage(BaseModel):
    model_config = ConfigDict(extra="ignore")

    role: Literal["system", "developer", "user", "assistant", "tool"]
    content: str | list[dict[str, Any]] | None = None
    tool_calls: list[dict[str, Any]] | None = None
    tool_call_id: str | None = None


class OpenAIChatRequest(BaseModel):
    model_config = ConfigDict(extra="ignore")

    model: str = Field(min_length=1, max_length=MAX_MODEL_NAME_LENGTH)
    messages: list[OpenAIMessage] = Field(min_length=1, max_length=MAX_MESSAGES)
    max_tokens: int | None = Field(default=None, gt=0, le=MAX_OUTPUT_TOKENS)
    max_completion_tokens: int | None = Field(default=None, gt=0, le=MAX_OUTPUT_TOKENS)
    tools: list[OpenAITool] | None = Field(default=None, max_length=MAX_TOOLS)
    tool_choice: str | dict[str, Any] | None = None
    stream: bool = False
    temperature: float | None = Field(default=None, ge=0, le=2)
    top_p: float | None = Field(default=None, ge=0, le=1)
    stop: str | list[str] | None = None

    @field_validator("stream", mode="before")
    @classmethod
    def _strict_stream(cls, value: Any) -> Any:
        if value is not None and not isinstance(value, bool):
            raise ValueError("stream must be a boolean")
        return bool(value)


def parse_chat_completions_request(body: Any) -> tuple[ChatRequest, bool]:
    try:
        payload = OpenAIChatRequest.model_validate(body)
    except PydanticValidationError as exc:
        first = exc.errors()[0]
        location = ".".join(str(part) for part in first.get("loc", ()))
        raise ValidationError(f"{location}: {first.get('msg', 'invalid request')}") from exc

    system_parts: list[str] = []
    messages: list[ChatMessage] = []
    for message in payload.messages:
        if message.role in {"system", "developer"}:
            text = _text_content(message.content)
            if text:
                system_parts.append(text)
            continue
        if message.role == "tool":
            if not message.tool_call_id:
                raise ValidationError("tool messages require tool_call_id")
            result = ToolResultBlock(
                tool_use_id=message.tool_call_id,
                content=_text_content(message.content),
            )
            # Consecutive tool results answer one assistant turn.
            previous = messages[-1] if messages else None
            if (
                previous is not None
                and previous.role == "user"
                and isinstance(previous.content, list)
                and previous.content
                and all(isinstance(block, ToolResultBlock) for block in previous.content)
            ):
                previous.content.append(result)
            else:
                messages.append(ChatMessage(role="user", content=[result]))
            continue
        if message.role == "assistant":
            messages.append(ChatMessage(role="assistant", content=_assistant_blocks(message)))
            continue
        messages.append(ChatMessage(role="user", content=_user_content(message.content)))

    stop = payload.stop
    request = ChatRequest(
        model=resolve_model(payload.model),
        messages=messages,
        max_tokens=payload.max_completion_tokens or payload.max_tokens or DEFAULT_MAX_TOKENS,
        tools=[
            ToolDefinition(
                name=tool.function.name,
                description=tool.function.description,
                input_schema=tool.function.parameters,
            )
            for tool in payload.tools
        ]
        if payload.tools
        else None,
        tool_choice=_tool_choice(payload.tool_choice),
        system="\n\n".join(system_parts) or None,
        temperature=payload.temperature,
        top_p=payload.top_p,
        stop_sequences=[stop] if isinstance(stop, str) else stop,
    )
    return request, payload.stream


def to_chat_completion(response: ChatResponse, *, created: int | None = None) -> dict[str, Any]:
    text = "".join(block.text for block in response.content if isinstance(block, TextBlock))
    message: dict[str, Any] = {"role": "assistant", "content": text or None}
    tool_calls = [
        {
            "id": block.id,
            "type": "function",
            "function": {
                "name": block.name,
                "arguments": json.dumps(block.input, ensure_ascii=False),
            },
        }
        for block in response.tool_uses()
    ]
    if tool_calls:
        message["tool_calls"] = tool_calls
    usage = response.usage
    return {
        "id": completion_id(response.id),
        "object": "chat.completion",
        "created": created if created is not None else int(time.time()),
        "model": response.model,
        "choices": [
            {
                "index": 0,
                "message": message,
                "finish_reason": FINISH_REASONS.get(response.stop_reason, "stop"),
            }
        ],
        "usage": {
            "prompt_tokens": usage.input_tokens,
            "completion_tokens": usage.output_tokens,
            "total_tokens": usage.input_tokens + usage.output_tokens,
        },
    }


def completion_id(message_id: str) -> str:
    suffix = message_id.removeprefix("msg_")
    return f"chatcmpl-{suffix}"


class ChatCompletionsStreamAdapter:
    """Re-encodes stream events as ``chat.completion.chunk`` SSE lines."""

    def __init__(self, *, model: str, created: int | None = None) -> None:
        self.model = model
        self.created = created if created is not None else int(time.time())
        self.completion_id = completion_id("")
        self._tool_indexes: dict[int, int] = {}
        self._done = False

    def convert(self, event: StreamEvent) -> list[str]:
        data = event.data
        if event.event == "message_start":
            message = data.get("message") or {}
            self.completion_id = completion_id(str(message.get("id", "")))
            return [self._chunk({"role": "assistant", "content": ""})]

        if event.event == "content_block_start":
            block = data.get("content_block") or {}
            if block.get("type") != "tool_use":
                return []
            tool_index = len(self._tool_indexes)
            self._tool_indexes[int(data.get("index", 0))] = tool_index
            return [
                self._chunk(
                    {
                        "tool_calls": [
                            {
                                "index": tool_index,
                                "id": block.get("id"),
                                "type": "function",
                                "function": {"name": block.get("name"), "arguments": ""},
                            }
                        ]
                    }
                )
            ]

        if event.event == "content_block_delta":
            delta = data.get("delta") or {}
            if delta.get("type") == "text_delta":
                return [self._chunk({"content": delta.get("text", "")})]
            if delta.get("type") == "input_json_delta":
                tool_index = self._tool_indexes.get(int(data.get("index", 0)), 0)
                return [
                    self._chunk(
                        {
                            "tool_calls": [
                                {
                                    "index": tool_index,
                                    "function": {"arguments": delta.get("partial_json", "")},
                                }
                            ]
                        }
                    )
                ]
            return []

        if event.event == "message_delta":
            stop_reason = (data.get("delta") or {}).get("stop_reason")
            usage = data.get("usage") or {}
            input_tokens = int(usage.get("input_tokens", 0))
            output_tokens = int(usage.get("output_tokens", 0))
            return [
                self._chunk(
                    {},
                    finish_reason=FINISH_REASONS.get(str(stop_reason), "stop"),
                    usage={
                        "prompt_tokens": input_tokens,
                        "completion_tokens": output_tokens,
                        "total_tokens": input_tokens + output_tokens,
                    },
                )
            ]

        if event.event == "message_stop":
            return self.done()
        return []

    def error(self, event: StreamEvent) -> list[str]:
        payload = json.dumps({"error": event.data.get("error", {})}, separators=(",", ":"))
        return [f"data: {payload}\n\n", *self.done()]

    def done(self) -> list[str]:
        if self._done:
            return []
        self._done = True
        return ["data: [DONE]\n\n"]

    def _chunk(
        self,
        delta: dict[str, Any],
        finish_reason: str | None = None,
        usage: dict[str, int] | None = None,
    ) -> str:
        chunk: dict[str, Any] = {
            "id": self.completion_id,
            "object": "chat.completion.chunk",
            "created": self.created,
            "model": self.model,
            "choices": [{"index": 0, "delta": delta, "finish_reason": finish_reason}],
        }
        if usage is not None:
            chunk["usage"] = usage
        return f"data: {json.dumps(chunk, separators=(',', ':'))}\n\n"


def _text_content(content: str | list[dict[str, Any]] | None) -> str:
    if content is None:
        return ""
    if isinstance(content, str):
        return content
    return "".join(
        part["text"]
        for part in content
        if part.get("type") == "text" and isinstance(part.get("text"), str)
    )


def _user_content(content: str | list[dict[str, Any]] | None) -> str | list[ContentBlock]:
    if content is None:
        return ""
    if isinstance(content, str):
        return content
    blocks: list[ContentBlock] = []
    for part in content:
        part_type = part.get("type")
        if part_type == "text" and isinstance(part.get("text"), str):
            blocks.append(TextBlock(text=part["text"]))
        elif part_type == "image_url":
            blocks.append(_image_block(part.get("image_url")))
        else:
            raise ValidationError(f"unsupported content part type {part_type!r}")
    return blocks


def _image_block(image_url: Any) -> ImageBlock:
    url = image_url.get("url") if isinstance(image_url, dict) else image_url
    if not isinstance(url, str) or not url.startswith("data:") or ";base64," not in url:
        raise ValidationError("image_url must be a base64 data URL")
    header, data = url.split(";base64,", 1)
    return ImageBlock(media_type=header.removeprefix("data:") or "image/png", data=data)


def _assistant_blocks(message: OpenAIMessage) -> list[ContentBlock]:
    blocks: list[ContentBlock] = []
    text = _text_content(message.content)
    if text:
        blocks.append(TextBlock(text=text))
    for call in message.tool_calls or []:
        function = call.get("function") if isinstance(call, dict) else None
        if not isinstance(function, dict):
            raise ValidationError("assistant tool_calls entries require a function")
        call_id = call.get("id")
        if not isinstance(call_id, str) or not call_id:
            raise ValidationError("assistant tool_calls entries require an id")
        blocks.append(
            ToolUseBlock(
                id=call_id,
                name=str(function.get("name") or ""),
                input=_parse_arguments(function.get("arguments")),
            )
        )
    return blocks


def _parse_arguments(arguments: Any) -> dict[str, Any]:
    if isinstance(arguments, dict):
        return arguments
    if not isinstance(arguments, str) or not arguments.strip():
        return {}
    try:
        parsed = json.loads(arguments)
    except ValueError as exc:
        raise ValidationError("tool call arguments must be a JSON object") from exc
    if not isinstance(parsed, dict):
        raise ValidationError("tool call arguments must be a JSON object")
    return parsed


def _tool_choice(raw: str | dict[str, Any] | None) -> ToolChoice | None:
    if raw is None:
        return None
    if raw == "auto":
        return ToolChoice(type="auto")
    if raw == "required":
        return ToolChoice(type="any")
    if raw == "none":
        return ToolChoice(type="none")
    if isinstance(raw, dict) and raw.get("type") == "function":
        function = raw.get("function")
        name = function.get("name") if isinstance(function, dict) else None
        if isinstance(name, str) and name:
            return ToolChoice(type="tool", name=name)
    raise ValidationError(f"unsupported tool_choice {raw!r}")
