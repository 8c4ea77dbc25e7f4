from __future__ import annotations

import hashlib
import json
from typing import Any
from uuid import uuid4

from antigravity_pool.catalog import is_claude_model
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
    Usage,
)

DEFAULT_SYSTEM_INSTRUCTION = (
    "You are Antigravity, a powerful agentic AI coding assistant designed by "
    "the Google Deepmind team."
)
SAFETY_CATEGORIES = (
    "HARM_CATEGORY_HARASSMENT",
    "HARM_CATEGORY_HATE_SPEECH",
    "HARM_CATEGORY_SEXUALLY_EXPLICIT",
    "HARM_CATEGORY_DANGEROUS_CONTENT",
    "HARM_CATEGORY_CIVIC_INTEGRITY",
)
SCHEMA_META_KEYS = frozenset(
    {
        "$id",
        "$ref",
        "$defs",
        "$schema",
        "$comment",
        "$vocabulary",
        "$dynamicRef",
        "$dynamicAnchor",
        "definitions",
        "default",
        "examples",
        "title",
        "additionalProperties",
    }
)


def new_message_id() -> str:
    return f"msg_{uuid4().hex[:24]}"


def new_tool_use_id() -> str:
    return f"toolu_{uuid4().hex[:8]}"


def session_id_for(messages: list[ChatMessage]) -> str:
    """Stable per-conversation id: a digest of the first user message's text."""
    for message in messages:
        if message.role != "user":
            continue
        text = "".join(
            block.text for block in message.blocks() if isinstance(block, TextBlock)
        )
        digest = hashlib.sha256(text.encode("utf-8")).hexdigest()
        return f"-{int(digest[:15], 16)}"
    return f"-{int(uuid4().hex[:15], 16)}"


def sanitize_schema(schema: Any) -> dict[str, Any]:
    """Make a caller JSON schema acceptable to the upstream function validator."""
    cleaned = _clean_schema_node(schema) if isinstance(schema, dict) else {}
    if not isinstance(cleaned.get("type"), str):
        cleaned["type"] = "object"
    if cleaned["type"] == "object" and not isinstance(cleaned.get("properties"), dict):
        cleaned["properties"] = {}
    return cleaned


def _clean_schema_node(node: Any) -> Any:
    if isinstance(node, list):
        return [_clean_schema_node(item) for item in node]
    if not isinstance(node, dict):
        return node

    cleaned: dict[str, Any] = {}
    for key, value in node.items():
        if key in SCHEMA_META_KEYS or key.startswith("x-"):
            continue
        if key == "properties" and isinstance(value, dict):
            # Property names are caller data, not schema keywords.
            cleaned[key] = {
                name: _clean_schema_node(child) for name, child in value.items()
            }
        elif key == "const":
            cleaned["enum"] = [value]
        else:
            cleaned[key] = _clean_schema_node(value)

    if cleaned.get("type") == "object" and "properties" not in cleaned:
        cleaned["properties"] = {}
    required = cleaned.get("required")
    properties = cleaned.get("properties")
    if isinstance(required, list) and isinstance(properties, dict):
        cleaned["required"] = [name for name in required if name in properties]
        if not cleaned["required"]:
            del cleaned["required"]
    return cleaned


def build_upstream_request(
    request: ChatRequest,
    *,
    upstream_model: str,
    project_id: str,
) -> dict[str, Any]:
    inner: dict[str, Any] = {
        "contents": to_upstream_contents(request.messages),
        "sessionId": session_id_for(request.messages),
        "safetySettings": [
            {"category": category, "threshold": "OFF"} for category in SAFETY_CATEGORIES
        ],
        "systemInstruction": {
            "role": "user",
            "parts": [{"text": request.system or DEFAULT_SYSTEM_INSTRUCTION}],
        },
        "generationConfig": _generation_config(request),
    }
    if request.tools:
        inner["tools"] = [
            {"functionDeclarations": [_function_declaration(tool) for tool in request.tools]}
        ]
    tool_config = _tool_config(request.tool_choice, upstream_model, bool(request.tools))
    if tool_config is not None:
        inner["toolConfig"] = tool_config

    return {
        "model": upstream_model,
        "userAgent": "antigravity",
        "requestType": "agent",
        "project": project_id,
        "requestId": f"agent-{uuid4()}",
        "request": inner,
    }


def to_upstream_contents(messages: list[ChatMessage]) -> list[dict[str, Any]]:
    tool_names: dict[str, str] = {}
    contents: list[dict[str, Any]] = []
    for message in messages:
        parts: list[dict[str, Any]] = []
        for block in message.blocks():
            if isinstance(block, ToolUseBlock):
                tool_names[block.id] = block.name
            part = _to_part(block, tool_names)
            if part is not None:
                parts.append(part)
        if not parts:
            continue
        contents.append(
            {"role": "model" if message.role == "assistant" else "user", "parts": parts}
        )
    return contents


def _to_part(block: ContentBlock, tool_names: dict[str, str]) -> dict[str, Any] | None:
    if isinstance(block, TextBlock):
        return {"text": block.text} if block.text else None
    if isinstance(block, ImageBlock):
        return {"inlineData": {"mimeType": block.media_type, "data": block.data}}
    if isinstance(block, ToolUseBlock):
        return {"functionCall": {"id": block.id, "name": block.name, "args": block.input}}
    if isinstance(block, ToolResultBlock):
        key = "error" if block.is_error else "result"
        return {
            "functionResponse": {
                "id": block.tool_use_id,
                "name": tool_names.get(block.tool_use_id, block.tool_use_id),
                "response": {key: block.text()},
            }
        }
    return None


def _generation_config(request: ChatRequest) -> dict[str, Any]:
    config: dict[str, Any] = {"maxOutputTokens": request.max_tokens}
    if request.temperature is not None:
        config["temperature"] = request.temperature
    if request.top_p is not None:
        config["topP"] = request.top_p
    if request.stop_sequences:
        config["stopSequences"] = list(request.stop_sequences)
    return config


def _function_declaration(tool: ToolDefinition) -> dict[str, Any]:
    return {
        "name": tool.name,
        "description": tool.description,
        "parameters": sanitize_schema(tool.input_schema),
    }


def _tool_config(
    choice: ToolChoice | None, upstream_model: str, has_tools: bool
) -> dict[str, Any] | None:
    if choice is None or choice.type == "auto":
        if not has_tools and not is_claude_model(upstream_model):
            return None
        mode = "VALIDATED" if is_claude_model(upstream_model) else "AUTO"
        return {"functionCallingConfig": {"mode": mode}}
    if choice.type == "none":
        return {"functionCallingConfig": {"mode": "NONE"}}
    if choice.type == "tool" and choice.name:
        return {
            "functionCallingConfig": {
                "mode": "ANY",
                "allowedFunctionNames": [choice.name],
            }
        }
    return {"functionCallingConfig": {"mode": "ANY"}}


def iter_response_parts(payload: dict[str, Any]) -> list[dict[str, Any]]:
    """Content parts of the first candidate, unwrapping the ``response`` envelope."""
    response = payload.get("response", payload)
    if not isinstance(response, dict):
        return []
    candidates = response.get("candidates")
    if not isinstance(candidates, list) or not candidates:
        return []
    candidate = candidates[0]
    if not isinstance(candidate, dict):
        return []
    content = candidate.get("content")
    if not isinstance(content, dict):
        return []
    parts = content.get("parts")
    if not isinstance(parts, list):
        return []
    return [part for part in parts if isinstance(part, dict)]


def extract_usage(payload: dict[str, Any]) -> Usage | None:
    response = payload.get("response", payload)
    if not isinstance(response, dict):
        return None
    usage = response.get("usageMetadata")
    if not isinstance(usage, dict):
        return None
    return Usage(
        input_tokens=_as_int(usage.get("promptTokenCount")),
        output_tokens=_as_int(usage.get("candidatesTokenCount"))
        + _as_int(usage.get("thoughtsTokenCount")),
    )


def extract_finish_reason(payload: dict[str, Any]) -> str | None:
    response = payload.get("response", payload)
    if not isinstance(response, dict):
        return None
    candidates = response.get("candidates")
    if not isinstance(candidates, list) or not candidates:
        return None
    candidate = candidates[0]
    reason = candidate.get("finishReason") if isinstance(candidate, dict) else None
    return reason if isinstance(reason, str) else None


def function_call_block(function_call: dict[str, Any]) -> ToolUseBlock:
    call_id = function_call.get("id")
    args = function_call.get("args")
    if isinstance(args, str):
        try:
            args = json.loads(args)
        except ValueError:
            args = {"value": args}
    return ToolUseBlock(
        id=call_id if isinstance(call_id, str) and call_id else new_tool_use_id(),
        name=str(function_call.get("name") or ""),
        input=args if isinstance(args, dict) else {},
    )


def parse_upstream_response(
    chunks: list[dict[str, Any]],
    *,
    model: str,
    message_id: str | None = None,
) -> ChatResponse:
    """Fold buffered upstream chunks into one caller-facing response."""
    content: list[ContentBlock] = []
    usage = Usage()
    truncated = False
    for chunk in chunks:
        for part in iter_response_parts(chunk):
            if part.get("thought") is True:
                continue
            function_call = part.get("functionCall")
            if isinstance(function_call, dict):
                content.append(function_call_block(function_call))
                continue
            text = part.get("text")
            if not isinstance(text, str) or not text:
                continue
            if content and isinstance(content[-1], TextBlock):
                content[-1].text += text
            else:
                content.append(TextBlock(text=text))
        chunk_usage = extract_usage(chunk)
        if chunk_usage is not None:
            usage = chunk_usage
        if extract_finish_reason(chunk) == "MAX_TOKENS":
            truncated = True

    has_tool_use = any(isinstance(block, ToolUseBlock) for block in content)
    if has_tool_use:
        stop_reason = "tool_use"
    elif truncated:
        stop_reason = "max_tokens"
    else:
        stop_reason = "end_turn"
    return ChatResponse(
        id=message_id or new_message_id(),
        model=model,
        content=content,
        stop_reason=stop_reason,
        usage=usage,
    )


def _as_int(value: Any) -> int:
    if isinstance(value, bool):
        return 0
    if isinstance(value, (int, float)):
        return int(value)
    return 0
