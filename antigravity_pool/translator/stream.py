from __future__ import annotations

import json
from dataclasses import dataclass, field
from typing import Any, Literal

from antigravity_pool.chat_types import Usage
from antigravity_pool.translator.upstream import (
    extract_finish_reason,
    extract_usage,
    function_call_block,
    iter_response_parts,
    new_message_id,
)

StreamEventType = Literal[
    "message_start",
    "content_block_start",
    "content_block_delta",
    "content_block_stop",
    "message_delta",
    "message_stop",
    "error",
]


@dataclass(slots=True, frozen=True)
class StreamEvent:
    event: StreamEventType
    data: dict[str, Any] = field(default_factory=dict)

    @property
    def index(self) -> int | None:
        value = self.data.get("index")
        return value if isinstance(value, int) else None

    def to_sse(self) -> str:
        payload = json.dumps(self.data, ensure_ascii=False, separators=(",", ":"))
        return f"event: {self.event}\ndata: {payload}\n\n"


def error_event(error_type: str, message: str, **extra: Any) -> StreamEvent:
    return StreamEvent(
        "error",
        {"type": "error", "error": {"type": error_type, "message": message, **extra}},
    )


def parse_sse_data_line(line: str) -> dict[str, Any] | None:
    if not line or not line.startswith("data:"):
        return None
    payload = line[5:].strip()
    if not payload or payload == "[DONE]":
        return None
    try:
        parsed = json.loads(payload)
    except ValueError:
        return None
    return parsed if isinstance(parsed, dict) else None


class UpstreamStreamTranslator:
    """Turns upstream SSE chunks into ordered, index-consistent stream events.

    Text fragments share one open text block until a function call arrives;
    each function call is emitted as a complete start/delta/stop triple so an
    index is never reopened. ``finish`` emits the terminal pair exactly once.
    """

    def __init__(self, *, model: str, message_id: str | None = None) -> None:
        self.model = model
        self.message_id = message_id or new_message_id()
        self.usage = Usage()
        self._next_index = 0
        self._open_text_index: int | None = None
        self._started = False
        self._finished = False
        self._has_tool_use = False
        self._truncated = False

    @property
    def started(self) -> bool:
        return self._started

    def start(self) -> list[StreamEvent]:
        if self._started:
            return []
        self._started = True
        return [
            StreamEvent(
                "message_start",
                {
                    "type": "message_start",
                    "message": {
                        "id": self.message_id,
                        "type": "message",
                        "role": "assistant",
                        "model": self.model,
                        "content": [],
                        "stop_reason": None,
                        "stop_sequence": None,
                        "usage": {"input_tokens": 0, "output_tokens": 0},
                    },
                },
            )
        ]

    def feed(self, chunk: dict[str, Any]) -> list[StreamEvent]:
        if self._finished:
            return []
        events = self.start()
        for part in iter_response_parts(chunk):
            if part.get("thought") is True:
                continue
            function_call = part.get("functionCall")
            if isinstance(function_call, dict):
                events.extend(self._close_text())
                events.extend(self._tool_use(function_call))
                continue
            text = part.get("text")
            if isinstance(text, str) and text:
                events.extend(self._text(text))

        usage = extract_usage(chunk)
        if usage is not None:
            self.usage = usage
        if extract_finish_reason(chunk) == "MAX_TOKENS":
            self._truncated = True
        return events

    def finish(self) -> list[StreamEvent]:
        if self._finished:
            return []
        events = self.start()
        events.extend(self._close_text())
        self._finished = True
        events.append(
            StreamEvent(
                "message_delta",
                {
                    "type": "message_delta",
                    "delta": {"stop_reason": self.stop_reason, "stop_sequence": None},
                    "usage": {
                        "input_tokens": self.usage.input_tokens,
                        "output_tokens": self.usage.output_tokens,
                    },
                },
            )
        )
        events.append(StreamEvent("message_stop", {"type": "message_stop"}))
        return events

    @property
    def stop_reason(self) -> str:
        if self._has_tool_use:
            return "tool_use"
        if self._truncated:
            return "max_tokens"
        return "end_turn"

    def _text(self, text: str) -> list[StreamEvent]:
        events: list[StreamEvent] = []
        if self._open_text_index is None:
            self._open_text_index = self._claim_index()
            events.append(
                StreamEvent(
                    "content_block_start",
                    {
                        "type": "content_block_start",
                        "index": self._open_text_index,
                        "content_block": {"type": "text", "text": ""},
                    },
                )
            )
        events.append(
            StreamEvent(
                "content_block_delta",
                {
                    "type": "content_block_delta",
                    "index": self._open_text_index,
                    "delta": {"type": "text_delta", "text": text},
                },
            )
        )
        return events

    def _close_text(self) -> list[StreamEvent]:
        if self._open_text_index is None:
            return []
        index = self._open_text_index
        self._open_text_index = None
        return [
            StreamEvent("content_block_stop", {"type": "content_block_stop", "index": index})
        ]

    def _tool_use(self, function_call: dict[str, Any]) -> list[StreamEvent]:
        block = function_call_block(function_call)
        self._has_tool_use = True
        index = self._claim_index()
        return [
            StreamEvent(
                "content_block_start",
                {
                    "type": "content_block_start",
                    "index": index,
                    "content_block": {
                        "type": "tool_use",
                        "id": block.id,
                        "name": block.name,
                        "input": {},
                    },
                },
            ),
            StreamEvent(
                "content_block_delta",
                {
                    "type": "content_block_delta",
                    "index": index,
                    "delta": {
                        "type": "input_json_delta",
                        "partial_json": json.dumps(block.input, ensure_ascii=False),
                    },
                },
            ),
            StreamEvent("content_block_stop", {"type": "content_block_stop", "index": index}),
        ]

    def _claim_index(self) -> int:
        index = self._next_index
        self._next_index += 1
        return index
