from __future__ import annotations

from typing import Any

SUPPORTED_MODELS: dict[str, str] = {
    "claude-sonnet-4-5": "Claude Sonnet 4.5",
    "claude-sonnet-4-5-thinking": "Claude Sonnet 4.5 (Thinking)",
    "claude-opus-4-5-thinking": "Claude Opus 4.5 (Thinking)",
    "gemini-3-pro-high": "Gemini 3 Pro (High)",
    "gemini-3-pro-low": "Gemini 3 Pro (Low)",
    "gemini-3-flash": "Gemini 3 Flash",
    "gpt-oss-120b": "GPT-OSS 120B",
}

CALLER_ALIASES: dict[str, str] = {
    "gpt-4": "claude-sonnet-4-5",
    "gpt-4o": "claude-sonnet-4-5",
    "gpt-4-turbo": "claude-sonnet-4-5",
    "gpt-3.5-turbo": "gemini-3-flash",
    "o1": "claude-sonnet-4-5-thinking",
    "o1-mini": "gemini-3-flash",
    "claude-opus-4-5": "claude-opus-4-5-thinking",
    "claude-opus-4.5": "claude-opus-4-5-thinking",
    "claude-sonnet-4.5": "claude-sonnet-4-5",
}

UPSTREAM_MODEL_MAPPING: dict[str, str] = {
    "gpt-oss-120b": "gpt-oss-120b-medium",
    "claude-sonnet-4-5-20251001": "claude-sonnet-4-5",
}


def resolve_model(model: str, *, thinking: bool = False) -> str:
    resolved = CALLER_ALIASES.get(model.strip(), model.strip())
    if thinking and not resolved.endswith("-thinking"):
        candidate = f"{resolved}-thinking"
        if candidate in SUPPORTED_MODELS:
            return candidate
    return resolved


def is_supported_model(model: str) -> bool:
    return model in SUPPORTED_MODELS or model in UPSTREAM_MODEL_MAPPING


def upstream_model_name(model: str) -> str:
    return UPSTREAM_MODEL_MAPPING.get(model, model)


def is_claude_model(model: str) -> bool:
    return "claude" in model.lower()


def models_listing(created: int) -> dict[str, Any]:
    return {
        "object": "list",
        "data": [
            {
                "id": model_id,
                "object": "model",
                "created": created,
                "owned_by": "antigravity",
                "display_name": display_name,
            }
            for model_id, display_name in SUPPORTED_MODELS.items()
        ],
    }
