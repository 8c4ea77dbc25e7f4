from __future__ import annotations

import json
import logging
import time
from collections.abc import AsyncIterator, Callable
from typing import Any

import httpx
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse, StreamingResponse
from pydantic import BaseModel, Field

from antigravity_pool.accounts.models import Account
from antigravity_pool.accounts.registry import AccountRegistry
from antigravity_pool.accounts.store import AccountStore
from antigravity_pool.accounts.token_refresher import GoogleTokenRefresher
from antigravity_pool.catalog import models_listing
from antigravity_pool.errors import AuthError, RoutingError, UpstreamError, ValidationError
from antigravity_pool.pipeline import ChatEventStream, RequestPipeline
from antigravity_pool.routing.config import RoutingConfigStore
from antigravity_pool.routing.router import ModelRouter
from antigravity_pool.settings import Settings, get_settings
from antigravity_pool.translator.anthropic import (
    parse_messages_request,
    to_messages_response,
)
from antigravity_pool.translator.openai import (
    ChatCompletionsStreamAdapter,
    parse_chat_completions_request,
    to_chat_completion,
)
from antigravity_pool.translator.stream import StreamEvent, error_event
from antigravity_pool.usage import JsonlUsageRecorder

app = FastAPI(
    title="Antigravity Pool",
    description="Anthropic- and OpenAI-compatible proxy over pooled Antigravity accounts.",
    version="0.1.0",
)

logger = logging.getLogger("uvicorn.error")


class AccountCreate(BaseModel):
    email: str = Field(min_length=1, max_length=256, pattern=r"^[a-zA-Z0-9@._+-]+$")
    refresh_token: str = Field(min_length=1)
    id: str | None = Field(default=None, max_length=256, pattern=r"^[a-zA-Z0-9@._-]+$")
    access_token: str = ""
    expires_at: int = 0
    project_id: str | None = None


def build_http_client(settings: Settings) -> httpx.AsyncClient:
    return httpx.AsyncClient(
        timeout=httpx.Timeout(
            settings.request_timeout_seconds,
            connect=settings.connect_timeout_seconds,
        ),
    )


@app.on_event("startup")
async def startup() -> None:
    settings = get_settings()
    client = build_http_client(settings)
    store = AccountStore(settings.accounts_path, settings.auth_import_path)
    refresher = GoogleTokenRefresher(
        client_getter=lambda: client,
        token_url=settings.oauth_token_url,
        client_id=settings.oauth_client_id,
        client_secret=settings.oauth_client_secret,
        project_url=settings.project_url,
        user_agent=settings.project_user_agent,
    )
    registry = AccountRegistry(store=store, refresher=refresher)
    registry.load()
    routing_store = RoutingConfigStore(settings.routing_path)
    registry.add_removal_hook(routing_store.purge_account)
    usage_recorder = JsonlUsageRecorder(
        path=settings.usage_path,
        enabled=settings.usage_log_enabled,
    )
    pipeline = RequestPipeline(
        registry=registry,
        client=client,
        base_urls=settings.upstream_base_urls_list,
        user_agent=settings.upstream_user_agent,
        request_timeout_seconds=settings.request_timeout_seconds,
        connect_timeout_seconds=settings.connect_timeout_seconds,
        stream_idle_timeout_seconds=settings.stream_idle_timeout_seconds,
        max_attempts=settings.max_attempts,
        same_account_retries=settings.same_account_retries,
        same_account_retry_max_delay_ms=int(
            settings.same_account_retry_max_delay_seconds * 1000
        ),
        usage_recorder=usage_recorder,
    )
    app.state.settings = settings
    app.state.http_client = client
    app.state.account_registry = registry
    app.state.routing_store = routing_store
    app.state.usage_recorder = usage_recorder
    app.state.pipeline = pipeline
    app.state.model_router = ModelRouter(pipeline=pipeline, config_store=routing_store)
    logger.info(
        "startup complete accounts=%d upstreams=%d routing_config=%s usage_log=%s",
        registry.count(),
        len(settings.upstream_base_urls_list),
        settings.routing_path,
        settings.usage_log_enabled,
    )


@app.on_event("shutdown")
async def shutdown() -> None:
    client: httpx.AsyncClient | None = getattr(app.state, "http_client", None)
    if client is not None:
        await client.aclose()
    usage_recorder: JsonlUsageRecorder | None = getattr(app.state, "usage_recorder", None)
    if usage_recorder is not None:
        usage_recorder.close()
    logger.info("shutdown complete")


@app.get("/health")
async def health() -> dict[str, Any]:
    registry: AccountRegistry = app.state.account_registry
    return {"status": "ok", "accounts": registry.count()}


@app.get("/v1/models")
async def models() -> dict[str, Any]:
    return models_listing(created=int(time.time()))


@app.post("/v1/messages")
async def messages(request: Request) -> Any:
    chat_request, stream = parse_messages_request(await _json_body(request))
    router: ModelRouter = app.state.model_router
    if not stream:
        response = await router.execute(chat_request)
        return JSONResponse(content=to_messages_response(response))

    events = await router.execute_streaming(chat_request)
    return StreamingResponse(
        _forward_sse(events, encode=lambda event: [event.to_sse()]),
        media_type="text/event-stream",
        headers={"Cache-Control": "no-cache", "X-Accel-Buffering": "no"},
    )


@app.post("/v1/chat/completions")
async def chat_completions(request: Request) -> Any:
    chat_request, stream = parse_chat_completions_request(await _json_body(request))
    router: ModelRouter = app.state.model_router
    if not stream:
        response = await router.execute(chat_request)
        return JSONResponse(content=to_chat_completion(response))

    events = await router.execute_streaming(chat_request)
    adapter = ChatCompletionsStreamAdapter(model=chat_request.model)
    return StreamingResponse(
        _forward_sse(events, encode=adapter.convert, encode_error=adapter.error),
        media_type="text/event-stream",
        headers={"Cache-Control": "no-cache", "X-Accel-Buffering": "no"},
    )


@app.get("/admin/accounts")
async def list_accounts() -> dict[str, Any]:
    registry: AccountRegistry = app.state.account_registry
    return {"accounts": registry.list_accounts()}


@app.post("/admin/accounts", status_code=201)
async def add_account(payload: AccountCreate) -> dict[str, Any]:
    registry: AccountRegistry = app.state.account_registry
    account = registry.add_account(
        Account(
            id=payload.id or payload.email,
            email=payload.email,
            access_token=payload.access_token,
            refresh_token=payload.refresh_token,
            expires_at=payload.expires_at,
            project_id=payload.project_id,
        )
    )
    return {"account": account.describe(now_ms=int(time.time() * 1000))}


@app.delete("/admin/accounts/{account_id}")
async def remove_account(account_id: str) -> JSONResponse:
    registry: AccountRegistry = app.state.account_registry
    if not registry.remove_account(account_id):
        return JSONResponse(
            status_code=404,
            content=_error_payload("not_found_error", f"Unknown account: {account_id}"),
        )
    return JSONResponse(content={"removed": account_id})


@app.post("/admin/accounts/mark-healthy")
async def mark_all_healthy() -> dict[str, int]:
    registry: AccountRegistry = app.state.account_registry
    return {"cleared": registry.mark_all_healthy()}


async def _json_body(request: Request) -> Any:
    try:
        return await request.json()
    except json.JSONDecodeError as exc:
        raise ValidationError(f"request body is not valid JSON: {exc.msg}") from exc


async def _forward_sse(
    events: ChatEventStream,
    *,
    encode: Callable[[StreamEvent], list[str]],
    encode_error: Callable[[StreamEvent], list[str]] = lambda event: [event.to_sse()],
) -> AsyncIterator[str]:
    try:
        async for event in events:
            for chunk in encode(event):
                yield chunk
    except (UpstreamError, AuthError, RoutingError) as exc:
        logger.warning("stream_terminated_with_error error=%s", exc)
        if isinstance(exc, UpstreamError):
            extra: dict[str, Any] = {"provider": exc.provider, "status": exc.status}
            if exc.retry_after:
                extra["retry_after"] = exc.retry_after
            event = error_event("upstream_error", exc.body, **extra)
        else:
            event = error_event("api_error", str(exc))
        for chunk in encode_error(event):
            yield chunk
    finally:
        await events.aclose()


def _error_payload(error_type: str, message: str, **extra: Any) -> dict[str, Any]:
    return {"type": "error", "error": {"type": error_type, "message": message, **extra}}


@app.exception_handler(UpstreamError)
async def upstream_error_handler(_: Request, exc: UpstreamError) -> JSONResponse:
    headers = {"Retry-After": exc.retry_after} if exc.retry_after else None
    return JSONResponse(status_code=exc.status, content=exc.to_payload(), headers=headers)


@app.exception_handler(ValidationError)
async def validation_error_handler(_: Request, exc: ValidationError) -> JSONResponse:
    return JSONResponse(
        status_code=400, content=_error_payload("invalid_request_error", str(exc))
    )


@app.exception_handler(RoutingError)
async def routing_error_handler(_: Request, exc: RoutingError) -> JSONResponse:
    error_type = "invalid_request_error" if exc.status < 500 else "api_error"
    return JSONResponse(status_code=exc.status, content=_error_payload(error_type, str(exc)))


@app.exception_handler(AuthError)
async def auth_error_handler(_: Request, exc: AuthError) -> JSONResponse:
    return JSONResponse(
        status_code=401, content=_error_payload("authentication_error", str(exc))
    )


def run() -> None:
    import uvicorn

    settings = get_settings()
    uvicorn.run("antigravity_pool.main:app", host=settings.host, port=settings.port, reload=False)


if __name__ == "__main__":
    run()
