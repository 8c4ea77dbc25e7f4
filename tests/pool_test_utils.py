from __future__ import annotations

import asyncio
import json
from collections.abc import Callable, Sequence
from pathlib import Path
from typing import Any

import httpx
from fastapi.testclient import TestClient

from antigravity_pool import main
from antigravity_pool.accounts.models import Account
from antigravity_pool.accounts.registry import AccountRegistry
from antigravity_pool.accounts.store import AccountStore
from antigravity_pool.accounts.token_refresher import RefreshedToken
from antigravity_pool.errors import AuthError
from antigravity_pool.pipeline import RequestPipeline
from antigravity_pool.settings import get_settings
from antigravity_pool.translator.stream import StreamEvent

START_MS = 1_700_000_000_000


class Clock:
    def __init__(self, now: int = START_MS) -> None:
        self.now = now

    def __call__(self) -> int:
        return self.now

    def advance(self, ms: int) -> None:
        self.now += ms


class FakeRefresher:
    def __init__(
        self,
        *,
        project_id: str | None = "resolved-project",
        fail: bool = False,
        expires_in: int = 3600,
    ) -> None:
        self.project_id = project_id
        self.fail = fail
        self.expires_in = expires_in
        self.refresh_calls: list[str] = []
        self.project_calls: list[str] = []

    async def refresh(self, refresh_token: str) -> RefreshedToken:
        self.refresh_calls.append(refresh_token)
        if self.fail:
            raise AuthError("invalid_grant")
        return RefreshedToken(
            access_token=f"refreshed-{len(self.refresh_calls)}",
            expires_in=self.expires_in,
        )

    async def resolve_project_scope(self, access_token: str) -> str | None:
        self.project_calls.append(access_token)
        return self.project_id


class RecordingSleep:
    def __init__(self) -> None:
        self.delays: list[float] = []

    async def __call__(self, seconds: float) -> None:
        self.delays.append(seconds)


def make_account(account_id: str, **overrides: Any) -> Account:
    fields: dict[str, Any] = {
        "id": account_id,
        "email": f"{account_id}@example.com",
        "access_token": f"token-{account_id}",
        "refresh_token": f"refresh-{account_id}",
        "expires_at": 0,
        "project_id": f"project-{account_id}",
    }
    fields.update(overrides)
    return Account(**fields)


def make_registry(
    tmp_path: Path,
    accounts: Sequence[Account] = (),
    *,
    clock: Clock | None = None,
    refresher: FakeRefresher | None = None,
) -> AccountRegistry:
    store = AccountStore(tmp_path / "accounts.json", tmp_path / "auth")
    if accounts:
        store.save_accounts(list(accounts))
    registry = AccountRegistry(
        store=store,
        refresher=refresher or FakeRefresher(),
        now_ms=clock or Clock(),
    )
    registry.load()
    return registry


def make_pipeline(
    registry: AccountRegistry,
    handler: Callable[[httpx.Request], Any],
    *,
    sleep: RecordingSleep | None = None,
    base_urls: Sequence[str] = ("https://primary.test", "https://fallback.test"),
    **kwargs: Any,
) -> RequestPipeline:
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return RequestPipeline(
        registry=registry,
        client=client,
        base_urls=list(base_urls),
        user_agent="antigravity/test",
        sleep=sleep or RecordingSleep(),
        **kwargs,
    )


def text_chunk(text: str, usage: dict[str, int] | None = None) -> dict[str, Any]:
    response: dict[str, Any] = {
        "candidates": [{"content": {"role": "model", "parts": [{"text": text}]}}]
    }
    if usage is not None:
        response["usageMetadata"] = usage
    return {"response": response}


def function_call_chunk(
    name: str, args: dict[str, Any], call_id: str | None = None
) -> dict[str, Any]:
    call: dict[str, Any] = {"name": name, "args": args}
    if call_id is not None:
        call["id"] = call_id
    return {
        "response": {
            "candidates": [{"content": {"role": "model", "parts": [{"functionCall": call}]}}]
        }
    }


def sse_body(*chunks: dict[str, Any]) -> str:
    return "".join(f"data: {json.dumps(chunk)}\n\n" for chunk in chunks)


def sse_response(*chunks: dict[str, Any]) -> httpx.Response:
    return httpx.Response(
        200,
        text=sse_body(*chunks),
        headers={"content-type": "text/event-stream"},
    )


def error_response(
    status: int, body: dict[str, Any] | str, headers: dict[str, str] | None = None
) -> httpx.Response:
    text = body if isinstance(body, str) else json.dumps(body)
    return httpx.Response(status, text=text, headers=headers)


def bearer(request: httpx.Request) -> str:
    return request.headers.get("authorization", "").removeprefix("Bearer ")


class ScriptedStream(httpx.AsyncByteStream):
    """Response body that yields ``chunks`` and then stalls or fails."""

    def __init__(
        self,
        *chunks: bytes,
        error: Exception | None = None,
        stall_seconds: float | None = None,
    ) -> None:
        self._chunks = chunks
        self._error = error
        self._stall_seconds = stall_seconds
        self.closed = False

    async def __aiter__(self):
        for chunk in self._chunks:
            yield chunk
        if self._stall_seconds is not None:
            await asyncio.sleep(self._stall_seconds)
        if self._error is not None:
            raise self._error

    async def aclose(self) -> None:
        self.closed = True


def assert_well_formed_events(events: Sequence[StreamEvent]) -> None:
    names = [event.event for event in events]
    assert names[0] == "message_start"
    assert names[-2:] == ["message_delta", "message_stop"]
    assert names.count("message_start") == 1
    assert names.count("message_stop") == 1

    open_index: int | None = None
    next_index = 0
    for event in events[1:-2]:
        index = event.index
        if event.event == "content_block_start":
            assert open_index is None
            assert index == next_index
            open_index = index
            next_index += 1
        elif event.event == "content_block_delta":
            assert index == open_index
        elif event.event == "content_block_stop":
            assert index == open_index
            open_index = None
        else:
            raise AssertionError(f"unexpected event {event.event}")
    assert open_index is None


def build_test_client(
    monkeypatch: Any,
    tmp_path: Path,
    handler: Callable[[httpx.Request], Any],
    accounts: Sequence[Account] = (),
    **env: Any,
) -> TestClient:
    if accounts:
        AccountStore(tmp_path / "accounts.json").save_accounts(list(accounts))
    monkeypatch.setenv("DATA_DIR", str(tmp_path))
    monkeypatch.setenv("USAGE_LOG_ENABLED", "false")
    monkeypatch.setenv("UPSTREAM_BASE_URLS", "https://primary.test")
    for key, value in env.items():
        monkeypatch.setenv(key, str(value))
    monkeypatch.setattr(
        main,
        "build_http_client",
        lambda settings: httpx.AsyncClient(transport=httpx.MockTransport(handler)),
    )
    get_settings.cache_clear()
    return TestClient(main.app)
