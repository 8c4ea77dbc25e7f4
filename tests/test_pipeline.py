from __future__ import annotations

import asyncio
import json
import logging
from pathlib import Path

import httpx
import pytest

from antigravity_pool.chat_types import ChatMessage, ChatRequest, ToolUseBlock
from antigravity_pool.errors import AuthError, UpstreamError
from tests.pool_test_utils import (
    Clock,
    FakeRefresher,
    RecordingSleep,
    bearer,
    error_response,
    function_call_chunk,
    make_account,
    make_pipeline,
    make_registry,
    sse_response,
    text_chunk,
)

QUOTA_BODY = {"error": {"code": 429, "details": [{"reason": "QUOTA_EXHAUSTED"}]}}
RATE_BODY = {"error": {"code": 429, "details": [{"reason": "RATE_LIMIT_EXCEEDED"}]}}


def _request(text: str = "hello") -> ChatRequest:
    return ChatRequest(
        model="claude-sonnet-4-5",
        messages=[ChatMessage(role="user", content=text)],
        max_tokens=256,
    )


class RecordingUsage:
    def __init__(self) -> None:
        self.records: list[tuple[str, int, int]] = []

    def record(self, model_id: str, input_tokens: int, output_tokens: int) -> None:
        self.records.append((model_id, input_tokens, output_tokens))


def test_buffered_success_builds_response_and_records_usage(tmp_path: Path) -> None:
    registry = make_registry(tmp_path, [make_account("a")])
    seen: list[httpx.Request] = []
    usage = RecordingUsage()

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return sse_response(
            text_chunk("Hel"),
            text_chunk("lo"),
            function_call_chunk("lookup", {"q": "x"}, call_id="toolu_1"),
            text_chunk("", usage={"promptTokenCount": 12, "candidatesTokenCount": 5}),
        )

    async def run():
        pipeline = make_pipeline(registry, handler, usage_recorder=usage)
        return await pipeline.execute(_request())

    response = asyncio.run(run())

    assert response.stop_reason == "tool_use"
    assert response.content[0].text == "Hello"
    assert isinstance(response.content[1], ToolUseBlock)
    assert response.content[1].id == "toolu_1"
    assert response.usage.input_tokens == 12
    assert usage.records == [("claude-sonnet-4-5", 12, 5)]

    upstream = seen[0]
    assert upstream.url.host == "primary.test"
    assert upstream.url.params["alt"] == "sse"
    assert upstream.headers["authorization"] == "Bearer token-a"
    payload = json.loads(upstream.content)
    assert payload["project"] == "project-a"
    assert payload["model"] == "claude-sonnet-4-5"


def test_rate_limit_is_retried_in_place_then_succeeds(tmp_path: Path) -> None:
    registry = make_registry(tmp_path, [make_account("a"), make_account("b")])
    sleep = RecordingSleep()
    calls: list[str] = []

    def handler(request: httpx.Request) -> httpx.Response:
        calls.append(bearer(request))
        if len(calls) == 1:
            return error_response(429, RATE_BODY)
        return sse_response(text_chunk("ok"))

    async def run():
        pipeline = make_pipeline(registry, handler, sleep=sleep)
        return await pipeline.execute(_request())

    response = asyncio.run(run())

    assert response.content[0].text == "ok"
    assert calls == ["token-a", "token-a"]
    assert sleep.delays == [2.0]
    account = registry.get("a")
    assert account.consecutive_failures == 0
    assert account.rate_limited_until is None


def test_rate_limit_uses_retry_hint_for_in_place_wait(tmp_path: Path) -> None:
    registry = make_registry(tmp_path, [make_account("a")])
    sleep = RecordingSleep()
    calls: list[str] = []

    def handler(request: httpx.Request) -> httpx.Response:
        calls.append(bearer(request))
        if len(calls) == 1:
            return error_response(429, RATE_BODY, headers={"retry-after": "3"})
        return sse_response(text_chunk("ok"))

    async def run():
        pipeline = make_pipeline(registry, handler, sleep=sleep)
        return await pipeline.execute(_request())

    asyncio.run(run())
    assert sleep.delays == [3.5]


def test_repeated_rate_limit_exhausts_in_place_budget_then_rotates(tmp_path: Path) -> None:
    clock = Clock()
    registry = make_registry(tmp_path, [make_account("a"), make_account("b")], clock=clock)
    sleep = RecordingSleep()
    calls: list[str] = []

    def handler(request: httpx.Request) -> httpx.Response:
        token = bearer(request)
        calls.append(token)
        if token == "token-a":
            return error_response(429, RATE_BODY)
        return sse_response(text_chunk("from b"))

    async def run():
        pipeline = make_pipeline(registry, handler, sleep=sleep)
        return await pipeline.execute(_request())

    response = asyncio.run(run())

    assert response.content[0].text == "from b"
    assert calls == ["token-a", "token-a", "token-a", "token-b"]
    assert sleep.delays == [2.0, 4.0]
    assert registry.get("a").consecutive_failures == 1
    assert registry.get("a").rate_limited_until == clock.now + 30_000
    assert registry.queue() == ["a", "b"]


def test_quota_exhaustion_rotates_immediately_and_demotes(tmp_path: Path) -> None:
    clock = Clock()
    registry = make_registry(tmp_path, [make_account("a"), make_account("b")], clock=clock)
    sleep = RecordingSleep()
    calls: list[str] = []

    def handler(request: httpx.Request) -> httpx.Response:
        token = bearer(request)
        calls.append(token)
        if token == "token-a":
            return error_response(429, QUOTA_BODY)
        return sse_response(text_chunk("from b"))

    async def run():
        pipeline = make_pipeline(registry, handler, sleep=sleep)
        return await pipeline.execute(_request())

    response = asyncio.run(run())

    assert response.content[0].text == "from b"
    assert calls == ["token-a", "token-b"]
    assert sleep.delays == []
    assert registry.get("a").rate_limited_until == clock.now + 60_000
    assert registry.get("a").consecutive_failures == 1
    assert registry.queue() == ["b", "a"]


def test_quota_on_every_account_surfaces_429(tmp_path: Path) -> None:
    registry = make_registry(tmp_path, [make_account("a"), make_account("b")])

    def handler(request: httpx.Request) -> httpx.Response:
        return error_response(429, QUOTA_BODY, headers={"retry-after": "60"})

    async def run() -> None:
        pipeline = make_pipeline(registry, handler)
        await pipeline.execute(_request())

    with pytest.raises(UpstreamError) as exc_info:
        asyncio.run(run())

    assert exc_info.value.status == 429
    assert exc_info.value.retry_after == "60"
    assert registry.is_rate_limited("a") and registry.is_rate_limited("b")


def test_unauthorized_refreshes_token_once_and_retries(tmp_path: Path) -> None:
    refresher = FakeRefresher()
    registry = make_registry(tmp_path, [make_account("a")], refresher=refresher)
    calls: list[str] = []

    def handler(request: httpx.Request) -> httpx.Response:
        token = bearer(request)
        calls.append(token)
        if token == "token-a":
            return error_response(401, {"error": {"message": "expired"}})
        return sse_response(text_chunk("ok"))

    async def run():
        pipeline = make_pipeline(registry, handler)
        return await pipeline.execute(_request())

    response = asyncio.run(run())

    assert response.content[0].text == "ok"
    assert calls == ["token-a", "refreshed-1"]
    assert refresher.refresh_calls == ["refresh-a"]


def test_unauthorized_after_refresh_rotates_to_next_account(tmp_path: Path) -> None:
    refresher = FakeRefresher()
    registry = make_registry(
        tmp_path, [make_account("a"), make_account("b")], refresher=refresher
    )
    calls: list[str] = []

    def handler(request: httpx.Request) -> httpx.Response:
        token = bearer(request)
        calls.append(token)
        if token != "token-b":
            return error_response(401, {"error": {"message": "revoked"}})
        return sse_response(text_chunk("from b"))

    async def run():
        pipeline = make_pipeline(registry, handler)
        return await pipeline.execute(_request())

    response = asyncio.run(run())

    assert response.content[0].text == "from b"
    assert calls == ["token-a", "refreshed-1", "token-b"]


def test_refresh_failure_on_unauthorized_locks_and_rotates(tmp_path: Path) -> None:
    clock = Clock()
    registry = make_registry(
        tmp_path,
        [make_account("a"), make_account("b")],
        clock=clock,
        refresher=FakeRefresher(fail=True),
    )

    def handler(request: httpx.Request) -> httpx.Response:
        if bearer(request) == "token-a":
            return error_response(401, "unauthorized")
        return sse_response(text_chunk("from b"))

    async def run():
        pipeline = make_pipeline(registry, handler)
        return await pipeline.execute(_request())

    assert asyncio.run(run()).content[0].text == "from b"
    assert registry.get("a").rate_limited_until == clock.now + 60_000


def test_server_error_falls_back_to_next_endpoint(tmp_path: Path) -> None:
    registry = make_registry(tmp_path, [make_account("a")])
    sleep = RecordingSleep()
    hosts: list[str] = []

    def handler(request: httpx.Request) -> httpx.Response:
        hosts.append(request.url.host)
        if request.url.host == "primary.test":
            return error_response(503, "unavailable")
        return sse_response(text_chunk("fallback"))

    async def run():
        pipeline = make_pipeline(registry, handler, sleep=sleep)
        return await pipeline.execute(_request())

    assert asyncio.run(run()).content[0].text == "fallback"
    assert hosts == ["primary.test", "fallback.test"]
    assert sleep.delays == []


def test_network_error_falls_back_to_next_endpoint(tmp_path: Path) -> None:
    registry = make_registry(tmp_path, [make_account("a")])

    def handler(request: httpx.Request) -> httpx.Response:
        if request.url.host == "primary.test":
            raise httpx.ConnectError("connection refused", request=request)
        return sse_response(text_chunk("fallback"))

    async def run():
        pipeline = make_pipeline(registry, handler)
        return await pipeline.execute(_request())

    assert asyncio.run(run()).content[0].text == "fallback"


def test_persistent_server_errors_back_off_then_raise(
    tmp_path: Path, caplog: pytest.LogCaptureFixture
) -> None:
    registry = make_registry(tmp_path, [make_account("a")])
    sleep = RecordingSleep()
    calls: list[str] = []

    def handler(request: httpx.Request) -> httpx.Response:
        calls.append(request.url.host)
        return error_response(503, "unavailable")

    async def run() -> None:
        pipeline = make_pipeline(registry, handler, sleep=sleep)
        await pipeline.execute(_request())

    with caplog.at_level(logging.INFO, logger="uvicorn.error"):
        with pytest.raises(UpstreamError) as exc_info:
            asyncio.run(run())

    assert exc_info.value.status == 503
    assert sleep.delays == [1.0, 2.0, 4.0, 8.0]
    assert len(calls) == 10
    assert "pipeline_attempts_exhausted" in caplog.text
    assert not registry.is_rate_limited("a")


def test_unreachable_upstream_raises_502(tmp_path: Path) -> None:
    registry = make_registry(tmp_path, [make_account("a")])

    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("connection refused", request=request)

    async def run() -> None:
        pipeline = make_pipeline(registry, handler, max_attempts=2)
        await pipeline.execute(_request())

    with pytest.raises(UpstreamError) as exc_info:
        asyncio.run(run())
    assert exc_info.value.status == 502


def test_client_error_surfaces_without_retry(tmp_path: Path) -> None:
    registry = make_registry(tmp_path, [make_account("a"), make_account("b")])
    calls: list[str] = []

    def handler(request: httpx.Request) -> httpx.Response:
        calls.append(bearer(request))
        return error_response(400, {"error": {"message": "bad schema"}})

    async def run() -> None:
        pipeline = make_pipeline(registry, handler)
        await pipeline.execute(_request())

    with pytest.raises(UpstreamError) as exc_info:
        asyncio.run(run())

    assert exc_info.value.status == 400
    assert "bad schema" in exc_info.value.body
    assert calls == ["token-a"]
    assert not registry.is_rate_limited("a")


def test_pinned_account_that_is_locked_returns_429(tmp_path: Path) -> None:
    registry = make_registry(tmp_path, [make_account("a"), make_account("b")])
    registry.mark_rate_limited("a", 45_000)
    calls: list[str] = []

    def handler(request: httpx.Request) -> httpx.Response:
        calls.append(bearer(request))
        return sse_response(text_chunk("unreachable"))

    async def run() -> None:
        pipeline = make_pipeline(registry, handler)
        await pipeline.execute(_request(), account_id="a", allow_rotation=False)

    with pytest.raises(UpstreamError) as exc_info:
        asyncio.run(run())

    assert exc_info.value.status == 429
    assert calls == []


def test_pinned_account_does_not_rotate_on_quota(tmp_path: Path) -> None:
    registry = make_registry(tmp_path, [make_account("a"), make_account("b")])
    calls: list[str] = []

    def handler(request: httpx.Request) -> httpx.Response:
        calls.append(bearer(request))
        return error_response(429, QUOTA_BODY)

    async def run() -> None:
        pipeline = make_pipeline(registry, handler)
        await pipeline.execute(_request(), account_id="a", allow_rotation=False)

    with pytest.raises(UpstreamError):
        asyncio.run(run())
    assert calls == ["token-a"]


def test_unknown_pinned_account_and_empty_pool_raise_auth_error(tmp_path: Path) -> None:
    registry = make_registry(tmp_path / "one", [make_account("a")])
    empty = make_registry(tmp_path / "empty")

    def handler(request: httpx.Request) -> httpx.Response:
        return sse_response(text_chunk("unreachable"))

    async def run_pinned() -> None:
        await make_pipeline(registry, handler).execute(_request(), account_id="ghost")

    async def run_empty() -> None:
        await make_pipeline(empty, handler).execute(_request())

    with pytest.raises(AuthError):
        asyncio.run(run_pinned())
    with pytest.raises(AuthError):
        asyncio.run(run_empty())


def test_fully_locked_pool_returns_429_with_retry_after(tmp_path: Path) -> None:
    registry = make_registry(tmp_path, [make_account("a")])
    registry.mark_rate_limited("a", 12_300)

    async def run() -> None:
        pipeline = make_pipeline(registry, lambda request: sse_response(text_chunk("x")))
        await pipeline.execute(_request())

    with pytest.raises(UpstreamError) as exc_info:
        asyncio.run(run())
    assert exc_info.value.status == 429
    assert exc_info.value.retry_after == "13"


def test_calls_on_one_account_never_overlap(tmp_path: Path) -> None:
    registry = make_registry(tmp_path, [make_account("a")])
    in_flight = 0
    max_in_flight = 0
    total = 0

    async def handler(request: httpx.Request) -> httpx.Response:
        nonlocal in_flight, max_in_flight, total
        in_flight += 1
        total += 1
        max_in_flight = max(max_in_flight, in_flight)
        await asyncio.sleep(0.005)
        in_flight -= 1
        return sse_response(text_chunk("ok"))

    async def run() -> None:
        pipeline = make_pipeline(registry, handler)
        await asyncio.gather(
            *(pipeline.execute(_request(), account_id="a", allow_rotation=False) for _ in range(8))
        )
        assert not pipeline.locks.is_in_flight("a")

    asyncio.run(run())

    assert total == 8
    assert max_in_flight == 1


def test_waiting_caller_skips_account_failed_by_the_caller_ahead(tmp_path: Path) -> None:
    clock = Clock()
    registry = make_registry(tmp_path, [make_account("a"), make_account("b")], clock=clock)
    calls: list[str] = []

    async def handler(request: httpx.Request) -> httpx.Response:
        token = bearer(request)
        calls.append(token)
        await asyncio.sleep(0.01)
        if token == "token-a":
            return error_response(429, QUOTA_BODY)
        return sse_response(text_chunk("from b"))

    async def run():
        pipeline = make_pipeline(registry, handler)
        return await asyncio.gather(pipeline.execute(_request()), pipeline.execute(_request()))

    responses = asyncio.run(run())

    assert [response.content[0].text for response in responses] == ["from b", "from b"]
    assert calls == ["token-a", "token-b", "token-b"]
    assert registry.get("a").consecutive_failures == 1
    assert registry.get("a").rate_limited_until == clock.now + 60_000


def test_waiting_pinned_caller_gets_429_once_account_fails(tmp_path: Path) -> None:
    registry = make_registry(tmp_path, [make_account("a"), make_account("b")])
    calls: list[str] = []

    async def handler(request: httpx.Request) -> httpx.Response:
        calls.append(bearer(request))
        await asyncio.sleep(0.01)
        return error_response(429, QUOTA_BODY)

    async def run():
        pipeline = make_pipeline(registry, handler)
        return await asyncio.gather(
            pipeline.execute(_request(), account_id="a", allow_rotation=False),
            pipeline.execute(_request(), account_id="a", allow_rotation=False),
            return_exceptions=True,
        )

    first, second = asyncio.run(run())

    assert isinstance(first, UpstreamError) and first.status == 429
    assert isinstance(second, UpstreamError) and second.status == 429
    assert "temporarily rate limited" in second.body
    assert calls == ["token-a"]
    assert registry.get("a").consecutive_failures == 1


def test_usage_recorder_failure_does_not_fail_call(tmp_path: Path) -> None:
    registry = make_registry(tmp_path, [make_account("a")])

    class BrokenUsage:
        def record(self, model_id: str, input_tokens: int, output_tokens: int) -> None:
            raise RuntimeError("disk full")

    async def run():
        pipeline = make_pipeline(
            registry, lambda request: sse_response(text_chunk("ok")), usage_recorder=BrokenUsage()
        )
        return await pipeline.execute(_request())

    assert asyncio.run(run()).content[0].text == "ok"
