from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import AsyncGenerator, AsyncIterator, Awaitable, Callable
from dataclasses import dataclass, field
from typing import Any
from uuid import uuid4

import httpx

from antigravity_pool.accounts.models import SelectedAccount
from antigravity_pool.accounts.rate_limit import (
    RateLimitReason,
    backoff_delay_ms,
    classify_rate_limit,
    in_place_retry_delay_ms,
    parse_retry_delay_ms,
)
from antigravity_pool.accounts.registry import AccountRegistry, fallback_project_id
from antigravity_pool.catalog import upstream_model_name
from antigravity_pool.chat_types import ChatRequest, ChatResponse
from antigravity_pool.errors import AuthError, UpstreamError
from antigravity_pool.translator.stream import (
    StreamEvent,
    UpstreamStreamTranslator,
    parse_sse_data_line,
)
from antigravity_pool.translator.upstream import (
    build_upstream_request,
    parse_upstream_response,
)
from antigravity_pool.usage import UsageRecorder

logger = logging.getLogger("uvicorn.error")

PROVIDER = "antigravity"
STREAM_PATH = "/v1internal:streamGenerateContent?alt=sse"
ENDPOINT_FALLBACK_STATUSES = {404, 408}
WHOLE_CALL_RETRY_STATUSES = {408}


def _request_error_details(exc: httpx.RequestError) -> dict[str, Any]:
    error_repr = repr(exc)
    return {
        "error": str(exc).strip() or error_repr,
        "error_type": exc.__class__.__name__.strip() or "RequestError",
        "is_timeout": isinstance(exc, httpx.TimeoutException),
    }


class StreamIdleTimeout(Exception):
    """No upstream bytes arrived within the idle window."""


@dataclass(slots=True)
class AttemptState:
    request_id: str
    attempt: int = 0
    same_account_retries: int = 0
    refreshed_after_unauthorized: bool = False
    accumulated_delay_ms: int = 0
    tried_accounts: list[str] = field(default_factory=list)

    def use_account(self, account_id: str) -> None:
        if account_id not in self.tried_accounts:
            self.tried_accounts.append(account_id)
        self.same_account_retries = 0
        self.refreshed_after_unauthorized = False


@dataclass(slots=True)
class _Failure:
    status: int | None
    body: str
    retry_after: str | None = None
    is_timeout: bool = False

    def to_error(self) -> UpstreamError:
        if self.status is None:
            status = 504 if self.is_timeout else 502
            return UpstreamError(PROVIDER, status, self.body)
        return UpstreamError(PROVIDER, self.status, self.body, self.retry_after)


@dataclass(slots=True)
class _Delivered:
    response: httpx.Response | None = None
    chunks: list[dict[str, Any]] | None = None


@dataclass(slots=True)
class _OpenCall:
    account: SelectedAccount
    lock: asyncio.Lock
    state: AttemptState
    response: httpx.Response | None = None
    chunks: list[dict[str, Any]] | None = None

    async def close(self) -> None:
        try:
            if self.response is not None:
                await self.response.aclose()
        finally:
            if self.lock.locked():
                self.lock.release()


class AccountLocks:
    def __init__(self) -> None:
        self._locks: dict[str, asyncio.Lock] = {}

    def lock_for(self, account_id: str) -> asyncio.Lock:
        lock = self._locks.get(account_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[account_id] = lock
        return lock

    def is_in_flight(self, account_id: str) -> bool:
        lock = self._locks.get(account_id)
        return lock is not None and lock.locked()


class ChatEventStream:
    """Single-pass stream of events for one call.

    ``aclose`` stops reading upstream and releases the account; ``prime``
    pulls the first event early so failures before any output can still be
    reported as a plain error response.
    """

    def __init__(self, events: AsyncGenerator[StreamEvent, None]) -> None:
        self._events = events
        self._buffered: list[StreamEvent] = []
        self._closed = False

    def __aiter__(self) -> ChatEventStream:
        return self

    async def __anext__(self) -> StreamEvent:
        if self._buffered:
            return self._buffered.pop(0)
        if self._closed:
            raise StopAsyncIteration
        try:
            return await self._events.__anext__()
        except StopAsyncIteration:
            self._closed = True
            raise

    async def prime(self) -> None:
        if self._buffered or self._closed:
            return
        try:
            self._buffered.append(await self._events.__anext__())
        except StopAsyncIteration:
            self._closed = True

    async def aclose(self) -> None:
        self._closed = True
        self._buffered.clear()
        await self._events.aclose()

    async def __aenter__(self) -> ChatEventStream:
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.aclose()

    async def iter_sse(self) -> AsyncIterator[str]:
        async for event in self:
            yield event.to_sse()


class RequestPipeline:
    def __init__(
        self,
        *,
        registry: AccountRegistry,
        client: httpx.AsyncClient,
        base_urls: list[str],
        user_agent: str,
        request_timeout_seconds: float = 120.0,
        connect_timeout_seconds: float = 10.0,
        stream_idle_timeout_seconds: float = 300.0,
        max_attempts: int = 5,
        same_account_retries: int = 2,
        same_account_retry_max_delay_ms: int = 10_000,
        usage_recorder: UsageRecorder | None = None,
        locks: AccountLocks | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        if not base_urls:
            raise ValueError("at least one upstream base URL is required")
        self.registry = registry
        self.locks = locks or AccountLocks()
        self._client = client
        self._base_urls = [url.rstrip("/") for url in base_urls]
        self._user_agent = user_agent
        self._request_timeout = request_timeout_seconds
        self._connect_timeout = connect_timeout_seconds
        self._stream_idle_timeout = stream_idle_timeout_seconds
        self._max_attempts = max(1, max_attempts)
        self._same_account_retries = max(0, same_account_retries)
        self._same_account_retry_max_delay_ms = same_account_retry_max_delay_ms
        self._usage_recorder = usage_recorder
        self._sleep = sleep

    async def execute(
        self,
        request: ChatRequest,
        *,
        account_id: str | None = None,
        allow_rotation: bool = True,
    ) -> ChatResponse:
        call = await self._open(
            request, account_id=account_id, allow_rotation=allow_rotation, stream=False
        )
        try:
            response = parse_upstream_response(call.chunks or [], model=request.model)
        finally:
            await call.close()
        logger.info(
            (
                "pipeline_complete request_id=%s account=%s model=%s "
                "attempts=%d accounts_tried=%d stop_reason=%s"
            ),
            call.state.request_id,
            call.account.account_id,
            request.model,
            call.state.attempt + 1,
            len(call.state.tried_accounts),
            response.stop_reason,
        )
        self._record_usage(
            request.model, response.usage.input_tokens, response.usage.output_tokens
        )
        return response

    def execute_streaming(
        self,
        request: ChatRequest,
        *,
        account_id: str | None = None,
        allow_rotation: bool = True,
    ) -> ChatEventStream:
        return ChatEventStream(
            self._stream_events(
                request, account_id=account_id, allow_rotation=allow_rotation
            )
        )

    async def _stream_events(
        self,
        request: ChatRequest,
        *,
        account_id: str | None,
        allow_rotation: bool,
    ) -> AsyncGenerator[StreamEvent, None]:
        call = await self._open(
            request, account_id=account_id, allow_rotation=allow_rotation, stream=True
        )
        translator = UpstreamStreamTranslator(model=request.model)
        completed = False
        try:
            for event in translator.start():
                yield event
            assert call.response is not None
            lines = call.response.aiter_lines()
            while True:
                line = await self._next_line(lines)
                if line is None:
                    break
                chunk = parse_sse_data_line(line)
                if chunk is None:
                    continue
                for event in translator.feed(chunk):
                    yield event
            for event in translator.finish():
                yield event
            completed = True
        except (httpx.RequestError, StreamIdleTimeout) as exc:
            timed_out = isinstance(exc, (StreamIdleTimeout, httpx.TimeoutException))
            logger.warning(
                "pipeline_stream_interrupted request_id=%s account=%s idle_timeout=%s error=%s",
                call.state.request_id,
                call.account.account_id,
                isinstance(exc, StreamIdleTimeout),
                exc,
            )
            raise UpstreamError(
                PROVIDER,
                504 if timed_out else 502,
                f"upstream stream interrupted: {exc}",
            ) from exc
        finally:
            await call.close()
            if not completed:
                logger.info(
                    "pipeline_stream_closed request_id=%s account=%s completed=false",
                    call.state.request_id,
                    call.account.account_id,
                )
        logger.info(
            "pipeline_stream_complete request_id=%s account=%s model=%s stop_reason=%s",
            call.state.request_id,
            call.account.account_id,
            request.model,
            translator.stop_reason,
        )
        self._record_usage(
            request.model, translator.usage.input_tokens, translator.usage.output_tokens
        )

    async def _next_line(self, lines: AsyncIterator[str]) -> str | None:
        try:
            async with asyncio.timeout(self._stream_idle_timeout):
                return await anext(lines)
        except StopAsyncIteration:
            return None
        except TimeoutError as exc:
            raise StreamIdleTimeout(
                f"no data for {self._stream_idle_timeout:.0f}s"
            ) from exc

    async def _open(
        self,
        request: ChatRequest,
        *,
        account_id: str | None,
        allow_rotation: bool,
        stream: bool,
    ) -> _OpenCall:
        state = AttemptState(request_id=uuid4().hex[:12])
        account, lock = await self._claim(
            await self._resolve_account(account_id, state),
            state,
            pinned=bool(account_id),
            allow_rotation=allow_rotation,
        )
        while True:
            try:
                outcome = await self._attempt(request, account, state, stream=stream)
                if isinstance(outcome, _Delivered):
                    self.registry.mark_success(account.account_id)
                    return _OpenCall(
                        account=account,
                        lock=lock,
                        state=state,
                        response=outcome.response,
                        chunks=outcome.chunks,
                    )
                next_account = await self._handle_failure(
                    outcome, account, state, allow_rotation=allow_rotation
                )
            except BaseException:
                if lock.locked():
                    lock.release()
                raise
            if next_account.account_id == account.account_id:
                # Same-account retries keep the lock across the wait.
                account = next_account
                continue
            lock.release()
            account, lock = await self._claim(
                next_account,
                state,
                pinned=bool(account_id),
                allow_rotation=allow_rotation,
            )

    async def _claim(
        self,
        account: SelectedAccount,
        state: AttemptState,
        *,
        pinned: bool,
        allow_rotation: bool,
    ) -> tuple[SelectedAccount, asyncio.Lock]:
        """Lock ``account``, reselecting if another caller failed it while we waited."""
        while True:
            lock = self.locks.lock_for(account.account_id)
            await lock.acquire()
            if not self.registry.is_rate_limited(account.account_id):
                return account, lock
            lock.release()
            logger.info(
                "pipeline_account_limited_while_waiting request_id=%s account=%s",
                state.request_id,
                account.account_id,
            )
            if pinned or not allow_rotation:
                raise self._rate_limited_error(
                    f"account {account.account_id} is temporarily rate limited"
                )
            selected = await self.registry.get_next_available_account(
                force_rotate=True, exclude=state.tried_accounts
            )
            if selected is None:
                raise self._rate_limited_error("all upstream accounts are rate limited")
            state.use_account(selected.account_id)
            account = selected

    def _rate_limited_error(self, message: str) -> UpstreamError:
        return UpstreamError(
            PROVIDER,
            429,
            message,
            retry_after=_retry_after_seconds(self.registry.min_rate_limit_wait_ms()),
        )

    async def _resolve_account(
        self, account_id: str | None, state: AttemptState
    ) -> SelectedAccount:
        if account_id:
            selected = await self.registry.get_account_by_id(account_id)
            if selected is None:
                if not self.registry.has_account(account_id):
                    raise AuthError(f"unknown account: {account_id}")
                raise self._rate_limited_error(
                    f"account {account_id} is temporarily rate limited"
                )
        else:
            if self.registry.count() == 0:
                raise AuthError("no upstream accounts configured")
            selected = await self.registry.get_next_available_account()
            if selected is None:
                raise self._rate_limited_error("all upstream accounts are rate limited")
        state.use_account(selected.account_id)
        return selected

    async def _attempt(
        self,
        request: ChatRequest,
        account: SelectedAccount,
        state: AttemptState,
        *,
        stream: bool,
    ) -> _Delivered | _Failure:
        payload = build_upstream_request(
            request,
            upstream_model=upstream_model_name(request.model),
            project_id=account.project_id or fallback_project_id(),
        )
        headers = {
            "Authorization": f"Bearer {account.access_token}",
            "Content-Type": "application/json",
            "Accept": "text/event-stream",
            "User-Agent": self._user_agent,
        }
        if stream:
            timeout = httpx.Timeout(self._stream_idle_timeout, connect=self._connect_timeout)
        else:
            timeout = httpx.Timeout(self._request_timeout, connect=self._connect_timeout)

        failure: _Failure | None = None
        for endpoint_index, base_url in enumerate(self._base_urls):
            started = time.perf_counter()
            try:
                upstream_request = self._client.build_request(
                    "POST",
                    f"{base_url}{STREAM_PATH}",
                    json=payload,
                    headers=headers,
                    timeout=timeout,
                )
                response = await self._client.send(upstream_request, stream=True)
            except httpx.RequestError as exc:
                details = _request_error_details(exc)
                logger.warning(
                    (
                        "pipeline_request_error request_id=%s account=%s endpoint=%d "
                        "error_type=%s error=%s"
                    ),
                    state.request_id,
                    account.account_id,
                    endpoint_index,
                    details["error_type"],
                    details["error"],
                )
                failure = _Failure(
                    status=None,
                    body=f"could not reach upstream ({details['error_type']}): {details['error']}",
                    is_timeout=details["is_timeout"],
                )
                continue

            logger.info(
                "pipeline_upstream_connected request_id=%s account=%s endpoint=%d status=%d connect_ms=%.2f",
                state.request_id,
                account.account_id,
                endpoint_index,
                response.status_code,
                (time.perf_counter() - started) * 1000.0,
            )
            if response.is_success:
                if stream:
                    return _Delivered(response=response)
                chunks = await self._read_buffered(response, state, account)
                if isinstance(chunks, _Failure):
                    failure = chunks
                    continue
                return _Delivered(chunks=chunks)

            try:
                body = (await response.aread()).decode("utf-8", errors="replace")
            except httpx.RequestError as exc:
                body = str(exc)
            finally:
                await response.aclose()
            failure = _Failure(
                status=response.status_code,
                body=body,
                retry_after=response.headers.get("retry-after"),
            )
            if (
                response.status_code in ENDPOINT_FALLBACK_STATUSES
                or response.status_code >= 500
            ):
                continue
            return failure

        assert failure is not None
        return failure

    async def _read_buffered(
        self,
        response: httpx.Response,
        state: AttemptState,
        account: SelectedAccount,
    ) -> list[dict[str, Any]] | _Failure:
        chunks: list[dict[str, Any]] = []
        try:
            async with asyncio.timeout(self._request_timeout):
                async for line in response.aiter_lines():
                    chunk = parse_sse_data_line(line)
                    if chunk is not None:
                        chunks.append(chunk)
        except (httpx.RequestError, TimeoutError) as exc:
            logger.warning(
                "pipeline_body_read_error request_id=%s account=%s error=%s",
                state.request_id,
                account.account_id,
                exc,
            )
            return _Failure(
                status=None,
                body=f"upstream body read failed: {exc}",
                is_timeout=isinstance(exc, (TimeoutError, httpx.TimeoutException)),
            )
        finally:
            await response.aclose()
        return chunks

    async def _handle_failure(
        self,
        failure: _Failure,
        account: SelectedAccount,
        state: AttemptState,
        *,
        allow_rotation: bool,
    ) -> SelectedAccount:
        status = failure.status
        if status == 429:
            return await self._handle_rate_limit(
                failure, account, state, allow_rotation=allow_rotation
            )

        if status == 401:
            if not state.refreshed_after_unauthorized:
                state.refreshed_after_unauthorized = True
                logger.info(
                    "pipeline_unauthorized_refresh request_id=%s account=%s",
                    state.request_id,
                    account.account_id,
                )
                refreshed = await self.registry.force_refresh(account.account_id)
                if refreshed is not None:
                    return refreshed
            return await self._rotate(failure, account, state, allow_rotation=allow_rotation)

        if status is None or status >= 500 or status in WHOLE_CALL_RETRY_STATUSES:
            state.attempt += 1
            if state.attempt >= self._max_attempts:
                logger.error(
                    "pipeline_attempts_exhausted request_id=%s account=%s status=%s attempts=%d",
                    state.request_id,
                    account.account_id,
                    status,
                    state.attempt,
                )
                raise failure.to_error()
            delay_ms = backoff_delay_ms(status, state.attempt - 1)
            logger.info(
                "pipeline_retry request_id=%s account=%s status=%s attempt=%d delay_ms=%d",
                state.request_id,
                account.account_id,
                status,
                state.attempt + 1,
                delay_ms,
            )
            await self._wait(delay_ms, state)
            return account

        logger.warning(
            "pipeline_client_error request_id=%s account=%s status=%d",
            state.request_id,
            account.account_id,
            status,
        )
        raise failure.to_error()

    async def _handle_rate_limit(
        self,
        failure: _Failure,
        account: SelectedAccount,
        state: AttemptState,
        *,
        allow_rotation: bool,
    ) -> SelectedAccount:
        reason = classify_rate_limit(429, failure.body)
        if (
            reason is not RateLimitReason.QUOTA_EXHAUSTED
            and state.same_account_retries < self._same_account_retries
        ):
            delay_ms = in_place_retry_delay_ms(
                parse_retry_delay_ms(failure.body, failure.retry_after),
                state.same_account_retries,
                self._same_account_retry_max_delay_ms,
            )
            state.same_account_retries += 1
            # Transient lockout keeps concurrent callers off this account while we wait.
            self.registry.mark_rate_limited(account.account_id, delay_ms)
            logger.info(
                "pipeline_rate_limited_retry_same request_id=%s account=%s reason=%s retry=%d delay_ms=%d",
                state.request_id,
                account.account_id,
                reason.value,
                state.same_account_retries,
                delay_ms,
            )
            await self._wait(delay_ms, state)
            return account

        self.registry.mark_rate_limited_from_error(
            account.account_id, 429, failure.body, failure.retry_after
        )
        return await self._rotate(failure, account, state, allow_rotation=allow_rotation)

    async def _rotate(
        self,
        failure: _Failure,
        account: SelectedAccount,
        state: AttemptState,
        *,
        allow_rotation: bool,
    ) -> SelectedAccount:
        if allow_rotation:
            selected = await self.registry.get_next_available_account(
                force_rotate=True, exclude=state.tried_accounts
            )
            if selected is not None:
                logger.info(
                    "pipeline_account_rotated request_id=%s from=%s to=%s status=%s",
                    state.request_id,
                    account.account_id,
                    selected.account_id,
                    failure.status,
                )
                state.use_account(selected.account_id)
                return selected
        logger.warning(
            "pipeline_rotation_unavailable request_id=%s account=%s status=%s allow_rotation=%s",
            state.request_id,
            account.account_id,
            failure.status,
            allow_rotation,
        )
        raise failure.to_error()

    async def _wait(self, delay_ms: int, state: AttemptState) -> None:
        state.accumulated_delay_ms += delay_ms
        await self._sleep(delay_ms / 1000.0)

    def _record_usage(self, model: str, input_tokens: int, output_tokens: int) -> None:
        if self._usage_recorder is None:
            return
        try:
            self._usage_recorder.record(model, input_tokens, output_tokens)
        except Exception as exc:
            logger.warning("usage_record_failed model=%s error=%s", model, exc)


def _retry_after_seconds(wait_ms: int) -> str | None:
    if wait_ms <= 0:
        return None
    return str(max(1, -(-wait_ms // 1000)))
