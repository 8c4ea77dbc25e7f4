from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable
from typing import TypeVar

from antigravity_pool.catalog import is_supported_model
from antigravity_pool.chat_types import ChatRequest, ChatResponse
from antigravity_pool.errors import AuthError, RoutingError, UpstreamError
from antigravity_pool.pipeline import ChatEventStream, RequestPipeline
from antigravity_pool.routing.config import RouteEntry, RoutingConfigStore

logger = logging.getLogger("uvicorn.error")

FALLBACK_STATUSES = frozenset({401, 403, 408, 429, 500, 503, 529})

T = TypeVar("T")


class ModelRouter:
    """Resolves a model to ranked account entries and fails over between them.

    A model with no configured route, or an ``auto`` entry, is served by pool
    rotation inside the pipeline.
    """

    def __init__(
        self,
        *,
        pipeline: RequestPipeline,
        config_store: RoutingConfigStore,
    ) -> None:
        self._pipeline = pipeline
        self._config_store = config_store
        self._cursors: dict[str, int] = {}

    async def execute(self, request: ChatRequest) -> ChatResponse:
        async def run(entry: RouteEntry | None) -> ChatResponse:
            if entry is None or entry.is_auto:
                return await self._pipeline.execute(request)
            return await self._pipeline.execute(
                request, account_id=entry.account_id, allow_rotation=False
            )

        return await self._dispatch(request.model, run)

    async def execute_streaming(self, request: ChatRequest) -> ChatEventStream:
        async def run(entry: RouteEntry | None) -> ChatEventStream:
            if entry is None or entry.is_auto:
                stream = self._pipeline.execute_streaming(request)
            else:
                stream = self._pipeline.execute_streaming(
                    request, account_id=entry.account_id, allow_rotation=False
                )
            # Failover is only possible until the first event is produced.
            try:
                await stream.prime()
            except BaseException:
                await stream.aclose()
                raise
            return stream

        return await self._dispatch(request.model, run)

    def candidate_entries(self, model_id: str) -> list[RouteEntry]:
        config = self._config_store.current()
        route = config.route_for(model_id)
        if route is None or not route.entries:
            return []
        entries = list(route.entries)
        if not config.smart_switch:
            return entries[:1]
        start = self._cursors.get(model_id, 0) % len(entries)
        return entries[start:] + entries[:start]

    async def _dispatch(
        self,
        model_id: str,
        run: Callable[[RouteEntry | None], Awaitable[T]],
    ) -> T:
        if not is_supported_model(model_id):
            raise RoutingError(f"Unsupported model: {model_id}", status=400)

        entries = self.candidate_entries(model_id)
        if not entries:
            return await run(None)

        registry = self._pipeline.registry
        last_error: UpstreamError | AuthError | None = None
        attempted = 0
        for position, entry in enumerate(entries):
            has_more = position < len(entries) - 1
            if (
                not entry.is_auto
                and len(entries) > 1
                and (
                    registry.is_rate_limited(entry.account_id)
                    or self._pipeline.locks.is_in_flight(entry.account_id)
                )
            ):
                logger.info(
                    "route_entry_skipped model=%s account=%s", model_id, entry.account_id
                )
                continue

            attempted += 1
            try:
                result = await run(entry)
            except UpstreamError as exc:
                if exc.status not in FALLBACK_STATUSES:
                    raise
                if not entry.is_auto and exc.status != 429:
                    registry.mark_rate_limited_from_error(
                        entry.account_id, exc.status, exc.body, exc.retry_after
                    )
                last_error = exc
                logger.warning(
                    "route_entry_failed model=%s account=%s status=%d has_more=%s",
                    model_id,
                    entry.account_id,
                    exc.status,
                    has_more,
                )
                continue
            except AuthError as exc:
                last_error = exc
                logger.warning(
                    "route_entry_unavailable model=%s account=%s error=%s",
                    model_id,
                    entry.account_id,
                    exc,
                )
                continue

            self._remember(model_id, entry)
            return result

        logger.error(
            "route_exhausted model=%s entries=%d attempted=%d",
            model_id,
            len(entries),
            attempted,
        )
        if last_error is not None:
            raise last_error
        raise RoutingError(f"No usable route for model {model_id}", status=503)

    def _remember(self, model_id: str, entry: RouteEntry) -> None:
        route = self._config_store.current().route_for(model_id)
        if route is None:
            return
        for index, candidate in enumerate(route.entries):
            if candidate is entry:
                self._cursors[model_id] = index
                return
