from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Callable, Collection
from typing import Any
from uuid import uuid4

from antigravity_pool.accounts.models import Account, SelectedAccount
from antigravity_pool.accounts.rate_limit import (
    RateLimitDecision,
    RateLimitReason,
    classify_rate_limit,
    lockout_duration_ms,
    parse_retry_delay_ms,
)
from antigravity_pool.accounts.store import AccountStore
from antigravity_pool.accounts.token_refresher import TokenRefresher
from antigravity_pool.errors import AuthError

logger = logging.getLogger("uvicorn.error")

TOKEN_REFRESH_BUFFER_MS = 5 * 60 * 1000
REFRESH_FAILURE_LOCKOUT_MS = 60_000
OPTIMISTIC_RESET_THRESHOLD_MS = 2_000


def _now_ms() -> int:
    return int(time.time() * 1000)


def fallback_project_id() -> str:
    return f"antigravity-{uuid4().hex[:12]}"


class AccountRegistry:
    """Pooled upstream accounts, their rotation queue and lockout state.

    Selection and failure reporting run on the event loop, so each mutation of
    a single account record happens without an intervening await. Token refresh
    is the only suspension point and is serialized per account.
    """

    def __init__(
        self,
        *,
        store: AccountStore,
        refresher: TokenRefresher,
        now_ms: Callable[[], int] = _now_ms,
    ) -> None:
        self._store = store
        self._refresher = refresher
        self._now_ms = now_ms
        self._accounts: dict[str, Account] = {}
        self._queue: list[str] = []
        self._refresh_locks: dict[str, asyncio.Lock] = {}
        self._removal_hooks: list[Callable[[str], None]] = []
        self._loaded = False

    def load(self) -> None:
        if self._loaded:
            return
        self._loaded = True
        for account in self._store.load_accounts():
            self._accounts.setdefault(account.id, account)
        if not self._accounts:
            imported = self._hydrate_imported()
            if imported:
                self._save()
        self._sync_queue()
        logger.info(
            "account_registry_loaded accounts=%d path=%s",
            len(self._accounts),
            self._store.path,
        )

    def add_removal_hook(self, hook: Callable[[str], None]) -> None:
        self._removal_hooks.append(hook)

    def add_account(self, account: Account) -> Account:
        self.load()
        existing = self._accounts.get(account.id)
        if existing is not None:
            account.rate_limited_until = existing.rate_limited_until
            account.consecutive_failures = existing.consecutive_failures
        self._accounts[account.id] = account
        self._sync_queue()
        self._store.save_accounts(list(self._accounts.values()))
        logger.info(
            "account_added account=%s replaced=%s", account.id, existing is not None
        )
        return account

    def remove_account(self, id_or_email: str) -> bool:
        self.load()
        account = self._find(id_or_email)
        if account is None:
            return False
        del self._accounts[account.id]
        self._refresh_locks.pop(account.id, None)
        self._sync_queue()
        self._store.save_accounts(list(self._accounts.values()))
        for hook in self._removal_hooks:
            try:
                hook(account.id)
            except Exception as exc:
                logger.warning(
                    "account_removal_hook_failed account=%s error=%s", account.id, exc
                )
        logger.info("account_removed account=%s", account.id)
        return True

    def list_accounts(self) -> list[dict[str, Any]]:
        self.load()
        now = self._now_ms()
        return [
            self._accounts[account_id].describe(now_ms=now, queue_position=position)
            for position, account_id in enumerate(self._queue)
        ]

    def count(self) -> int:
        self.load()
        return len(self._accounts)

    def emails(self) -> list[str]:
        self.load()
        return [self._accounts[account_id].email for account_id in self._queue]

    def has_account(self, id_or_email: str) -> bool:
        self.load()
        return self._find(id_or_email) is not None

    def queue(self) -> list[str]:
        return list(self._queue)

    def get(self, account_id: str) -> Account | None:
        return self._accounts.get(account_id)

    def is_rate_limited(self, account_id: str) -> bool:
        account = self._accounts.get(account_id)
        return account is not None and self._is_locked(account, self._now_ms())

    def min_rate_limit_wait_ms(self) -> int:
        now = self._now_ms()
        waits = [self._remaining_ms(account, now) for account in self._accounts.values()]
        return min(waits, default=0)

    async def get_next_available_account(
        self,
        force_rotate: bool = False,
        *,
        exclude: Collection[str] = (),
    ) -> SelectedAccount | None:
        self.load()
        if not self._queue:
            return None

        if not force_rotate:
            head = self._accounts[self._queue[0]]
            if head.id not in exclude and not self._is_locked(head, self._now_ms()):
                selected = await self._ensure_ready(head)
                if selected is not None:
                    return selected

        for account_id in list(self._queue):
            account = self._accounts.get(account_id)
            if account is None or account_id in exclude:
                continue
            if self._is_locked(account, self._now_ms()):
                continue
            selected = await self._ensure_ready(account)
            if selected is not None:
                return selected

        now = self._now_ms()
        candidates = [
            account for account in self._accounts.values() if account.id not in exclude
        ]
        if not candidates:
            return None
        best = min(candidates, key=lambda account: self._remaining_ms(account, now))
        wait_ms = self._remaining_ms(best, now)
        if wait_ms > OPTIMISTIC_RESET_THRESHOLD_MS:
            logger.warning(
                "account_pool_exhausted accounts=%d min_wait_ms=%d",
                len(candidates),
                wait_ms,
            )
            return None

        logger.info(
            "account_optimistic_reset account=%s remaining_ms=%d", best.id, wait_ms
        )
        self.clear_all_rate_limits()
        return await self._ensure_ready(best)

    async def get_account_by_id(self, account_id: str) -> SelectedAccount | None:
        self.load()
        account = self._find(account_id)
        if account is None and self._hydrate_imported():
            self._sync_queue()
            self._save()
            account = self._find(account_id)
        if account is None:
            return None
        if self._is_locked(account, self._now_ms()):
            return None
        return await self._ensure_ready(account)

    async def force_refresh(self, account_id: str) -> SelectedAccount | None:
        account = self._accounts.get(account_id)
        if account is None:
            return None
        try:
            await self._refresh(account, force=True)
        except AuthError as exc:
            self._on_refresh_failure(account, exc)
            return None
        return account.snapshot()

    def mark_success(self, account_id: str) -> None:
        account = self._accounts.get(account_id)
        if account is None:
            return
        if account.rate_limited_until is not None or account.consecutive_failures:
            logger.info(
                "account_recovered account=%s failures=%d",
                account_id,
                account.consecutive_failures,
            )
        account.rate_limited_until = None
        account.consecutive_failures = 0

    def mark_rate_limited(self, account_id: str, duration_ms: int) -> None:
        account = self._accounts.get(account_id)
        if account is None:
            return
        account.rate_limited_until = self._now_ms() + max(int(duration_ms), 1)

    def mark_rate_limited_from_error(
        self,
        account_id: str,
        status_code: int,
        body_text: str | None,
        retry_after: str | None = None,
    ) -> RateLimitDecision:
        reason = classify_rate_limit(status_code, body_text)
        retry_delay_ms = parse_retry_delay_ms(body_text, retry_after)
        account = self._accounts.get(account_id)
        failures = account.consecutive_failures if account is not None else 0
        duration_ms = lockout_duration_ms(reason, failures, retry_delay_ms)

        if account is not None:
            account.rate_limited_until = self._now_ms() + duration_ms
            account.consecutive_failures = failures + 1
        if reason is RateLimitReason.QUOTA_EXHAUSTED:
            self.move_to_end_of_queue(account_id)

        logger.warning(
            (
                "account_rate_limited account=%s status=%d reason=%s "
                "duration_ms=%d retry_delay_ms=%s failures=%d"
            ),
            account_id,
            status_code,
            reason.value,
            duration_ms,
            retry_delay_ms,
            failures + 1,
        )
        return RateLimitDecision(
            reason=reason, duration_ms=duration_ms, retry_delay_ms=retry_delay_ms
        )

    def move_to_end_of_queue(self, account_id: str) -> None:
        if account_id not in self._queue:
            return
        self._queue.remove(account_id)
        self._queue.append(account_id)

    def clear_all_rate_limits(self) -> int:
        cleared = 0
        for account in self._accounts.values():
            if account.rate_limited_until is not None or account.consecutive_failures:
                cleared += 1
            account.rate_limited_until = None
            account.consecutive_failures = 0
        return cleared

    def mark_all_healthy(self) -> int:
        self.load()
        cleared = self.clear_all_rate_limits()
        logger.info("accounts_marked_healthy cleared=%d", cleared)
        return cleared

    async def _ensure_ready(self, account: Account) -> SelectedAccount | None:
        if self._needs_refresh(account):
            try:
                await self._refresh(account)
            except AuthError as exc:
                self._on_refresh_failure(account, exc)
                return None
        if not account.project_id:
            await self._ensure_project(account)
        return account.snapshot()

    def _needs_refresh(self, account: Account) -> bool:
        if not account.access_token:
            return True
        if account.expires_at <= 0:
            return False
        return account.expires_at - self._now_ms() <= TOKEN_REFRESH_BUFFER_MS

    async def _refresh(self, account: Account, *, force: bool = False) -> None:
        lock = self._refresh_locks.setdefault(account.id, asyncio.Lock())
        async with lock:
            if not force and not self._needs_refresh(account):
                return
            logger.info("account_token_refresh_start account=%s", account.id)
            refreshed = await self._refresher.refresh(account.refresh_token)
            account.access_token = refreshed.access_token
            account.expires_at = self._now_ms() + refreshed.expires_in * 1000
            if refreshed.refresh_token:
                account.refresh_token = refreshed.refresh_token
            self._save()
            logger.info(
                "account_token_refresh_complete account=%s expires_in=%d",
                account.id,
                refreshed.expires_in,
            )

    def _on_refresh_failure(self, account: Account, exc: AuthError) -> None:
        logger.warning(
            "account_token_refresh_failed account=%s lockout_ms=%d error=%s",
            account.id,
            REFRESH_FAILURE_LOCKOUT_MS,
            exc,
        )
        self.mark_rate_limited(account.id, REFRESH_FAILURE_LOCKOUT_MS)

    async def _ensure_project(self, account: Account) -> None:
        project_id = await self._refresher.resolve_project_scope(account.access_token)
        if not project_id:
            project_id = fallback_project_id()
            logger.warning(
                "account_project_fallback account=%s project=%s", account.id, project_id
            )
        account.project_id = project_id
        self._save()

    def _hydrate_imported(self) -> int:
        added = 0
        for account in self._store.load_imported():
            if account.id in self._accounts:
                continue
            self._accounts[account.id] = account
            added += 1
        if added:
            logger.info("account_import_hydrated accounts=%d", added)
        return added

    def _find(self, id_or_email: str) -> Account | None:
        account = self._accounts.get(id_or_email)
        if account is not None:
            return account
        needle = id_or_email.strip().lower()
        for candidate in self._accounts.values():
            if candidate.email.lower() == needle:
                return candidate
        return None

    def _sync_queue(self) -> None:
        queue = [account_id for account_id in self._queue if account_id in self._accounts]
        queue.extend(account_id for account_id in self._accounts if account_id not in queue)
        self._queue = queue

    def _save(self) -> None:
        try:
            self._store.save_accounts(list(self._accounts.values()))
        except OSError as exc:
            logger.warning(
                "account_store_write_failed path=%s error=%s", self._store.path, exc
            )

    @staticmethod
    def _is_locked(account: Account, now: int) -> bool:
        return account.rate_limited_until is not None and account.rate_limited_until > now

    @staticmethod
    def _remaining_ms(account: Account, now: int) -> int:
        if account.rate_limited_until is None:
            return 0
        return max(0, account.rate_limited_until - now)
