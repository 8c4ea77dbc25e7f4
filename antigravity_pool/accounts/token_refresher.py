from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Callable, Protocol

import httpx

from antigravity_pool.errors import AuthError

logger = logging.getLogger("uvicorn.error")

DEFAULT_EXPIRES_IN_SECONDS = 3600


@dataclass(slots=True, frozen=True)
class RefreshedToken:
    access_token: str
    expires_in: int
    refresh_token: str | None = None


class TokenRefresher(Protocol):
    async def refresh(self, refresh_token: str) -> RefreshedToken: ...

    async def resolve_project_scope(self, access_token: str) -> str | None: ...


class GoogleTokenRefresher:
    def __init__(
        self,
        *,
        client_getter: Callable[[], httpx.AsyncClient],
        token_url: str,
        client_id: str,
        client_secret: str,
        project_url: str,
        user_agent: str,
    ) -> None:
        self._client_getter = client_getter
        self._token_url = token_url
        self._client_id = client_id
        self._client_secret = client_secret
        self._project_url = project_url
        self._user_agent = user_agent

    async def refresh(self, refresh_token: str) -> RefreshedToken:
        if not refresh_token:
            raise AuthError("missing refresh token")

        try:
            response = await self._client_getter().post(
                self._token_url,
                data={
                    "client_id": self._client_id,
                    "client_secret": self._client_secret,
                    "refresh_token": refresh_token,
                    "grant_type": "refresh_token",
                },
                headers={"Accept": "application/json"},
            )
        except httpx.RequestError as exc:
            raise AuthError(f"token refresh request failed: {exc}") from exc

        if response.status_code >= 400:
            raise AuthError(
                f"token refresh failed ({response.status_code}): {response.text[:300]}"
            )
        try:
            payload = response.json()
        except ValueError as exc:
            raise AuthError("token refresh returned invalid JSON") from exc

        access_token = payload.get("access_token") if isinstance(payload, dict) else None
        if not isinstance(access_token, str) or not access_token:
            raise AuthError("token refresh response is missing access_token")

        new_refresh_token = payload.get("refresh_token")
        return RefreshedToken(
            access_token=access_token,
            expires_in=_extract_expires_in(payload),
            refresh_token=new_refresh_token
            if isinstance(new_refresh_token, str) and new_refresh_token
            else None,
        )

    async def resolve_project_scope(self, access_token: str) -> str | None:
        try:
            response = await self._client_getter().post(
                self._project_url,
                json={"metadata": {"ideType": "ANTIGRAVITY"}},
                headers={
                    "Authorization": f"Bearer {access_token}",
                    "Content-Type": "application/json",
                    "User-Agent": self._user_agent,
                },
            )
        except httpx.RequestError as exc:
            logger.warning("project_scope_request_error error=%s", exc)
            return None

        if response.status_code >= 400:
            logger.warning(
                "project_scope_lookup_failed status=%d", response.status_code
            )
            return None
        try:
            payload = response.json()
        except ValueError:
            return None
        if not isinstance(payload, dict):
            return None

        project = payload.get("cloudaicompanionProject")
        if isinstance(project, dict):
            project = project.get("id")
        if isinstance(project, str) and project.strip():
            return project.strip()
        return None


def _extract_expires_in(token_response: dict[str, Any]) -> int:
    raw_expires_in = token_response.get("expires_in")
    if raw_expires_in is not None:
        try:
            return max(int(float(raw_expires_in)), 0)
        except (TypeError, ValueError):
            pass
    return DEFAULT_EXPIRES_IN_SECONDS
