from __future__ import annotations

from dataclasses import dataclass
from typing import Any


@dataclass(slots=True)
class Account:
    id: str
    email: str
    access_token: str = ""
    refresh_token: str = ""
    expires_at: int = 0
    project_id: str | None = None
    rate_limited_until: int | None = None
    consecutive_failures: int = 0

    def to_record(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "email": self.email,
            "accessToken": self.access_token,
            "refreshToken": self.refresh_token,
            "expiresAt": self.expires_at,
            "projectId": self.project_id,
        }

    @classmethod
    def from_record(cls, record: dict[str, Any]) -> Account:
        """Build an account from a durable (camelCase) or imported (snake_case) record."""
        if not isinstance(record, dict):
            raise TypeError("account record must be an object")
        email = _first_str(record, "email")
        account_id = _first_str(record, "id") or email
        refresh_token = _first_str(record, "refreshToken", "refresh_token")
        if not account_id or not refresh_token:
            raise ValueError("account record requires an id/email and a refresh token")
        return cls(
            id=account_id,
            email=email or account_id,
            access_token=_first_str(record, "accessToken", "access_token"),
            refresh_token=refresh_token,
            expires_at=_coerce_epoch_ms(
                record.get("expiresAt", record.get("expires_at"))
            ),
            project_id=_first_str(record, "projectId", "project_id") or None,
        )

    def snapshot(self) -> SelectedAccount:
        return SelectedAccount(
            account_id=self.id,
            email=self.email,
            access_token=self.access_token,
            project_id=self.project_id,
        )

    def describe(self, *, now_ms: int, queue_position: int | None = None) -> dict[str, Any]:
        locked_for = 0
        if self.rate_limited_until is not None:
            locked_for = max(0, self.rate_limited_until - now_ms)
        return {
            "id": self.id,
            "email": self.email,
            "project_id": self.project_id,
            "expires_at": self.expires_at,
            "rate_limited_until": self.rate_limited_until,
            "rate_limited": locked_for > 0,
            "rate_limit_remaining_ms": locked_for,
            "consecutive_failures": self.consecutive_failures,
            "queue_position": queue_position,
        }


@dataclass(slots=True, frozen=True)
class SelectedAccount:
    account_id: str
    email: str
    access_token: str
    project_id: str | None


def _first_str(record: dict[str, Any], *keys: str) -> str:
    for key in keys:
        value = record.get(key)
        if isinstance(value, str) and value.strip():
            return value.strip()
    return ""


def _coerce_epoch_ms(value: Any) -> int:
    if value is None or isinstance(value, bool):
        return 0
    try:
        parsed = int(float(value))
    except (TypeError, ValueError):
        return 0
    # Seconds-precision timestamps from older credential files.
    if 0 < parsed < 10_000_000_000:
        return parsed * 1000
    return max(parsed, 0)
