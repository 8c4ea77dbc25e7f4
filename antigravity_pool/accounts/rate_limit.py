from __future__ import annotations

import json
import re
from dataclasses import dataclass
from datetime import datetime, timezone
from email.utils import parsedate_to_datetime
from enum import Enum
from typing import Any, Protocol


class RateLimitReason(str, Enum):
    QUOTA_EXHAUSTED = "quota_exhausted"
    RATE_LIMIT_EXCEEDED = "rate_limit_exceeded"
    MODEL_CAPACITY_EXHAUSTED = "model_capacity_exhausted"
    SERVER_ERROR = "server_error"
    UNKNOWN = "unknown"


QUOTA_LOCKOUT_TIERS_MS = (60_000, 60_000, 300_000, 1_800_000, 7_200_000)
DEFAULT_LOCKOUT_MS = {
    RateLimitReason.RATE_LIMIT_EXCEEDED: 30_000,
    RateLimitReason.MODEL_CAPACITY_EXHAUSTED: 15_000,
    RateLimitReason.SERVER_ERROR: 20_000,
    RateLimitReason.UNKNOWN: 60_000,
}
EXPLICIT_DELAY_PADDING_MS = 500
MIN_EXPLICIT_LOCKOUT_MS = 2_000
IN_PLACE_RETRY_BASE_MS = 2_000

_RATE_LIMIT_PHRASES = ("per minute", "rate limit", "too many requests")


@dataclass(slots=True, frozen=True)
class RateLimitDecision:
    reason: RateLimitReason
    duration_ms: int
    retry_delay_ms: int | None = None


@dataclass(slots=True, frozen=True)
class ErrorBody:
    text: str
    error: dict[str, Any] | None

    @classmethod
    def parse(cls, text: str | None) -> ErrorBody:
        raw = text or ""
        try:
            payload = json.loads(raw)
        except ValueError:
            return cls(text=raw, error=None)
        if isinstance(payload, list) and payload and isinstance(payload[0], dict):
            payload = payload[0]
        error = payload.get("error") if isinstance(payload, dict) else None
        return cls(text=raw, error=error if isinstance(error, dict) else None)

    def details(self) -> list[dict[str, Any]]:
        if self.error is None:
            return []
        details = self.error.get("details")
        if not isinstance(details, list):
            return []
        return [item for item in details if isinstance(item, dict)]

    def error_field(self, key: str) -> str:
        if self.error is None:
            return ""
        value = self.error.get(key)
        return value if isinstance(value, str) else ""


class ReasonMatcher(Protocol):
    def match(self, body: ErrorBody) -> RateLimitReason | None: ...


@dataclass(slots=True, frozen=True)
class StructuredReasonMatcher:
    reasons: dict[str, RateLimitReason]

    def match(self, body: ErrorBody) -> RateLimitReason | None:
        for detail in body.details():
            reason = detail.get("reason")
            if isinstance(reason, str) and reason in self.reasons:
                return self.reasons[reason]
        return None


@dataclass(slots=True, frozen=True)
class StructuredMessageMatcher:
    phrases: tuple[str, ...]
    reason: RateLimitReason

    def match(self, body: ErrorBody) -> RateLimitReason | None:
        message = body.error_field("message").lower()
        if message and any(phrase in message for phrase in self.phrases):
            return self.reason
        return None


@dataclass(slots=True, frozen=True)
class StructuredStatusMatcher:
    status: str
    reason: RateLimitReason

    def match(self, body: ErrorBody) -> RateLimitReason | None:
        if body.error_field("status") == self.status:
            return self.reason
        return None


@dataclass(slots=True, frozen=True)
class KeywordMatcher:
    phrases: tuple[str, ...]
    reason: RateLimitReason

    def match(self, body: ErrorBody) -> RateLimitReason | None:
        text = body.text.lower()
        if any(phrase in text for phrase in self.phrases):
            return self.reason
        return None


RATE_LIMIT_MATCHERS: tuple[ReasonMatcher, ...] = (
    StructuredReasonMatcher(
        reasons={
            "QUOTA_EXHAUSTED": RateLimitReason.QUOTA_EXHAUSTED,
            "RATE_LIMIT_EXCEEDED": RateLimitReason.RATE_LIMIT_EXCEEDED,
            "MODEL_CAPACITY_EXHAUSTED": RateLimitReason.MODEL_CAPACITY_EXHAUSTED,
        }
    ),
    StructuredMessageMatcher(_RATE_LIMIT_PHRASES, RateLimitReason.RATE_LIMIT_EXCEEDED),
    StructuredStatusMatcher("RESOURCE_EXHAUSTED", RateLimitReason.RATE_LIMIT_EXCEEDED),
    KeywordMatcher(_RATE_LIMIT_PHRASES, RateLimitReason.RATE_LIMIT_EXCEEDED),
    KeywordMatcher(("model_capacity", "capacity"), RateLimitReason.MODEL_CAPACITY_EXHAUSTED),
    KeywordMatcher(("quota",), RateLimitReason.QUOTA_EXHAUSTED),
    # Bare "exhausted" is read as a short-window limit, not a depleted quota.
    KeywordMatcher(("exhausted",), RateLimitReason.RATE_LIMIT_EXCEEDED),
)


def classify_rate_limit(
    status_code: int,
    body_text: str | None,
    matchers: tuple[ReasonMatcher, ...] = RATE_LIMIT_MATCHERS,
) -> RateLimitReason:
    if status_code != 429:
        if status_code >= 500:
            return RateLimitReason.SERVER_ERROR
        return RateLimitReason.UNKNOWN

    body = ErrorBody.parse(body_text)
    for matcher in matchers:
        reason = matcher.match(body)
        if reason is not None:
            return reason
    return RateLimitReason.UNKNOWN


_DURATION_RE = re.compile(
    r"^(?:(?P<h>\d+(?:\.\d+)?)h)?"
    r"(?:(?P<m>\d+(?:\.\d+)?)m(?!s))?"
    r"(?:(?P<s>\d+(?:\.\d+)?)s)?"
    r"(?:(?P<ms>\d+(?:\.\d+)?)ms)?$"
)
_DURATION_UNITS_MS = {"h": 3_600_000, "m": 60_000, "s": 1_000, "ms": 1}

_TEXT_SECONDS_PATTERNS = (
    re.compile(r"(?:try again in|backoff for|wait)\s*(\d+)s", re.I),
    re.compile(r"quota will reset in (\d+) second", re.I),
    re.compile(r"retry after (\d+) second", re.I),
    re.compile(r"\(wait (\d+)s\)", re.I),
)
_TEXT_MINUTES_SECONDS = re.compile(r"try again in (\d+)m\s*(\d+)s", re.I)


def parse_duration_ms(value: str | None) -> int | None:
    """Parse Go-style durations such as ``1h16m0.667s`` or ``200ms``."""
    if not value:
        return None
    match = _DURATION_RE.match(value.strip())
    if match is None:
        return None
    total = 0.0
    matched = False
    for unit, factor in _DURATION_UNITS_MS.items():
        part = match.group(unit)
        if part is None:
            continue
        matched = True
        total += float(part) * factor
    if not matched:
        return None
    return round(total)


def parse_retry_after_header_ms(value: str | None) -> int | None:
    if not value:
        return None
    raw = value.strip()
    if not raw:
        return None

    try:
        seconds = float(raw)
        if seconds >= 0:
            return round(seconds * 1000)
    except (TypeError, ValueError):
        pass

    try:
        retry_dt = parsedate_to_datetime(raw)
    except (TypeError, ValueError):
        return None
    if retry_dt.tzinfo is None:
        retry_dt = retry_dt.replace(tzinfo=timezone.utc)
    delta = (retry_dt - datetime.now(timezone.utc)).total_seconds()
    if delta > 0:
        return round(delta * 1000)
    return None


def parse_retry_delay_ms(
    body_text: str | None,
    retry_after_header: str | None = None,
) -> int | None:
    """Extract an explicit retry hint from a header or an error body."""
    header_delay = parse_retry_after_header_ms(retry_after_header)
    if header_delay is not None:
        return header_delay

    body = ErrorBody.parse(body_text)
    for detail in body.details():
        detail_type = detail.get("@type")
        if isinstance(detail_type, str) and "RetryInfo" in detail_type:
            delay = parse_duration_ms(_as_str(detail.get("retryDelay")))
            if delay is not None:
                return delay
    for detail in body.details():
        metadata = detail.get("metadata")
        if isinstance(metadata, dict):
            delay = parse_duration_ms(_as_str(metadata.get("quotaResetDelay")))
            if delay is not None:
                return delay
    if body.error is not None:
        retry_after = body.error.get("retry_after")
        if isinstance(retry_after, (int, float)) and not isinstance(retry_after, bool):
            return round(float(retry_after) * 1000)

    text = body.text
    match = _TEXT_MINUTES_SECONDS.search(text)
    if match is not None:
        return (int(match.group(1)) * 60 + int(match.group(2))) * 1000
    for pattern in _TEXT_SECONDS_PATTERNS:
        match = pattern.search(text)
        if match is not None:
            return int(match.group(1)) * 1000
    return None


def lockout_duration_ms(
    reason: RateLimitReason,
    consecutive_failures: int,
    retry_delay_ms: int | None = None,
) -> int:
    if retry_delay_ms is not None:
        return max(retry_delay_ms + EXPLICIT_DELAY_PADDING_MS, MIN_EXPLICIT_LOCKOUT_MS)
    if reason is RateLimitReason.QUOTA_EXHAUSTED:
        tier = min(max(consecutive_failures, 0), len(QUOTA_LOCKOUT_TIERS_MS) - 1)
        return QUOTA_LOCKOUT_TIERS_MS[tier]
    return DEFAULT_LOCKOUT_MS[reason]


def in_place_retry_delay_ms(
    retry_delay_ms: int | None,
    retry_index: int,
    max_delay_ms: int,
) -> int:
    if retry_delay_ms is not None:
        delay = retry_delay_ms + EXPLICIT_DELAY_PADDING_MS
    else:
        delay = IN_PLACE_RETRY_BASE_MS * (retry_index + 1)
    return max(0, min(delay, max_delay_ms))


def backoff_delay_ms(status_code: int | None, attempt: int) -> int:
    """Whole-call backoff after ``attempt`` (0-based) failed on timeout or 5xx."""
    if status_code is None or status_code in {503, 529}:
        return min(1_000 * 2**attempt, 8_000)
    return 500 * (attempt + 1)


def _as_str(value: Any) -> str | None:
    return value if isinstance(value, str) else None
