from __future__ import annotations

from functools import lru_cache
from pathlib import Path

from pydantic_settings import BaseSettings, SettingsConfigDict

DEFAULT_UPSTREAM_BASE_URLS = (
    "https://cloudcode-pa.googleapis.com,"
    "https://daily-cloudcode-pa.sandbox.googleapis.com"
)


class Settings(BaseSettings):
    data_dir: str = "~/.antigravity-pool"
    accounts_file: str | None = None
    auth_import_dir: str | None = None
    routing_config_path: str | None = None
    usage_log_enabled: bool = True
    usage_log_path: str | None = None

    upstream_base_urls: str = DEFAULT_UPSTREAM_BASE_URLS
    upstream_user_agent: str = "antigravity/1.11.9 windows/amd64"
    request_timeout_seconds: float = 120.0
    connect_timeout_seconds: float = 10.0
    stream_idle_timeout_seconds: float = 300.0
    max_attempts: int = 5
    same_account_retries: int = 2
    same_account_retry_max_delay_seconds: float = 10.0

    oauth_token_url: str = "https://oauth2.googleapis.com/token"
    oauth_client_id: str = ""
    oauth_client_secret: str = ""
    project_url: str = "https://cloudcode-pa.googleapis.com/v1internal:loadCodeAssist"
    project_user_agent: str = "antigravity/1.15.8 windows/amd64"

    host: str = "127.0.0.1"
    port: int = 8964

    model_config = SettingsConfigDict(
        env_prefix="",
        env_file=".env",
        extra="ignore",
    )

    @property
    def data_path(self) -> Path:
        return Path(self.data_dir).expanduser()

    @property
    def accounts_path(self) -> Path:
        return _resolve(self.accounts_file, self.data_path / "accounts.json")

    @property
    def auth_import_path(self) -> Path:
        return _resolve(self.auth_import_dir, self.data_path / "auth")

    @property
    def routing_path(self) -> Path:
        return _resolve(self.routing_config_path, self.data_path / "routing.yaml")

    @property
    def usage_path(self) -> Path:
        return _resolve(self.usage_log_path, self.data_path / "usage.jsonl")

    @property
    def upstream_base_urls_list(self) -> list[str]:
        values = _split_csv(self.upstream_base_urls)
        return values or _split_csv(DEFAULT_UPSTREAM_BASE_URLS)


def _resolve(value: str | None, default: Path) -> Path:
    if not value:
        return default
    return Path(value).expanduser()


def _split_csv(value: str | None) -> list[str]:
    if not value:
        return []
    return [item.strip() for item in value.split(",") if item.strip()]


@lru_cache
def get_settings() -> Settings:
    return Settings()
