from __future__ import annotations

import logging
from pathlib import Path

import yaml
from pydantic import BaseModel, Field, ValidationError

from antigravity_pool.utils.persistence import YamlFileStore

logger = logging.getLogger("uvicorn.error")

AUTO_ACCOUNT = "auto"


class RouteEntry(BaseModel):
    provider: str = "antigravity"
    account_id: str = AUTO_ACCOUNT
    label: str | None = None

    @property
    def is_auto(self) -> bool:
        return self.account_id == AUTO_ACCOUNT


class ModelRoute(BaseModel):
    model_id: str
    entries: list[RouteEntry] = Field(default_factory=list)


class RoutingConfig(BaseModel):
    smart_switch: bool = True
    routes: list[ModelRoute] = Field(default_factory=list)

    def route_for(self, model_id: str) -> ModelRoute | None:
        for route in self.routes:
            if route.model_id == model_id:
                return route
        return None

    def without_account(self, account_id: str) -> tuple[RoutingConfig, bool]:
        changed = False
        routes: list[ModelRoute] = []
        for route in self.routes:
            entries = [entry for entry in route.entries if entry.account_id != account_id]
            if len(entries) != len(route.entries):
                changed = True
            routes.append(route.model_copy(update={"entries": entries}))
        return self.model_copy(update={"routes": routes}), changed


class RoutingConfigStore:
    def __init__(self, path: str | Path) -> None:
        self._file = YamlFileStore(path)
        self._config: RoutingConfig | None = None

    @property
    def path(self) -> Path:
        return self._file.path

    def current(self) -> RoutingConfig:
        if self._config is None:
            self._config = self._load()
        return self._config

    def save(self, config: RoutingConfig) -> None:
        self._file.write(config.model_dump(mode="json", exclude_none=True))
        self._config = config

    def purge_account(self, account_id: str) -> bool:
        config, changed = self.current().without_account(account_id)
        if changed:
            self.save(config)
            logger.info(
                "routing_account_purged account=%s path=%s", account_id, self.path
            )
        return changed

    def _load(self) -> RoutingConfig:
        try:
            payload = self._file.load(default={})
        except (OSError, yaml.YAMLError) as exc:
            logger.warning("routing_config_unreadable path=%s error=%s", self.path, exc)
            return RoutingConfig()
        try:
            return RoutingConfig.model_validate(payload)
        except ValidationError as exc:
            logger.warning(
                "routing_config_invalid path=%s errors=%d", self.path, exc.error_count()
            )
            return RoutingConfig()
