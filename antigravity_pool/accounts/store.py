from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Any

from antigravity_pool.accounts.models import Account
from antigravity_pool.utils.persistence import JsonFileStore

logger = logging.getLogger("uvicorn.error")

IMPORT_RECORD_TYPE = "antigravity"


class AccountStore:
    """Durable account list plus a directory of externally imported credentials."""

    def __init__(self, path: str | Path, import_dir: str | Path | None = None) -> None:
        self._file = JsonFileStore(path)
        self.import_dir = Path(import_dir) if import_dir is not None else None

    @property
    def path(self) -> Path:
        return self._file.path

    def load_accounts(self) -> list[Account]:
        try:
            payload = self._file.load(default=[])
        except (OSError, ValueError) as exc:
            logger.warning(
                "account_store_unreadable path=%s error=%s", self._file.path, exc
            )
            return []

        if isinstance(payload, dict):
            payload = payload.get("accounts", [])
        if not isinstance(payload, list):
            logger.warning(
                "account_store_invalid path=%s type=%s",
                self._file.path,
                type(payload).__name__,
            )
            return []
        return _parse_records(payload, source=str(self._file.path))

    def save_accounts(self, accounts: list[Account]) -> None:
        self._file.write([account.to_record() for account in accounts])

    def load_imported(self) -> list[Account]:
        if self.import_dir is None or not self.import_dir.is_dir():
            return []
        records: list[Any] = []
        for path in sorted(self.import_dir.glob("*.json")):
            try:
                payload = json.loads(path.read_text(encoding="utf-8"))
            except (OSError, ValueError) as exc:
                logger.warning("account_import_unreadable path=%s error=%s", path, exc)
                continue
            if not isinstance(payload, dict):
                continue
            record_type = payload.get("type")
            if record_type is not None and record_type != IMPORT_RECORD_TYPE:
                continue
            records.append(payload)
        return _parse_records(records, source=str(self.import_dir))


def _parse_records(records: list[Any], *, source: str) -> list[Account]:
    accounts: list[Account] = []
    seen: set[str] = set()
    for index, record in enumerate(records):
        try:
            account = Account.from_record(record)
        except (TypeError, ValueError) as exc:
            logger.warning(
                "account_record_skipped source=%s index=%d error=%s", source, index, exc
            )
            continue
        if account.id in seen:
            continue
        seen.add(account.id)
        accounts.append(account)
    return accounts
