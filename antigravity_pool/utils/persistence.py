from __future__ import annotations

import contextlib
import json
from pathlib import Path
from typing import IO, Any, Callable
from uuid import uuid4

import yaml


class _AtomicFileStore:
    def __init__(self, path: str | Path, *, read: Callable[[IO[str]], Any]):
        self.path = Path(path)
        self._read = read

    def exists(self) -> bool:
        return self.path.exists()

    def load(self, *, default: Any = None) -> Any:
        if not self.path.exists():
            return default
        with self.path.open("r", encoding="utf-8") as handle:
            payload = self._read(handle)
        if payload is None:
            return default
        return payload

    def _write_atomic(self, dump: Callable[[IO[str]], None], *, atomic: bool) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        if not atomic:
            with self.path.open("w", encoding="utf-8") as handle:
                dump(handle)
            return

        temp_path = self._temp_path()
        try:
            with temp_path.open("w", encoding="utf-8") as handle:
                dump(handle)
            temp_path.replace(self.path)
        except Exception:
            with contextlib.suppress(Exception):
                temp_path.unlink(missing_ok=True)
            raise

    def _temp_path(self) -> Path:
        token = uuid4().hex
        return self.path.with_name(f".{self.path.name}.{token}.tmp")


class YamlFileStore(_AtomicFileStore):
    """YAML persistence with atomic replace on write."""

    def __init__(self, path: str | Path):
        super().__init__(path, read=yaml.safe_load)

    def write(
        self,
        payload: Any,
        *,
        sort_keys: bool = False,
        atomic: bool = True,
    ) -> None:
        self._write_atomic(
            lambda handle: yaml.safe_dump(payload, handle, sort_keys=sort_keys),
            atomic=atomic,
        )


class JsonFileStore(_AtomicFileStore):
    """JSON persistence with atomic replace on write.

    Empty files load as ``default`` so a truncated write never poisons startup.
    """

    def __init__(self, path: str | Path):
        super().__init__(path, read=_read_json)

    def write(self, payload: Any, *, indent: int = 2, atomic: bool = True) -> None:
        self._write_atomic(
            lambda handle: json.dump(payload, handle, indent=indent, ensure_ascii=False),
            atomic=atomic,
        )


def _read_json(handle: IO[str]) -> Any:
    raw = handle.read()
    if not raw.strip():
        return None
    return json.loads(raw)
