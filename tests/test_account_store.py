from __future__ import annotations

import json
import logging
from pathlib import Path

import pytest

from antigravity_pool.accounts.models import Account
from antigravity_pool.accounts.store import AccountStore
from tests.pool_test_utils import make_account


def test_save_and_load_preserves_order_and_camel_case_records(tmp_path: Path) -> None:
    store = AccountStore(tmp_path / "accounts.json")
    store.save_accounts([make_account("b"), make_account("a", expires_at=1_700_000_000_000)])

    raw = json.loads((tmp_path / "accounts.json").read_text(encoding="utf-8"))
    assert raw[0]["refreshToken"] == "refresh-b"
    assert "rate_limited_until" not in raw[0]

    loaded = store.load_accounts()
    assert [account.id for account in loaded] == ["b", "a"]
    assert loaded[1].expires_at == 1_700_000_000_000
    assert loaded[1].project_id == "project-a"


def test_missing_store_loads_empty(tmp_path: Path) -> None:
    assert AccountStore(tmp_path / "missing.json").load_accounts() == []


def test_corrupted_store_loads_empty_and_warns(
    tmp_path: Path, caplog: pytest.LogCaptureFixture
) -> None:
    path = tmp_path / "accounts.json"
    path.write_text("{not json", encoding="utf-8")

    with caplog.at_level(logging.WARNING, logger="uvicorn.error"):
        assert AccountStore(path).load_accounts() == []

    assert "account_store_unreadable" in caplog.text


def test_wrapped_payload_and_bad_records_are_tolerated(tmp_path: Path) -> None:
    path = tmp_path / "accounts.json"
    path.write_text(
        json.dumps(
            {
                "accounts": [
                    {"email": "one@example.com", "refresh_token": "r1", "expires_at": 1_700_000_000},
                    {"email": "missing-refresh@example.com"},
                    "not-a-record",
                    {"email": "one@example.com", "refresh_token": "duplicate"},
                ]
            }
        ),
        encoding="utf-8",
    )

    accounts = AccountStore(path).load_accounts()

    assert [account.id for account in accounts] == ["one@example.com"]
    assert accounts[0].refresh_token == "r1"
    # Seconds-precision expiry is widened to milliseconds.
    assert accounts[0].expires_at == 1_700_000_000_000


def test_import_dir_reads_antigravity_records_only(tmp_path: Path) -> None:
    import_dir = tmp_path / "auth"
    import_dir.mkdir()
    (import_dir / "a.json").write_text(
        json.dumps({"type": "antigravity", "email": "a@example.com", "refresh_token": "ra"}),
        encoding="utf-8",
    )
    (import_dir / "b.json").write_text(
        json.dumps({"email": "b@example.com", "refreshToken": "rb", "projectId": "p-b"}),
        encoding="utf-8",
    )
    (import_dir / "c.json").write_text(
        json.dumps({"type": "codex", "email": "c@example.com", "refresh_token": "rc"}),
        encoding="utf-8",
    )
    (import_dir / "broken.json").write_text("{", encoding="utf-8")

    store = AccountStore(tmp_path / "accounts.json", import_dir)
    imported = store.load_imported()

    assert [account.id for account in imported] == ["a@example.com", "b@example.com"]
    assert imported[1].project_id == "p-b"


def test_import_dir_absent_returns_empty(tmp_path: Path) -> None:
    store = AccountStore(tmp_path / "accounts.json", tmp_path / "nope")

    assert store.load_imported() == []


def test_account_from_record_requires_refresh_token() -> None:
    with pytest.raises(ValueError):
        Account.from_record({"email": "x@example.com"})
    with pytest.raises(TypeError):
        Account.from_record(["not", "a", "dict"])  # type: ignore[arg-type]
