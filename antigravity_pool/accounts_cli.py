from __future__ import annotations

import argparse
import json
import re
from pathlib import Path

import yaml

from antigravity_pool.accounts.models import Account
from antigravity_pool.accounts.store import AccountStore
from antigravity_pool.routing.config import RoutingConfigStore
from antigravity_pool.settings import get_settings

ACCOUNT_ID_PATTERN = re.compile(r"^[a-zA-Z0-9@._+-]+$")
MAX_ACCOUNT_ID_LENGTH = 256


def _validate_account_id(value: str) -> str:
    candidate = value.strip()
    if not candidate or len(candidate) > MAX_ACCOUNT_ID_LENGTH:
        raise argparse.ArgumentTypeError("account id must be 1-256 characters")
    if not ACCOUNT_ID_PATTERN.match(candidate):
        raise argparse.ArgumentTypeError(f"invalid account id: {value!r}")
    return candidate


def cmd_list(args: argparse.Namespace, store: AccountStore) -> str:
    accounts = store.load_accounts()
    if not accounts:
        return "No accounts configured."
    rows = [
        {
            "id": account.id,
            "email": account.email,
            "project_id": account.project_id,
            "expires_at": account.expires_at,
            "has_access_token": bool(account.access_token),
        }
        for account in accounts
    ]
    return yaml.safe_dump(rows, sort_keys=False).rstrip()


def cmd_add(args: argparse.Namespace, store: AccountStore) -> str:
    account = Account(
        id=args.id or args.email,
        email=args.email,
        access_token=args.access_token or "",
        refresh_token=args.refresh_token,
        # No access token: force a refresh on first use.
        expires_at=args.expires_at if args.access_token else 1,
        project_id=args.project_id,
    )
    existing = store.load_accounts()
    accounts = [stored for stored in existing if stored.id != account.id]
    replaced = len(accounts) != len(existing)
    accounts.append(account)
    store.save_accounts(accounts)
    verb = "updated" if replaced else "added"
    return f"Account '{account.id}' {verb}."


def cmd_remove(args: argparse.Namespace, store: AccountStore) -> str:
    needle = args.account.strip().lower()
    accounts = store.load_accounts()
    removed = [
        account
        for account in accounts
        if account.id == args.account or account.email.lower() == needle
    ]
    removed_ids = {account.id for account in removed}
    remaining = [account for account in accounts if account.id not in removed_ids]
    if not removed:
        raise ValueError(f"Unknown account: {args.account}")
    store.save_accounts(remaining)
    routing = RoutingConfigStore(args.routing_path)
    for account in removed:
        routing.purge_account(account.id)
    return f"Account '{removed[0].id}' removed."


def cmd_import(args: argparse.Namespace, store: AccountStore) -> str:
    source = Path(args.source)
    payload = json.loads(source.read_text(encoding="utf-8"))
    if isinstance(payload, dict) and "accounts" in payload:
        payload = payload["accounts"]
    records = payload if isinstance(payload, list) else [payload]

    accounts = {account.id: account for account in store.load_accounts()}
    imported = 0
    for record in records:
        try:
            account = Account.from_record(record)
        except (TypeError, ValueError) as exc:
            print(f"skipped record: {exc}")
            continue
        accounts[account.id] = account
        imported += 1
    store.save_accounts(list(accounts.values()))
    return f"Imported {imported} account(s) into {store.path}."


def _build_parser() -> argparse.ArgumentParser:
    settings = get_settings()
    parser = argparse.ArgumentParser(
        prog="antigravity-pool-accounts",
        description="Manage pooled Antigravity accounts.",
    )
    parser.add_argument(
        "--path",
        default=str(settings.accounts_path),
        help="Path to the accounts JSON store.",
    )
    parser.add_argument(
        "--routing-path",
        default=str(settings.routing_path),
        help="Routing YAML to purge removed accounts from.",
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    list_parser = subparsers.add_parser("list", help="List stored accounts.")
    list_parser.set_defaults(handler=cmd_list)

    add_parser = subparsers.add_parser("add", help="Add or update an account.")
    add_parser.add_argument("--email", required=True, type=_validate_account_id)
    add_parser.add_argument("--refresh-token", required=True)
    add_parser.add_argument("--id", type=_validate_account_id)
    add_parser.add_argument("--access-token")
    add_parser.add_argument("--expires-at", type=int, default=0)
    add_parser.add_argument("--project-id")
    add_parser.set_defaults(handler=cmd_add)

    remove_parser = subparsers.add_parser("remove", help="Remove an account by id or email.")
    remove_parser.add_argument("account")
    remove_parser.set_defaults(handler=cmd_remove)

    import_parser = subparsers.add_parser(
        "import", help="Import accounts from a store file or credential record."
    )
    import_parser.add_argument("source")
    import_parser.set_defaults(handler=cmd_import)
    return parser


def main(argv: list[str] | None = None) -> int:
    parser = _build_parser()
    args = parser.parse_args(argv)
    store = AccountStore(args.path)
    try:
        result = args.handler(args, store)
    except (OSError, ValueError) as exc:
        print(f"error: {exc}")
        return 1
    print(result)
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
