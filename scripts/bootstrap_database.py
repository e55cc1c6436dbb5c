#!/usr/bin/env python3
"""Create the clinic queue schema and seed the initial accounts."""

from __future__ import annotations

import argparse
import os
import sys
from typing import List, Optional, Tuple

from clinic_queue.auth import register_user
from clinic_queue.db.config import DatabaseSettings, get_database_settings
from clinic_queue.db.session import (
    create_engine_from_settings,
    create_session_factory,
    initialise_schema,
    session_scope,
)
from clinic_queue.storage import QueueStorage


DEFAULT_ADMIN = {"username": "admin", "password": "Admin123!", "role": "admin"}

USER_ENV_VARS = {
    "admin": ("BOOTSTRAP_ADMIN_USERNAME", "BOOTSTRAP_ADMIN_PASSWORD"),
}


def _resolve_credentials(
    defaults: dict, env_vars: Tuple[str, str], username: Optional[str], password: Optional[str]
) -> Tuple[str, str]:
    user_env, pass_env = env_vars
    return (
        username or os.getenv(user_env) or defaults["username"],
        password or os.getenv(pass_env) or defaults["password"],
    )


def seed_accounts(storage: QueueStorage, accounts: List[Tuple[str, str, str]]) -> List[Tuple[str, str, str]]:
    """Create each ``(username, password, role)`` that does not exist yet."""

    created = []
    for username, password, role in accounts:
        if storage.get_user_by_username(username) is not None:
            continue
        register_user(storage, username, password, role)
        created.append((username, password, role))
    return created


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="Create the clinic queue tables and a default admin account.",
    )
    parser.add_argument(
        "--database-url",
        default=None,
        help="SQLAlchemy URL (default: CLINIC_QUEUE_DATABASE_URL or the per-user SQLite file)",
    )
    parser.add_argument(
        "--skip-user-seed",
        action="store_true",
        help="Only create tables; do not create the admin account.",
    )
    parser.add_argument("--admin-username", help="Override admin username for the seeded account")
    parser.add_argument("--admin-password", help="Override admin password for the seeded account")
    parser.add_argument(
        "--clinic",
        action="append",
        default=[],
        metavar="USERNAME:PASSWORD",
        help="Also create a clinic (tenant) account; may be repeated.",
    )
    return parser.parse_args(argv)


def main(argv: Optional[List[str]] = None) -> int:
    args = parse_args(argv)

    settings = DatabaseSettings(url=args.database_url) if args.database_url else get_database_settings()
    engine = create_engine_from_settings(settings)
    initialise_schema(engine)
    factory = create_session_factory(engine)

    accounts: List[Tuple[str, str, str]] = []
    if not args.skip_user_seed:
        username, password = _resolve_credentials(
            DEFAULT_ADMIN, USER_ENV_VARS["admin"], args.admin_username, args.admin_password
        )
        accounts.append((username, password, "admin"))
    for entry in args.clinic:
        username, sep, password = entry.partition(":")
        if not sep or not username or len(password) < 6:
            print(f"Ignoring malformed --clinic value {entry!r} (expected USERNAME:PASSWORD, 6+ chars)")
            continue
        accounts.append((username, password, "user"))

    try:
        with session_scope(factory) as session:
            created = seed_accounts(QueueStorage(session), accounts)
    finally:
        engine.dispose()

    print(f"Database initialised at {engine.url.render_as_string(hide_password=True)}")
    if args.skip_user_seed and not args.clinic:
        print("User seeding skipped.")
    elif created:
        print("Created the following accounts (update credentials before production use):")
        for username, password, role in created:
            print(f"  - {username} ({role}) -> {password}")
    else:
        print("Accounts already existed; no credentials were changed.")

    return 0


if __name__ == "__main__":
    sys.exit(main())
