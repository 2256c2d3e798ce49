#!/usr/bin/env python3
"""Emit deterministic SQL that grants a portal role to a Supabase user."""

from __future__ import annotations

import argparse


def _quote_sql(value: str) -> str:
    escaped = value.replace("'", "''")
    return f"'{escaped}'"


def render_sql(*, role: str, user_id: str | None, email: str | None, account_source: str | None = None) -> str:
    role_value = _quote_sql(role)

    if user_id:
        target_where = f"id = {_quote_sql(user_id)}::uuid"
    else:
        assert email is not None
        target_where = f"email = {_quote_sql(email)}"

    source_value = _quote_sql(account_source) if account_source else "null"
    return f"""-- Supabase portal role bootstrap SQL
-- Run this in the Supabase SQL editor (or equivalent privileged Postgres session).

update auth.users
set raw_app_meta_data = coalesce(raw_app_meta_data, '{{}}'::jsonb) || jsonb_build_object('role', {role_value})
where {target_where};

insert into profiles (user_id, role, account_source)
select id, {role_value}, {source_value}
from auth.users
where {target_where}
on conflict (user_id) do update
set role = excluded.role,
    account_source = coalesce(excluded.account_source, profiles.account_source);
"""


def main() -> None:
    parser = argparse.ArgumentParser(description="Emit SQL to grant a supplier-portal role.")
    parser.add_argument(
        "--role",
        choices=["user", "admin"],
        default="admin",
        help="Role to assign in auth.users.raw_app_meta_data.role",
    )
    identity_group = parser.add_mutually_exclusive_group(required=True)
    identity_group.add_argument("--user-id", help="Supabase auth.users id (UUID)")
    identity_group.add_argument("--email", help="Supabase auth.users email")
    parser.add_argument(
        "--account-source",
        choices=["imported", "self_registered"],
        default=None,
        help="Provenance flag stored on the profile",
    )
    args = parser.parse_args()

    print(
        render_sql(
            role=args.role,
            user_id=args.user_id,
            email=args.email,
            account_source=args.account_source,
        )
    )


if __name__ == "__main__":
    main()
