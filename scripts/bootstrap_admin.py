#!/usr/bin/env python3
"""Emit deterministic SQL to bootstrap job board roles and worker credentials.

``role`` assigns a Supabase human role (company, admin, ...) through
``auth.users.raw_app_meta_data``. ``module`` registers a machine module such as
the expiration worker and stores the SHA-256 hash of its API key.
"""

from __future__ import annotations

import argparse
import hashlib
import secrets

HUMAN_ROLES = ["user", "job_seeker", "company", "admin"]
DEFAULT_WORKER_SCOPES = "jobs:read,jobs:write"


def _quote_sql(value: str) -> str:
    escaped = value.replace("'", "''")
    return f"'{escaped}'"


def render_role_sql(*, role: str, user_id: str | None, email: str | None, actor: str) -> str:
    role_value = _quote_sql(role)
    actor_value = _quote_sql(actor)

    if user_id:
        target_where = f"id = {_quote_sql(user_id)}::uuid"
        target_payload = f"jsonb_build_object('user_id', {_quote_sql(user_id)}, 'role', {role_value})"
    elif email:
        target_where = f"email = {_quote_sql(email)}"
        target_payload = f"jsonb_build_object('email', {_quote_sql(email)}, 'role', {role_value})"
    else:
        raise ValueError("user_id or email is required")

    return f"""-- Supabase human role bootstrap SQL
-- Run this in the Supabase SQL editor (or equivalent privileged Postgres session).

update auth.users
set raw_app_meta_data = coalesce(raw_app_meta_data, '{{}}'::jsonb) || jsonb_build_object('role', {role_value})
where {target_where};

insert into provenance_events (entity_type, event_type, actor_type, actor_id, payload)
values ('bootstrap', 'human_role_bootstrap', 'human', {actor_value}, {target_payload});
"""


def render_module_sql(*, module_id: str, api_key: str, scopes: list[str], actor: str) -> str:
    module_value = _quote_sql(module_id)
    key_hash = hashlib.sha256(api_key.encode("utf-8")).hexdigest()
    scopes_value = "array[" + ", ".join(_quote_sql(scope) for scope in scopes) + "]::text[]"

    return f"""-- Worker module credential bootstrap SQL
-- Configure the worker with JB_WORKER_MODULE_ID={module_id} and the API key it was issued.

insert into modules (module_id, name, kind, enabled, scopes)
values ({module_value}, {_quote_sql(module_id + " worker")}, 'worker', true, {scopes_value})
on conflict (module_id)
do update set enabled = true, scopes = excluded.scopes;

update module_credentials
set is_active = false, revoked_at = now()
where module_id = (select id from modules where module_id = {module_value})
  and revoked_at is null;

insert into module_credentials (module_id, key_hash, is_active)
select id, {_quote_sql(key_hash)}, true
from modules
where module_id = {module_value};

insert into provenance_events (entity_type, event_type, actor_type, actor_id, payload)
values ('bootstrap', 'module_credential_bootstrap', 'human', {_quote_sql(actor)}, jsonb_build_object('module_id', {module_value}));
"""


def _parse_scopes(raw: str) -> list[str]:
    scopes = [item.strip() for item in raw.split(",") if item.strip()]
    if not scopes:
        raise argparse.ArgumentTypeError("at least one scope is required")
    return scopes


def main() -> None:
    parser = argparse.ArgumentParser(description="Emit SQL to bootstrap job board roles and worker credentials.")
    subparsers = parser.add_subparsers(dest="command", required=True)

    role_parser = subparsers.add_parser("role", help="Assign a Supabase human role")
    role_parser.add_argument(
        "--role",
        choices=HUMAN_ROLES,
        default="admin",
        help="Role to assign in auth.users.raw_app_meta_data.role",
    )
    identity_group = role_parser.add_mutually_exclusive_group(required=True)
    identity_group.add_argument("--user-id", help="Supabase auth.users id (UUID)")
    identity_group.add_argument("--email", help="Supabase auth.users email")
    role_parser.add_argument("--actor", default="system", help="Actor label for the provenance event")

    module_parser = subparsers.add_parser("module", help="Register a worker module credential")
    module_parser.add_argument("--module-id", default="expiry-worker", help="Module id sent as X-Module-Id")
    module_parser.add_argument("--api-key", help="API key to register; generated when omitted")
    module_parser.add_argument(
        "--scopes",
        type=_parse_scopes,
        default=_parse_scopes(DEFAULT_WORKER_SCOPES),
        help="Comma-separated machine scopes",
    )
    module_parser.add_argument("--actor", default="system", help="Actor label for the provenance event")

    args = parser.parse_args()

    if args.command == "role":
        print(render_role_sql(role=args.role, user_id=args.user_id, email=args.email, actor=args.actor))
        return

    api_key = args.api_key or secrets.token_urlsafe(32)
    if not args.api_key:
        print(f"-- generated api key (store it now, only the hash is persisted): {api_key}")
    print(render_module_sql(module_id=args.module_id, api_key=api_key, scopes=args.scopes, actor=args.actor))


if __name__ == "__main__":
    main()
