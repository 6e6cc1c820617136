from __future__ import annotations

import hashlib
import subprocess
import sys
from pathlib import Path


SCRIPT_PATH = Path(__file__).resolve().parents[2] / "scripts" / "bootstrap_admin.py"


def _run_script(*args: str) -> str:
    completed = subprocess.run(
        [sys.executable, str(SCRIPT_PATH), *args],
        check=True,
        capture_output=True,
        text=True,
    )
    return completed.stdout


def test_bootstrap_script_emits_role_sql_for_user_id_target() -> None:
    user_id = "00000000-0000-0000-0000-000000000123"
    output = _run_script("role", "--user-id", user_id, "--role", "company", "--actor", "cli")

    assert "update auth.users" in output
    assert f"where id = '{user_id}'::uuid;" in output
    assert "jsonb_build_object('role', 'company')" in output
    assert "values ('bootstrap', 'human_role_bootstrap', 'human', 'cli'" in output


def test_bootstrap_script_emits_role_sql_for_email_target() -> None:
    output = _run_script("role", "--email", "o'brien@example.com", "--role", "admin")

    assert "where email = 'o''brien@example.com';" in output
    assert "jsonb_build_object('email', 'o''brien@example.com', 'role', 'admin')" in output


def test_bootstrap_script_registers_worker_module_with_key_hash() -> None:
    output = _run_script("module", "--module-id", "expiry-worker", "--api-key", "worker-secret")

    expected_hash = hashlib.sha256(b"worker-secret").hexdigest()
    assert "insert into modules (module_id, name, kind, enabled, scopes)" in output
    assert "array['jobs:read', 'jobs:write']::text[]" in output
    assert f"select id, '{expected_hash}', true" in output
    assert "worker-secret" not in output


def test_bootstrap_script_generates_worker_key_when_missing() -> None:
    output = _run_script("module", "--scopes", "jobs:read")

    assert output.startswith("-- generated api key")
    assert "array['jobs:read']::text[]" in output
    assert "JB_WORKER_MODULE_ID=expiry-worker" in output
