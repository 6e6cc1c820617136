from __future__ import annotations

import json
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from functools import lru_cache
from typing import Any

import asyncpg  # type: ignore[import-untyped]
from asyncpg import exceptions as pg_exc

from jobboard_api.core.config import get_settings


class RepositoryError(Exception):
    """Base repository error."""


class RepositoryUnavailableError(RepositoryError):
    """Raised when the database is unavailable or not configured."""


class RepositoryNotFoundError(RepositoryError):
    """Raised when the requested entity does not exist."""


class RepositoryConflictError(RepositoryError):
    """Raised when an operation violates state transition rules."""


class RepositoryForbiddenError(RepositoryError):
    """Raised when an operation is not permitted for the actor."""


class RepositoryValidationError(RepositoryError):
    """Raised when payload validation fails before persistence."""


@dataclass(slots=True)
class MachineCredentialRecord:
    module_db_id: str
    module_id: str
    scopes: list[str]
    key_hash: str


JOB_KINDS = {"expire_posting"}
JOB_STATUSES = {"queued", "claimed", "done", "failed", "dead_letter"}
JOB_RESULT_STATUSES = {"done", "failed", "dead_letter"}
POSTING_STATUSES = {"pending_payment", "active", "expired"}

POSTING_COLUMNS = """
  id::text as id,
  owner_id,
  status::text as status,
  listing_duration_days,
  title,
  description,
  employment_type,
  location,
  salary_from,
  salary_to,
  benefits,
  idempotency_key,
  checkout_session_id,
  checkout_url,
  activated_at,
  expired_at,
  created_at,
  updated_at
"""

JOB_COLUMNS = """
  id::text as id,
  kind::text as kind,
  target_type,
  target_id::text as target_id,
  inputs_json,
  status::text as status,
  attempt,
  locked_by_module_id::text as locked_by_module_id,
  lease_expires_at,
  next_run_at,
  created_at,
  updated_at
"""


class PostgresRepository:
    def __init__(
        self,
        database_url: str | None,
        min_pool_size: int,
        max_pool_size: int,
        job_max_attempts: int,
        job_retry_base_seconds: int,
        job_retry_max_seconds: int,
    ) -> None:
        self.database_url = database_url
        self.min_pool_size = min_pool_size
        self.max_pool_size = max_pool_size
        self.job_max_attempts = max(1, job_max_attempts)
        self.job_retry_base_seconds = max(0, job_retry_base_seconds)
        self.job_retry_max_seconds = max(0, job_retry_max_seconds)
        self._pool: asyncpg.Pool | None = None

    async def close(self) -> None:
        if self._pool is not None:
            await self._pool.close()
            self._pool = None

    async def ping(self) -> None:
        pool = await self._get_pool()
        try:
            await pool.fetchval("select 1")
        except (OSError, asyncpg.PostgresError) as exc:
            raise RepositoryUnavailableError("database unavailable") from exc

    async def get_machine_credentials(self, module_id: str) -> list[MachineCredentialRecord]:
        pool = await self._get_pool()
        rows = await pool.fetch(
            """
            select
              m.id::text as module_db_id,
              m.module_id,
              m.scopes,
              mc.key_hash
            from modules m
            join module_credentials mc on mc.module_id = m.id
            where m.module_id = $1
              and m.enabled = true
              and mc.is_active = true
              and mc.revoked_at is null
              and (mc.expires_at is null or mc.expires_at > now())
            """,
            module_id,
        )
        return [
            MachineCredentialRecord(
                module_db_id=row["module_db_id"],
                module_id=row["module_id"],
                scopes=list(row["scopes"] or []),
                key_hash=row["key_hash"],
            )
            for row in rows
        ]

    # Postings

    async def get_posting(self, posting_id: str) -> dict[str, Any]:
        pool = await self._get_pool()
        try:
            row = await pool.fetchrow(
                f"select {POSTING_COLUMNS} from postings where id = $1::uuid",
                posting_id,
            )
        except (pg_exc.InvalidTextRepresentationError, asyncpg.DataError) as exc:
            raise RepositoryNotFoundError("posting not found") from exc
        if not row:
            raise RepositoryNotFoundError("posting not found")
        return self._posting_row_to_dict(row)

    async def insert_posting(
        self,
        *,
        owner_id: str,
        content: dict[str, Any],
        listing_duration_days: int,
        idempotency_key: str | None,
        expire_after: timedelta,
    ) -> tuple[dict[str, Any], bool]:
        """Insert a pending posting together with its expiration job.

        Both rows commit in one transaction, so no reader ever sees a posting
        without a timer. A replayed idempotency key returns the stored row.
        """
        pool = await self._get_pool()

        try:
            async with pool.acquire() as conn:
                async with conn.transaction():
                    row = await conn.fetchrow(
                        f"""
                        insert into postings (
                          owner_id,
                          listing_duration_days,
                          title,
                          description,
                          employment_type,
                          location,
                          salary_from,
                          salary_to,
                          benefits,
                          idempotency_key
                        )
                        values ($1, $2, $3, $4, $5, $6, $7, $8, $9::text[], $10)
                        on conflict (owner_id, idempotency_key) where idempotency_key is not null
                        do nothing
                        returning {POSTING_COLUMNS}
                        """,
                        owner_id,
                        listing_duration_days,
                        content.get("title"),
                        content.get("description"),
                        content.get("employment_type"),
                        content.get("location"),
                        int(content.get("salary_from") or 0),
                        int(content.get("salary_to") or 0),
                        self._coerce_text_list(content.get("benefits")),
                        idempotency_key,
                    )

                    if row is None:
                        existing = await conn.fetchrow(
                            f"""
                            select {POSTING_COLUMNS}
                            from postings
                            where owner_id = $1 and idempotency_key = $2
                            """,
                            owner_id,
                            idempotency_key,
                        )
                        if not existing:
                            raise RepositoryConflictError("idempotent posting insert lost its row")
                        return self._posting_row_to_dict(existing), False

                    await self._record_event(
                        conn,
                        entity_type="posting",
                        entity_id=row["id"],
                        event_type="created",
                        actor_type="human",
                        actor_id=owner_id,
                        payload={"listing_duration_days": listing_duration_days},
                    )
                    await self._insert_expiration_job(
                        conn,
                        posting_id=row["id"],
                        due_at=row["created_at"] + expire_after,
                    )
                    return self._posting_row_to_dict(row), True
        except (pg_exc.NotNullViolationError, pg_exc.CheckViolationError, asyncpg.DataError) as exc:
            raise RepositoryValidationError(str(exc)) from exc

    async def conditional_update_status(
        self,
        posting_id: str,
        *,
        expected_statuses: list[str],
        new_status: str,
        reason: str,
    ) -> bool:
        if new_status not in POSTING_STATUSES:
            raise RepositoryValidationError(f"unknown posting status: {new_status}")
        pool = await self._get_pool()

        try:
            async with pool.acquire() as conn:
                async with conn.transaction():
                    row = await conn.fetchrow(
                        """
                        with prior as (
                          select id, status
                          from postings
                          where id = $1::uuid
                          for update
                        )
                        update postings p
                        set
                          status = $3::posting_status,
                          activated_at = case
                            when $3::posting_status = 'active' then now()
                            else p.activated_at
                          end,
                          expired_at = case
                            when $3::posting_status = 'expired' then now()
                            else p.expired_at
                          end
                        from prior
                        where p.id = prior.id
                          and prior.status = any($2::posting_status[])
                        returning prior.status::text as from_status
                        """,
                        posting_id,
                        expected_statuses,
                        new_status,
                    )
                    if not row:
                        return False

                    await self._record_event(
                        conn,
                        entity_type="posting",
                        entity_id=posting_id,
                        event_type="status_changed",
                        actor_type="system",
                        actor_id=None,
                        payload={
                            "from_status": row["from_status"],
                            "to_status": new_status,
                            "reason": reason,
                        },
                    )
                    return True
        except (pg_exc.InvalidTextRepresentationError, asyncpg.DataError):
            return False

    async def update_content(self, posting_id: str, content: dict[str, Any]) -> dict[str, Any] | None:
        pool = await self._get_pool()
        benefits = content.get("benefits")

        try:
            row = await pool.fetchrow(
                f"""
                update postings
                set
                  title = coalesce($2, title),
                  description = coalesce($3, description),
                  employment_type = coalesce($4, employment_type),
                  location = coalesce($5, location),
                  salary_from = coalesce($6, salary_from),
                  salary_to = coalesce($7, salary_to),
                  benefits = coalesce($8::text[], benefits)
                where id = $1::uuid
                  and status in ('pending_payment', 'active')
                returning {POSTING_COLUMNS}
                """,
                posting_id,
                content.get("title"),
                content.get("description"),
                content.get("employment_type"),
                content.get("location"),
                content.get("salary_from"),
                content.get("salary_to"),
                self._coerce_text_list(benefits) if benefits is not None else None,
            )
        except (pg_exc.InvalidTextRepresentationError, asyncpg.DataError):
            return None
        except pg_exc.CheckViolationError as exc:
            raise RepositoryValidationError(str(exc)) from exc
        return self._posting_row_to_dict(row) if row else None

    async def record_checkout(self, posting_id: str, *, session_id: str, checkout_url: str) -> None:
        pool = await self._get_pool()
        async with pool.acquire() as conn:
            async with conn.transaction():
                await conn.execute(
                    """
                    update postings
                    set checkout_session_id = $2, checkout_url = $3
                    where id = $1::uuid
                    """,
                    posting_id,
                    session_id,
                    checkout_url,
                )
                await self._record_event(
                    conn,
                    entity_type="posting",
                    entity_id=posting_id,
                    event_type="checkout_started",
                    actor_type="system",
                    actor_id=None,
                    payload={"checkout_session_id": session_id},
                )

    async def delete_posting(self, posting_id: str) -> bool:
        pool = await self._get_pool()
        try:
            async with pool.acquire() as conn:
                async with conn.transaction():
                    row = await conn.fetchrow(
                        """
                        delete from postings
                        where id = $1::uuid
                        returning owner_id, status::text as status
                        """,
                        posting_id,
                    )
                    if not row:
                        return False
                    await self._record_event(
                        conn,
                        entity_type="posting",
                        entity_id=posting_id,
                        event_type="deleted",
                        actor_type="human",
                        actor_id=row["owner_id"],
                        payload={"status": row["status"]},
                    )
                    return True
        except (pg_exc.InvalidTextRepresentationError, asyncpg.DataError):
            return False

    async def list_active_postings(self, *, limit: int, offset: int) -> list[dict[str, Any]]:
        pool = await self._get_pool()
        rows = await pool.fetch(
            f"""
            select {POSTING_COLUMNS}
            from postings
            where status = 'active'
            order by created_at desc, id desc
            limit $1
            offset $2
            """,
            limit,
            offset,
        )
        return [self._posting_row_to_dict(row) for row in rows]

    async def list_owner_postings(self, *, owner_id: str, limit: int, offset: int) -> list[dict[str, Any]]:
        pool = await self._get_pool()
        rows = await pool.fetch(
            f"""
            select {POSTING_COLUMNS}
            from postings
            where owner_id = $1
            order by created_at desc, id desc
            limit $2
            offset $3
            """,
            owner_id,
            limit,
            offset,
        )
        return [self._posting_row_to_dict(row) for row in rows]

    # Job queue

    async def enqueue_expiration_job(self, *, posting_id: str, due_at: datetime) -> bool:
        pool = await self._get_pool()

        async with pool.acquire() as conn:
            async with conn.transaction():
                return await self._insert_expiration_job(conn, posting_id=posting_id, due_at=due_at)

    async def _insert_expiration_job(self, conn: asyncpg.Connection, *, posting_id: str, due_at: datetime) -> bool:
        row = await conn.fetchrow(
            """
            insert into jobs (kind, target_type, target_id, inputs_json, next_run_at)
            values ('expire_posting', 'posting', $1::uuid, $2::jsonb, $3::timestamptz)
            on conflict (target_id) where kind = 'expire_posting'
            do nothing
            returning id::text as id
            """,
            posting_id,
            json.dumps({"posting_id": posting_id, "due_at": due_at.isoformat()}),
            due_at,
        )
        if not row:
            return False
        await self._record_event(
            conn,
            entity_type="job",
            entity_id=row["id"],
            event_type="expiration_armed",
            actor_type="system",
            actor_id=None,
            payload={"posting_id": posting_id, "due_at": due_at.isoformat()},
        )
        return True

    async def list_queued_jobs(self, limit: int) -> list[dict[str, Any]]:
        pool = await self._get_pool()
        rows = await pool.fetch(
            f"""
            select {JOB_COLUMNS}
            from jobs
            where status = 'queued' and next_run_at <= now()
            order by next_run_at asc, created_at asc
            limit $1
            """,
            limit,
        )
        return [self._job_row_to_dict(row) for row in rows]

    async def get_job(self, job_id: str) -> dict[str, Any]:
        pool = await self._get_pool()
        try:
            row = await pool.fetchrow(f"select {JOB_COLUMNS} from jobs where id = $1::uuid", job_id)
        except (pg_exc.InvalidTextRepresentationError, asyncpg.DataError) as exc:
            raise RepositoryNotFoundError("job not found") from exc
        if not row:
            raise RepositoryNotFoundError("job not found")
        return self._job_row_to_dict(row)

    async def claim_job(self, job_id: str, module_db_id: str, lease_seconds: int) -> dict[str, Any]:
        pool = await self._get_pool()

        try:
            async with pool.acquire() as conn:
                async with conn.transaction():
                    row = await conn.fetchrow(
                        f"""
                        update jobs
                        set
                          status = 'claimed',
                          locked_by_module_id = $2::uuid,
                          locked_at = now(),
                          lease_expires_at = now() + ($3::int * interval '1 second'),
                          attempt = attempt + 1
                        where id = $1::uuid and status = 'queued' and next_run_at <= now()
                        returning {JOB_COLUMNS}
                        """,
                        job_id,
                        module_db_id,
                        lease_seconds,
                    )

                    if not row:
                        exists = await conn.fetchval("select 1 from jobs where id = $1::uuid", job_id)
                        if not exists:
                            raise RepositoryNotFoundError("job not found")
                        raise RepositoryConflictError("job is not claimable")

                    await self._record_event(
                        conn,
                        entity_type="job",
                        entity_id=row["id"],
                        event_type="claimed",
                        actor_type="machine",
                        actor_id=module_db_id,
                        payload={"lease_seconds": lease_seconds, "attempt": int(row["attempt"])},
                    )
                    return self._job_row_to_dict(row)
        except (pg_exc.InvalidTextRepresentationError, asyncpg.DataError) as exc:
            raise RepositoryNotFoundError("job not found") from exc

    async def requeue_expired_claimed_jobs(self, *, actor_id: str, actor_type: str, limit: int) -> int:
        pool = await self._get_pool()
        bounded_limit = max(1, min(limit, 1000))

        async with pool.acquire() as conn:
            async with conn.transaction():
                rows = await conn.fetch(
                    """
                    with expired as (
                      select id
                      from jobs
                      where status = 'claimed'
                        and lease_expires_at is not null
                        and lease_expires_at <= now()
                      order by lease_expires_at asc
                      limit $1
                      for update skip locked
                    )
                    update jobs j
                    set
                      status = 'queued',
                      locked_by_module_id = null,
                      locked_at = null,
                      lease_expires_at = null,
                      next_run_at = now()
                    from expired e
                    where j.id = e.id
                    returning j.id::text as id
                    """,
                    bounded_limit,
                )

                for row in rows:
                    await self._record_event(
                        conn,
                        entity_type="job",
                        entity_id=row["id"],
                        event_type="lease_requeued",
                        actor_type=actor_type,
                        actor_id=actor_id,
                        payload={"reason": "lease_expired"},
                    )
                return len(rows)

    async def submit_job_result(
        self,
        job_id: str,
        module_db_id: str,
        status: str,
        result_json: dict[str, Any] | None,
        error_json: dict[str, Any] | None,
    ) -> dict[str, Any]:
        if status not in JOB_RESULT_STATUSES:
            raise RepositoryValidationError("status must be one of: done, failed, dead_letter")
        pool = await self._get_pool()

        try:
            async with pool.acquire() as conn:
                async with conn.transaction():
                    claimed = await conn.fetchrow(
                        """
                        select
                          status::text as status,
                          locked_by_module_id::text as locked_by,
                          attempt
                        from jobs
                        where id = $1::uuid
                        for update
                        """,
                        job_id,
                    )

                    if not claimed:
                        raise RepositoryNotFoundError("job not found")
                    if claimed["status"] != "claimed":
                        raise RepositoryConflictError("job is not in claimed state")
                    if claimed["locked_by"] != module_db_id:
                        raise RepositoryForbiddenError("job claimed by another module")

                    attempt = int(claimed["attempt"])
                    next_run_at: datetime | None = None
                    resolved_status = status
                    retry_delay_seconds: int | None = None

                    if not self.closes_job(status=status, attempt=attempt):
                        retry_delay_seconds = self._compute_retry_delay_seconds(attempt=attempt)
                        next_run_at = datetime.now(timezone.utc) + timedelta(seconds=retry_delay_seconds)
                        resolved_status = "queued"

                    row = await conn.fetchrow(
                        f"""
                        update jobs
                        set
                          status = $2::job_status,
                          result_json = $3::jsonb,
                          error_json = $4::jsonb,
                          locked_by_module_id = null,
                          locked_at = null,
                          lease_expires_at = null,
                          next_run_at = coalesce($5::timestamptz, next_run_at)
                        where id = $1::uuid
                        returning {JOB_COLUMNS}
                        """,
                        job_id,
                        resolved_status,
                        json.dumps(result_json) if result_json is not None else None,
                        json.dumps(error_json) if error_json is not None else None,
                        next_run_at,
                    )

                    await self._record_event(
                        conn,
                        entity_type="job",
                        entity_id=row["id"],
                        event_type="result_submitted",
                        actor_type="machine",
                        actor_id=module_db_id,
                        payload={
                            "requested_status": status,
                            "resolved_status": resolved_status,
                            "attempt": attempt,
                            "max_attempts": self.job_max_attempts,
                            "retry_delay_seconds": retry_delay_seconds,
                        },
                    )
                    return self._job_row_to_dict(row)
        except (pg_exc.InvalidTextRepresentationError, asyncpg.DataError) as exc:
            raise RepositoryNotFoundError("job not found") from exc

    async def list_admin_jobs(
        self,
        *,
        status: str | None,
        kind: str | None,
        target_id: str | None,
        limit: int,
        offset: int,
    ) -> list[dict[str, Any]]:
        normalized_status = self._coerce_text(status)
        if normalized_status and normalized_status not in JOB_STATUSES:
            raise RepositoryValidationError("status must be one of: " + ", ".join(sorted(JOB_STATUSES)))

        normalized_kind = self._coerce_text(kind)
        if normalized_kind and normalized_kind not in JOB_KINDS:
            raise RepositoryValidationError("kind must be one of: " + ", ".join(sorted(JOB_KINDS)))

        pool = await self._get_pool()
        try:
            rows = await pool.fetch(
                f"""
                select {JOB_COLUMNS}
                from jobs
                where ($1::text is null or status::text = $1)
                  and ($2::text is null or kind::text = $2)
                  and ($3::uuid is null or target_id = $3::uuid)
                order by updated_at desc, id desc
                limit $4
                offset $5
                """,
                normalized_status,
                normalized_kind,
                self._coerce_text(target_id),
                limit,
                offset,
            )
        except (pg_exc.InvalidTextRepresentationError, asyncpg.DataError) as exc:
            raise RepositoryValidationError("target_id must be a uuid") from exc
        return [self._job_row_to_dict(row) for row in rows]

    async def _record_event(
        self,
        conn: asyncpg.Connection,
        *,
        entity_type: str,
        entity_id: str,
        event_type: str,
        actor_type: str,
        actor_id: str | None,
        payload: dict[str, Any],
    ) -> None:
        await conn.execute(
            """
            insert into provenance_events (
              entity_type,
              entity_id,
              event_type,
              actor_type,
              actor_id,
              payload
            )
            values ($1, $2::uuid, $3, $4, $5, $6::jsonb)
            """,
            entity_type,
            entity_id,
            event_type,
            actor_type,
            actor_id,
            json.dumps(payload),
        )

    async def _get_pool(self) -> asyncpg.Pool:
        if not self.database_url:
            raise RepositoryUnavailableError("JB_DATABASE_URL is required")

        if self._pool is not None:
            return self._pool

        try:
            self._pool = await asyncpg.create_pool(
                dsn=self.database_url,
                min_size=self.min_pool_size,
                max_size=self.max_pool_size,
                command_timeout=15,
            )
            return self._pool
        except Exception as exc:  # pragma: no cover - depends on environment
            raise RepositoryUnavailableError("database unavailable") from exc

    @staticmethod
    def _posting_row_to_dict(row: asyncpg.Record) -> dict[str, Any]:
        return {
            "id": row["id"],
            "owner_id": row["owner_id"],
            "status": row["status"],
            "listing_duration_days": int(row["listing_duration_days"]),
            "title": row["title"],
            "description": row["description"],
            "employment_type": row["employment_type"],
            "location": row["location"],
            "salary_from": int(row["salary_from"]),
            "salary_to": int(row["salary_to"]),
            "benefits": list(row["benefits"] or []),
            "idempotency_key": row["idempotency_key"],
            "checkout_session_id": row["checkout_session_id"],
            "checkout_url": row["checkout_url"],
            "activated_at": row["activated_at"],
            "expired_at": row["expired_at"],
            "created_at": row["created_at"],
            "updated_at": row["updated_at"],
        }

    @staticmethod
    def _job_row_to_dict(row: asyncpg.Record) -> dict[str, Any]:
        inputs_json = row["inputs_json"]
        if isinstance(inputs_json, str):
            try:
                inputs_json = json.loads(inputs_json)
            except json.JSONDecodeError:
                inputs_json = {}
        if inputs_json is None:
            inputs_json = {}

        return {
            "id": row["id"],
            "kind": row["kind"],
            "target_type": row["target_type"],
            "target_id": row["target_id"],
            "inputs_json": inputs_json,
            "status": row["status"],
            "attempt": int(row["attempt"]),
            "locked_by_module_id": row["locked_by_module_id"],
            "lease_expires_at": row["lease_expires_at"],
            "next_run_at": row["next_run_at"],
            "created_at": row["created_at"],
            "updated_at": row["updated_at"],
        }

    def closes_job(self, *, status: str, attempt: int) -> bool:
        """Whether a result ends the job instead of requeueing it for retry."""
        if status == "failed":
            return attempt >= self.job_max_attempts
        return status in JOB_RESULT_STATUSES

    def _compute_retry_delay_seconds(self, *, attempt: int) -> int:
        if self.job_retry_base_seconds <= 0:
            return 0
        multiplier = max(0, attempt - 1)
        delay = self.job_retry_base_seconds * (2**multiplier)
        return min(delay, self.job_retry_max_seconds)

    @staticmethod
    def _coerce_text(value: Any) -> str | None:
        if value is None:
            return None
        if isinstance(value, str):
            stripped = value.strip()
            return stripped or None
        return str(value)

    @staticmethod
    def _coerce_text_list(value: Any) -> list[str]:
        if not isinstance(value, (list, tuple)):
            return []
        items: list[str] = []
        for item in value:
            if isinstance(item, str) and item.strip():
                items.append(item.strip())
        return items


@lru_cache
def get_repository() -> PostgresRepository:
    settings = get_settings()
    return PostgresRepository(
        database_url=settings.database_url,
        min_pool_size=settings.database_pool_min_size,
        max_pool_size=settings.database_pool_max_size,
        job_max_attempts=settings.job_max_attempts,
        job_retry_base_seconds=settings.job_retry_base_seconds,
        job_retry_max_seconds=settings.job_retry_max_seconds,
    )
