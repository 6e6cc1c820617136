from __future__ import annotations

import asyncio
from datetime import datetime, timedelta, timezone
from typing import Any
from uuid import uuid4

from jobboard_api.services.repository import RepositoryNotFoundError, RepositoryValidationError


class InMemoryListingStore:
    """Process-local listing store for bootstrap runs and tests.

    Mirrors the Postgres contract: status changes are compare-and-set under a
    single lock, edits are refused once a posting has expired, and a posting
    is only stored together with its expiration delay.
    """

    def __init__(self) -> None:
        self.postings: dict[str, dict[str, Any]] = {}
        self.events: list[dict[str, Any]] = []
        self.expirations: dict[str, timedelta] = {}
        self._idempotency_index: dict[tuple[str, str], str] = {}
        self._lock = asyncio.Lock()

    async def get_posting(self, posting_id: str) -> dict[str, Any]:
        posting = self.postings.get(posting_id)
        if posting is None:
            raise RepositoryNotFoundError("posting not found")
        return dict(posting)

    async def insert_posting(
        self,
        *,
        owner_id: str,
        content: dict[str, Any],
        listing_duration_days: int,
        idempotency_key: str | None,
        expire_after: timedelta,
    ) -> tuple[dict[str, Any], bool]:
        async with self._lock:
            if idempotency_key is not None:
                existing_id = self._idempotency_index.get((owner_id, idempotency_key))
                if existing_id is not None and existing_id in self.postings:
                    return dict(self.postings[existing_id]), False

            now = datetime.now(timezone.utc)
            posting = {
                "id": str(uuid4()),
                "owner_id": owner_id,
                "status": "pending_payment",
                "listing_duration_days": listing_duration_days,
                "title": content.get("title"),
                "description": content.get("description"),
                "employment_type": content.get("employment_type"),
                "location": content.get("location"),
                "salary_from": int(content.get("salary_from") or 0),
                "salary_to": int(content.get("salary_to") or 0),
                "benefits": list(content.get("benefits") or []),
                "idempotency_key": idempotency_key,
                "checkout_session_id": None,
                "checkout_url": None,
                "activated_at": None,
                "expired_at": None,
                "created_at": now,
                "updated_at": now,
            }
            self._arm_locked(posting["id"], expire_after)
            self.postings[posting["id"]] = posting
            if idempotency_key is not None:
                self._idempotency_index[(owner_id, idempotency_key)] = posting["id"]
            self._record_event(posting["id"], "created", {"listing_duration_days": listing_duration_days})
            return dict(posting), True

    async def conditional_update_status(
        self,
        posting_id: str,
        *,
        expected_statuses: list[str],
        new_status: str,
        reason: str,
    ) -> bool:
        async with self._lock:
            posting = self.postings.get(posting_id)
            if posting is None or posting["status"] not in expected_statuses:
                return False

            from_status = posting["status"]
            now = datetime.now(timezone.utc)
            posting["status"] = new_status
            posting["updated_at"] = now
            if new_status == "active":
                posting["activated_at"] = now
            elif new_status == "expired":
                posting["expired_at"] = now
            self._record_event(
                posting_id,
                "status_changed",
                {"from_status": from_status, "to_status": new_status, "reason": reason},
            )
            return True

    async def update_content(self, posting_id: str, content: dict[str, Any]) -> dict[str, Any] | None:
        async with self._lock:
            posting = self.postings.get(posting_id)
            if posting is None or posting["status"] not in {"pending_payment", "active"}:
                return None
            merged = {**posting, **{key: value for key, value in content.items() if value is not None}}
            if merged["salary_to"] < merged["salary_from"]:
                raise RepositoryValidationError("salary_to must be greater than or equal to salary_from")
            for key, value in content.items():
                if value is not None:
                    posting[key] = list(value) if key == "benefits" else value
            posting["updated_at"] = datetime.now(timezone.utc)
            return dict(posting)

    async def record_checkout(self, posting_id: str, *, session_id: str, checkout_url: str) -> None:
        async with self._lock:
            posting = self.postings.get(posting_id)
            if posting is None:
                return
            posting["checkout_session_id"] = session_id
            posting["checkout_url"] = checkout_url
            self._record_event(posting_id, "checkout_started", {"checkout_session_id": session_id})

    async def delete_posting(self, posting_id: str) -> bool:
        async with self._lock:
            posting = self.postings.pop(posting_id, None)
            if posting is None:
                return False
            self._record_event(posting_id, "deleted", {"status": posting["status"]})
            return True

    async def list_active_postings(self, *, limit: int, offset: int) -> list[dict[str, Any]]:
        rows = sorted(
            (row for row in self.postings.values() if row["status"] == "active"),
            key=lambda row: row["created_at"],
            reverse=True,
        )
        return [dict(row) for row in rows[offset : offset + limit]]

    async def list_owner_postings(self, *, owner_id: str, limit: int, offset: int) -> list[dict[str, Any]]:
        rows = sorted(
            (row for row in self.postings.values() if row["owner_id"] == owner_id),
            key=lambda row: row["created_at"],
            reverse=True,
        )
        return [dict(row) for row in rows[offset : offset + limit]]

    async def arm_expiration(self, posting_id: str, delay: timedelta) -> bool:
        async with self._lock:
            return self._arm_locked(posting_id, delay)

    def _arm_locked(self, posting_id: str, delay: timedelta) -> bool:
        if posting_id in self.expirations:
            return False
        self.expirations[posting_id] = delay
        return True

    def _record_event(self, posting_id: str, event_type: str, payload: dict[str, Any]) -> None:
        self.events.append(
            {
                "entity_type": "posting",
                "entity_id": posting_id,
                "event_type": event_type,
                "payload": payload,
                "created_at": datetime.now(timezone.utc),
            }
        )


class InMemoryExpirationScheduler:
    """Arms expirations on an in-memory store; at most one per posting."""

    def __init__(self, store: InMemoryListingStore) -> None:
        self.store = store
        self.arm_calls = 0

    @property
    def armed(self) -> dict[str, timedelta]:
        return self.store.expirations

    async def arm_after(self, posting_id: str, delay: timedelta) -> None:
        self.arm_calls += 1
        await self.store.arm_expiration(posting_id, delay)

    def due(self, posting_id: str, *, elapsed: timedelta) -> bool:
        delay = self.armed.get(posting_id)
        return delay is not None and elapsed >= delay
