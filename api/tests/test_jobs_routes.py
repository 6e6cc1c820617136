from __future__ import annotations

import asyncio
from datetime import datetime, timedelta, timezone
from typing import Any

import pytest
from fastapi.testclient import TestClient

from jobboard_api.api.deps import get_lifecycle
from jobboard_api.core.security import hash_api_key
from jobboard_api.main import app
from jobboard_api.services.lifecycle import CheckoutTransaction, ListingLifecycle, PaymentOutcome
from jobboard_api.services.repository import (
    MachineCredentialRecord,
    RepositoryConflictError,
    RepositoryNotFoundError,
    RepositoryUnavailableError,
    get_repository,
)
from jobboard_api.services.store import InMemoryExpirationScheduler, InMemoryListingStore

WORKER_HEADERS = {"X-Module-Id": "expiry-worker", "X-API-Key": "worker-secret"}
READER_HEADERS = {"X-Module-Id": "read-only", "X-API-Key": "reader-secret"}


class FakeJobsRepository:
    def __init__(self) -> None:
        self.credentials = {
            "expiry-worker": MachineCredentialRecord(
                module_db_id="module-db-1",
                module_id="expiry-worker",
                scopes=["jobs:read", "jobs:write"],
                key_hash=hash_api_key("worker-secret"),
            ),
            "read-only": MachineCredentialRecord(
                module_db_id="module-db-2",
                module_id="read-only",
                scopes=["jobs:read"],
                key_hash=hash_api_key("reader-secret"),
            ),
        }
        self.jobs: dict[str, dict[str, Any]] = {}
        self.job_max_attempts = 2
        self.requeued_by: list[tuple[str, str]] = []

    def add_expiration_job(self, job_id: str, posting_id: str) -> None:
        now = datetime.now(timezone.utc)
        self.jobs[job_id] = {
            "id": job_id,
            "kind": "expire_posting",
            "target_type": "posting",
            "target_id": posting_id,
            "inputs_json": {"posting_id": posting_id, "due_at": now.isoformat()},
            "status": "queued",
            "attempt": 0,
            "locked_by_module_id": None,
            "lease_expires_at": None,
            "next_run_at": now,
            "created_at": now,
            "updated_at": now,
        }

    async def get_machine_credentials(self, module_id: str) -> list[MachineCredentialRecord]:
        record = self.credentials.get(module_id)
        return [record] if record else []

    async def list_queued_jobs(self, limit: int) -> list[dict[str, Any]]:
        return [job for job in self.jobs.values() if job["status"] == "queued"][:limit]

    async def get_job(self, job_id: str) -> dict[str, Any]:
        if job_id not in self.jobs:
            raise RepositoryNotFoundError("job not found")
        return dict(self.jobs[job_id])

    async def claim_job(self, job_id: str, module_db_id: str, lease_seconds: int) -> dict[str, Any]:
        job = self.jobs.get(job_id)
        if job is None:
            raise RepositoryNotFoundError("job not found")
        if job["status"] != "queued":
            raise RepositoryConflictError("job is not claimable")
        job["status"] = "claimed"
        job["attempt"] += 1
        job["locked_by_module_id"] = module_db_id
        job["lease_expires_at"] = datetime.now(timezone.utc) + timedelta(seconds=lease_seconds)
        return dict(job)

    async def submit_job_result(
        self,
        job_id: str,
        module_db_id: str,
        status: str,
        result_json: dict[str, Any] | None,
        error_json: dict[str, Any] | None,
    ) -> dict[str, Any]:
        job = self.jobs[job_id]
        job["status"] = status if self.closes_job(status=status, attempt=job["attempt"]) else "queued"
        job["result_json"] = result_json
        job["error_json"] = error_json
        job["locked_by_module_id"] = None
        return dict(job)

    def closes_job(self, *, status: str, attempt: int) -> bool:
        if status == "failed":
            return attempt >= self.job_max_attempts
        return True

    async def requeue_expired_claimed_jobs(self, *, actor_id: str, actor_type: str, limit: int) -> int:
        self.requeued_by.append((actor_type, actor_id))
        return 0


class StaticGateway:
    async def start_transaction(
        self, posting_id: str, amount: int, description: str, *, details: str | None = None
    ) -> CheckoutTransaction:
        return CheckoutTransaction(transaction_id="cs_1", redirect_url="https://pay.example/1")


class FlakyStore(InMemoryListingStore):
    def __init__(self) -> None:
        super().__init__()
        self.down = False

    async def conditional_update_status(self, posting_id: str, **kwargs: Any) -> bool:
        if self.down:
            raise RepositoryUnavailableError("database unavailable")
        return await super().conditional_update_status(posting_id, **kwargs)


class Harness:
    def __init__(self) -> None:
        self.repository = FakeJobsRepository()
        self.store = FlakyStore()
        self.lifecycle = ListingLifecycle(
            store=self.store,
            scheduler=InMemoryExpirationScheduler(self.store),
            gateway=StaticGateway(),
        )

    def active_posting(self) -> str:
        created = asyncio.run(
            self.lifecycle.create_listing(
                owner_id="company-1",
                content={"title": "QA Engineer", "description": "Test it all.", "employment_type": "contract", "location": "Remote"},
                duration_days=30,
            )
        )
        asyncio.run(self.lifecycle.apply_payment_completion(created.posting_id, PaymentOutcome.SUCCESS))
        return created.posting_id


@pytest.fixture
def harness() -> Harness:
    return Harness()


@pytest.fixture
def jobs_client(harness: Harness) -> TestClient:
    app.dependency_overrides[get_repository] = lambda: harness.repository
    app.dependency_overrides[get_lifecycle] = lambda: harness.lifecycle

    with TestClient(app) as client:
        yield client

    app.dependency_overrides.clear()


def test_jobs_require_machine_credentials(jobs_client: TestClient) -> None:
    assert jobs_client.get("/jobs").status_code == 401
    assert jobs_client.get("/jobs", headers={**WORKER_HEADERS, "X-API-Key": "wrong"}).status_code == 401
    assert jobs_client.get("/jobs", headers={"X-Module-Id": "unknown", "X-API-Key": "x"}).status_code == 401


def test_jobs_list_and_claim(jobs_client: TestClient, harness: Harness) -> None:
    harness.repository.add_expiration_job("job-1", "posting-1")

    listed = jobs_client.get("/jobs", headers=WORKER_HEADERS)
    assert listed.status_code == 200
    assert [job["id"] for job in listed.json()] == ["job-1"]

    claimed = jobs_client.post("/jobs/job-1/claim", json={"lease_seconds": 60}, headers=WORKER_HEADERS)
    assert claimed.status_code == 200
    assert claimed.json()["status"] == "claimed"
    assert claimed.json()["attempt"] == 1

    again = jobs_client.post("/jobs/job-1/claim", json={"lease_seconds": 60}, headers=WORKER_HEADERS)
    assert again.status_code == 409
    missing = jobs_client.post("/jobs/job-9/claim", json={"lease_seconds": 60}, headers=WORKER_HEADERS)
    assert missing.status_code == 404


def test_claim_requires_write_scope(jobs_client: TestClient, harness: Harness) -> None:
    harness.repository.add_expiration_job("job-1", "posting-1")

    assert jobs_client.get("/jobs", headers=READER_HEADERS).status_code == 200
    response = jobs_client.post("/jobs/job-1/claim", json={"lease_seconds": 60}, headers=READER_HEADERS)
    assert response.status_code == 403


def test_done_expiration_result_expires_posting(jobs_client: TestClient, harness: Harness) -> None:
    posting_id = harness.active_posting()
    harness.repository.add_expiration_job("job-1", posting_id)
    jobs_client.post("/jobs/job-1/claim", json={"lease_seconds": 60}, headers=WORKER_HEADERS)

    response = jobs_client.post(
        "/jobs/job-1/result",
        json={"status": "done", "result_json": {"lag_seconds": 3}},
        headers=WORKER_HEADERS,
    )

    assert response.status_code == 200
    assert response.json()["status"] == "done"
    assert harness.store.postings[posting_id]["status"] == "expired"
    assert harness.repository.jobs["job-1"]["result_json"] == {"lag_seconds": 3, "posting_expired": True}


def test_redelivered_expiration_result_is_a_no_op(jobs_client: TestClient, harness: Harness) -> None:
    posting_id = harness.active_posting()
    asyncio.run(harness.lifecycle.apply_expiration(posting_id))
    harness.repository.add_expiration_job("job-1", posting_id)
    jobs_client.post("/jobs/job-1/claim", json={"lease_seconds": 60}, headers=WORKER_HEADERS)

    response = jobs_client.post("/jobs/job-1/result", json={"status": "done"}, headers=WORKER_HEADERS)

    assert response.status_code == 200
    assert harness.repository.jobs["job-1"]["result_json"] == {"posting_expired": False}
    assert harness.store.postings[posting_id]["status"] == "expired"


def test_store_outage_keeps_expiration_job_claimed(jobs_client: TestClient, harness: Harness) -> None:
    posting_id = harness.active_posting()
    harness.repository.add_expiration_job("job-1", posting_id)
    jobs_client.post("/jobs/job-1/claim", json={"lease_seconds": 60}, headers=WORKER_HEADERS)
    harness.store.down = True

    response = jobs_client.post("/jobs/job-1/result", json={"status": "done"}, headers=WORKER_HEADERS)

    assert response.status_code == 503
    assert harness.repository.jobs["job-1"]["status"] == "claimed"
    assert harness.store.postings[posting_id]["status"] == "active"


def test_retryable_failed_result_leaves_posting_for_redelivery(jobs_client: TestClient, harness: Harness) -> None:
    posting_id = harness.active_posting()
    harness.repository.add_expiration_job("job-1", posting_id)
    jobs_client.post("/jobs/job-1/claim", json={"lease_seconds": 60}, headers=WORKER_HEADERS)

    response = jobs_client.post(
        "/jobs/job-1/result",
        json={"status": "failed", "error_json": {"error": "bad inputs"}},
        headers=WORKER_HEADERS,
    )

    assert response.status_code == 200
    assert response.json()["status"] == "queued"
    assert harness.store.postings[posting_id]["status"] == "active"


def test_dead_lettered_expiration_still_expires_posting(jobs_client: TestClient, harness: Harness) -> None:
    posting_id = harness.active_posting()
    harness.repository.add_expiration_job("job-1", posting_id)
    jobs_client.post("/jobs/job-1/claim", json={"lease_seconds": 60}, headers=WORKER_HEADERS)

    response = jobs_client.post(
        "/jobs/job-1/result",
        json={"status": "dead_letter", "error_json": {"error": "posting id mismatch"}},
        headers=WORKER_HEADERS,
    )

    assert response.status_code == 200
    assert response.json()["status"] == "dead_letter"
    assert harness.store.postings[posting_id]["status"] == "expired"
    assert harness.repository.jobs["job-1"]["result_json"] == {"posting_expired": True}


def test_exhausted_failed_expiration_still_expires_posting(jobs_client: TestClient, harness: Harness) -> None:
    posting_id = harness.active_posting()
    harness.repository.add_expiration_job("job-1", posting_id)
    harness.repository.jobs["job-1"]["attempt"] = 1
    jobs_client.post("/jobs/job-1/claim", json={"lease_seconds": 60}, headers=WORKER_HEADERS)

    response = jobs_client.post(
        "/jobs/job-1/result",
        json={"status": "failed", "error_json": {"error": "timeout"}},
        headers=WORKER_HEADERS,
    )

    assert response.status_code == 200
    assert response.json()["status"] == "failed"
    assert harness.store.postings[posting_id]["status"] == "expired"


def test_result_requires_claim_by_same_module(jobs_client: TestClient, harness: Harness) -> None:
    harness.repository.add_expiration_job("job-1", "posting-1")

    unclaimed = jobs_client.post("/jobs/job-1/result", json={"status": "done"}, headers=WORKER_HEADERS)
    assert unclaimed.status_code == 409

    harness.repository.jobs["job-1"].update(status="claimed", locked_by_module_id="module-db-7")
    foreign = jobs_client.post("/jobs/job-1/result", json={"status": "done"}, headers=WORKER_HEADERS)
    assert foreign.status_code == 403

    missing = jobs_client.post("/jobs/job-2/result", json={"status": "done"}, headers=WORKER_HEADERS)
    assert missing.status_code == 404


def test_reap_expired_uses_machine_actor(jobs_client: TestClient, harness: Harness) -> None:
    response = jobs_client.post("/jobs/reap-expired", headers=WORKER_HEADERS)

    assert response.status_code == 200
    assert response.json() == {"requeued": 0}
    assert harness.repository.requeued_by == [("machine", "module-db-1")]
