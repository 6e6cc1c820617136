from __future__ import annotations

import asyncio
from datetime import timedelta
from typing import Any

import pytest

from jobboard_api.core.pricing import PRICING_TIERS
from jobboard_api.services.lifecycle import (
    CheckoutTransaction,
    InvalidDurationError,
    ListingConflictError,
    ListingForbiddenError,
    ListingLifecycle,
    ListingNotFoundError,
    ListingStatus,
    ListingTerminalError,
    PaymentOutcome,
)
from jobboard_api.services.payments import PaymentGatewayError
from jobboard_api.services.repository import RepositoryUnavailableError
from jobboard_api.services.store import InMemoryExpirationScheduler, InMemoryListingStore

CONTENT = {
    "title": "Backend Engineer",
    "description": "Build the listing pipeline.",
    "employment_type": "full_time",
    "location": "Remote",
    "salary_from": 90000,
    "salary_to": 120000,
    "benefits": ["health", "equity"],
}


class FakeGateway:
    def __init__(self, *, fail: bool = False) -> None:
        self.fail = fail
        self.calls: list[tuple[str, int, str]] = []
        self.details: list[str | None] = []

    async def start_transaction(
        self, posting_id: str, amount: int, description: str, *, details: str | None = None
    ) -> CheckoutTransaction:
        self.calls.append((posting_id, amount, description))
        self.details.append(details)
        if self.fail:
            raise PaymentGatewayError("card network down")
        return CheckoutTransaction(
            transaction_id=f"cs_test_{len(self.calls)}",
            redirect_url=f"https://checkout.example/{posting_id}/{len(self.calls)}",
        )


def _build(*, fail: bool = False) -> tuple[ListingLifecycle, InMemoryListingStore, InMemoryExpirationScheduler, FakeGateway]:
    store = InMemoryListingStore()
    scheduler = InMemoryExpirationScheduler(store)
    gateway = FakeGateway(fail=fail)
    lifecycle = ListingLifecycle(store=store, scheduler=scheduler, gateway=gateway)
    return lifecycle, store, scheduler, gateway


def _status(store: InMemoryListingStore, posting_id: str) -> str:
    return store.postings[posting_id]["status"]


@pytest.mark.parametrize("tier", PRICING_TIERS, ids=lambda tier: f"{tier.days}d")
def test_create_listing_stores_pending_posting_and_arms_one_expiration(tier) -> None:
    lifecycle, store, scheduler, gateway = _build()

    created = asyncio.run(lifecycle.create_listing(owner_id="company-1", content=CONTENT, duration_days=tier.days))

    assert created.created is True
    assert _status(store, created.posting_id) == ListingStatus.PENDING_PAYMENT
    assert scheduler.armed == {created.posting_id: timedelta(days=tier.days)}
    assert gateway.calls == [(created.posting_id, tier.price, f"Job Posting - {tier.days} Days")]
    assert gateway.details == [tier.description]
    assert created.redirect_url == store.postings[created.posting_id]["checkout_url"]


@pytest.mark.parametrize("duration_days", [0, 1, 14, 31, 365, -7])
def test_create_listing_with_unknown_duration_persists_nothing(duration_days: int) -> None:
    lifecycle, store, scheduler, gateway = _build()

    with pytest.raises(InvalidDurationError):
        asyncio.run(lifecycle.create_listing(owner_id="company-1", content=CONTENT, duration_days=duration_days))

    assert store.postings == {}
    assert scheduler.armed == {}
    assert gateway.calls == []


def test_create_listing_keeps_posting_and_timer_when_checkout_fails() -> None:
    lifecycle, store, scheduler, _ = _build(fail=True)

    with pytest.raises(PaymentGatewayError):
        asyncio.run(lifecycle.create_listing(owner_id="company-1", content=CONTENT, duration_days=30))

    [posting] = store.postings.values()
    assert posting["status"] == ListingStatus.PENDING_PAYMENT
    assert posting["checkout_url"] is None
    assert posting["id"] in scheduler.armed


class ArmingOutageStore(InMemoryListingStore):
    def __init__(self) -> None:
        super().__init__()
        self.arming_down = True

    def _arm_locked(self, posting_id: str, delay: timedelta) -> bool:
        if self.arming_down:
            raise RepositoryUnavailableError("database unavailable")
        return super()._arm_locked(posting_id, delay)


def test_create_listing_stores_nothing_when_expiration_cannot_be_armed() -> None:
    store = ArmingOutageStore()
    scheduler = InMemoryExpirationScheduler(store)
    gateway = FakeGateway()
    lifecycle = ListingLifecycle(store=store, scheduler=scheduler, gateway=gateway)

    with pytest.raises(RepositoryUnavailableError):
        asyncio.run(lifecycle.create_listing(owner_id="company-1", content=CONTENT, duration_days=30))

    assert store.postings == {}
    assert scheduler.armed == {}
    assert gateway.calls == []

    store.arming_down = False
    created = asyncio.run(lifecycle.create_listing(owner_id="company-1", content=CONTENT, duration_days=30))
    asyncio.run(lifecycle.restart_payment(posting_id=created.posting_id, owner_id="company-1"))
    asyncio.run(lifecycle.apply_payment_completion(created.posting_id, PaymentOutcome.SUCCESS))

    assert list(store.postings) == [created.posting_id]
    assert scheduler.due(created.posting_id, elapsed=timedelta(days=30))
    asyncio.run(lifecycle.apply_expiration(created.posting_id))
    assert _status(store, created.posting_id) == ListingStatus.EXPIRED


def test_create_listing_replay_returns_same_posting_without_new_checkout() -> None:
    lifecycle, store, scheduler, gateway = _build()

    first = asyncio.run(
        lifecycle.create_listing(owner_id="company-1", content=CONTENT, duration_days=30, idempotency_key="req-1")
    )
    second = asyncio.run(
        lifecycle.create_listing(owner_id="company-1", content=CONTENT, duration_days=30, idempotency_key="req-1")
    )

    assert second.posting_id == first.posting_id
    assert second.created is False
    assert second.redirect_url == first.redirect_url
    assert len(store.postings) == 1
    assert len(gateway.calls) == 1
    assert list(scheduler.armed) == [first.posting_id]


def test_create_listing_replay_completes_missing_checkout() -> None:
    lifecycle, store, scheduler, gateway = _build(fail=True)
    with pytest.raises(PaymentGatewayError):
        asyncio.run(
            lifecycle.create_listing(owner_id="company-1", content=CONTENT, duration_days=7, idempotency_key="req-2")
        )

    gateway.fail = False
    replay = asyncio.run(
        lifecycle.create_listing(owner_id="company-1", content=CONTENT, duration_days=7, idempotency_key="req-2")
    )

    assert replay.redirect_url is not None
    assert len(store.postings) == 1
    assert store.postings[replay.posting_id]["checkout_url"] == replay.redirect_url
    assert scheduler.armed[replay.posting_id] == timedelta(days=7)


def test_create_listing_replay_with_other_duration_conflicts() -> None:
    lifecycle, _, _, _ = _build()
    asyncio.run(
        lifecycle.create_listing(owner_id="company-1", content=CONTENT, duration_days=30, idempotency_key="req-3")
    )

    with pytest.raises(ListingConflictError):
        asyncio.run(
            lifecycle.create_listing(owner_id="company-1", content=CONTENT, duration_days=60, idempotency_key="req-3")
        )


def test_idempotency_key_is_scoped_to_owner() -> None:
    lifecycle, store, _, _ = _build()

    first = asyncio.run(
        lifecycle.create_listing(owner_id="company-1", content=CONTENT, duration_days=30, idempotency_key="shared")
    )
    second = asyncio.run(
        lifecycle.create_listing(owner_id="company-2", content=CONTENT, duration_days=30, idempotency_key="shared")
    )

    assert first.posting_id != second.posting_id
    assert len(store.postings) == 2


def test_payment_success_is_idempotent() -> None:
    lifecycle, store, _, _ = _build()
    created = asyncio.run(lifecycle.create_listing(owner_id="company-1", content=CONTENT, duration_days=30))

    first = asyncio.run(lifecycle.apply_payment_completion(created.posting_id, PaymentOutcome.SUCCESS))
    snapshot = dict(store.postings[created.posting_id])
    second = asyncio.run(lifecycle.apply_payment_completion(created.posting_id, PaymentOutcome.SUCCESS))

    assert (first, second) == (True, False)
    assert store.postings[created.posting_id] == snapshot
    assert snapshot["status"] == ListingStatus.ACTIVE
    assert snapshot["activated_at"] is not None


def test_payment_failure_leaves_posting_pending() -> None:
    lifecycle, store, _, _ = _build()
    created = asyncio.run(lifecycle.create_listing(owner_id="company-1", content=CONTENT, duration_days=30))

    applied = asyncio.run(lifecycle.apply_payment_completion(created.posting_id, PaymentOutcome.FAILURE))

    assert applied is False
    assert _status(store, created.posting_id) == ListingStatus.PENDING_PAYMENT


def test_payment_for_unknown_posting_raises_not_found() -> None:
    lifecycle, _, _, _ = _build()

    with pytest.raises(ListingNotFoundError):
        asyncio.run(lifecycle.apply_payment_completion("missing", PaymentOutcome.SUCCESS))


@pytest.mark.parametrize("payment_first", [True, False], ids=["payment-then-expiry", "expiry-then-payment"])
def test_expiration_wins_regardless_of_order(payment_first: bool) -> None:
    lifecycle, store, _, _ = _build()
    created = asyncio.run(lifecycle.create_listing(owner_id="company-1", content=CONTENT, duration_days=30))

    async def deliver() -> None:
        if payment_first:
            await lifecycle.apply_payment_completion(created.posting_id, PaymentOutcome.SUCCESS)
            await lifecycle.apply_expiration(created.posting_id)
        else:
            await lifecycle.apply_expiration(created.posting_id)
            await lifecycle.apply_payment_completion(created.posting_id, PaymentOutcome.SUCCESS)

    asyncio.run(deliver())

    assert _status(store, created.posting_id) == ListingStatus.EXPIRED


def test_concurrent_payment_and_expiration_end_expired() -> None:
    lifecycle, store, _, _ = _build()
    created = asyncio.run(lifecycle.create_listing(owner_id="company-1", content=CONTENT, duration_days=30))

    async def race() -> None:
        await asyncio.gather(
            lifecycle.apply_payment_completion(created.posting_id, PaymentOutcome.SUCCESS),
            lifecycle.apply_expiration(created.posting_id),
            lifecycle.apply_payment_completion(created.posting_id, PaymentOutcome.SUCCESS),
        )

    asyncio.run(race())

    assert _status(store, created.posting_id) == ListingStatus.EXPIRED


def test_expiration_is_idempotent_and_tolerates_unknown_posting() -> None:
    lifecycle, store, _, _ = _build()
    created = asyncio.run(lifecycle.create_listing(owner_id="company-1", content=CONTENT, duration_days=7))

    assert asyncio.run(lifecycle.apply_expiration(created.posting_id)) is True
    expired_at = store.postings[created.posting_id]["expired_at"]
    assert asyncio.run(lifecycle.apply_expiration(created.posting_id)) is False
    assert store.postings[created.posting_id]["expired_at"] == expired_at
    assert asyncio.run(lifecycle.apply_expiration("missing")) is False


def test_update_content_on_expired_posting_is_rejected_and_unchanged() -> None:
    lifecycle, store, _, _ = _build()
    created = asyncio.run(lifecycle.create_listing(owner_id="company-1", content=CONTENT, duration_days=30))
    asyncio.run(lifecycle.apply_expiration(created.posting_id))
    before = dict(store.postings[created.posting_id])

    with pytest.raises(ListingTerminalError):
        asyncio.run(
            lifecycle.update_content(
                posting_id=created.posting_id,
                owner_id="company-1",
                content={"title": "Renamed", "salary_to": 1},
            )
        )

    assert store.postings[created.posting_id] == before


@pytest.mark.parametrize("activate", [False, True], ids=["pending", "active"])
def test_update_content_overwrites_fields_but_not_status(activate: bool) -> None:
    lifecycle, store, _, _ = _build()
    created = asyncio.run(lifecycle.create_listing(owner_id="company-1", content=CONTENT, duration_days=30))
    if activate:
        asyncio.run(lifecycle.apply_payment_completion(created.posting_id, PaymentOutcome.SUCCESS))
    status_before = _status(store, created.posting_id)

    updated = asyncio.run(
        lifecycle.update_content(
            posting_id=created.posting_id,
            owner_id="company-1",
            content={"title": "Staff Backend Engineer", "status": "expired", "listing_duration_days": 90},
        )
    )

    assert updated["title"] == "Staff Backend Engineer"
    assert updated["status"] == status_before
    assert updated["listing_duration_days"] == 30
    assert updated["location"] == CONTENT["location"]


def test_update_content_checks_owner_and_existence() -> None:
    lifecycle, _, _, _ = _build()
    created = asyncio.run(lifecycle.create_listing(owner_id="company-1", content=CONTENT, duration_days=30))

    with pytest.raises(ListingForbiddenError):
        asyncio.run(
            lifecycle.update_content(posting_id=created.posting_id, owner_id="company-2", content={"title": "Nope"})
        )
    with pytest.raises(ListingNotFoundError):
        asyncio.run(lifecycle.update_content(posting_id="missing", owner_id="company-1", content={"title": "Nope"}))


def test_paid_listing_scenario_ends_expired_after_late_duplicate_payment() -> None:
    lifecycle, store, scheduler, gateway = _build()

    created = asyncio.run(lifecycle.create_listing(owner_id="company-1", content=CONTENT, duration_days=30))
    posting_id = created.posting_id
    assert gateway.calls[0][1] == 99
    assert _status(store, posting_id) == ListingStatus.PENDING_PAYMENT

    asyncio.run(lifecycle.apply_payment_completion(posting_id, PaymentOutcome.SUCCESS))
    assert _status(store, posting_id) == ListingStatus.ACTIVE

    assert not scheduler.due(posting_id, elapsed=timedelta(days=29))
    assert scheduler.due(posting_id, elapsed=timedelta(days=30))
    asyncio.run(lifecycle.apply_expiration(posting_id))
    assert _status(store, posting_id) == ListingStatus.EXPIRED

    asyncio.run(lifecycle.apply_payment_completion(posting_id, PaymentOutcome.SUCCESS))
    assert _status(store, posting_id) == ListingStatus.EXPIRED


def test_unpaid_listing_scenario_expires_straight_from_pending() -> None:
    lifecycle, store, scheduler, _ = _build()

    created = asyncio.run(lifecycle.create_listing(owner_id="company-1", content=CONTENT, duration_days=7))
    assert scheduler.due(created.posting_id, elapsed=timedelta(days=7))
    asyncio.run(lifecycle.apply_expiration(created.posting_id))

    posting = store.postings[created.posting_id]
    assert posting["status"] == ListingStatus.EXPIRED
    assert posting["activated_at"] is None
    transitions = [
        (event["payload"]["from_status"], event["payload"]["to_status"])
        for event in store.events
        if event["event_type"] == "status_changed"
    ]
    assert transitions == [("pending_payment", "expired")]


def test_restart_payment_for_pending_posting_starts_new_checkout() -> None:
    lifecycle, store, _, gateway = _build()
    created = asyncio.run(lifecycle.create_listing(owner_id="company-1", content=CONTENT, duration_days=60))

    restarted = asyncio.run(lifecycle.restart_payment(posting_id=created.posting_id, owner_id="company-1"))

    assert restarted.redirect_url != created.redirect_url
    assert len(gateway.calls) == 2
    assert gateway.calls[1][1] == 179
    assert store.postings[created.posting_id]["checkout_url"] == restarted.redirect_url


def test_restart_payment_rejects_active_and_expired_postings() -> None:
    lifecycle, _, _, _ = _build()
    active = asyncio.run(lifecycle.create_listing(owner_id="company-1", content=CONTENT, duration_days=30))
    expired = asyncio.run(lifecycle.create_listing(owner_id="company-1", content=CONTENT, duration_days=30))
    asyncio.run(lifecycle.apply_payment_completion(active.posting_id, PaymentOutcome.SUCCESS))
    asyncio.run(lifecycle.apply_expiration(expired.posting_id))

    with pytest.raises(ListingConflictError):
        asyncio.run(lifecycle.restart_payment(posting_id=active.posting_id, owner_id="company-1"))
    with pytest.raises(ListingTerminalError):
        asyncio.run(lifecycle.restart_payment(posting_id=expired.posting_id, owner_id="company-1"))
    with pytest.raises(ListingForbiddenError):
        asyncio.run(lifecycle.restart_payment(posting_id=active.posting_id, owner_id="company-2"))


def test_deleted_listing_ignores_later_expiration() -> None:
    lifecycle, store, _, _ = _build()
    created = asyncio.run(lifecycle.create_listing(owner_id="company-1", content=CONTENT, duration_days=30))

    with pytest.raises(ListingForbiddenError):
        asyncio.run(lifecycle.delete_listing(posting_id=created.posting_id, owner_id="company-2"))
    asyncio.run(lifecycle.delete_listing(posting_id=created.posting_id, owner_id="company-1"))

    assert created.posting_id not in store.postings
    assert asyncio.run(lifecycle.apply_expiration(created.posting_id)) is False
    with pytest.raises(ListingNotFoundError):
        asyncio.run(lifecycle.delete_listing(posting_id=created.posting_id, owner_id="company-1"))


def test_status_values_match_storage_strings() -> None:
    values: dict[str, Any] = {status.name: status.value for status in ListingStatus}
    assert values == {"PENDING_PAYMENT": "pending_payment", "ACTIVE": "active", "EXPIRED": "expired"}
