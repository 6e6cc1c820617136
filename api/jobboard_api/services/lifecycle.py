"""Job posting lifecycle: creation, payment activation and timed expiration.

``ListingLifecycle`` is the only writer of posting status. Every transition is
a conditional update against the store, so duplicated or reordered payment
and expiration signals converge on the same end state:

    pending_payment -> active -> expired
    pending_payment -> expired

Expiration always wins; an expired posting never changes again.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Protocol

from jobboard_api.core.pricing import DurationTier, lookup_tier
from jobboard_api.services.repository import RepositoryNotFoundError

logger = logging.getLogger(__name__)


class ListingStatus(str, Enum):
    PENDING_PAYMENT = "pending_payment"
    ACTIVE = "active"
    EXPIRED = "expired"


class PaymentOutcome(str, Enum):
    SUCCESS = "success"
    FAILURE = "failure"


CONTENT_FIELDS = (
    "title",
    "description",
    "employment_type",
    "location",
    "salary_from",
    "salary_to",
    "benefits",
)


class ListingError(Exception):
    """Base lifecycle error."""


class InvalidDurationError(ListingError):
    """Raised when a listing duration does not match any pricing tier."""


class ListingForbiddenError(ListingError):
    """Raised when the caller does not own the posting."""


class ListingNotFoundError(ListingError):
    """Raised when the targeted posting does not exist."""


class ListingTerminalError(ListingError):
    """Raised when an operation targets an expired posting."""


class ListingConflictError(ListingError):
    """Raised when a request conflicts with the posting's current state."""


@dataclass(slots=True)
class CheckoutTransaction:
    transaction_id: str
    redirect_url: str


@dataclass(slots=True)
class CreatedListing:
    posting_id: str
    redirect_url: str | None
    created: bool = True


class ListingStore(Protocol):
    async def get_posting(self, posting_id: str) -> dict[str, Any]: ...

    async def insert_posting(
        self,
        *,
        owner_id: str,
        content: dict[str, Any],
        listing_duration_days: int,
        idempotency_key: str | None,
        expire_after: timedelta,
    ) -> tuple[dict[str, Any], bool]: ...

    async def conditional_update_status(
        self,
        posting_id: str,
        *,
        expected_statuses: list[str],
        new_status: str,
        reason: str,
    ) -> bool: ...

    async def update_content(self, posting_id: str, content: dict[str, Any]) -> dict[str, Any] | None: ...

    async def record_checkout(self, posting_id: str, *, session_id: str, checkout_url: str) -> None: ...

    async def delete_posting(self, posting_id: str) -> bool: ...


class ExpirationScheduler(Protocol):
    async def arm_after(self, posting_id: str, delay: timedelta) -> None: ...


class PaymentGateway(Protocol):
    async def start_transaction(
        self, posting_id: str, amount: int, description: str, *, details: str | None = None
    ) -> CheckoutTransaction: ...


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class ListingLifecycle:
    def __init__(
        self,
        *,
        store: ListingStore,
        scheduler: ExpirationScheduler,
        gateway: PaymentGateway,
        tier_lookup: Callable[[int], DurationTier | None] = lookup_tier,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._store = store
        self._scheduler = scheduler
        self._gateway = gateway
        self._tier_lookup = tier_lookup
        self._clock = clock

    async def create_listing(
        self,
        *,
        owner_id: str,
        content: dict[str, Any],
        duration_days: int,
        idempotency_key: str | None = None,
    ) -> CreatedListing:
        tier = self._require_tier(duration_days)

        posting, created = await self._store.insert_posting(
            owner_id=owner_id,
            content=_content_only(content),
            listing_duration_days=duration_days,
            idempotency_key=idempotency_key,
            expire_after=timedelta(days=duration_days),
        )
        posting_id = posting["id"]

        if created:
            logger.info(
                "listing created posting_id=%s owner_id=%s duration_days=%s",
                posting_id,
                owner_id,
                duration_days,
            )
            transaction = await self._start_checkout(posting_id, tier)
            return CreatedListing(posting_id=posting_id, redirect_url=transaction.redirect_url, created=True)

        # Replayed request: finish whatever the first attempt did not.
        if int(posting["listing_duration_days"]) != duration_days:
            raise ListingConflictError("idempotency key reused with a different listing duration")

        logger.info("listing create replayed posting_id=%s owner_id=%s", posting_id, owner_id)
        due_at = posting["created_at"] + timedelta(days=int(posting["listing_duration_days"]))
        await self._scheduler.arm_after(posting_id, max(due_at - self._clock(), timedelta(0)))

        redirect_url = posting.get("checkout_url")
        if not redirect_url and posting["status"] == ListingStatus.PENDING_PAYMENT:
            transaction = await self._start_checkout(posting_id, tier)
            redirect_url = transaction.redirect_url
        return CreatedListing(posting_id=posting_id, redirect_url=redirect_url, created=False)

    async def apply_payment_completion(self, posting_id: str, outcome: PaymentOutcome) -> bool:
        if outcome is PaymentOutcome.FAILURE:
            posting = await self._get_posting(posting_id)
            logger.info(
                "payment failed posting_id=%s status=%s; left for retry or expiration",
                posting_id,
                posting["status"],
            )
            return False

        applied = await self._store.conditional_update_status(
            posting_id,
            expected_statuses=[ListingStatus.PENDING_PAYMENT.value],
            new_status=ListingStatus.ACTIVE.value,
            reason="payment_succeeded",
        )
        if applied:
            logger.info("listing activated posting_id=%s", posting_id)
            return True

        posting = await self._get_posting(posting_id)
        logger.info("payment completion ignored posting_id=%s status=%s", posting_id, posting["status"])
        return False

    async def apply_expiration(self, posting_id: str) -> bool:
        applied = await self._store.conditional_update_status(
            posting_id,
            expected_statuses=[ListingStatus.PENDING_PAYMENT.value, ListingStatus.ACTIVE.value],
            new_status=ListingStatus.EXPIRED.value,
            reason="listing_duration_elapsed",
        )
        if applied:
            logger.info("listing expired posting_id=%s", posting_id)
        else:
            logger.info("expiration ignored posting_id=%s; already expired or deleted", posting_id)
        return applied

    async def update_content(self, *, posting_id: str, owner_id: str, content: dict[str, Any]) -> dict[str, Any]:
        posting = await self._get_posting(posting_id)
        _require_owner(posting, owner_id)
        if posting["status"] == ListingStatus.EXPIRED:
            raise ListingTerminalError("expired postings cannot be edited")

        updated = await self._store.update_content(posting_id, _content_only(content))
        if updated is None:
            # Expired (or deleted) between the read and the guarded write.
            raise ListingTerminalError("expired postings cannot be edited")
        logger.info("listing content updated posting_id=%s", posting_id)
        return updated

    async def restart_payment(self, *, posting_id: str, owner_id: str) -> CreatedListing:
        posting = await self._get_posting(posting_id)
        _require_owner(posting, owner_id)
        if posting["status"] == ListingStatus.EXPIRED:
            raise ListingTerminalError("expired postings cannot be paid for")
        if posting["status"] == ListingStatus.ACTIVE:
            raise ListingConflictError("posting is already paid")

        tier = self._require_tier(int(posting["listing_duration_days"]))
        transaction = await self._start_checkout(posting_id, tier)
        return CreatedListing(posting_id=posting_id, redirect_url=transaction.redirect_url, created=False)

    async def delete_listing(self, *, posting_id: str, owner_id: str) -> None:
        posting = await self._get_posting(posting_id)
        _require_owner(posting, owner_id)
        if not await self._store.delete_posting(posting_id):
            raise ListingNotFoundError("posting not found")
        logger.info("listing deleted posting_id=%s owner_id=%s", posting_id, owner_id)

    def _require_tier(self, duration_days: int) -> DurationTier:
        tier = self._tier_lookup(duration_days)
        if tier is None:
            raise InvalidDurationError(f"no pricing tier for {duration_days} days")
        return tier

    async def _start_checkout(self, posting_id: str, tier: DurationTier) -> CheckoutTransaction:
        transaction = await self._gateway.start_transaction(
            posting_id, tier.price, tier.product_name, details=tier.description
        )
        await self._store.record_checkout(
            posting_id,
            session_id=transaction.transaction_id,
            checkout_url=transaction.redirect_url,
        )
        logger.info(
            "checkout started posting_id=%s transaction_id=%s amount=%s",
            posting_id,
            transaction.transaction_id,
            tier.price,
        )
        return transaction

    async def _get_posting(self, posting_id: str) -> dict[str, Any]:
        try:
            return await self._store.get_posting(posting_id)
        except RepositoryNotFoundError as exc:
            raise ListingNotFoundError("posting not found") from exc


def _require_owner(posting: dict[str, Any], owner_id: str) -> None:
    if posting["owner_id"] != owner_id:
        raise ListingForbiddenError("posting belongs to another owner")


def _content_only(content: dict[str, Any]) -> dict[str, Any]:
    return {key: content[key] for key in CONTENT_FIELDS if key in content}
