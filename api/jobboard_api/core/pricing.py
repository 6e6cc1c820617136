from __future__ import annotations

from dataclasses import dataclass


@dataclass(frozen=True, slots=True)
class DurationTier:
    days: int
    price: int
    description: str

    @property
    def product_name(self) -> str:
        return f"Job Posting - {self.days} Days"


PRICING_TIERS: tuple[DurationTier, ...] = (
    DurationTier(days=7, price=49, description="Quick one-week listing for urgent openings"),
    DurationTier(days=30, price=99, description="Standard listing for a full month"),
    DurationTier(days=60, price=179, description="Extended listing with two months of visibility"),
    DurationTier(days=90, price=249, description="Maximum visibility for a full quarter"),
)

_TIERS_BY_DAYS = {tier.days: tier for tier in PRICING_TIERS}


def lookup_tier(days: int) -> DurationTier | None:
    return _TIERS_BY_DAYS.get(days)


def list_tiers() -> list[DurationTier]:
    return list(PRICING_TIERS)
