from fastapi import APIRouter, Depends

from jobboard_api.core.config import Settings, get_settings
from jobboard_api.core.pricing import list_tiers
from jobboard_api.schemas.postings import PricingTierOut

router = APIRouter()


@router.get("", response_model=list[PricingTierOut])
async def get_pricing(settings: Settings = Depends(get_settings)) -> list[PricingTierOut]:
    return [
        PricingTierOut(
            days=tier.days,
            price=tier.price,
            currency=settings.payment_currency,
            description=tier.description,
        )
        for tier in list_tiers()
    ]
