from fastapi import Depends

from jobboard_api.services.lifecycle import ListingLifecycle
from jobboard_api.services.payments import StripeCheckoutGateway, get_payment_gateway
from jobboard_api.services.repository import get_repository
from jobboard_api.services.scheduler import JobQueueExpirationScheduler


def get_lifecycle(
    repository=Depends(get_repository),
    gateway: StripeCheckoutGateway = Depends(get_payment_gateway),
) -> ListingLifecycle:
    return ListingLifecycle(
        store=repository,
        scheduler=JobQueueExpirationScheduler(repository),
        gateway=gateway,
    )
