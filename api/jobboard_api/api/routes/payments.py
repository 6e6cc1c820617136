import logging

from fastapi import APIRouter, Depends, Header, HTTPException, Request, status

from jobboard_api.api.deps import get_lifecycle
from jobboard_api.schemas.payments import WebhookAck
from jobboard_api.services.lifecycle import ListingNotFoundError
from jobboard_api.services.payments import (
    PaymentGatewayError,
    PaymentSignatureError,
    StripeCheckoutGateway,
    get_payment_gateway,
)
from jobboard_api.services.repository import RepositoryUnavailableError

router = APIRouter()
logger = logging.getLogger(__name__)


@router.post("/webhook", response_model=WebhookAck)
async def stripe_webhook(
    request: Request,
    gateway: StripeCheckoutGateway = Depends(get_payment_gateway),
    lifecycle=Depends(get_lifecycle),
    stripe_signature: str | None = Header(default=None, alias="Stripe-Signature"),
) -> WebhookAck:
    payload = await request.body()

    try:
        completion = gateway.parse_completion(payload, stripe_signature)
    except PaymentSignatureError as exc:
        logger.warning("stripe webhook rejected error=%s", exc)
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc
    except PaymentGatewayError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc

    if completion is None:
        return WebhookAck(status="ignored")

    try:
        applied = await lifecycle.apply_payment_completion(completion.posting_id, completion.outcome)
    except ListingNotFoundError:
        # Deleted postings still receive provider events; acknowledge so they stop retrying.
        logger.warning(
            "payment event for unknown posting dropped posting_id=%s event_id=%s",
            completion.posting_id,
            completion.event_id,
        )
        return WebhookAck(status="dropped", posting_id=completion.posting_id)
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc

    logger.info(
        "stripe webhook handled event_id=%s type=%s posting_id=%s applied=%s",
        completion.event_id,
        completion.event_type,
        completion.posting_id,
        applied,
    )
    return WebhookAck(status="applied" if applied else "unchanged", posting_id=completion.posting_id)
