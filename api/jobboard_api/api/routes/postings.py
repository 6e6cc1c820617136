from fastapi import APIRouter, Depends, Header, HTTPException, Query, Response, status as http_status

from jobboard_api.api.deps import get_lifecycle
from jobboard_api.core.auth import Principal
from jobboard_api.core.security import get_human_principal, get_optional_human_principal
from jobboard_api.schemas.postings import (
    PostingCheckoutOut,
    PostingContentPatchRequest,
    PostingCreateRequest,
    PostingOut,
)
from jobboard_api.services.lifecycle import (
    InvalidDurationError,
    ListingConflictError,
    ListingError,
    ListingForbiddenError,
    ListingNotFoundError,
    ListingStatus,
    ListingTerminalError,
)
from jobboard_api.services.payments import PaymentGatewayError
from jobboard_api.services.repository import (
    RepositoryNotFoundError,
    RepositoryUnavailableError,
    RepositoryValidationError,
    get_repository,
)

router = APIRouter()

_LISTING_ERROR_STATUS = {
    InvalidDurationError: http_status.HTTP_422_UNPROCESSABLE_CONTENT,
    ListingForbiddenError: http_status.HTTP_403_FORBIDDEN,
    ListingNotFoundError: http_status.HTTP_404_NOT_FOUND,
    ListingTerminalError: http_status.HTTP_409_CONFLICT,
    ListingConflictError: http_status.HTTP_409_CONFLICT,
}


@router.post("", response_model=PostingCheckoutOut, status_code=http_status.HTTP_201_CREATED)
async def create_posting(
    payload: PostingCreateRequest,
    principal=Depends(get_human_principal),
    lifecycle=Depends(get_lifecycle),
    idempotency_key: str | None = Header(default=None, alias="Idempotency-Key", max_length=200),
) -> PostingCheckoutOut:
    owner_id = _require_company(principal)
    content = payload.model_dump(exclude={"listing_duration_days"})

    try:
        created = await lifecycle.create_listing(
            owner_id=owner_id,
            content=content,
            duration_days=payload.listing_duration_days,
            idempotency_key=idempotency_key.strip() if idempotency_key and idempotency_key.strip() else None,
        )
    except ListingError as exc:
        raise _listing_http_error(exc) from exc
    except PaymentGatewayError as exc:
        raise HTTPException(status_code=http_status.HTTP_502_BAD_GATEWAY, detail=str(exc)) from exc
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=http_status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc
    except RepositoryValidationError as exc:
        raise HTTPException(status_code=http_status.HTTP_422_UNPROCESSABLE_CONTENT, detail=str(exc)) from exc
    return PostingCheckoutOut(posting_id=created.posting_id, redirect_url=created.redirect_url)


@router.get("", response_model=list[PostingOut])
async def list_postings(
    limit: int = Query(default=20, ge=1, le=100),
    offset: int = Query(default=0, ge=0),
    repository=Depends(get_repository),
) -> list[PostingOut]:
    try:
        rows = await repository.list_active_postings(limit=limit, offset=offset)
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=http_status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc
    return [PostingOut(**row) for row in rows]


@router.get("/mine", response_model=list[PostingOut])
async def list_my_postings(
    principal=Depends(get_human_principal),
    repository=Depends(get_repository),
    limit: int = Query(default=20, ge=1, le=100),
    offset: int = Query(default=0, ge=0),
) -> list[PostingOut]:
    owner_id = _require_company(principal)
    try:
        rows = await repository.list_owner_postings(owner_id=owner_id, limit=limit, offset=offset)
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=http_status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc
    return [PostingOut(**row) for row in rows]


@router.get("/{posting_id}", response_model=PostingOut)
async def get_posting(
    posting_id: str,
    principal: Principal | None = Depends(get_optional_human_principal),
    repository=Depends(get_repository),
) -> PostingOut:
    try:
        row = await repository.get_posting(posting_id)
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=http_status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc
    except RepositoryNotFoundError as exc:
        raise HTTPException(status_code=http_status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc

    is_owner = principal is not None and principal.actor_id == row["owner_id"]
    if row["status"] != ListingStatus.ACTIVE and not is_owner:
        # Unpaid and expired postings are invisible outside the owner's view.
        raise HTTPException(status_code=http_status.HTTP_404_NOT_FOUND, detail="posting not found")
    return PostingOut(**row)


@router.patch("/{posting_id}", response_model=PostingOut)
async def patch_posting(
    posting_id: str,
    payload: PostingContentPatchRequest,
    principal=Depends(get_human_principal),
    lifecycle=Depends(get_lifecycle),
) -> PostingOut:
    owner_id = _require_company(principal)
    content = payload.model_dump(exclude_none=True)
    if not content:
        raise HTTPException(status_code=http_status.HTTP_422_UNPROCESSABLE_CONTENT, detail="no fields to update")

    try:
        row = await lifecycle.update_content(posting_id=posting_id, owner_id=owner_id, content=content)
    except ListingError as exc:
        raise _listing_http_error(exc) from exc
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=http_status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc
    except RepositoryValidationError as exc:
        raise HTTPException(status_code=http_status.HTTP_422_UNPROCESSABLE_CONTENT, detail=str(exc)) from exc
    return PostingOut(**row)


@router.post("/{posting_id}/checkout", response_model=PostingCheckoutOut)
async def restart_checkout(
    posting_id: str,
    principal=Depends(get_human_principal),
    lifecycle=Depends(get_lifecycle),
) -> PostingCheckoutOut:
    owner_id = _require_company(principal)
    try:
        checkout = await lifecycle.restart_payment(posting_id=posting_id, owner_id=owner_id)
    except ListingError as exc:
        raise _listing_http_error(exc) from exc
    except PaymentGatewayError as exc:
        raise HTTPException(status_code=http_status.HTTP_502_BAD_GATEWAY, detail=str(exc)) from exc
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=http_status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc
    return PostingCheckoutOut(posting_id=checkout.posting_id, redirect_url=checkout.redirect_url)


@router.delete("/{posting_id}", status_code=http_status.HTTP_204_NO_CONTENT)
async def delete_posting(
    posting_id: str,
    principal=Depends(get_human_principal),
    lifecycle=Depends(get_lifecycle),
) -> Response:
    owner_id = _require_company(principal)
    try:
        await lifecycle.delete_listing(posting_id=posting_id, owner_id=owner_id)
    except ListingError as exc:
        raise _listing_http_error(exc) from exc
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=http_status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc
    return Response(status_code=http_status.HTTP_204_NO_CONTENT)


def _require_company(principal: Principal) -> str:
    try:
        principal.require_scopes({"listings:write"})
    except PermissionError as exc:
        raise HTTPException(status_code=http_status.HTTP_403_FORBIDDEN, detail=str(exc)) from exc

    if not principal.actor_id:
        raise HTTPException(status_code=http_status.HTTP_401_UNAUTHORIZED, detail="invalid human principal")
    return principal.actor_id


def _listing_http_error(exc: ListingError) -> HTTPException:
    status_code = _LISTING_ERROR_STATUS.get(type(exc), http_status.HTTP_400_BAD_REQUEST)
    return HTTPException(status_code=status_code, detail=str(exc))
