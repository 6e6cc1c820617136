from fastapi import APIRouter, Depends, HTTPException, Query, status

from jobboard_api.core.security import get_human_principal
from jobboard_api.schemas.admin import AdminJobOut, AdminJobsMaintenanceOut
from jobboard_api.schemas.jobs import JobKind, JobStatus
from jobboard_api.services.repository import (
    RepositoryUnavailableError,
    RepositoryValidationError,
    get_repository,
)

router = APIRouter()


@router.get("/jobs", response_model=list[AdminJobOut])
async def list_jobs(
    principal=Depends(get_human_principal),
    repository=Depends(get_repository),
    job_status: JobStatus | None = Query(default=None, alias="status"),
    kind: JobKind | None = Query(default=None),
    target_id: str | None = Query(default=None, min_length=1),
    limit: int = Query(default=50, ge=1, le=200),
    offset: int = Query(default=0, ge=0),
) -> list[AdminJobOut]:
    try:
        principal.require_scopes({"admin:write"})
    except PermissionError as exc:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=str(exc)) from exc

    try:
        rows = await repository.list_admin_jobs(
            status=job_status,
            kind=kind,
            target_id=target_id,
            limit=limit,
            offset=offset,
        )
    except RepositoryValidationError as exc:
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_CONTENT, detail=str(exc)) from exc
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc

    return [AdminJobOut(**row) for row in rows]


@router.post("/jobs/reap-expired", response_model=AdminJobsMaintenanceOut)
async def reap_expired_jobs(
    principal=Depends(get_human_principal),
    repository=Depends(get_repository),
    limit: int = Query(default=100, ge=1, le=1000),
) -> AdminJobsMaintenanceOut:
    try:
        principal.require_scopes({"admin:write"})
    except PermissionError as exc:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=str(exc)) from exc

    if not principal.actor_id:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="invalid human principal")

    try:
        requeued = await repository.requeue_expired_claimed_jobs(
            actor_id=principal.actor_id,
            actor_type="human",
            limit=limit,
        )
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc

    return AdminJobsMaintenanceOut(count=requeued)
