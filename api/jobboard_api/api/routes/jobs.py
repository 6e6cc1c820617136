import logging

from fastapi import APIRouter, Depends, HTTPException, Query, status

from jobboard_api.api.deps import get_lifecycle
from jobboard_api.core.security import get_machine_principal
from jobboard_api.schemas.jobs import ClaimRequest, JobOut, ReapExpiredOut, ResultRequest
from jobboard_api.services.repository import (
    RepositoryConflictError,
    RepositoryForbiddenError,
    RepositoryNotFoundError,
    RepositoryUnavailableError,
    RepositoryValidationError,
    get_repository,
)

router = APIRouter()
logger = logging.getLogger(__name__)


@router.get("", response_model=list[JobOut])
async def get_jobs(
    principal=Depends(get_machine_principal),
    repository=Depends(get_repository),
    limit: int = Query(default=20, ge=1, le=100),
) -> list[JobOut]:
    try:
        principal.require_scopes({"jobs:read"})
    except PermissionError as exc:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=str(exc)) from exc

    try:
        rows = await repository.list_queued_jobs(limit=limit)
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc
    return [JobOut(**row) for row in rows]


@router.post("/reap-expired", response_model=ReapExpiredOut)
async def reap_expired_jobs(
    principal=Depends(get_machine_principal),
    repository=Depends(get_repository),
    limit: int = Query(default=100, ge=1, le=1000),
) -> ReapExpiredOut:
    try:
        principal.require_scopes({"jobs:write"})
    except PermissionError as exc:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=str(exc)) from exc

    try:
        requeued = await repository.requeue_expired_claimed_jobs(
            actor_id=principal.actor_id,
            actor_type="machine",
            limit=limit,
        )
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc
    return ReapExpiredOut(requeued=requeued)


@router.post("/{job_id}/claim", response_model=JobOut)
async def claim_job(
    job_id: str,
    payload: ClaimRequest,
    principal=Depends(get_machine_principal),
    repository=Depends(get_repository),
) -> JobOut:
    try:
        principal.require_scopes({"jobs:write"})
    except PermissionError as exc:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=str(exc)) from exc

    try:
        row = await repository.claim_job(job_id, principal.actor_id, payload.lease_seconds)
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc
    except RepositoryNotFoundError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
    except RepositoryConflictError as exc:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc)) from exc
    return JobOut(**row)


@router.post("/{job_id}/result", response_model=JobOut)
async def submit_job_result(
    job_id: str,
    payload: ResultRequest,
    principal=Depends(get_machine_principal),
    repository=Depends(get_repository),
    lifecycle=Depends(get_lifecycle),
) -> JobOut:
    try:
        principal.require_scopes({"jobs:write"})
    except PermissionError as exc:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=str(exc)) from exc

    result_json = payload.result_json
    try:
        job = await repository.get_job(job_id)
        if job["status"] != "claimed":
            raise RepositoryConflictError("job is not in claimed state")
        if job["locked_by_module_id"] != principal.actor_id:
            raise RepositoryForbiddenError("job claimed by another module")

        closes_job = repository.closes_job(status=payload.status, attempt=int(job["attempt"]))
        if closes_job and job["kind"] == "expire_posting" and job["target_id"]:
            # The deadline holds whatever the worker reported. The transition lands
            # before the job is closed; a failure here leaves the claim in place so
            # the lease reaper redelivers it.
            expired = await lifecycle.apply_expiration(job["target_id"])
            result_json = {**(result_json or {}), "posting_expired": expired}
            logger.info(
                "expiration job applied job_id=%s result_status=%s posting_id=%s expired=%s",
                job_id,
                payload.status,
                job["target_id"],
                expired,
            )

        row = await repository.submit_job_result(
            job_id,
            principal.actor_id,
            payload.status,
            result_json,
            payload.error_json,
        )
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc
    except RepositoryNotFoundError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
    except RepositoryForbiddenError as exc:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=str(exc)) from exc
    except RepositoryConflictError as exc:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc)) from exc
    except RepositoryValidationError as exc:
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_CONTENT, detail=str(exc)) from exc

    if payload.status == "failed" and row["status"] == "failed":
        logger.error(
            "job retries exhausted job_id=%s kind=%s target_id=%s attempt=%s",
            job_id,
            row["kind"],
            row["target_id"],
            row["attempt"],
        )
    return JobOut(**row)
