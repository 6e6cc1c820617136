from __future__ import annotations

from typing import Any

from jobboard_worker.jobs.expiration import JobInputError, execute_expire_posting


class UnsupportedJobKindError(JobInputError):
    """Raised for job kinds this worker does not handle."""


async def execute_job(
    job: dict[str, Any],
    *,
    late_warning_seconds: float | None = None,
) -> dict[str, Any]:
    if job.get("kind") == "expire_posting":
        return execute_expire_posting(
            job,
            late_warning_seconds=late_warning_seconds if late_warning_seconds is not None else 900.0,
        )

    raise UnsupportedJobKindError(f"unsupported job kind: {job.get('kind')}")
