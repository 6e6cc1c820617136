from datetime import datetime

from pydantic import BaseModel

from jobboard_api.schemas.jobs import JobKind, JobStatus


class AdminJobOut(BaseModel):
    id: str
    kind: JobKind
    target_type: str
    target_id: str | None = None
    status: JobStatus
    attempt: int
    locked_by_module_id: str | None = None
    lease_expires_at: datetime | None = None
    next_run_at: datetime
    created_at: datetime
    updated_at: datetime


class AdminJobsMaintenanceOut(BaseModel):
    count: int
