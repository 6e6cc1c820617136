from typing import Any, Literal

from pydantic import BaseModel, Field

JobKind = Literal["expire_posting"]
JobStatus = Literal["queued", "claimed", "done", "failed", "dead_letter"]
JobResultStatus = Literal["done", "failed", "dead_letter"]


class JobOut(BaseModel):
    id: str
    kind: str
    target_type: str
    target_id: str | None = None
    inputs_json: dict[str, Any] = Field(default_factory=dict)
    status: str
    attempt: int = 0


class ClaimRequest(BaseModel):
    lease_seconds: int = Field(default=120, ge=10, le=3600)


class ResultRequest(BaseModel):
    result_json: dict[str, Any] | None = None
    error_json: dict[str, Any] | None = None
    status: JobResultStatus


class ReapExpiredOut(BaseModel):
    requeued: int
