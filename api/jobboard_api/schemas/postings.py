from datetime import datetime
from typing import Literal

from pydantic import BaseModel, Field, model_validator

PostingStatus = Literal["pending_payment", "active", "expired"]
EmploymentType = Literal["full_time", "part_time", "contract", "internship"]


class _SalaryRangeMixin(BaseModel):
    @model_validator(mode="after")
    def _check_salary_range(self):
        salary_from = getattr(self, "salary_from", None)
        salary_to = getattr(self, "salary_to", None)
        if salary_from is not None and salary_to is not None and salary_to < salary_from:
            raise ValueError("salary_to must be greater than or equal to salary_from")
        return self


class PostingContent(_SalaryRangeMixin):
    title: str = Field(min_length=2, max_length=200)
    description: str = Field(min_length=1)
    employment_type: EmploymentType
    location: str = Field(min_length=1, max_length=200)
    salary_from: int = Field(default=0, ge=0)
    salary_to: int = Field(default=0, ge=0)
    benefits: list[str] = Field(default_factory=list)


class PostingCreateRequest(PostingContent):
    listing_duration_days: int = Field(gt=0)


class PostingContentPatchRequest(_SalaryRangeMixin):
    title: str | None = Field(default=None, min_length=2, max_length=200)
    description: str | None = Field(default=None, min_length=1)
    employment_type: EmploymentType | None = None
    location: str | None = Field(default=None, min_length=1, max_length=200)
    salary_from: int | None = Field(default=None, ge=0)
    salary_to: int | None = Field(default=None, ge=0)
    benefits: list[str] | None = None


class PostingCheckoutOut(BaseModel):
    posting_id: str
    redirect_url: str | None = None


class PostingOut(BaseModel):
    id: str
    owner_id: str
    status: PostingStatus
    listing_duration_days: int
    title: str
    description: str
    employment_type: str
    location: str
    salary_from: int = 0
    salary_to: int = 0
    benefits: list[str] = Field(default_factory=list)
    activated_at: datetime | None = None
    expired_at: datetime | None = None
    created_at: datetime
    updated_at: datetime


class PricingTierOut(BaseModel):
    days: int
    price: int
    currency: str
    description: str
