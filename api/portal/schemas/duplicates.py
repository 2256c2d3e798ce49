from datetime import datetime
from typing import Any, Literal

from pydantic import BaseModel, Field

ReviewReason = Literal[
    "invite_code_priority",
    "multiple_invite_code_entries",
    "user_filled_priority",
    "multiple_user_filled_entries",
    "imported_oldest_kept",
]
SupplierAction = Literal["resolve_duplicates"]


class DuplicateSupplierOut(BaseModel):
    supplier_id: str
    user_id: str
    supplier_type: str
    status: str
    company_name: str
    has_invite_code: bool
    is_imported: bool
    is_user_filled: bool
    created_at: datetime | str | None = None
    submitted_at: datetime | str | None = None


class DuplicateGroupOut(BaseModel):
    company_name_key: str
    company_name: str
    count: int
    recommended_supplier_id: str | None = None
    review_reason: ReviewReason
    suppliers: list[DuplicateSupplierOut] = Field(default_factory=list)
    metadata: dict[str, Any] = Field(default_factory=dict)


class DuplicateGroupsOut(BaseModel):
    groups: list[DuplicateGroupOut] = Field(default_factory=list)


class ResolveDuplicateGroupRequest(BaseModel):
    keep_supplier_id: str = ""


class ResolveDuplicateGroupOut(BaseModel):
    approved_id: str
    rejected_ids: list[str] = Field(default_factory=list)


class SupplierActionRequest(BaseModel):
    action: str


class ManualReviewOut(BaseModel):
    company_name: str
    supplier_ids: list[str] = Field(default_factory=list)
    reason: str


class AutoResolveOut(BaseModel):
    rejected_ids: list[str] = Field(default_factory=list)
    manual_review: list[ManualReviewOut] = Field(default_factory=list)
