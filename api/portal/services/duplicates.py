from __future__ import annotations

import re
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Literal

_WHITESPACE_RE = re.compile(r"\s+")
_EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)

SUPPLIER_TYPES = ("contractor", "designer", "material", "basic")

ReviewReason = Literal[
    "invite_code_priority",
    "multiple_invite_code_entries",
    "user_filled_priority",
    "multiple_user_filled_entries",
    "imported_oldest_kept",
]
MANUAL_REVIEW_REASONS = frozenset({"multiple_invite_code_entries", "multiple_user_filled_entries"})


@dataclass(slots=True)
class SupplierRecord:
    supplier_id: str
    user_id: str
    supplier_type: str
    status: str
    company_name: str
    has_invite_code: bool
    is_imported: bool
    created_at: datetime | str | None = None
    submitted_at: datetime | str | None = None

    @property
    def is_user_filled(self) -> bool:
        return not self.is_imported


@dataclass(slots=True)
class DuplicateGroup:
    company_name_key: str
    company_name: str
    suppliers: list[SupplierRecord]
    recommended_supplier_id: str | None
    review_reason: ReviewReason
    metadata: dict[str, Any] = field(default_factory=dict)

    @property
    def count(self) -> int:
        return len(self.suppliers)

    @property
    def supplier_ids(self) -> list[str]:
        return [record.supplier_id for record in self.suppliers]

    @property
    def needs_manual_review(self) -> bool:
        return self.recommended_supplier_id is None


def normalize_company_name(value: Any) -> str:
    if not isinstance(value, str):
        return ""
    return _WHITESPACE_RE.sub(" ", value.strip().lower())


def coerce_supplier_type(value: Any) -> str:
    if isinstance(value, str) and value.strip().lower() in SUPPLIER_TYPES:
        return value.strip().lower()
    return "basic"


def record_time(record: SupplierRecord) -> datetime:
    """Submission time, falling back to creation time, falling back to epoch."""
    return _parse_timestamp(record.submitted_at) or _parse_timestamp(record.created_at) or _EPOCH


def group_duplicates(records: list[SupplierRecord]) -> list[DuplicateGroup]:
    buckets: dict[str, list[SupplierRecord]] = {}
    for record in records:
        key = normalize_company_name(record.company_name)
        if not key:
            continue
        buckets.setdefault(key, []).append(record)

    groups: list[DuplicateGroup] = []
    for key in sorted(buckets):
        members = buckets[key]
        if len(members) < 2:
            continue
        ordered = sorted(members, key=_newest_first_key)
        recommended_supplier_id, review_reason = decide(ordered)
        groups.append(
            DuplicateGroup(
                company_name_key=key,
                company_name=ordered[0].company_name.strip(),
                suppliers=ordered,
                recommended_supplier_id=recommended_supplier_id,
                review_reason=review_reason,
                metadata={
                    "invite_code_count": sum(1 for row in ordered if row.has_invite_code),
                    "user_filled_count": sum(1 for row in ordered if row.is_user_filled),
                },
            )
        )
    return groups


def decide(members: list[SupplierRecord]) -> tuple[str | None, ReviewReason]:
    invite_holders = [row for row in members if row.has_invite_code]
    if len(invite_holders) == 1:
        return invite_holders[0].supplier_id, "invite_code_priority"
    if len(invite_holders) > 1:
        return None, "multiple_invite_code_entries"

    user_filled = [row for row in members if row.is_user_filled]
    if len(user_filled) == 1:
        return user_filled[0].supplier_id, "user_filled_priority"
    if len(user_filled) > 1:
        return None, "multiple_user_filled_entries"

    if not members:
        return None, "imported_oldest_kept"
    oldest = min(members, key=_oldest_first_key)
    return oldest.supplier_id, "imported_oldest_kept"


def find_group(groups: list[DuplicateGroup], company_name_key: str) -> DuplicateGroup | None:
    return next((group for group in groups if group.company_name_key == company_name_key), None)


def _newest_first_key(record: SupplierRecord) -> tuple[float, str]:
    return (-record_time(record).timestamp(), record.supplier_id)


def _oldest_first_key(record: SupplierRecord) -> tuple[float, str]:
    return (record_time(record).timestamp(), record.supplier_id)


def _parse_timestamp(value: Any) -> datetime | None:
    if isinstance(value, datetime):
        dt = value
    elif isinstance(value, str):
        raw = value.strip()
        if not raw:
            return None
        try:
            dt = datetime.fromisoformat(raw.replace("Z", "+00:00"))
        except ValueError:
            return None
    else:
        return None

    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)
