from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from typing import Any

from portal.services.accounts import SupabaseAccountDirectory
from portal.services.duplicates import (
    DuplicateGroup,
    SupplierRecord,
    coerce_supplier_type,
    find_group,
    group_duplicates,
    normalize_company_name,
)
from portal.services.repository import PostgresRepository, RepositoryConflictError

logger = logging.getLogger(__name__)

LISTING_STATUSES = ["submitted", "approved", "rejected"]
AUTO_RESOLVE_STATUSES = ["submitted", "approved"]
ACCOUNT_SOURCE_IMPORTED = "imported"
ACCOUNT_SOURCES = {ACCOUNT_SOURCE_IMPORTED, "self_registered"}


class DuplicateResolutionError(Exception):
    """Base error for duplicate resolution requests."""


class DuplicateResolutionInputError(DuplicateResolutionError):
    """Raised when the request does not identify a resolvable supplier."""


class DuplicateGroupNotFoundError(DuplicateResolutionError):
    """Raised when no duplicate group can be computed for the supplier."""


@dataclass(slots=True)
class ManualReviewEntry:
    company_name: str
    supplier_ids: list[str]
    reason: str


@dataclass(slots=True)
class AutoResolveResult:
    rejected_ids: list[str]
    manual_review: list[ManualReviewEntry]


@dataclass(slots=True)
class GroupResolution:
    approved_id: str
    rejected_ids: list[str]


class ResolutionExecutor:
    def __init__(
        self,
        repository: PostgresRepository,
        accounts: SupabaseAccountDirectory,
        *,
        import_email_pattern: str,
    ) -> None:
        self.repository = repository
        self.accounts = accounts
        self.import_email_re = re.compile(import_email_pattern, re.IGNORECASE)

    async def list_duplicate_groups(self) -> list[DuplicateGroup]:
        records = await self.load_records(statuses=LISTING_STATUSES)
        return group_duplicates(records)

    async def auto_resolve_duplicates(self) -> AutoResolveResult:
        records = await self.load_records(statuses=AUTO_RESOLVE_STATUSES)
        rejected_ids: list[str] = []
        manual_review: list[ManualReviewEntry] = []

        for group in group_duplicates(records):
            if group.needs_manual_review:
                manual_review.append(_manual_review_entry(group, reason=group.review_reason))
                continue

            reject_ids = [sid for sid in group.supplier_ids if sid != group.recommended_supplier_id]
            try:
                await self.repository.apply_supplier_resolution(
                    group_key=group.company_name_key,
                    expected_statuses=_observed_statuses(group),
                    approve_id=None,
                    reject_ids=reject_ids,
                )
            except RepositoryConflictError:
                logger.warning("duplicate group changed during auto-resolve key=%s", group.company_name_key)
                manual_review.append(_manual_review_entry(group, reason="concurrent_update"))
                continue
            rejected_ids.extend(reject_ids)

        logger.info(
            "auto-resolved duplicates rejected=%s manual_review=%s",
            len(rejected_ids),
            len(manual_review),
        )
        return AutoResolveResult(rejected_ids=rejected_ids, manual_review=manual_review)

    async def resolve_duplicate_group(self, keep_supplier_id: str) -> GroupResolution:
        keep_id = (keep_supplier_id or "").strip()
        if not keep_id:
            raise DuplicateResolutionInputError("keep_supplier_id is required")

        company = await self.repository.get_supplier_company(keep_id)
        company_name_key = normalize_company_name(company.get("company_name"))
        if not company_name_key:
            raise DuplicateGroupNotFoundError("supplier company name is empty")

        records = await self.load_records(statuses=LISTING_STATUSES)
        group = find_group(group_duplicates(records), company_name_key)
        if group is None:
            raise DuplicateGroupNotFoundError("no duplicate group found for this supplier")
        if keep_id not in group.supplier_ids:
            raise DuplicateResolutionInputError("supplier is not in target duplicate group")

        reject_ids = [sid for sid in group.supplier_ids if sid != keep_id]
        await self.repository.apply_supplier_resolution(
            group_key=company_name_key,
            expected_statuses=_observed_statuses(group),
            approve_id=keep_id,
            reject_ids=reject_ids,
        )
        logger.info(
            "resolved duplicate group key=%s approved=%s rejected=%s",
            company_name_key,
            keep_id,
            len(reject_ids),
        )
        return GroupResolution(approved_id=keep_id, rejected_ids=reject_ids)

    async def load_records(self, *, statuses: list[str]) -> list[SupplierRecord]:
        rows = await self.repository.list_supplier_rows(statuses=statuses)
        emails: dict[str, str] = {}
        if any(_account_source(row) is None for row in rows):
            emails = await self.accounts.email_map()

        return [self._to_record(row, emails) for row in rows]

    def _to_record(self, row: dict[str, Any], emails: dict[str, str]) -> SupplierRecord:
        source = _account_source(row)
        if source is not None:
            is_imported = source == ACCOUNT_SOURCE_IMPORTED
        else:
            is_imported = bool(self.import_email_re.match(emails.get(row.get("user_id") or "", "")))

        return SupplierRecord(
            supplier_id=row["supplier_id"],
            user_id=row.get("user_id") or "",
            supplier_type=coerce_supplier_type(row.get("supplier_type")),
            status=row.get("status") or "draft",
            company_name=row.get("company_name") or "",
            has_invite_code=bool(row.get("has_invite_code")),
            is_imported=is_imported,
            created_at=row.get("created_at"),
            submitted_at=row.get("submitted_at"),
        )


def _account_source(row: dict[str, Any]) -> str | None:
    value = row.get("account_source")
    if isinstance(value, str) and value in ACCOUNT_SOURCES:
        return value
    return None


def _observed_statuses(group: DuplicateGroup) -> dict[str, str]:
    return {record.supplier_id: record.status for record in group.suppliers}


def _manual_review_entry(group: DuplicateGroup, *, reason: str) -> ManualReviewEntry:
    return ManualReviewEntry(
        company_name=group.company_name or "(empty)",
        supplier_ids=group.supplier_ids,
        reason=reason,
    )
