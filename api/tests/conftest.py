from __future__ import annotations

import copy
import os
import uuid
from datetime import datetime, timedelta, timezone
from typing import Any, Callable

import pytest
from fastapi.testclient import TestClient

import portal.core.security as security
from portal.core.config import get_settings
from portal.main import app
from portal.services.accounts import get_account_directory
from portal.services.gamma import get_generation_provider
from portal.services.repository import (
    CAS_TABLES,
    RepositoryConflictError,
    RepositoryNotFoundError,
    RepositoryValidationError,
    get_repository,
)
from portal.services.storage import get_storage

BASE_TIME = datetime(2025, 3, 1, 9, 0, tzinfo=timezone.utc)
CRON_SECRET = "cron-secret"


class FakePortalRepository:
    """In-memory stand-in for PostgresRepository; conditional updates never await mid-check."""

    def __init__(self) -> None:
        self.suppliers: dict[str, dict[str, Any]] = {}
        self.jobs: dict[str, dict[str, Any]] = {}
        self.invite_codes: dict[str, dict[str, Any]] = {}
        self.profiles: dict[str, dict[str, Any]] = {}
        self.resolution_calls: list[dict[str, Any]] = []
        self.before_apply: Callable[[], None] | None = None
        self.fail_profile_link = False
        self._job_clock = 0

    def add_supplier(
        self,
        supplier_id: str,
        *,
        company_name: str | None,
        status: str = "submitted",
        user_id: str | None = None,
        has_invite_code: bool = False,
        account_source: str | None = "self_registered",
        created_at: datetime | str | None = None,
        submitted_at: datetime | str | None = None,
        supplier_type: str = "contractor",
    ) -> None:
        self.suppliers[supplier_id] = {
            "supplier_id": supplier_id,
            "user_id": user_id or f"user-{supplier_id}",
            "supplier_type": supplier_type,
            "status": status,
            "created_at": created_at or BASE_TIME,
            "submitted_at": submitted_at,
            "company_name": company_name,
            "has_invite_code": has_invite_code,
            "account_source": account_source,
        }

    def add_invite_code(self, code: str, **fields: Any) -> dict[str, Any]:
        row = {
            "id": str(len(self.invite_codes) + 1),
            "code": code,
            "status": "active",
            "expires_at": None,
            "max_uses": 1,
            "used_count": 0,
        }
        row.update(fields)
        self.invite_codes[row["id"]] = row
        return row

    async def close(self) -> None:
        return None

    async def list_supplier_rows(self, *, statuses: list[str]) -> list[dict[str, Any]]:
        rows = [row for row in self.suppliers.values() if row["status"] in statuses]
        return [{**copy.deepcopy(row), "company_name": row["company_name"] or ""} for row in rows]

    async def get_supplier_company(self, supplier_id: str) -> dict[str, Any]:
        row = self.suppliers.get(supplier_id)
        if row is None or row["company_name"] is None:
            raise RepositoryNotFoundError("supplier not found")
        return {"supplier_id": supplier_id, "company_name": row["company_name"]}

    async def apply_supplier_resolution(
        self,
        *,
        group_key: str,
        expected_statuses: dict[str, str],
        approve_id: str | None,
        reject_ids: list[str],
    ) -> None:
        if self.before_apply is not None:
            hook, self.before_apply = self.before_apply, None
            hook()

        current = {sid: self.suppliers[sid]["status"] for sid in expected_statuses if sid in self.suppliers}
        if current != expected_statuses:
            raise RepositoryConflictError(f"duplicate group '{group_key}' changed while resolving; reload and retry")

        self.resolution_calls.append({"group_key": group_key, "approve_id": approve_id, "reject_ids": list(reject_ids)})
        for supplier_id in reject_ids:
            self.suppliers[supplier_id]["status"] = "rejected"
        if approve_id:
            self.suppliers[approve_id]["status"] = "approved"

    async def insert_job(self, *, prompt: str, input_json: dict[str, Any]) -> dict[str, Any]:
        self._job_clock += 1
        created_at = BASE_TIME + timedelta(seconds=self._job_clock)
        job = {
            "id": str(uuid.uuid4()),
            "status": "pending",
            "progress": 0,
            "prompt": prompt,
            "input_json": copy.deepcopy(input_json),
            "file_path": None,
            "error": None,
            "meta": {},
            "created_at": created_at,
            "updated_at": created_at,
        }
        self.jobs[job["id"]] = job
        return copy.deepcopy(job)

    async def get_job(self, job_id: str) -> dict[str, Any]:
        job = self.jobs.get(job_id)
        if job is None:
            raise RepositoryNotFoundError("job not found")
        return copy.deepcopy(job)

    async def list_pending_jobs(self, *, limit: int) -> list[dict[str, Any]]:
        pending = sorted(
            (job for job in self.jobs.values() if job["status"] == "pending"),
            key=lambda job: (job["created_at"], job["id"]),
        )
        return [copy.deepcopy(job) for job in pending[: max(1, limit)]]

    async def compare_and_swap(
        self,
        table: str,
        *,
        row_id: str,
        expected: dict[str, Any],
        changes: dict[str, Any],
    ) -> dict[str, Any] | None:
        spec = CAS_TABLES.get(table)
        if spec is None:
            raise RepositoryValidationError(f"compare_and_swap is not supported for table {table}")
        unknown = (set(expected) - spec["columns"] - spec["guard_columns"]) | (set(changes) - spec["columns"])
        if unknown:
            raise RepositoryValidationError(f"unsupported columns for {table}: {sorted(unknown)}")

        row = self.jobs.get(str(row_id))
        if row is None:
            return None
        for column, value in expected.items():
            if isinstance(value, (list, tuple, set, frozenset)):
                if row[column] not in value:
                    return None
            elif row[column] != value:
                return None

        row.update(copy.deepcopy(changes))
        if spec["touch_updated_at"]:
            row["updated_at"] = row["updated_at"] + timedelta(milliseconds=1)
        return copy.deepcopy(row)

    async def get_invite_code(self, code: str) -> dict[str, Any] | None:
        for row in self.invite_codes.values():
            if row["code"] == code:
                return copy.deepcopy(row)
        return None

    async def redeem_invite_code_row(
        self,
        *,
        invite_code_id: str,
        observed_used_count: int,
        max_uses: int,
        user_id: str,
    ) -> dict[str, Any] | None:
        row = self.invite_codes.get(str(invite_code_id))
        if row is None or row["status"] != "active" or row["used_count"] != observed_used_count:
            return None
        if self.fail_profile_link:
            raise RepositoryValidationError("invalid invite code or profile identifier")

        next_count = row["used_count"] + 1
        row.update(used_count=next_count, status="used" if next_count >= max_uses else "active")
        self.profiles.setdefault(user_id, {"user_id": user_id})["invite_code_id"] = invite_code_id
        return copy.deepcopy(row)


class FakeAccountDirectory:
    def __init__(self, emails: dict[str, str] | None = None) -> None:
        self.emails = emails or {}
        self.calls = 0

    async def email_map(self) -> dict[str, str]:
        self.calls += 1
        return dict(self.emails)


class FakeGenerationProvider:
    """Scripted provider: queued responses are consumed in order, exceptions are raised."""

    def __init__(self) -> None:
        self.create_responses: list[Any] = []
        self.status_responses: list[Any] = []
        self.export_content = b"PK\x03\x04fake-pptx"
        self.created: list[dict[str, Any]] = []
        self.polled: list[str] = []
        self.downloaded: list[str] = []

    async def create_generation(self, payload: dict[str, Any], *, timeout_seconds: float = 25.0, retries: int = 1):
        self.created.append(payload)
        return self._next(self.create_responses, {"generationId": f"gen-{len(self.created)}", "status": "queued"})

    async def get_generation(self, generation_id: str, *, timeout_seconds: float = 18.0, retries: int = 1):
        self.polled.append(generation_id)
        return self._next(self.status_responses, {"status": "processing"})

    async def download_export(self, url: str, *, timeout_seconds: float = 35.0) -> bytes:
        self.downloaded.append(url)
        return self.export_content

    async def aclose(self) -> None:
        return None

    @staticmethod
    def _next(queue: list[Any], default: Any) -> Any:
        item = queue.pop(0) if queue else default
        if isinstance(item, BaseException):
            raise item
        return item


class FakeStorage:
    def __init__(self) -> None:
        self.objects: dict[str, bytes] = {}

    async def upload(self, path: str, content: bytes, *, content_type: str = "") -> str:
        self.objects[path] = content
        return path

    async def create_signed_url(self, path: str, *, expires_in: int = 1800) -> str:
        return f"https://storage.test/signed/{path}?expires_in={expires_in}"


@pytest.fixture
def fake_repo() -> FakePortalRepository:
    return FakePortalRepository()


@pytest.fixture
def fake_accounts() -> FakeAccountDirectory:
    return FakeAccountDirectory()


@pytest.fixture
def fake_provider() -> FakeGenerationProvider:
    return FakeGenerationProvider()


@pytest.fixture
def fake_storage() -> FakeStorage:
    return FakeStorage()


@pytest.fixture
def portal_client(
    fake_repo: FakePortalRepository,
    fake_accounts: FakeAccountDirectory,
    fake_provider: FakeGenerationProvider,
    fake_storage: FakeStorage,
) -> TestClient:
    os.environ["SP_SUPABASE_URL"] = "https://example.supabase.co"
    os.environ["SP_SUPABASE_ANON_KEY"] = "anon-key"
    os.environ["SP_CRON_SECRET"] = CRON_SECRET
    get_settings.cache_clear()

    app.dependency_overrides[get_repository] = lambda: fake_repo
    app.dependency_overrides[get_account_directory] = lambda: fake_accounts
    app.dependency_overrides[get_generation_provider] = lambda: fake_provider
    app.dependency_overrides[get_storage] = lambda: fake_storage

    with TestClient(app) as client:
        yield client

    app.dependency_overrides.clear()
    for key in ("SP_SUPABASE_URL", "SP_SUPABASE_ANON_KEY", "SP_CRON_SECRET"):
        os.environ.pop(key, None)
    get_settings.cache_clear()


ADMIN_USER = {"id": "11111111-1111-1111-1111-111111111111", "email": "admin@example.com", "app_metadata": {"role": "admin"}}
SUPPLIER_USER = {"id": "33333333-3333-3333-3333-333333333333", "app_metadata": {"role": "user"}}


def _mock_supabase_user(monkeypatch: pytest.MonkeyPatch, user: dict[str, Any]) -> dict[str, str]:
    async def _fake_fetch(**_: Any) -> dict[str, Any]:
        return user

    monkeypatch.setattr(security, "_fetch_supabase_user", _fake_fetch)
    return {"Authorization": "Bearer token"}


@pytest.fixture
def admin_headers(monkeypatch: pytest.MonkeyPatch) -> dict[str, str]:
    return _mock_supabase_user(monkeypatch, ADMIN_USER)


@pytest.fixture
def supplier_headers(monkeypatch: pytest.MonkeyPatch) -> dict[str, str]:
    return _mock_supabase_user(monkeypatch, SUPPLIER_USER)


@pytest.fixture
def cron_headers() -> dict[str, str]:
    return {"Authorization": f"Bearer {CRON_SECRET}"}
