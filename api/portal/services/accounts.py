from __future__ import annotations

import logging
from dataclasses import dataclass
from functools import lru_cache
from typing import Any

import httpx

from portal.core.config import get_settings

logger = logging.getLogger(__name__)

ACCOUNTS_PAGE_SIZE = 200
MAX_ACCOUNT_PAGES = 500


class AccountDirectoryError(Exception):
    """Raised when the auth provider's user listing cannot be read."""


@dataclass(slots=True)
class AccountRecord:
    user_id: str
    email: str | None


class SupabaseAccountDirectory:
    def __init__(
        self,
        supabase_url: str | None,
        service_role_key: str | None,
        *,
        timeout_seconds: float = 10.0,
        page_size: int = ACCOUNTS_PAGE_SIZE,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.supabase_url = (supabase_url or "").rstrip("/")
        self.service_role_key = service_role_key
        self.timeout_seconds = timeout_seconds
        self.page_size = max(1, page_size)
        self._transport = transport

    async def list_all_accounts(self) -> list[AccountRecord]:
        if not self.supabase_url or not self.service_role_key:
            raise AccountDirectoryError("Supabase service role is not configured")

        accounts: list[AccountRecord] = []
        total: int | None = None
        page = 1
        async with httpx.AsyncClient(timeout=self.timeout_seconds, transport=self._transport) as client:
            while page <= MAX_ACCOUNT_PAGES:
                batch, reported_total = await self._fetch_page(client, page)
                accounts.extend(batch)
                if reported_total is not None:
                    total = reported_total
                if not batch:
                    break
                if total is not None and len(accounts) >= total:
                    break
                page += 1

        logger.info("loaded auth accounts count=%s pages=%s", len(accounts), page)
        return accounts

    async def email_map(self) -> dict[str, str]:
        return {account.user_id: account.email or "" for account in await self.list_all_accounts()}

    async def _fetch_page(self, client: httpx.AsyncClient, page: int) -> tuple[list[AccountRecord], int | None]:
        headers = {
            "Authorization": f"Bearer {self.service_role_key}",
            "apikey": self.service_role_key or "",
        }
        try:
            response = await client.get(
                f"{self.supabase_url}/auth/v1/admin/users",
                params={"page": page, "per_page": self.page_size},
                headers=headers,
            )
        except httpx.HTTPError as exc:
            raise AccountDirectoryError(f"failed to list users: {exc}") from exc

        if response.status_code != 200:
            raise AccountDirectoryError(f"failed to list users ({response.status_code})")

        try:
            payload: Any = response.json()
        except ValueError as exc:
            raise AccountDirectoryError("failed to list users: response is not JSON") from exc
        raw_users = payload.get("users") if isinstance(payload, dict) else payload
        users = raw_users if isinstance(raw_users, list) else []
        batch = [
            AccountRecord(user_id=str(user["id"]), email=user.get("email") or None)
            for user in users
            if isinstance(user, dict) and user.get("id")
        ]
        return batch, _reported_total(response, payload)


def _reported_total(response: httpx.Response, payload: Any) -> int | None:
    if isinstance(payload, dict) and isinstance(payload.get("total"), int):
        return payload["total"]
    header = response.headers.get("x-total-count")
    if header and header.strip().isdigit():
        return int(header.strip())
    return None


@lru_cache
def get_account_directory() -> SupabaseAccountDirectory:
    settings = get_settings()
    return SupabaseAccountDirectory(
        supabase_url=settings.supabase_url,
        service_role_key=settings.supabase_service_role_key,
        timeout_seconds=settings.auth_timeout_seconds * 2,
    )
