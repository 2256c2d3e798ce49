from __future__ import annotations

import logging
from functools import lru_cache
from urllib.parse import quote

import httpx

from portal.core.config import get_settings

logger = logging.getLogger(__name__)

PPTX_CONTENT_TYPE = "application/vnd.openxmlformats-officedocument.presentationml.presentation"


class StorageError(Exception):
    """Raised when the object store rejects or cannot serve a request."""


class SupabaseStorage:
    def __init__(
        self,
        supabase_url: str | None,
        service_role_key: str | None,
        *,
        bucket: str = "ppt",
        timeout_seconds: float = 30.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.supabase_url = (supabase_url or "").rstrip("/")
        self.service_role_key = service_role_key
        self.bucket = bucket
        self.timeout_seconds = timeout_seconds
        self._transport = transport

    async def upload(self, path: str, content: bytes, *, content_type: str = PPTX_CONTENT_TYPE) -> str:
        headers = {
            **self._auth_headers(),
            "Content-Type": content_type,
            "x-upsert": "true",
            "cache-control": "max-age=3600",
        }
        response = await self._send("POST", f"/object/{self.bucket}/{_quote_path(path)}", content=content, headers=headers)
        if response.status_code not in {200, 201}:
            raise StorageError(f"Failed to upload PPT to storage ({response.status_code}): {_detail(response)}")

        logger.info("stored object bucket=%s path=%s bytes=%s", self.bucket, path, len(content))
        return path

    async def create_signed_url(self, path: str, *, expires_in: int = 1800) -> str:
        response = await self._send(
            "POST",
            f"/object/sign/{self.bucket}/{_quote_path(path)}",
            json={"expiresIn": int(expires_in)},
            headers=self._auth_headers(),
        )
        if response.status_code != 200:
            raise StorageError(f"Failed to create signed URL ({response.status_code}): {_detail(response)}")

        try:
            payload = response.json()
        except ValueError as exc:
            raise StorageError(f"Failed to create signed URL: response is not JSON: {response.text[:200]}") from exc
        signed = (payload.get("signedURL") or payload.get("signedUrl")) if isinstance(payload, dict) else None
        if not isinstance(signed, str) or not signed:
            raise StorageError("Failed to create signed URL: response has no signedURL")
        if signed.startswith("http"):
            return signed
        return f"{self.supabase_url}/storage/v1{signed if signed.startswith('/') else '/' + signed}"

    def _auth_headers(self) -> dict[str, str]:
        return {
            "Authorization": f"Bearer {self.service_role_key}",
            "apikey": self.service_role_key or "",
        }

    async def _send(self, method: str, path: str, **kwargs) -> httpx.Response:
        if not self.supabase_url or not self.service_role_key:
            raise StorageError("Supabase storage is not configured")

        try:
            async with httpx.AsyncClient(timeout=self.timeout_seconds, transport=self._transport) as client:
                return await client.request(method, f"{self.supabase_url}/storage/v1{path}", **kwargs)
        except httpx.HTTPError as exc:
            raise StorageError(f"storage request failed: {exc}") from exc


def job_file_path(job_id: str) -> str:
    return f"ppt/{job_id}.pptx"


def _quote_path(path: str) -> str:
    return quote(path.lstrip("/"), safe="/")


def _detail(response: httpx.Response) -> str:
    try:
        payload = response.json()
    except ValueError:
        return response.text[:200]
    if isinstance(payload, dict):
        return str(payload.get("message") or payload.get("error") or payload)[:200]
    return str(payload)[:200]


@lru_cache
def get_storage() -> SupabaseStorage:
    settings = get_settings()
    return SupabaseStorage(
        supabase_url=settings.supabase_url,
        service_role_key=settings.supabase_service_role_key,
        bucket=settings.storage_bucket,
        timeout_seconds=settings.storage_timeout_seconds,
    )
