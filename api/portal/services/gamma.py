from __future__ import annotations

import asyncio
import json
import logging
from datetime import datetime, timezone
from functools import lru_cache
from typing import Any
from urllib.parse import quote, urlsplit, urlunsplit

import httpx

from portal.core.config import Settings, get_settings

logger = logging.getLogger(__name__)

DEFAULT_BASE_URL = "https://public-api.gamma.app/v1.0"
COMPLETED_STATUSES = {"completed", "done", "success", "succeeded", "ready"}
FAILED_STATUSES = {"failed", "error", "cancelled", "canceled", "timeout"}
RUNNING_STATUSES = {"processing", "running", "in_progress", "rendering", "exporting", "generating"}
PENDING_STATUSES = {"pending", "queued", "created", "waiting"}
_SNAPSHOT_TEXT_FIELDS = ("inputText", "prompt", "additionalInstructions", "message", "error")
_SNAPSHOT_DATA_FIELDS = ("inputText", "prompt", "additionalInstructions")


class GenerationProviderError(Exception):
    """Raised when the generation provider rejects or cannot serve a request."""


class GenerationProviderTimeoutError(GenerationProviderError):
    """Raised when a provider call exceeds its time bound."""


class GammaClient:
    def __init__(
        self,
        *,
        api_key: str | None,
        base_urls: list[str],
        connect_timeout_seconds: float = 10.0,
        proxy_url: str | None = None,
        trust_env: bool = False,
        retry_delay_seconds: float = 0.45,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.api_key = (api_key or "").strip()
        self.base_urls = base_urls or [DEFAULT_BASE_URL]
        self.connect_timeout_seconds = max(3.0, connect_timeout_seconds)
        self.retry_delay_seconds = max(0.0, retry_delay_seconds)
        client_kwargs: dict[str, Any] = {"trust_env": trust_env}
        if transport is not None:
            client_kwargs["transport"] = transport
        elif proxy_url:
            client_kwargs["proxy"] = proxy_url
        self._client = httpx.AsyncClient(**client_kwargs)

    async def aclose(self) -> None:
        await self._client.aclose()

    async def create_generation(
        self,
        payload: dict[str, Any],
        *,
        timeout_seconds: float = 25.0,
        retries: int = 1,
    ) -> dict[str, Any]:
        return await self._request(
            "POST",
            "/generations",
            body=payload,
            timeout_seconds=max(8.0, timeout_seconds),
            retries=retries,
        )

    async def get_generation(
        self,
        generation_id: str,
        *,
        timeout_seconds: float = 18.0,
        retries: int = 1,
    ) -> dict[str, Any]:
        identifier = (generation_id or "").strip()
        if not identifier:
            raise GenerationProviderError("Missing generation id")
        return await self._request(
            "GET",
            f"/generations/{quote(identifier, safe='')}",
            body=None,
            timeout_seconds=max(8.0, timeout_seconds),
            retries=retries,
        )

    async def download_export(self, url: str, *, timeout_seconds: float = 35.0) -> bytes:
        timeout = httpx.Timeout(max(10.0, timeout_seconds), connect=self.connect_timeout_seconds)
        try:
            response = await self._client.get(url, timeout=timeout, follow_redirects=True)
        except httpx.TimeoutException as exc:
            raise GenerationProviderTimeoutError(
                f"Export download timed out after {timeout_seconds:.0f}s",
            ) from exc
        except httpx.TransportError as exc:
            raise GenerationProviderError(f"Export download network error: {exc}") from exc

        if response.status_code < 200 or response.status_code >= 300:
            raise GenerationProviderError(f"Failed to download Gamma PPTX ({response.status_code})")
        return response.content

    def debug_info(self) -> dict[str, str]:
        return {"base_url": self.base_urls[0], "api_key_masked": mask_api_key(self.api_key)}

    async def _request(
        self,
        method: str,
        path: str,
        *,
        body: dict[str, Any] | None,
        timeout_seconds: float,
        retries: int,
    ) -> dict[str, Any]:
        if not self.api_key:
            raise GenerationProviderError("Missing GAMMA_API_KEY")

        headers = {
            "Content-Type": "application/json",
            "accept": "application/json",
            "X-API-KEY": self.api_key,
        }
        timeout = httpx.Timeout(timeout_seconds, connect=self.connect_timeout_seconds)
        bounded_retries = max(0, min(2, retries))
        last_error: GenerationProviderError | None = None

        for attempt in range(bounded_retries + 1):
            for base_url in self.base_urls:
                url = f"{base_url.rstrip('/')}{path}"
                try:
                    response = await self._client.request(
                        method,
                        url,
                        json=body,
                        headers=headers,
                        timeout=timeout,
                    )
                except httpx.TimeoutException:
                    last_error = GenerationProviderTimeoutError(
                        f"Gamma API {method} {path} timed out after {timeout_seconds:.0f}s (base={base_url})",
                    )
                    logger.warning("gamma request timed out method=%s path=%s base=%s", method, path, base_url)
                    continue
                except httpx.TransportError as exc:
                    last_error = GenerationProviderError(
                        f"Gamma API {method} {path} network error: {exc!r} (base={base_url})",
                    )
                    logger.warning("gamma request network error method=%s path=%s error=%s", method, path, exc)
                    continue

                payload = _parse_json(response.text)
                if response.status_code < 200 or response.status_code >= 300:
                    detail = _first_text(
                        _get_path(payload, "error.message"),
                        _get_path(payload, "error"),
                        _get_path(payload, "message"),
                        _get_path(payload, "msg"),
                        response.text,
                    )
                    last_error = GenerationProviderError(
                        f"Gamma API {method} {path} failed ({response.status_code}): {detail}",
                    )
                    continue

                return payload if isinstance(payload, dict) else {}

            if attempt < bounded_retries:
                await asyncio.sleep(self.retry_delay_seconds * (attempt + 1))

        raise last_error or GenerationProviderError("Gamma request failed")


def normalize_base_url(raw: str | None) -> str:
    text = (raw or "").strip()
    if not text:
        return ""
    parts = urlsplit(text)
    if not parts.scheme or not parts.netloc:
        return text.rstrip("/")
    path = parts.path if parts.path not in {"", "/"} else "/v1.0"
    return urlunsplit((parts.scheme, parts.netloc, path, parts.query, parts.fragment)).rstrip("/")


def parse_base_urls(primary: str | None, extra: str | None) -> list[str]:
    candidates = [primary or ""]
    candidates.extend(item.strip() for item in (extra or "").split(",") if item.strip())
    normalized: list[str] = []
    for candidate in candidates:
        value = normalize_base_url(candidate)
        if value and value not in normalized:
            normalized.append(value)
    return normalized or [DEFAULT_BASE_URL]


def extract_generation_id(raw: Any) -> str:
    return _first_text(
        _get_path(raw, "id"),
        _get_path(raw, "generationId"),
        _get_path(raw, "data.id"),
        _get_path(raw, "data.generationId"),
        _get_path(raw, "result.id"),
        _get_path(raw, "result.generationId"),
    )


def normalize_provider_status(raw: Any) -> str:
    source = _first_text(
        _get_path(raw, "status"),
        _get_path(raw, "state"),
        _get_path(raw, "data.status"),
        _get_path(raw, "data.state"),
        _get_path(raw, "result.status"),
        _get_path(raw, "result.state"),
    ).lower()

    if not source:
        return "pending"
    if source in COMPLETED_STATUSES:
        return "completed"
    if source in FAILED_STATUSES:
        return "failed"
    if source in RUNNING_STATUSES:
        return "running"
    if source in PENDING_STATUSES:
        return "pending"
    return "running"


def extract_export_url(raw: Any) -> str:
    paths = (
        "pptxUrl",
        "downloadUrl",
        "exportedFileUrl",
        "fileUrl",
        "exportUrl",
        "data.pptxUrl",
        "data.downloadUrl",
        "data.exportedFileUrl",
        "data.fileUrl",
        "data.exportUrl",
        "exports.pptx",
        "exports.pptx.url",
        "data.exports.pptx",
        "data.exports.pptx.url",
        "result.exports.pptx.url",
        "files.pptx.url",
        "data.files.pptx.url",
        "exportedFiles.pptx",
        "data.exportedFiles.pptx",
    )
    return _first_text(*(_get_path(raw, path) for path in paths))


def extract_gamma_url(raw: Any) -> str:
    return _first_text(
        _get_path(raw, "url"),
        _get_path(raw, "gammaUrl"),
        _get_path(raw, "data.url"),
        _get_path(raw, "data.gammaUrl"),
        _get_path(raw, "result.url"),
    )


def extract_provider_error(raw: Any) -> str:
    return _first_text(
        _get_path(raw, "error.message"),
        _get_path(raw, "error"),
        _get_path(raw, "message"),
        _get_path(raw, "msg"),
        _get_path(raw, "data.error"),
        _get_path(raw, "data.message"),
    )


def map_provider_progress(provider_status: str, current_progress: int = 0, elapsed_seconds: float = 0) -> int:
    """Map provider state and elapsed time to a percentage that never regresses."""
    current = max(0, int(current_progress or 0))
    elapsed = max(0, int(elapsed_seconds or 0))

    if provider_status == "pending":
        return max(current, min(62, 35 + elapsed // 8))
    if provider_status == "running":
        return max(current, min(92, 65 + elapsed // 6))
    if provider_status == "completed":
        return max(current, 90)
    if provider_status == "failed":
        return 100
    return max(current, min(62, 35 + elapsed // 10))


def mask_api_key(value: str | None) -> str:
    key = (value or "").strip()
    if not key:
        return ""
    if len(key) <= 12:
        return f"{key[:3]}***"
    return f"{key[:9]}****{key[-2:]}"


def truncate(value: Any, max_chars: int = 800) -> str:
    text = value.strip() if isinstance(value, str) else ""
    if len(text) <= max_chars:
        return text
    return f"{text[:max_chars]}..."


def snapshot_payload(payload: Any, max_text_len: int = 1200) -> Any:
    """Shallow copy of a provider payload with long text fields truncated."""
    if not isinstance(payload, dict):
        return payload

    snapshot = dict(payload)
    for key in _SNAPSHOT_TEXT_FIELDS:
        if isinstance(snapshot.get(key), str):
            snapshot[key] = truncate(snapshot[key], max_text_len)

    data = snapshot.get("data")
    if isinstance(data, list):
        snapshot["data"] = data[:6]
    elif isinstance(data, dict):
        trimmed = dict(data)
        for key in _SNAPSHOT_DATA_FIELDS:
            if isinstance(trimmed.get(key), str):
                trimmed[key] = truncate(trimmed[key], max_text_len)
        snapshot["data"] = trimmed
    return snapshot


def make_gamma_meta(
    *,
    generation_id: str = "",
    provider_status: str = "",
    gamma_url: str = "",
    export_url: str = "",
    error: str = "",
    raw: Any = None,
) -> dict[str, Any]:
    return {
        "generation_id": (generation_id or "").strip(),
        "provider_status": (provider_status or "").strip(),
        "gamma_url": (gamma_url or "").strip(),
        "export_url": (export_url or "").strip(),
        "error": truncate(error, 500),
        "raw": snapshot_payload(raw),
        "updated_at": datetime.now(timezone.utc).isoformat(),
    }


def _get_path(obj: Any, path: str) -> Any:
    cursor = obj
    for key in path.split("."):
        if not isinstance(cursor, dict):
            return None
        cursor = cursor.get(key)
    return cursor


def _first_text(*values: Any) -> str:
    for value in values:
        if isinstance(value, str) and value.strip():
            return value.strip()
    return ""


def _parse_json(text: str) -> Any:
    try:
        return json.loads(text)
    except (json.JSONDecodeError, ValueError):
        return None


def build_gamma_client(settings: Settings, *, transport: httpx.AsyncBaseTransport | None = None) -> GammaClient:
    return GammaClient(
        api_key=settings.gamma_api_key,
        base_urls=parse_base_urls(settings.gamma_base_url, settings.gamma_base_urls),
        connect_timeout_seconds=settings.gamma_connect_timeout_seconds,
        proxy_url=settings.gamma_proxy_url,
        trust_env=settings.gamma_use_env_proxy,
        transport=transport,
    )


@lru_cache
def get_generation_provider() -> GammaClient:
    return build_gamma_client(get_settings())
