from __future__ import annotations

import asyncio
import json

import httpx
import pytest

from portal.core.config import Settings
from portal.services.gamma import (
    GammaClient,
    GenerationProviderError,
    GenerationProviderTimeoutError,
    build_gamma_client,
    extract_export_url,
    extract_generation_id,
    extract_provider_error,
    make_gamma_meta,
    map_provider_progress,
    mask_api_key,
    normalize_base_url,
    normalize_provider_status,
    parse_base_urls,
    snapshot_payload,
)


def _client(handler, *, api_key: str = "sk-gamma-test-123456", base_urls: list[str] | None = None) -> GammaClient:
    return GammaClient(
        api_key=api_key,
        base_urls=base_urls or ["https://gamma.test/v1.0"],
        retry_delay_seconds=0,
        transport=httpx.MockTransport(handler),
    )


def test_create_generation_posts_payload_with_api_key() -> None:
    seen: dict[str, object] = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["method"] = request.method
        seen["url"] = str(request.url)
        seen["api_key"] = request.headers.get("X-API-KEY")
        seen["body"] = json.loads(request.content)
        return httpx.Response(200, json={"generationId": "gen-1", "status": "queued"})

    async def scenario():
        client = _client(handler)
        try:
            return await client.create_generation({"inputText": "hello"})
        finally:
            await client.aclose()

    payload = asyncio.run(scenario())

    assert payload == {"generationId": "gen-1", "status": "queued"}
    assert seen == {
        "method": "POST",
        "url": "https://gamma.test/v1.0/generations",
        "api_key": "sk-gamma-test-123456",
        "body": {"inputText": "hello"},
    }


def test_missing_api_key_fails_before_any_request() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        raise AssertionError("no request expected")

    client = _client(handler, api_key="  ")

    with pytest.raises(GenerationProviderError, match="Missing GAMMA_API_KEY"):
        asyncio.run(client.get_generation("gen-1"))


def test_request_falls_back_to_next_base_url() -> None:
    hosts: list[str] = []

    def handler(request: httpx.Request) -> httpx.Response:
        hosts.append(request.url.host)
        if request.url.host == "primary.test":
            return httpx.Response(503, json={"message": "overloaded"})
        return httpx.Response(200, json={"id": "gen-9", "status": "processing"})

    client = _client(handler, base_urls=["https://primary.test/v1.0", "https://fallback.test/v1.0"])

    payload = asyncio.run(client.get_generation("gen-9", retries=0))

    assert payload["status"] == "processing"
    assert hosts == ["primary.test", "fallback.test"]


def test_retries_are_bounded_and_last_error_is_reported() -> None:
    calls: list[str] = []

    def handler(request: httpx.Request) -> httpx.Response:
        calls.append(str(request.url))
        return httpx.Response(502, json={"error": {"message": "upstream unavailable"}})

    client = _client(handler)

    with pytest.raises(GenerationProviderError) as excinfo:
        asyncio.run(client.get_generation("gen-1", retries=5))

    assert len(calls) == 3
    assert "failed (502): upstream unavailable" in str(excinfo.value)


def test_timeouts_surface_as_timeout_errors() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ReadTimeout("slow", request=request)

    client = _client(handler)

    with pytest.raises(GenerationProviderTimeoutError, match="timed out after"):
        asyncio.run(client.create_generation({}, timeout_seconds=10, retries=0))


def test_network_errors_are_wrapped() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("refused", request=request)

    client = _client(handler)

    with pytest.raises(GenerationProviderError, match="network error"):
        asyncio.run(client.get_generation("gen-1", retries=0))


def test_download_export_follows_redirects() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        if request.url.path == "/export/gen-1":
            return httpx.Response(302, headers={"Location": "https://cdn.test/files/deck.pptx"})
        return httpx.Response(200, content=b"PK\x03\x04deck")

    client = _client(handler)

    assert asyncio.run(client.download_export("https://gamma.test/export/gen-1")) == b"PK\x03\x04deck"


def test_download_export_rejects_error_status() -> None:
    client = _client(lambda request: httpx.Response(404, text="gone"))

    with pytest.raises(GenerationProviderError, match=r"\(404\)"):
        asyncio.run(client.download_export("https://cdn.test/files/deck.pptx"))


def test_base_url_helpers_normalize_and_dedupe() -> None:
    assert normalize_base_url("https://public-api.gamma.app") == "https://public-api.gamma.app/v1.0"
    assert normalize_base_url("https://proxy.test/gamma/v1.0/") == "https://proxy.test/gamma/v1.0"
    assert normalize_base_url("  ") == ""
    assert parse_base_urls(
        "https://public-api.gamma.app/",
        "https://public-api.gamma.app/v1.0, https://proxy.test/v1.0,",
    ) == ["https://public-api.gamma.app/v1.0", "https://proxy.test/v1.0"]
    assert parse_base_urls(None, None) == ["https://public-api.gamma.app/v1.0"]


def test_build_gamma_client_reads_settings() -> None:
    settings = Settings(
        gamma_api_key="sk-live",
        gamma_base_url="https://proxy.test",
        gamma_base_urls="https://public-api.gamma.app/v1.0",
    )

    client = build_gamma_client(settings, transport=httpx.MockTransport(lambda request: httpx.Response(200)))

    assert client.base_urls == ["https://proxy.test/v1.0", "https://public-api.gamma.app/v1.0"]
    assert client.debug_info() == {"base_url": "https://proxy.test/v1.0", "api_key_masked": "sk-***"}
    asyncio.run(client.aclose())


def test_response_field_extraction_handles_nested_shapes() -> None:
    assert extract_generation_id({"data": {"generationId": " gen-2 "}}) == "gen-2"
    assert extract_generation_id({"result": {"id": "gen-3"}}) == "gen-3"
    assert extract_generation_id({"status": "queued"}) == ""
    assert extract_export_url({"exports": {"pptx": {"url": "https://cdn.test/a.pptx"}}}) == "https://cdn.test/a.pptx"
    assert extract_export_url({"data": {"exportUrl": "https://cdn.test/b.pptx"}}) == "https://cdn.test/b.pptx"
    assert extract_provider_error({"error": {"message": "quota exceeded"}}) == "quota exceeded"


@pytest.mark.parametrize(
    ("raw", "expected"),
    [
        ({"status": "COMPLETED"}, "completed"),
        ({"data": {"state": "succeeded"}}, "completed"),
        ({"status": "cancelled"}, "failed"),
        ({"status": "rendering"}, "running"),
        ({"status": "queued"}, "pending"),
        ({}, "pending"),
        ({"status": "mystery"}, "running"),
    ],
)
def test_normalize_provider_status(raw, expected) -> None:
    assert normalize_provider_status(raw) == expected


def test_progress_mapping_is_bounded_and_never_regresses() -> None:
    assert map_provider_progress("pending", 0, 0) == 35
    assert map_provider_progress("pending", 0, 10_000) == 62
    assert map_provider_progress("running", 0, 60) == 75
    assert map_provider_progress("running", 0, 10_000) == 92
    assert map_provider_progress("running", 95, 0) == 95
    assert map_provider_progress("completed", 40, 0) == 90
    assert map_provider_progress("failed", 40, 0) == 100


def test_meta_snapshots_truncate_long_text() -> None:
    meta = make_gamma_meta(
        generation_id=" gen-1 ",
        provider_status="running",
        error="x" * 600,
        raw={"inputText": "y" * 2000, "data": list(range(10))},
    )

    assert meta["generation_id"] == "gen-1"
    assert meta["error"] == "x" * 500 + "..."
    assert meta["raw"]["inputText"] == "y" * 1200 + "..."
    assert meta["raw"]["data"] == [0, 1, 2, 3, 4, 5]
    assert snapshot_payload("plain") == "plain"


def test_mask_api_key() -> None:
    assert mask_api_key("") == ""
    assert mask_api_key("short-key") == "sho***"
    assert mask_api_key("sk-gamma-abcdefghijkl") == "sk-gamma-****kl"
