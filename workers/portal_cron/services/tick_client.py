from __future__ import annotations

from typing import Any

import httpx


class TickClient:
    """Calls the API's worker endpoint the way the platform cron does."""

    def __init__(
        self,
        base_url: str,
        cron_secret: str | None,
        *,
        timeout_seconds: float = 65.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.timeout_seconds = timeout_seconds
        self.headers = {"Authorization": f"Bearer {cron_secret}"} if cron_secret else {"X-Vercel-Cron": "1"}
        self._transport = transport

    async def trigger_worker(self) -> dict[str, Any]:
        async with httpx.AsyncClient(timeout=self.timeout_seconds, transport=self._transport) as client:
            response = await client.post(f"{self.base_url}/ppt/worker", headers=self.headers)
            # The worker reports claim failures as 500 with an {ok, error} body.
            if response.status_code == 500 and _is_tick_payload(response):
                return response.json()
            response.raise_for_status()
            return response.json()


def _is_tick_payload(response: httpx.Response) -> bool:
    try:
        payload = response.json()
    except ValueError:
        return False
    return isinstance(payload, dict) and "ok" in payload
