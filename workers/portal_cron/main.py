from __future__ import annotations

import asyncio
import logging
import random

from opentelemetry import trace

from portal_cron.core.config import get_settings
from portal_cron.core.telemetry import (
    configure_cron_logging,
    setup_cron_telemetry,
    shutdown_cron_telemetry,
)
from portal_cron.jobs.tick import run_cycle
from portal_cron.services.tick_client import TickClient

logger = logging.getLogger(__name__)
tracer = trace.get_tracer(__name__)


def next_backoff(previous: float, *, base: float, ceiling: float) -> float:
    jitter = random.uniform(0.0, 0.5)
    return min(max(previous, base) * (2.0 + jitter), ceiling)


async def run_scheduler() -> None:
    settings = get_settings()
    configure_cron_logging()
    telemetry_runtime = setup_cron_telemetry(settings)
    client = TickClient(
        base_url=settings.api_base_url,
        cron_secret=settings.cron_secret,
        timeout_seconds=settings.request_timeout_seconds,
    )
    if not settings.cron_secret:
        logger.warning("SP_CRON_CRON_SECRET is not set; relying on the platform cron marker header")

    backoff = settings.tick_interval_seconds
    try:
        while True:
            try:
                with tracer.start_as_current_span("cron.tick_cycle") as span:
                    outcomes = await run_cycle(
                        client,
                        drain=settings.drain_queue,
                        max_ticks=settings.max_ticks_per_cycle,
                    )
                    span.set_attribute("cron.ticks", len(outcomes))
                backoff = settings.tick_interval_seconds
                await asyncio.sleep(settings.tick_interval_seconds)
            except Exception as exc:  # pragma: no cover - scheduler robustness
                sleep_for = next_backoff(
                    backoff,
                    base=settings.tick_interval_seconds,
                    ceiling=settings.max_backoff_seconds,
                )
                logger.exception("tick cycle failed: %s; retry in %.1fs", exc, sleep_for)
                await asyncio.sleep(sleep_for)
                backoff = sleep_for
    finally:
        shutdown_cron_telemetry(telemetry_runtime)


if __name__ == "__main__":
    asyncio.run(run_scheduler())
