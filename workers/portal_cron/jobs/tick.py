from __future__ import annotations

from dataclasses import dataclass
import logging

from portal_cron.services.tick_client import TickClient

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class TickOutcome:
    ok: bool
    processed_job_id: str | None
    error: str | None = None

    @property
    def idle(self) -> bool:
        return self.ok and self.processed_job_id is None


async def run_tick(client: TickClient) -> TickOutcome:
    payload = await client.trigger_worker()
    outcome = TickOutcome(
        ok=bool(payload.get("ok")),
        processed_job_id=payload.get("processed_job_id"),
        error=payload.get("error"),
    )

    if not outcome.ok and outcome.processed_job_id is None:
        raise RuntimeError(f"worker tick failed: {outcome.error or 'unknown error'}")
    if outcome.ok and outcome.processed_job_id:
        logger.info("worker registered job_id=%s", outcome.processed_job_id)
    elif not outcome.ok:
        logger.warning("worker failed job_id=%s error=%s", outcome.processed_job_id, outcome.error)
    return outcome


async def run_cycle(client: TickClient, *, drain: bool, max_ticks: int) -> list[TickOutcome]:
    """Run one tick, or keep ticking while jobs are being processed when draining."""
    outcomes = [await run_tick(client)]
    while drain and not outcomes[-1].idle and len(outcomes) < max(1, max_ticks):
        outcomes.append(await run_tick(client))
    return outcomes
