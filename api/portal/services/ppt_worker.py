from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Callable

from opentelemetry import trace

from portal.core.config import Settings
from portal.services.gamma import (
    GammaClient,
    GenerationProviderError,
    GenerationProviderTimeoutError,
    extract_gamma_url,
    extract_generation_id,
    make_gamma_meta,
    normalize_provider_status,
    snapshot_payload,
)
from portal.services.gamma_payload import build_generation_payload, redacted_request
from portal.services.jobs import JobStore

logger = logging.getLogger(__name__)
tracer = trace.get_tracer(__name__)

PREFLIGHT_PROGRESS = 10
SUBMITTED_PROGRESS = 15
CREATE_GUARD_SLACK_SECONDS = 2.0


class WorkerTimeoutError(Exception):
    """Raised when a job exceeds the per-invocation time budget."""


@dataclass(slots=True)
class WorkerResult:
    ok: bool
    processed_job_id: str | None = None
    generation_id: str | None = None
    error: str | None = None


class JobWorker:
    def __init__(
        self,
        store: JobStore,
        provider: GammaClient,
        settings: Settings,
        *,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.store = store
        self.provider = provider
        self.settings = settings
        self.clock = clock

    async def worker_tick(self) -> WorkerResult:
        with tracer.start_as_current_span("ppt.worker.tick"):
            job = await self.store.claim_next_pending_job()
            if job is None:
                return WorkerResult(ok=True)
            return await self.process_one_job(job)

    async def process_one_job(self, job: dict[str, Any], *, hard_timeout_seconds: float | None = None) -> WorkerResult:
        """Register a claimed job with the provider; polling finishes it later."""
        budget = hard_timeout_seconds if hard_timeout_seconds is not None else self.settings.worker_hard_timeout_seconds
        started_at = self.clock()
        job_id = job["id"]

        def ensure_within_budget() -> None:
            if self.clock() - started_at > budget:
                raise WorkerTimeoutError(f"Worker timeout reached ({budget:.0f}s)")

        with tracer.start_as_current_span("ppt.worker.process_job") as span:
            span.set_attribute("ppt.job_id", job_id)
            try:
                ensure_within_budget()
                await self.store.update_running_job(
                    job_id,
                    progress=PREFLIGHT_PROGRESS,
                    error=None,
                    meta={
                        **(job.get("meta") or {}),
                        "provider": "gamma",
                        "gamma": make_gamma_meta(provider_status="creating"),
                    },
                )

                request, meta = build_generation_payload(
                    job.get("prompt") or "",
                    job.get("input_json") or {},
                    settings=self.settings,
                )

                ensure_within_budget()
                create_timeout = max(12.0, self.settings.gamma_create_timeout_seconds)
                with tracer.start_as_current_span("ppt.worker.create_generation"):
                    try:
                        response = await asyncio.wait_for(
                            self.provider.create_generation(request, timeout_seconds=create_timeout, retries=1),
                            timeout=create_timeout + CREATE_GUARD_SLACK_SECONDS,
                        )
                    except asyncio.TimeoutError as exc:
                        raise GenerationProviderTimeoutError("Gamma create stage timed out") from exc

                generation_id = extract_generation_id(response)
                if not generation_id:
                    raise GenerationProviderError("Gamma create succeeded but generation id is missing in response")

                gamma_meta = make_gamma_meta(
                    generation_id=generation_id,
                    provider_status=normalize_provider_status(response),
                    gamma_url=extract_gamma_url(response),
                    raw=response,
                )
                gamma_meta["queue_pending_since"] = datetime.now(timezone.utc).isoformat()
                gamma_meta["queue_retry_count"] = 0

                ensure_within_budget()
                await self.store.update_running_job(
                    job_id,
                    progress=SUBMITTED_PROGRESS,
                    error=None,
                    meta={**meta, "gamma": gamma_meta, "gamma_request": snapshot_payload(redacted_request(request))},
                )
            except Exception as exc:
                message = str(exc) or exc.__class__.__name__
                if isinstance(exc, (WorkerTimeoutError, GenerationProviderTimeoutError)):
                    logger.warning("ppt worker timed out job_id=%s error=%s", job_id, message)
                else:
                    logger.exception("ppt worker failed job_id=%s", job_id)
                span.set_attribute("ppt.error", message)
                await self.store.fail_job(job_id, message)
                return WorkerResult(ok=False, processed_job_id=job_id, error=message)

            span.set_attribute("ppt.generation_id", generation_id)
            logger.info("ppt generation registered job_id=%s generation_id=%s", job_id, generation_id)
            return WorkerResult(ok=True, processed_job_id=job_id, generation_id=generation_id)
