from __future__ import annotations

import logging
import re
from datetime import datetime, timezone
from typing import Any, Callable

from opentelemetry import trace

from portal.core.config import Settings
from portal.services.gamma import (
    GammaClient,
    GenerationProviderError,
    extract_export_url,
    extract_gamma_url,
    extract_generation_id,
    extract_provider_error,
    make_gamma_meta,
    map_provider_progress,
    normalize_provider_status,
)
from portal.services.gamma_payload import build_generation_payload
from portal.services.jobs import JobStore
from portal.services.repository import RepositoryError
from portal.services.storage import StorageError, SupabaseStorage, job_file_path

logger = logging.getLogger(__name__)
tracer = trace.get_tracer(__name__)

TRANSIENT_ERROR_RE = re.compile(r"(aborted|timed out|timeout|fetch failed|network|econn|enotfound|socket)", re.IGNORECASE)
COMPLETED_PROGRESS_FLOOR = 90
RETRY_PROGRESS_FLOOR = 22
POLL_FAILURE_PROGRESS_FLOOR = 20
SIGNED_URL_TTL_SECONDS = 30 * 60


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def is_transient_error(message: str) -> bool:
    return bool(TRANSIENT_ERROR_RE.search(message or ""))


class StatusSynchronizer:
    """Reconciles provider state into running jobs, one client poll at a time."""

    def __init__(
        self,
        store: JobStore,
        provider: GammaClient,
        storage: SupabaseStorage,
        settings: Settings,
        *,
        now: Callable[[], datetime] = _utcnow,
    ) -> None:
        self.store = store
        self.provider = provider
        self.storage = storage
        self.settings = settings
        self.now = now

    @property
    def stale_without_generation_seconds(self) -> int:
        return max(60, self.settings.ppt_running_no_generation_timeout_seconds)

    @property
    def pending_retry_after_seconds(self) -> int:
        return max(90, self.settings.gamma_pending_retry_after_seconds)

    @property
    def pending_max_retry(self) -> int:
        return max(0, min(2, self.settings.gamma_pending_max_retry))

    async def get_job_status(self, job_id: str) -> dict[str, Any]:
        job = await self.store.get_job(job_id)

        if job["status"] == "running":
            try:
                job = await self.sync_running_job(job)
            except RepositoryError:
                raise
            except Exception as exc:
                job = await self.record_poll_failure(job, str(exc) or exc.__class__.__name__)

        download_url = None
        if job["status"] == "done" and job.get("file_path"):
            try:
                download_url = await self.storage.create_signed_url(
                    job["file_path"],
                    expires_in=SIGNED_URL_TTL_SECONDS,
                )
            except StorageError as exc:
                # The next poll asks again; the job itself stays done.
                logger.warning("ppt signed url failed job_id=%s error=%s", job_id, exc)

        return {
            "status": job["status"],
            "progress": job["progress"],
            "error": job.get("error") or None,
            "download_url": download_url,
            "debug": build_debug_info(job),
        }

    async def sync_running_job(self, job: dict[str, Any]) -> dict[str, Any]:
        job_id = job["id"]
        base_meta = dict(job.get("meta") or {})
        current_gamma = _gamma_meta(job)
        generation_id = str(current_gamma.get("generation_id") or "").strip()
        now = self.now()

        if not generation_id:
            since = _as_datetime(job.get("updated_at")) or _as_datetime(job.get("created_at"))
            stale_seconds = _seconds_between(since, now)
            if stale_seconds >= self.stale_without_generation_seconds:
                return await self.store.fail_job(
                    job_id,
                    f"Job stuck before generation id assignment for {stale_seconds}s. Please retry.",
                )
            return job

        with tracer.start_as_current_span("ppt.sync.get_generation") as span:
            span.set_attribute("ppt.job_id", job_id)
            raw = await self.provider.get_generation(
                generation_id,
                timeout_seconds=max(12.0, self.settings.gamma_status_timeout_seconds),
                retries=1,
            )
        provider_status = normalize_provider_status(raw)
        export_url = extract_export_url(raw)
        provider_error = extract_provider_error(raw)

        pending_since_text = str(current_gamma.get("queue_pending_since") or "").strip() or now.isoformat()
        pending_since = _as_datetime(pending_since_text)
        pending_seconds = _seconds_between(pending_since, now)
        retry_count = max(0, _as_int(current_gamma.get("queue_retry_count")))

        gamma = make_gamma_meta(
            generation_id=generation_id,
            provider_status=provider_status,
            gamma_url=extract_gamma_url(raw),
            export_url=export_url,
            error=provider_error,
            raw=raw,
        )
        gamma["queue_pending_since"] = pending_since_text
        gamma["queue_pending_seconds"] = pending_seconds
        gamma["queue_retry_count"] = retry_count
        next_meta = {**base_meta, "gamma": gamma}

        if provider_status == "failed":
            return await self.store.fail_job(job_id, provider_error or "Gamma generation failed")

        if provider_status == "completed":
            if not export_url:
                await self.store.update_running_job(job_id, meta=next_meta)
                return await self.store.fail_job(job_id, "Gamma completed but pptx url missing")
            return await self._finish(job, export_url, next_meta)

        if (
            provider_status == "pending"
            and pending_seconds >= self.pending_retry_after_seconds
            and retry_count < self.pending_max_retry
        ):
            # Concurrent polls of the same job race here; only one may resubmit.
            reserved = await self.store.update_unchanged_job(
                job,
                meta={
                    **base_meta,
                    "gamma": {
                        **current_gamma,
                        "queue_retry_count": retry_count + 1,
                        "queue_pending_since": now.isoformat(),
                    },
                },
            )
            if reserved is None:
                return await self.store.get_job(job_id)
            job = reserved
            try:
                return await self._resubmit(job, generation_id, retry_count, base_meta)
            except GenerationProviderError as exc:
                logger.warning("ppt pending resubmission failed job_id=%s error=%s", job_id, exc)
                gamma["retry_error"] = str(exc) or "retry failed"

        elapsed = _seconds_between(_as_datetime(job.get("created_at")), now)
        updated = await self.store.update_unchanged_job(
            job,
            progress=map_provider_progress(provider_status, job.get("progress") or 0, elapsed),
            meta=next_meta,
        )
        return updated if updated is not None else await self.store.get_job(job_id)

    async def record_poll_failure(self, job: dict[str, Any], message: str) -> dict[str, Any]:
        gamma = {**_gamma_meta(job)}
        failures = max(0, _as_int(gamma.get("poll_failures"))) + 1
        if is_transient_error(message):
            budget = max(6, self.settings.gamma_max_transient_poll_failures)
        else:
            budget = max(2, self.settings.gamma_max_poll_failures)

        gamma["poll_failures"] = failures
        gamma["poll_error"] = message
        gamma["poll_error_at"] = self.now().isoformat()
        next_meta = {**(job.get("meta") or {}), "gamma": gamma}
        logger.warning(
            "ppt status poll failed job_id=%s failures=%s budget=%s error=%s",
            job["id"],
            failures,
            budget,
            message,
        )

        if failures >= budget:
            await self.store.update_running_job(job["id"], meta=next_meta)
            return await self.store.fail_job(job["id"], f"Gamma polling failed repeatedly: {message}")

        return await self.store.update_running_job(
            job["id"],
            meta=next_meta,
            progress=max(POLL_FAILURE_PROGRESS_FLOOR, job.get("progress") or 0),
        )

    async def _finish(self, job: dict[str, Any], export_url: str, meta: dict[str, Any]) -> dict[str, Any]:
        job_id = job["id"]
        await self.store.update_running_job(
            job_id,
            progress=max(COMPLETED_PROGRESS_FLOOR, job.get("progress") or 0),
            meta=meta,
        )

        with tracer.start_as_current_span("ppt.sync.store_export") as span:
            span.set_attribute("ppt.job_id", job_id)
            content = await self.provider.download_export(
                export_url,
                timeout_seconds=max(10.0, self.settings.gamma_download_timeout_seconds),
            )
            file_path = await self.storage.upload(job_file_path(job_id), content)

        return await self.store.complete_job(job_id, file_path=file_path, meta=meta)

    async def _resubmit(
        self,
        job: dict[str, Any],
        previous_generation_id: str,
        retry_count: int,
        base_meta: dict[str, Any],
    ) -> dict[str, Any]:
        request, meta = build_generation_payload(
            job.get("prompt") or "",
            job.get("input_json") or {},
            settings=self.settings,
            compact_mode=True,
        )
        response = await self.provider.create_generation(
            request,
            timeout_seconds=max(12.0, self.settings.gamma_create_timeout_seconds),
            retries=1,
        )
        generation_id = extract_generation_id(response)
        if not generation_id:
            raise GenerationProviderError("Retry create succeeded but generation id is missing")

        gamma = make_gamma_meta(
            generation_id=generation_id,
            provider_status=normalize_provider_status(response),
            gamma_url=extract_gamma_url(response),
            raw=response,
        )
        gamma["queue_retry_count"] = retry_count + 1
        gamma["queue_pending_since"] = self.now().isoformat()
        gamma["queue_pending_seconds"] = 0
        gamma["previous_generation_id"] = previous_generation_id
        gamma["retry_reason"] = f"pending>{self.pending_retry_after_seconds}s"

        logger.info(
            "ppt generation resubmitted job_id=%s previous=%s generation_id=%s",
            job["id"],
            previous_generation_id,
            generation_id,
        )
        return await self.store.update_running_job(
            job["id"],
            progress=max(RETRY_PROGRESS_FLOOR, job.get("progress") or 0),
            meta={**base_meta, **meta, "gamma": gamma},
        )


def build_debug_info(job: dict[str, Any]) -> dict[str, Any]:
    meta = job.get("meta") or {}
    return {
        "fixed_outline": _as_list(meta.get("fixed_outline")),
        "final_outline": _as_list(meta.get("final_outline")),
        "skipped_sections": _as_list(meta.get("skipped_sections")),
        "image_assignments": _as_list(meta.get("image_assignments")),
        "gamma": meta.get("gamma") or None,
    }


def _gamma_meta(job: dict[str, Any]) -> dict[str, Any]:
    gamma = (job.get("meta") or {}).get("gamma")
    return gamma if isinstance(gamma, dict) else {}


def _as_list(value: Any) -> list[Any]:
    return value if isinstance(value, list) else []


def _as_int(value: Any) -> int:
    try:
        return int(value or 0)
    except (TypeError, ValueError):
        return 0


def _as_datetime(value: Any) -> datetime | None:
    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, str) and value.strip():
        try:
            parsed = datetime.fromisoformat(value.strip().replace("Z", "+00:00"))
        except ValueError:
            return None
    else:
        return None
    return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)


def _seconds_between(start: datetime | None, end: datetime) -> int:
    if start is None:
        return 0
    return max(0, int((end - start).total_seconds()))
