from __future__ import annotations

import logging
from typing import Any

from portal.services.repository import PostgresRepository

logger = logging.getLogger(__name__)

TERMINAL_JOB_STATUSES = {"done", "failed"}
ACTIVE_JOB_STATUSES = ["pending", "running"]
CLAIM_PROGRESS = 5


class JobStore:
    """Job lifecycle transitions, each one a single conditional update."""

    def __init__(self, repository: PostgresRepository) -> None:
        self.repository = repository

    async def create_job(self, prompt: str, input_json: dict[str, Any]) -> dict[str, Any]:
        job = await self.repository.insert_job(prompt=prompt, input_json=input_json)
        logger.info("ppt job queued job_id=%s", job["id"])
        return job

    async def get_job(self, job_id: str) -> dict[str, Any]:
        return await self.repository.get_job(job_id)

    async def claim_next_pending_job(self) -> dict[str, Any] | None:
        pending = await self.repository.list_pending_jobs(limit=1)
        if not pending:
            return None

        candidate = pending[0]
        claimed = await self.repository.compare_and_swap(
            "ppt_jobs",
            row_id=candidate["id"],
            expected={"status": "pending"},
            changes={"status": "running", "progress": CLAIM_PROGRESS},
        )
        if claimed is None:
            # Another worker won; the next tick picks up whatever is left.
            logger.info("ppt job claim lost job_id=%s", candidate["id"])
            return None

        logger.info("ppt job claimed job_id=%s", claimed["id"])
        return claimed

    async def update_running_job(self, job_id: str, **changes: Any) -> dict[str, Any]:
        updated = await self.repository.compare_and_swap(
            "ppt_jobs",
            row_id=job_id,
            expected={"status": "running"},
            changes=changes,
        )
        if updated is None:
            return await self.repository.get_job(job_id)
        return updated

    async def update_unchanged_job(self, job: dict[str, Any], **changes: Any) -> dict[str, Any] | None:
        """Write ``changes`` only if the row is still the version ``job`` was read at."""
        updated = await self.repository.compare_and_swap(
            "ppt_jobs",
            row_id=job["id"],
            expected={"status": "running", "updated_at": job["updated_at"]},
            changes=changes,
        )
        if updated is None:
            logger.info("ppt job changed underneath job_id=%s", job["id"])
        return updated

    async def fail_job(self, job_id: str, message: str) -> dict[str, Any]:
        failed = await self.repository.compare_and_swap(
            "ppt_jobs",
            row_id=job_id,
            expected={"status": ACTIVE_JOB_STATUSES},
            changes={"status": "failed", "progress": 100, "error": message},
        )
        if failed is None:
            return await self.repository.get_job(job_id)

        logger.warning("ppt job failed job_id=%s error=%s", job_id, message)
        return failed

    async def complete_job(self, job_id: str, *, file_path: str, meta: dict[str, Any]) -> dict[str, Any]:
        done = await self.repository.compare_and_swap(
            "ppt_jobs",
            row_id=job_id,
            expected={"status": "running"},
            changes={"status": "done", "progress": 100, "file_path": file_path, "error": None, "meta": meta},
        )
        if done is None:
            return await self.repository.get_job(job_id)

        logger.info("ppt job done job_id=%s file_path=%s", job_id, file_path)
        return done
