from __future__ import annotations

import asyncio
from datetime import datetime, timedelta, timezone
from typing import Any

import httpx

from portal.core.config import Settings
from portal.services.gamma import GenerationProviderError
from portal.services.jobs import JobStore
from portal.services.ppt_sync import StatusSynchronizer, build_debug_info, is_transient_error
from portal.services.storage import StorageError, SupabaseStorage

NOW = datetime(2025, 3, 1, 10, 0, tzinfo=timezone.utc)
FORM = {"Company English Name / 公司英文名": "Acme Interiors Ltd", "awards": ["Gold Prize 2019"]}


def _synchronizer(fake_repo, fake_provider, fake_storage, **settings: Any) -> StatusSynchronizer:
    return StatusSynchronizer(
        JobStore(fake_repo),
        fake_provider,
        fake_storage,
        Settings(**settings),
        now=lambda: NOW,
    )


def _running_job(
    fake_repo,
    *,
    gamma: dict[str, Any] | None = None,
    progress: int = 15,
    age_seconds: int = 60,
    status: str = "running",
) -> str:
    job = asyncio.run(fake_repo.insert_job(prompt="", input_json=FORM))
    row = fake_repo.jobs[job["id"]]
    row.update(
        status=status,
        progress=progress,
        meta={"gamma": gamma} if gamma is not None else {},
        created_at=NOW - timedelta(seconds=age_seconds),
        updated_at=NOW - timedelta(seconds=age_seconds),
    )
    return job["id"]


def _gamma(generation_id: str = "gen-1", **extra: Any) -> dict[str, Any]:
    return {
        "generation_id": generation_id,
        "queue_pending_since": (NOW - timedelta(seconds=30)).isoformat(),
        "queue_retry_count": 0,
        **extra,
    }


def test_job_without_generation_id_fails_once_stale(fake_repo, fake_provider, fake_storage) -> None:
    job_id = _running_job(fake_repo, age_seconds=130)

    result = asyncio.run(_synchronizer(fake_repo, fake_provider, fake_storage).get_job_status(job_id))

    assert result["status"] == "failed"
    assert result["error"] == "Job stuck before generation id assignment for 130s. Please retry."
    assert fake_provider.polled == []


def test_job_without_generation_id_waits_until_threshold(fake_repo, fake_provider, fake_storage) -> None:
    job_id = _running_job(fake_repo, age_seconds=30, progress=10)

    result = asyncio.run(_synchronizer(fake_repo, fake_provider, fake_storage).get_job_status(job_id))

    assert result["status"] == "running"
    assert result["progress"] == 10


def test_provider_failure_fails_the_job(fake_repo, fake_provider, fake_storage) -> None:
    job_id = _running_job(fake_repo, gamma=_gamma())
    fake_provider.status_responses.append({"status": "error", "error": {"message": "content policy violation"}})

    result = asyncio.run(_synchronizer(fake_repo, fake_provider, fake_storage).get_job_status(job_id))

    assert result["status"] == "failed"
    assert result["progress"] == 100
    assert result["error"] == "content policy violation"


def test_completed_without_export_url_fails_the_job(fake_repo, fake_provider, fake_storage) -> None:
    job_id = _running_job(fake_repo, gamma=_gamma())
    fake_provider.status_responses.append({"status": "completed"})

    result = asyncio.run(_synchronizer(fake_repo, fake_provider, fake_storage).get_job_status(job_id))

    assert result["status"] == "failed"
    assert result["error"] == "Gamma completed but pptx url missing"
    assert fake_repo.jobs[job_id]["meta"]["gamma"]["provider_status"] == "completed"


def test_completed_generation_is_stored_and_signed(fake_repo, fake_provider, fake_storage) -> None:
    job_id = _running_job(fake_repo, gamma=_gamma())
    fake_provider.status_responses.append(
        {"status": "completed", "exportUrl": "https://cdn.test/exports/gen-1.pptx", "gammaUrl": "https://gamma.test/d/1"}
    )

    result = asyncio.run(_synchronizer(fake_repo, fake_provider, fake_storage).get_job_status(job_id))

    assert result["status"] == "done"
    assert result["progress"] == 100
    assert result["error"] is None
    assert result["download_url"] == f"https://storage.test/signed/ppt/{job_id}.pptx?expires_in=1800"
    assert fake_provider.downloaded == ["https://cdn.test/exports/gen-1.pptx"]
    assert fake_storage.objects == {f"ppt/{job_id}.pptx": fake_provider.export_content}
    stored = fake_repo.jobs[job_id]
    assert stored["file_path"] == f"ppt/{job_id}.pptx"
    assert stored["meta"]["gamma"]["export_url"] == "https://cdn.test/exports/gen-1.pptx"
    assert result["debug"]["gamma"]["gamma_url"] == "https://gamma.test/d/1"


def test_terminal_jobs_are_reported_without_polling(fake_repo, fake_provider, fake_storage) -> None:
    done_id = _running_job(fake_repo, status="done", progress=100)
    fake_repo.jobs[done_id]["file_path"] = f"ppt/{done_id}.pptx"
    failed_id = _running_job(fake_repo, status="failed", progress=100)
    fake_repo.jobs[failed_id]["error"] = "Gamma generation failed"
    synchronizer = _synchronizer(fake_repo, fake_provider, fake_storage)

    first = asyncio.run(synchronizer.get_job_status(done_id))
    second = asyncio.run(synchronizer.get_job_status(done_id))
    failed = asyncio.run(synchronizer.get_job_status(failed_id))

    assert first == second
    assert first["download_url"].endswith(f"ppt/{done_id}.pptx?expires_in=1800")
    assert failed["error"] == "Gamma generation failed"
    assert failed["download_url"] is None
    assert fake_provider.polled == []


def test_running_generation_advances_progress(fake_repo, fake_provider, fake_storage) -> None:
    job_id = _running_job(fake_repo, gamma=_gamma(), age_seconds=60)
    fake_provider.status_responses.append({"status": "processing"})

    result = asyncio.run(_synchronizer(fake_repo, fake_provider, fake_storage).get_job_status(job_id))

    assert result["status"] == "running"
    assert result["progress"] == 75
    gamma = fake_repo.jobs[job_id]["meta"]["gamma"]
    assert gamma["provider_status"] == "running"
    assert gamma["queue_pending_seconds"] == 30


def test_long_pending_generation_is_resubmitted_once_in_compact_mode(fake_repo, fake_provider, fake_storage) -> None:
    pending_since = (NOW - timedelta(seconds=200)).isoformat()
    job_id = _running_job(fake_repo, gamma=_gamma(queue_pending_since=pending_since))
    fake_provider.status_responses.append({"status": "queued"})
    fake_provider.create_responses.append({"generationId": "gen-2", "status": "queued"})

    result = asyncio.run(_synchronizer(fake_repo, fake_provider, fake_storage).get_job_status(job_id))

    assert result["status"] == "running"
    assert result["progress"] == 22
    gamma = fake_repo.jobs[job_id]["meta"]["gamma"]
    assert gamma["generation_id"] == "gen-2"
    assert gamma["previous_generation_id"] == "gen-1"
    assert gamma["queue_retry_count"] == 1
    assert gamma["queue_pending_since"] == NOW.isoformat()
    assert gamma["retry_reason"] == "pending>180s"
    assert fake_repo.jobs[job_id]["meta"]["compact_mode"] is True
    assert fake_provider.created[0]["textOptions"]["amount"] == "medium"


def test_pending_generation_is_not_resubmitted_past_retry_budget(fake_repo, fake_provider, fake_storage) -> None:
    pending_since = (NOW - timedelta(seconds=400)).isoformat()
    job_id = _running_job(fake_repo, gamma=_gamma(queue_pending_since=pending_since, queue_retry_count=1))
    fake_provider.status_responses.append({"status": "pending"})

    result = asyncio.run(_synchronizer(fake_repo, fake_provider, fake_storage).get_job_status(job_id))

    assert fake_provider.created == []
    assert result["progress"] == 42
    assert fake_repo.jobs[job_id]["meta"]["gamma"]["generation_id"] == "gen-1"


def test_failed_resubmission_keeps_polling_the_original_generation(fake_repo, fake_provider, fake_storage) -> None:
    pending_since = (NOW - timedelta(seconds=200)).isoformat()
    job_id = _running_job(fake_repo, gamma=_gamma(queue_pending_since=pending_since))
    fake_provider.status_responses.append({"status": "queued"})
    fake_provider.create_responses.append(GenerationProviderError("Gamma API POST /generations failed (429): slow down"))

    result = asyncio.run(_synchronizer(fake_repo, fake_provider, fake_storage).get_job_status(job_id))

    assert result["status"] == "running"
    gamma = fake_repo.jobs[job_id]["meta"]["gamma"]
    assert gamma["generation_id"] == "gen-1"
    assert gamma["retry_error"] == "Gamma API POST /generations failed (429): slow down"


def test_transient_poll_failures_are_tolerated_until_budget(fake_repo, fake_provider, fake_storage) -> None:
    message = "Gamma API GET /generations/gen-1 timed out after 30s (base=https://gamma.test/v1.0)"
    first_id = _running_job(fake_repo, gamma=_gamma())
    last_id = _running_job(fake_repo, gamma=_gamma(poll_failures=9))
    fake_provider.status_responses.extend([GenerationProviderError(message), GenerationProviderError(message)])
    synchronizer = _synchronizer(fake_repo, fake_provider, fake_storage)

    tolerated = asyncio.run(synchronizer.get_job_status(first_id))
    exhausted = asyncio.run(synchronizer.get_job_status(last_id))

    assert tolerated["status"] == "running"
    assert tolerated["progress"] == 20
    assert fake_repo.jobs[first_id]["meta"]["gamma"]["poll_failures"] == 1
    assert exhausted["status"] == "failed"
    assert exhausted["error"] == f"Gamma polling failed repeatedly: {message}"
    assert fake_repo.jobs[last_id]["meta"]["gamma"]["poll_failures"] == 10


def test_non_transient_poll_failures_use_the_smaller_budget(fake_repo, fake_provider, fake_storage) -> None:
    message = "Gamma API GET /generations/gen-1 failed (500): internal"
    job_id = _running_job(fake_repo, gamma=_gamma(poll_failures=2))
    fake_provider.status_responses.append(GenerationProviderError(message))

    result = asyncio.run(_synchronizer(fake_repo, fake_provider, fake_storage).get_job_status(job_id))

    assert result["status"] == "failed"
    assert result["error"] == f"Gamma polling failed repeatedly: {message}"


def test_threshold_settings_are_clamped(fake_repo, fake_provider, fake_storage) -> None:
    synchronizer = _synchronizer(
        fake_repo,
        fake_provider,
        fake_storage,
        ppt_running_no_generation_timeout_seconds=5,
        gamma_pending_retry_after_seconds=10,
        gamma_pending_max_retry=9,
    )

    assert synchronizer.stale_without_generation_seconds == 60
    assert synchronizer.pending_retry_after_seconds == 90
    assert synchronizer.pending_max_retry == 2


def test_transient_error_classification() -> None:
    assert is_transient_error("fetch failed")
    assert is_transient_error("Gamma API GET /x network error: ConnectError('ECONNRESET')")
    assert not is_transient_error("Gamma API GET /x failed (401): unauthorized")


def test_debug_info_exposes_outline_and_gamma_meta() -> None:
    job = {
        "meta": {
            "fixed_outline": ["Company Overview"],
            "final_outline": ["Acme", "Agenda", "Company Overview"],
            "skipped_sections": "not-a-list",
            "gamma": {"generation_id": "gen-1"},
        }
    }

    assert build_debug_info(job) == {
        "fixed_outline": ["Company Overview"],
        "final_outline": ["Acme", "Agenda", "Company Overview"],
        "skipped_sections": [],
        "image_assignments": [],
        "gamma": {"generation_id": "gen-1"},
    }
    assert build_debug_info({"meta": {}})["gamma"] is None


def test_signing_failure_still_reports_the_done_job(fake_repo, fake_provider, fake_storage) -> None:
    job_id = _running_job(fake_repo, status="done", progress=100)
    fake_repo.jobs[job_id]["file_path"] = f"ppt/{job_id}.pptx"

    async def broken_sign(path: str, *, expires_in: int = 1800) -> str:
        raise StorageError("Failed to create signed URL (500): boom")

    fake_storage.create_signed_url = broken_sign

    result = asyncio.run(_synchronizer(fake_repo, fake_provider, fake_storage).get_job_status(job_id))

    assert result["status"] == "done"
    assert result["download_url"] is None


def test_concurrent_polls_resubmit_a_pending_generation_once(fake_repo, fake_provider, fake_storage) -> None:
    pending_since = (NOW - timedelta(seconds=400)).isoformat()
    job_id = _running_job(fake_repo, gamma=_gamma("gen-0", queue_pending_since=pending_since))
    fake_provider.status_responses.extend([{"status": "queued"}, {"status": "queued"}])
    poll = fake_provider.get_generation
    create = fake_provider.create_generation

    async def slow_poll(generation_id: str, **kwargs: Any) -> Any:
        await asyncio.sleep(0)
        return await poll(generation_id, **kwargs)

    async def slow_create(payload: dict[str, Any], **kwargs: Any) -> Any:
        await asyncio.sleep(0)
        return await create(payload, **kwargs)

    fake_provider.get_generation = slow_poll
    fake_provider.create_generation = slow_create
    synchronizer = _synchronizer(fake_repo, fake_provider, fake_storage)

    async def poll_twice() -> list[dict[str, Any]]:
        return await asyncio.gather(synchronizer.get_job_status(job_id), synchronizer.get_job_status(job_id))

    results = asyncio.run(poll_twice())

    assert [result["status"] for result in results] == ["running", "running"]
    assert len(fake_provider.created) == 1
    gamma = fake_repo.jobs[job_id]["meta"]["gamma"]
    assert gamma["generation_id"] == "gen-1"
    assert gamma["previous_generation_id"] == "gen-0"
    assert gamma["queue_retry_count"] == 1


def test_unexpected_sync_errors_count_as_poll_failures(fake_repo, fake_provider, fake_storage) -> None:
    job_id = _running_job(fake_repo, gamma=_gamma())
    fake_provider.status_responses.append(ValueError("Expecting value: line 1 column 1 (char 0)"))

    result = asyncio.run(_synchronizer(fake_repo, fake_provider, fake_storage).get_job_status(job_id))

    assert result["status"] == "running"
    assert result["progress"] == 20
    gamma = fake_repo.jobs[job_id]["meta"]["gamma"]
    assert gamma["poll_failures"] == 1
    assert gamma["poll_error"] == "Expecting value: line 1 column 1 (char 0)"


def test_non_json_signing_response_still_reports_the_done_job(fake_repo, fake_provider) -> None:
    job_id = _running_job(fake_repo, status="done", progress=100)
    fake_repo.jobs[job_id]["file_path"] = f"ppt/{job_id}.pptx"
    storage = SupabaseStorage(
        "https://example.supabase.co",
        "service-role",
        transport=httpx.MockTransport(lambda request: httpx.Response(200, text="<html>gateway</html>")),
    )

    result = asyncio.run(_synchronizer(fake_repo, fake_provider, storage).get_job_status(job_id))

    assert result["status"] == "done"
    assert result["download_url"] is None
