import logging

from fastapi import APIRouter, BackgroundTasks, Depends, HTTPException, Query, status
from fastapi.responses import JSONResponse

from portal.core.config import Settings, get_settings
from portal.core.security import get_cron_principal, get_human_principal
from portal.schemas.ppt import GenerateOut, GenerateRequest, JobStatusOut, WorkerTickOut
from portal.services.gamma import get_generation_provider
from portal.services.gamma_payload import FIXED_PROMPT
from portal.services.jobs import JobStore
from portal.services.ppt_sync import StatusSynchronizer
from portal.services.ppt_worker import JobWorker
from portal.services.repository import (
    RepositoryError,
    RepositoryNotFoundError,
    RepositoryUnavailableError,
    get_repository,
)
from portal.services.storage import get_storage

router = APIRouter()
logger = logging.getLogger(__name__)


def get_job_store(repository=Depends(get_repository)) -> JobStore:
    return JobStore(repository)


def get_job_worker(
    store: JobStore = Depends(get_job_store),
    provider=Depends(get_generation_provider),
    settings: Settings = Depends(get_settings),
) -> JobWorker:
    return JobWorker(store, provider, settings)


def get_status_synchronizer(
    store: JobStore = Depends(get_job_store),
    provider=Depends(get_generation_provider),
    storage=Depends(get_storage),
    settings: Settings = Depends(get_settings),
) -> StatusSynchronizer:
    return StatusSynchronizer(store, provider, storage, settings)


@router.post("/generate", response_model=GenerateOut)
async def enqueue_job(
    payload: GenerateRequest,
    background_tasks: BackgroundTasks,
    principal=Depends(get_human_principal),
    store: JobStore = Depends(get_job_store),
    worker: JobWorker = Depends(get_job_worker),
    settings: Settings = Depends(get_settings),
) -> GenerateOut:
    try:
        principal.require_scopes({"ppt:write"})
    except PermissionError as exc:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=str(exc)) from exc

    # The client prompt is never used; generation always runs on the fixed server prompt.
    try:
        job = await store.create_job(FIXED_PROMPT, payload.data_json)
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc

    if settings.environment == "dev" and settings.ppt_dev_kick_worker:
        background_tasks.add_task(worker.worker_tick)

    return GenerateOut(job_id=job["id"])


@router.get("/status", response_model=JobStatusOut)
async def get_job_status(
    principal=Depends(get_human_principal),
    synchronizer: StatusSynchronizer = Depends(get_status_synchronizer),
    job_id: str = Query(min_length=1),
) -> JobStatusOut:
    try:
        principal.require_scopes({"ppt:read"})
    except PermissionError as exc:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=str(exc)) from exc

    try:
        result = await synchronizer.get_job_status(job_id.strip())
    except RepositoryNotFoundError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc

    return JobStatusOut(**result)


@router.post("/worker", response_model=WorkerTickOut)
async def worker_tick(
    principal=Depends(get_cron_principal),
    worker: JobWorker = Depends(get_job_worker),
):
    try:
        principal.require_scopes({"ppt:work"})
    except PermissionError as exc:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=str(exc)) from exc

    try:
        result = await worker.worker_tick()
    except RepositoryError as exc:
        logger.exception("ppt worker tick failed")
        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content={"ok": False, "error": str(exc) or "Unexpected worker error"},
        )

    return WorkerTickOut(
        ok=result.ok,
        processed_job_id=result.processed_job_id,
        generation_id=result.generation_id,
        error=result.error,
    )
