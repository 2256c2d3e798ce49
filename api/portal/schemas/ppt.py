from typing import Any, Literal

from pydantic import AliasChoices, BaseModel, Field

JobStatus = Literal["pending", "running", "done", "failed"]


class GenerateRequest(BaseModel):
    data_json: dict[str, Any] = Field(validation_alias=AliasChoices("data_json", "dataJson", "data"))


class GenerateOut(BaseModel):
    job_id: str


class JobStatusOut(BaseModel):
    status: JobStatus
    progress: int
    error: str | None = None
    download_url: str | None = None
    debug: dict[str, Any] = Field(default_factory=dict)


class WorkerTickOut(BaseModel):
    ok: bool
    processed_job_id: str | None = None
    generation_id: str | None = None
    error: str | None = None
