from datetime import datetime
from uuid import UUID

from pydantic import Field

from suite_runner.models import ModelOverride, RunStatus, RunSummary, WireModel


class RunRequest(WireModel):
    iterations: int = Field(default=1, ge=1, le=100)
    tags: list[str] = Field(default_factory=list)
    note: str | None = None
    model_override: ModelOverride | None = None
    max_concurrency: int | None = Field(default=None, ge=1)


class SuiteCreatedResponse(WireModel):
    id: UUID
    name: str
    test_case_count: int


class RunSummaryResponse(WireModel):
    id: UUID
    status: RunStatus
    run_at: datetime
    note: str | None
    iterations: int
    summary: RunSummary


class NoteUpdate(WireModel):
    note: str | None = None
