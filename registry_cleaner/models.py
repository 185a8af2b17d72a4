from datetime import datetime
from enum import StrEnum

from pydantic import BaseModel, ConfigDict


class DeletionStatus(StrEnum):
    DELETED = "deleted"
    SKIPPED = "skipped"
    FAILED = "failed"


class Repository(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: int
    path: str
    name: str = ""
    location: str = ""


class Tag(BaseModel):
    name: str
    path: str
    location: str = ""
    created_at: datetime | None = None


class DeletionOutcome(BaseModel):
    tag: str
    path: str
    status: DeletionStatus
    error: str | None = None


class RepositoryInfo(BaseModel):
    name: str
    tags_total_count: int
    tags_matched_count: int
    tags_to_delete: list[dict[str, datetime | None]]
    tags_to_delete_count: int
    attempted: int
    succeeded: int
    outcomes: list[DeletionOutcome]

    @property
    def tally(self) -> str:
        return f"{self.succeeded}/{self.attempted}"


class CleanupResult(BaseModel):
    project: str
    dry_run: bool
    started_at: datetime
    finished_at: datetime
    success: bool
    errors: list[str]
    repo_stats: list[RepositoryInfo]
