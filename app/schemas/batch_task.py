"""Records kept in Redis for batch upload tasks."""
from datetime import datetime, timezone
from enum import Enum
from typing import Optional

from pydantic import BaseModel, Field


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class TaskStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    PARTIAL_COMPLETED = "partial_completed"


TERMINAL_TASK_STATUSES = {
    TaskStatus.COMPLETED,
    TaskStatus.FAILED,
    TaskStatus.PARTIAL_COMPLETED,
}


class SubtaskStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


class ResourceItem(BaseModel):
    """Raw item submitted by the user."""

    name: str
    link: str


class SubtaskResult(BaseModel):
    """Outcome of one item of a subtask."""

    name: str
    success: bool
    uuid: Optional[str] = None
    error: Optional[str] = None


class MainTask(BaseModel):
    """One bulk upload request."""

    uuid: str
    user_id: str
    title: str
    status: TaskStatus = TaskStatus.PENDING
    total_resources: int
    total_batches: int
    completed_batches: int = 0
    success_count: int = 0
    failed_count: int = 0
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_TASK_STATUSES

    @property
    def progress_percentage(self) -> int:
        if self.total_batches <= 0:
            return 0
        return round(self.completed_batches / self.total_batches * 100)


class Subtask(BaseModel):
    """One batch of a main task."""

    uuid: str
    parent_task_uuid: str
    batch_index: int
    status: SubtaskStatus = SubtaskStatus.PENDING
    resources: list[ResourceItem] = Field(default_factory=list)
    success_count: int = 0
    failed_count: int = 0
    results: list[SubtaskResult] = Field(default_factory=list)
    error: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: Optional[datetime] = None
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None


class TaskProgress(BaseModel):
    """Fast-read progress snapshot, derived from the main task."""

    total_batches: int
    completed_batches: int
    success_count: int
    failed_count: int
    progress_percentage: int
    status: TaskStatus
    last_updated: datetime

    @classmethod
    def from_task(cls, task: MainTask) -> "TaskProgress":
        return cls(
            total_batches=task.total_batches,
            completed_batches=task.completed_batches,
            success_count=task.success_count,
            failed_count=task.failed_count,
            progress_percentage=task.progress_percentage,
            status=task.status,
            last_updated=task.updated_at,
        )


class EnrichedResource(BaseModel):
    """Resource fields filled in from a raw item."""

    title: str
    description: str
    link: str
    category_id: int
    tags: list[str] = Field(default_factory=list)


class SubtaskOutcome(BaseModel):
    """What happened when a subtask was handed to the processor."""

    subtask_uuid: str
    parent_task_uuid: str
    batch_index: int
    success_count: int = 0
    failed_count: int = 0
    skipped: bool = False
    task_completed: bool = False
    processing_time: float = 0.0
