"""Batch upload request and response schemas."""
import re
from datetime import datetime
from typing import Any, Optional
from urllib.parse import urlparse

from pydantic import BaseModel, Field, field_validator

from app.config import get_settings

_CONTROL_CHARS = re.compile(r"[\r\n\t]")
_JSON_UNSAFE_CHARS = re.compile(r'["\\\b\f]')
_WHITESPACE = re.compile(r"\s+")


class ResourceItemIn(BaseModel):
    """One raw resource as submitted: a name and a link."""

    name: str
    link: str

    @field_validator("name")
    @classmethod
    def clean_name(cls, value: str) -> str:
        value = _CONTROL_CHARS.sub(" ", value)
        value = _JSON_UNSAFE_CHARS.sub("", value)
        value = _WHITESPACE.sub(" ", value).strip()
        if not value:
            raise ValueError("resource name must not be empty")
        return value[: get_settings().max_resource_name_length]

    @field_validator("link")
    @classmethod
    def check_link(cls, value: str) -> str:
        value = value.strip()
        if not value:
            raise ValueError("resource link must not be empty")
        parsed = urlparse(value)
        if parsed.scheme not in ("http", "https") or not parsed.netloc:
            raise ValueError("resource link must be an absolute http(s) URL")
        return value


class BatchUploadRequest(BaseModel):
    """Request to submit a batch upload."""

    total_resources: Optional[int] = None
    resources: list[ResourceItemIn]


class BatchUploadResponse(BaseModel):
    """Response after the batch upload task has been queued."""

    task_uuid: str
    total_count: int
    total_batches: int
    status: str
    message: str = "Batch upload accepted, processing in background"


class ProcessSubtaskRequest(BaseModel):
    subtask_uuid: str = Field(..., min_length=1)


class ProcessSubtaskResponse(BaseModel):
    message: str
    batch_index: int
    success_count: int
    failed_count: int
    skipped: bool = False
    processing_time: float


class TaskProgressResponse(BaseModel):
    """Progress of one batch task, live from Redis or from the batch log."""

    task_uuid: str
    title: Optional[str] = None
    status: str
    total_resources: int
    total_batches: Optional[int] = None
    completed_batches: Optional[int] = None
    remaining_batches: Optional[int] = None
    success_count: int
    failed_count: int
    progress_percentage: int
    last_updated: Optional[datetime] = None
    source: str


class ActiveTask(BaseModel):
    uuid: str
    title: str
    status: str
    total_resources: int
    total_batches: int
    completed_batches: int
    success_count: int
    failed_count: int
    progress_percentage: int
    created_at: datetime
    updated_at: datetime


class ActiveTasksResponse(BaseModel):
    tasks: list[ActiveTask]
    total: int


class RecoverRequest(BaseModel):
    task_uuid: Optional[str] = Field(None, pattern=r"^[A-Za-z0-9_-]{20,50}$")


class RecoverResponse(BaseModel):
    message: str
    task_uuid: Optional[str] = None
    recovered: list[str] = Field(default_factory=list)


class BatchLogResponse(BaseModel):
    """Batch log record."""

    uuid: str
    user_id: str
    type: str
    title: str
    status: str
    total_count: int
    success_count: int
    failed_count: int
    details: Optional[dict[str, Any]] = None
    error_message: Optional[str] = None
    created_at: datetime
    updated_at: datetime
    completed_at: Optional[datetime] = None

    class Config:
        from_attributes = True


class BatchLogListResponse(BaseModel):
    """Paginated batch log list."""

    logs: list[BatchLogResponse]
    total: int
    page: int
    limit: int
    pages: int
