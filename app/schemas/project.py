"""Project lifecycle schemas."""
from datetime import datetime

from pydantic import BaseModel, ConfigDict, Field

from app.models.project import ProjectStatus


class ProjectCreate(BaseModel):
    title: str = Field(min_length=1, max_length=200)
    description: str | None = None
    category: str | None = Field(default=None, max_length=100)
    location: str | None = Field(default=None, max_length=200)
    is_urgent: bool = False
    publish: bool = True
    # Only honoured for admin keys; other callers always create for themselves.
    client_id: int | None = None


class ProjectRead(BaseModel):
    id: int
    client_id: int
    title: str
    description: str | None
    category: str | None
    location: str | None
    is_urgent: bool
    status: ProjectStatus
    expires_at: datetime | None
    completion_requested_by: int | None
    completion_requested_at: datetime | None
    client_confirmed_at: datetime | None
    closed_at: datetime | None
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)


class ProjectCancel(BaseModel):
    reason: str | None = Field(default=None, max_length=500)


class DisputeCreate(BaseModel):
    reason: str = Field(min_length=1, max_length=2000)
