"""Pydantic response models for the API."""

from __future__ import annotations

from typing import Literal

from pydantic import BaseModel, ConfigDict


class HealthResponse(BaseModel):
    """Response model for GET /health."""

    model_config = ConfigDict(extra="forbid")
    status: Literal["ok"]
    uptime_seconds: float
    started_at: str
    total_tasks: int
    tasks_by_status: dict[str, int]


class TaskSummary(BaseModel):
    """Task card shown in listings."""

    model_config = ConfigDict(extra="forbid")
    id: str
    ownerId: str  # noqa: N815
    title: str
    category: str
    description: str
    price: float
    deadline: str
    postedAt: str  # noqa: N815
    status: str
    bidsCount: int  # noqa: N815
    rating: float


class TaskListResponse(BaseModel):
    """Response model for GET /tasks."""

    model_config = ConfigDict(extra="forbid")
    tasks: list[TaskSummary]
    total: int
    page: int
    total_pages: int
