"""Task lifecycle endpoints."""

from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Request, Response
from fastapi.responses import JSONResponse
from sse_starlette.sse import EventSourceResponse

from task_market_service.core.exceptions import ServiceError
from task_market_service.routers.validation import (
    parse_json_body,
    parse_optional_number,
    require_principal,
    require_task_manager,
    resolve_principal,
)
from task_market_service.services.task_watcher import TaskWatcher

router = APIRouter()


# ---------------------------------------------------------------------------
# POST /tasks: create task
# ---------------------------------------------------------------------------


@router.post("/tasks", status_code=201)
async def create_task(request: Request) -> JSONResponse:
    """Post a new task owned by the caller."""
    principal = await require_principal(request, "create a task")
    data = parse_json_body(await request.body())

    task_manager = require_task_manager()
    result = await task_manager.create_task(principal, data)
    return JSONResponse(status_code=201, content=result)


# ---------------------------------------------------------------------------
# GET /tasks: browse and search
# ---------------------------------------------------------------------------


@router.get("/tasks")
async def list_tasks(request: Request) -> dict[str, Any]:
    """List tasks with optional search, filters, sorting and paging."""
    params = request.query_params
    page_raw = params.get("page")

    page = 1
    if page_raw is not None:
        try:
            page = int(page_raw)
        except ValueError as exc:
            raise ServiceError("VALIDATION_ERROR", "page must be an integer", 400, {}) from exc

    task_manager = require_task_manager()
    return await task_manager.list_tasks(
        q=params.get("q") or None,
        category=params.get("category") or None,
        min_price=parse_optional_number(params.get("minPrice"), "minPrice"),
        max_price=parse_optional_number(params.get("maxPrice"), "maxPrice"),
        status=params.get("status") or None,
        owner_id=params.get("ownerId") or None,
        sort_by=params.get("sortBy") or None,
        page=page,
    )


# ---------------------------------------------------------------------------
# Single task
# ---------------------------------------------------------------------------


@router.get("/tasks/{task_id}")
async def get_task(task_id: str) -> JSONResponse:
    """Get task details including all bids."""
    task_manager = require_task_manager()
    result = await task_manager.get_task(task_id)
    return JSONResponse(status_code=200, content=result)


@router.patch("/tasks/{task_id}")
async def edit_task(task_id: str, request: Request) -> JSONResponse:
    """Owner edits task content."""
    principal = await require_principal(request, "edit a task")
    data = parse_json_body(await request.body())

    task_manager = require_task_manager()
    result = await task_manager.edit_task(task_id, principal, data)
    return JSONResponse(status_code=200, content=result)


@router.delete("/tasks/{task_id}", status_code=204)
async def delete_task(task_id: str, request: Request) -> Response:
    """Owner deletes an open task."""
    principal = await resolve_principal(request)

    task_manager = require_task_manager()
    await task_manager.delete_task(task_id, principal)
    return Response(status_code=204)


# ---------------------------------------------------------------------------
# Complete and pay
# ---------------------------------------------------------------------------


@router.post("/tasks/{task_id}/complete")
async def complete_task(task_id: str, request: Request) -> JSONResponse:
    """Assigned worker marks the task completed."""
    principal = await resolve_principal(request)

    task_manager = require_task_manager()
    result = await task_manager.complete_task(task_id, principal)
    return JSONResponse(status_code=200, content=result)


@router.post("/tasks/{task_id}/payment")
async def release_payment(task_id: str, request: Request) -> JSONResponse:
    """Owner releases payment to the assigned worker and closes the task."""
    principal = await resolve_principal(request)

    task_manager = require_task_manager()
    result = await task_manager.release_payment(task_id, principal)
    return JSONResponse(status_code=200, content=result)


# ---------------------------------------------------------------------------
# GET /tasks/{task_id}/stream: live snapshots
# ---------------------------------------------------------------------------


@router.get("/tasks/{task_id}/stream")
async def stream_task(task_id: str) -> EventSourceResponse:
    """Stream the task's latest state as server-sent events."""
    task_manager = require_task_manager()
    # Raises TASK_NOT_FOUND before the stream starts.
    watcher = TaskWatcher(task_manager, task_id)
    return EventSourceResponse(
        watcher.events(),
        headers={"X-Accel-Buffering": "no"},
    )
