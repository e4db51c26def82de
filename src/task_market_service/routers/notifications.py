"""Notification endpoints."""

from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse

from task_market_service.routers.validation import require_notification_emitter, resolve_principal

router = APIRouter()


@router.get("/notifications")
async def list_notifications(request: Request) -> dict[str, Any]:
    """List the caller's notifications, newest first."""
    unread_only = request.query_params.get("unread_only", "").lower() in ("1", "true", "yes")
    principal = await resolve_principal(request)

    emitter = require_notification_emitter()
    return {"notifications": emitter.list_notifications(principal, unread_only=unread_only)}


@router.post("/notifications/{notification_id}/read")
async def mark_read(notification_id: str, request: Request) -> JSONResponse:
    """Mark one of the caller's notifications as read."""
    principal = await resolve_principal(request)

    emitter = require_notification_emitter()
    result = emitter.mark_read(principal, notification_id)
    return JSONResponse(status_code=200, content=result)
