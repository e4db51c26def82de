"""Bid endpoints."""

from __future__ import annotations

from fastapi import APIRouter, Request, Response
from fastapi.responses import JSONResponse

from task_market_service.routers.validation import (
    parse_json_body,
    require_principal,
    require_task_manager,
    resolve_principal,
)

router = APIRouter()


@router.post("/tasks/{task_id}/bids", status_code=201)
async def submit_bid(task_id: str, request: Request) -> JSONResponse:
    """Place the caller's bid on an open task."""
    principal = await require_principal(request, "place a bid")
    data = parse_json_body(await request.body())

    task_manager = require_task_manager()
    result = await task_manager.submit_bid(
        task_id,
        principal,
        data.get("amount"),
        message=data.get("message"),
    )
    return JSONResponse(status_code=201, content=result)


@router.patch("/tasks/{task_id}/bids/{bid_id}")
async def edit_bid(task_id: str, bid_id: str, request: Request) -> JSONResponse:
    """Change the amount of the caller's own bid."""
    principal = await require_principal(request, "edit a bid")
    data = parse_json_body(await request.body())

    task_manager = require_task_manager()
    result = await task_manager.edit_bid(
        task_id,
        principal,
        bid_id,
        data.get("amount"),
        message=data.get("message"),
    )
    return JSONResponse(status_code=200, content=result)


@router.delete("/tasks/{task_id}/bids/{bid_id}", status_code=204)
async def delete_bid(task_id: str, bid_id: str, request: Request) -> Response:
    """Withdraw the caller's own bid."""
    principal = await resolve_principal(request)

    task_manager = require_task_manager()
    await task_manager.delete_bid(task_id, principal, bid_id)
    return Response(status_code=204)


@router.post("/tasks/{task_id}/bids/{bid_id}/select")
async def select_bid(task_id: str, bid_id: str, request: Request) -> JSONResponse:
    """Owner selects the winning bid."""
    principal = await resolve_principal(request)

    task_manager = require_task_manager()
    result = await task_manager.select_bid(task_id, principal, bid_id)
    return JSONResponse(status_code=200, content=result)
