"""Shared request helpers for task market routers."""

from __future__ import annotations

import json
from typing import TYPE_CHECKING, Any

from task_market_service.core.exceptions import ServiceError
from task_market_service.core.state import get_app_state

if TYPE_CHECKING:
    from fastapi import Request

    from task_market_service.services.lifecycle import Principal
    from task_market_service.services.notification_emitter import NotificationEmitter
    from task_market_service.services.task_manager import TaskManager


def parse_json_body(raw_body: bytes) -> dict[str, Any]:
    """Parse JSON body, raising ServiceError on failure."""
    try:
        data = json.loads(raw_body)
    except (json.JSONDecodeError, UnicodeDecodeError) as exc:
        raise ServiceError(
            "VALIDATION_ERROR",
            "Request body is not valid JSON",
            400,
            {},
        ) from exc

    if not isinstance(data, dict):
        raise ServiceError(
            "VALIDATION_ERROR",
            "Request body must be a JSON object",
            400,
            {},
        )

    return data


def extract_bearer_token(authorization: str | None) -> str | None:
    """Extract the bearer token from an Authorization header.

    Returns None when no header is present (anonymous caller).
    Raises UNAUTHENTICATED if the header exists but is malformed.
    """
    if authorization is None:
        return None

    if not authorization.startswith("Bearer "):
        raise ServiceError(
            "UNAUTHENTICATED",
            "Authorization header must use Bearer scheme",
            401,
            {},
        )

    token = authorization[len("Bearer ") :].strip()
    if not token:
        raise ServiceError(
            "UNAUTHENTICATED",
            "Bearer token must not be empty",
            401,
            {},
        )

    return token


async def resolve_principal(request: Request) -> Principal | None:
    """Resolve the calling principal, or None for anonymous requests."""
    token = extract_bearer_token(request.headers.get("authorization"))
    if token is None:
        return None

    state = get_app_state()
    if state.identity_client is None:
        msg = "IdentityClient not initialized"
        raise RuntimeError(msg)
    return await state.identity_client.get_principal(token)


async def require_principal(request: Request, action: str) -> Principal:
    """Resolve the caller, rejecting anonymous requests before the body is read."""
    principal = await resolve_principal(request)
    if principal is None:
        raise ServiceError("UNAUTHENTICATED", f"You must be logged in to {action}", 401, {})
    return principal


def parse_optional_number(raw: str | None, name: str) -> float | None:
    """Parse an optional numeric query parameter."""
    if raw is None or raw == "":
        return None
    try:
        return float(raw)
    except ValueError as exc:
        raise ServiceError("VALIDATION_ERROR", f"{name} must be a number", 400, {}) from exc


def require_task_manager() -> TaskManager:
    """Return the initialized TaskManager."""
    state = get_app_state()
    if state.task_manager is None:
        msg = "TaskManager not initialized"
        raise RuntimeError(msg)
    return state.task_manager


def require_notification_emitter() -> NotificationEmitter:
    """Return the initialized NotificationEmitter."""
    state = get_app_state()
    if state.notification_emitter is None:
        msg = "NotificationEmitter not initialized"
        raise RuntimeError(msg)
    return state.notification_emitter
