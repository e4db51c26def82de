"""ASGI middleware that guards JSON request bodies."""

from __future__ import annotations

import re
from typing import TYPE_CHECKING, Any, cast

from fastapi.responses import JSONResponse

if TYPE_CHECKING:
    from starlette.types import ASGIApp, Message, Receive, Scope, Send


# Endpoints that accept a JSON payload. Action endpoints (complete, payment,
# select, mark-read) carry no body and are not listed.
_JSON_BODY_ROUTES: dict[str, tuple[re.Pattern[str], ...]] = {
    "POST": (
        re.compile(r"^/tasks$"),
        re.compile(r"^/tasks/[^/]+/bids$"),
    ),
    "PATCH": (
        re.compile(r"^/tasks/[^/]+$"),
        re.compile(r"^/tasks/[^/]+/bids/[^/]+$"),
    ),
}


def _takes_json_body(method: str, path: str) -> bool:
    return any(pattern.match(path) for pattern in _JSON_BODY_ROUTES.get(method, ()))


class _BodyTooLarge(Exception):
    pass


class RequestValidationMiddleware:
    """
    Reject JSON requests with the wrong media type or an oversized body.

    A wrong Content-Type yields 415 UNSUPPORTED_MEDIA_TYPE and a body over
    ``max_body_size`` yields 413 PAYLOAD_TOO_LARGE, both in the usual error
    envelope. Accepted bodies are buffered once and replayed to the app.
    """

    def __init__(self, app: ASGIApp, max_body_size: int) -> None:
        self.app = app
        self.max_body_size = max_body_size

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        method = cast("str", scope.get("method", ""))
        path = cast("str", scope.get("path", ""))
        if scope["type"] != "http" or not _takes_json_body(method, path):
            await self.app(scope, receive, send)
            return

        headers = {
            key.decode("latin-1").lower(): value.decode("latin-1")
            for key, value in cast("list[tuple[bytes, bytes]]", scope.get("headers", []))
        }

        if not headers.get("content-type", "").lower().startswith("application/json"):
            await self._reject(
                scope,
                receive,
                send,
                415,
                "UNSUPPORTED_MEDIA_TYPE",
                "Content-Type must be application/json",
            )
            return

        declared = headers.get("content-length", "")
        try:
            if declared.isdigit() and int(declared) > self.max_body_size:
                raise _BodyTooLarge
            body = await self._read_body(receive)
        except _BodyTooLarge:
            await self._reject(
                scope,
                receive,
                send,
                413,
                "PAYLOAD_TOO_LARGE",
                "Request body exceeds maximum allowed size",
            )
            return

        replayed = False

        async def replay() -> Message:
            nonlocal replayed
            if replayed:
                return {"type": "http.disconnect"}
            replayed = True
            return {"type": "http.request", "body": body, "more_body": False}

        await self.app(scope, replay, send)

    async def _read_body(self, receive: Receive) -> bytes:
        body = bytearray()
        more_body = True
        while more_body:
            message = cast("dict[str, Any]", await receive())
            body.extend(cast("bytes", message.get("body", b"")))
            if len(body) > self.max_body_size:
                raise _BodyTooLarge
            more_body = bool(message.get("more_body", False))
        return bytes(body)

    @staticmethod
    async def _reject(
        scope: Scope,
        receive: Receive,
        send: Send,
        status_code: int,
        error: str,
        message: str,
    ) -> None:
        response = JSONResponse(
            status_code=status_code,
            content={"error": error, "message": message, "details": {}},
        )
        await response(scope, receive, send)
