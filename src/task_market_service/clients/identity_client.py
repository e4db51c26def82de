"""Async HTTP client for the identity provider."""

from __future__ import annotations

from typing import Any

import httpx

from task_market_service.core.exceptions import ServiceError
from task_market_service.logging import get_logger
from task_market_service.services.lifecycle import Principal


class IdentityClient:
    """
    Resolves bearer tokens to principals.

    Delegates token verification to the identity provider via
    GET {principal_path}. The service never stores credentials; it only
    learns who the caller is for the duration of a request.
    """

    def __init__(
        self,
        base_url: str,
        principal_path: str,
        timeout_seconds: int,
    ) -> None:
        self._base_url = base_url
        self._principal_path = principal_path
        self._client = httpx.AsyncClient(
            base_url=base_url,
            timeout=httpx.Timeout(timeout_seconds),
        )

    async def get_principal(self, token: str) -> Principal:
        """
        Look up the principal a bearer token belongs to.

        Raises:
            ServiceError: UNAUTHENTICATED (401) if the provider rejects the token
            ServiceError: IDENTITY_UNAVAILABLE (502) on connection/timeout/unexpected errors
        """
        logger = get_logger(__name__)

        try:
            response = await self._client.get(
                self._principal_path,
                headers={"Authorization": f"Bearer {token}"},
            )
        except (httpx.ConnectError, httpx.TimeoutException) as exc:
            logger.warning(
                "Identity provider connection failed",
                extra={"error": str(exc), "base_url": self._base_url},
            )
            raise ServiceError(
                error="IDENTITY_UNAVAILABLE",
                message="Cannot connect to identity provider",
                status_code=502,
                details={},
            ) from exc
        except httpx.HTTPError as exc:
            logger.warning(
                "Identity provider HTTP error",
                extra={"error": str(exc), "base_url": self._base_url},
            )
            raise ServiceError(
                error="IDENTITY_UNAVAILABLE",
                message="Identity provider request failed",
                status_code=502,
                details={},
            ) from exc

        if response.status_code in (401, 403):
            raise ServiceError(
                error="UNAUTHENTICATED",
                message="Invalid or expired credentials",
                status_code=401,
                details={},
            )

        if response.status_code != 200:
            logger.warning(
                "Identity provider unexpected status",
                extra={"status_code": response.status_code, "base_url": self._base_url},
            )
            raise ServiceError(
                error="IDENTITY_UNAVAILABLE",
                message="Identity provider returned unexpected status",
                status_code=502,
                details={},
            )

        try:
            body: Any = response.json()
        except ValueError:
            body = {}
        if not isinstance(body, dict):
            body = {}
        principal_id = body.get("id")
        if not isinstance(principal_id, str) or not principal_id:
            raise ServiceError(
                error="IDENTITY_UNAVAILABLE",
                message="Identity provider returned a malformed principal",
                status_code=502,
                details={},
            )

        return Principal(
            id=principal_id,
            display_name=str(body.get("displayName") or ""),
            photo_url=body.get("photoURL"),
        )

    async def close(self) -> None:
        """Close the underlying HTTP client."""
        await self._client.aclose()
