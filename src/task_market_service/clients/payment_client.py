"""Async HTTP client for the external payment gateway."""

from __future__ import annotations

from typing import Any

import httpx

from task_market_service.core.exceptions import ServiceError
from task_market_service.logging import get_logger


class PaymentClient:
    """
    Client for releasing task payments.

    Calls POST {payments_path} with a bearer token and the body
    {taskId, amount, recipientId, currency}, plus an Idempotency-Key header
    when one is given. Any 2xx response is a success; everything else
    (including connection errors and the configured timeout) is reported
    as PAYMENT_FAILED so the caller can clear its pending marker and retry
    later.
    """

    def __init__(
        self,
        base_url: str,
        payments_path: str,
        api_token: str,
        timeout_seconds: int,
    ) -> None:
        self._base_url = base_url
        self._payments_path = payments_path
        self._client = httpx.AsyncClient(
            base_url=base_url,
            timeout=httpx.Timeout(timeout_seconds),
            headers={"Authorization": f"Bearer {api_token}"},
        )

    async def release_payment(
        self,
        task_id: str,
        amount: int | float,
        recipient_id: str,
        currency: str,
        idempotency_key: str | None = None,
    ) -> dict[str, Any]:
        """
        Ask the gateway to pay the winning bidder.

        The idempotency key is sent as the Idempotency-Key header so the
        gateway can recognise a repeated payout request.

        Returns:
            The decoded JSON response body, or an empty dict when the
            gateway returns no JSON.

        Raises:
            ServiceError: PAYMENT_FAILED (502) on connection/timeout/non-2xx
        """
        logger = get_logger(__name__)

        try:
            response = await self._client.post(
                self._payments_path,
                json={
                    "taskId": task_id,
                    "amount": amount,
                    "recipientId": recipient_id,
                    "currency": currency,
                },
                headers={"Idempotency-Key": idempotency_key} if idempotency_key else None,
            )
        except httpx.TimeoutException as exc:
            logger.warning(
                "Payment gateway timed out",
                extra={"task_id": task_id, "base_url": self._base_url},
            )
            raise ServiceError(
                error="PAYMENT_FAILED",
                message="Payment gateway timed out; the payment can be retried",
                status_code=502,
                details={},
            ) from exc
        except httpx.HTTPError as exc:
            logger.warning(
                "Payment gateway connection failed",
                extra={"task_id": task_id, "error": str(exc), "base_url": self._base_url},
            )
            raise ServiceError(
                error="PAYMENT_FAILED",
                message="Cannot connect to payment gateway; the payment can be retried",
                status_code=502,
                details={},
            ) from exc

        if not response.is_success:
            logger.warning(
                "Payment gateway rejected payment",
                extra={"task_id": task_id, "status_code": response.status_code},
            )
            raise ServiceError(
                error="PAYMENT_FAILED",
                message=f"Payment gateway returned status {response.status_code}",
                status_code=502,
                details={"gateway_status": response.status_code},
            )

        try:
            result: dict[str, Any] = response.json()
        except ValueError:
            return {}
        return result if isinstance(result, dict) else {}

    async def close(self) -> None:
        """Close the underlying HTTP client."""
        await self._client.aclose()
