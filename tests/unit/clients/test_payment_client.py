from __future__ import annotations

from typing import Any
from unittest.mock import AsyncMock

import httpx
import pytest

from task_market_service.clients.payment_client import PaymentClient
from task_market_service.core.exceptions import ServiceError


def _make_client(mock_post: AsyncMock) -> PaymentClient:
    """Create a PaymentClient whose HTTP client is mocked."""
    client = PaymentClient(
        base_url="http://mock-gateway:1337",
        payments_path="/api/payments",
        api_token="secret-token",
        timeout_seconds=5,
    )
    mock_http = AsyncMock(spec=httpx.AsyncClient)
    mock_http.post = mock_post
    client._client = mock_http
    return client


def _mock_response(status_code: int, json_body: Any = None, content: bytes | None = None):
    """Create a mock httpx.Response."""
    request = httpx.Request("POST", "http://mock-gateway:1337/api/payments")
    if content is not None:
        return httpx.Response(status_code=status_code, content=content, request=request)
    return httpx.Response(status_code=status_code, json=json_body, request=request)


@pytest.mark.unit
async def test_release_payment_posts_expected_body() -> None:
    mock_post = AsyncMock(return_value=_mock_response(200, {"id": "pay-1"}))
    client = _make_client(mock_post)

    result = await client.release_payment(
        task_id="t-1", amount=100, recipient_id="u2", currency="usd"
    )

    assert result == {"id": "pay-1"}
    mock_post.assert_awaited_once_with(
        "/api/payments",
        json={"taskId": "t-1", "amount": 100, "recipientId": "u2", "currency": "usd"},
        headers=None,
    )


@pytest.mark.unit
async def test_release_payment_sends_idempotency_key() -> None:
    mock_post = AsyncMock(return_value=_mock_response(201, {"id": "pay-1"}))
    client = _make_client(mock_post)

    await client.release_payment("t-1", 100, "u2", "usd", idempotency_key="pay-abc")

    _args, kwargs = mock_post.call_args
    assert kwargs["headers"] == {"Idempotency-Key": "pay-abc"}


@pytest.mark.unit
async def test_release_payment_accepts_any_2xx_without_json() -> None:
    client = _make_client(AsyncMock(return_value=_mock_response(204, content=b"")))

    result = await client.release_payment("t-1", 100, "u2", "usd")

    assert result == {}


@pytest.mark.unit
async def test_release_payment_non_2xx_raises_payment_failed() -> None:
    client = _make_client(
        AsyncMock(return_value=_mock_response(402, {"error": "card_declined"}))
    )

    with pytest.raises(ServiceError) as exc_info:
        await client.release_payment("t-1", 100, "u2", "usd")

    assert exc_info.value.error == "PAYMENT_FAILED"
    assert exc_info.value.status_code == 502
    assert exc_info.value.details == {"gateway_status": 402}


@pytest.mark.unit
async def test_release_payment_timeout() -> None:
    client = _make_client(AsyncMock(side_effect=httpx.ReadTimeout("slow")))

    with pytest.raises(ServiceError) as exc_info:
        await client.release_payment("t-1", 100, "u2", "usd")

    assert exc_info.value.error == "PAYMENT_FAILED"
    assert "timed out" in exc_info.value.message


@pytest.mark.unit
async def test_release_payment_connection_error() -> None:
    client = _make_client(AsyncMock(side_effect=httpx.ConnectError("refused")))

    with pytest.raises(ServiceError) as exc_info:
        await client.release_payment("t-1", 100, "u2", "usd")

    assert exc_info.value.error == "PAYMENT_FAILED"


@pytest.mark.unit
async def test_bearer_token_header_is_configured() -> None:
    client = PaymentClient(
        base_url="http://mock-gateway:1337",
        payments_path="/api/payments",
        api_token="secret-token",
        timeout_seconds=5,
    )
    try:
        assert client._client.headers["Authorization"] == "Bearer secret-token"
    finally:
        await client.close()
