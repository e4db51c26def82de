"""Router test fixtures with mocked identity provider and payment gateway."""

from __future__ import annotations

import os
from typing import TYPE_CHECKING, Any
from unittest.mock import AsyncMock

import pytest
from httpx import ASGITransport, AsyncClient

from task_market_service.app import create_app
from task_market_service.config import clear_settings_cache
from task_market_service.core.exceptions import ServiceError
from task_market_service.core.lifespan import lifespan
from task_market_service.core.state import get_app_state, reset_app_state
from task_market_service.services.lifecycle import Principal
from tests.helpers import config_yaml, task_fields

if TYPE_CHECKING:
    from collections.abc import AsyncIterator
    from pathlib import Path

# ---------------------------------------------------------------------------
# Fixed user IDs. In router tests the bearer token is the user id.
# ---------------------------------------------------------------------------
ALICE_ID = "u-alice"
BOB_ID = "u-bob"
CAROL_ID = "u-carol"

DISPLAY_NAMES = {
    ALICE_ID: "Alice Anders",
    BOB_ID: "Bob Baker",
    CAROL_ID: "Carol Chen",
}


def auth(user_id: str) -> dict[str, str]:
    """Authorization header for a user."""
    return {"Authorization": f"Bearer {user_id}"}


def _principal_for(token: str) -> Principal:
    if token == "expired":
        raise ServiceError("UNAUTHENTICATED", "Invalid or expired credentials", 401, {})
    return Principal(
        id=token,
        display_name=DISPLAY_NAMES.get(token, token),
        photo_url=f"https://example.test/{token}.png",
    )


# ---------------------------------------------------------------------------
# App + client fixtures
# ---------------------------------------------------------------------------
@pytest.fixture
async def app(tmp_path: Path) -> AsyncIterator[Any]:
    """Create a test app with temp database and mocked external services."""
    config_path = tmp_path / "config.yaml"
    config_path.write_text(
        config_yaml(db_path=str(tmp_path / "test.db"), log_directory=str(tmp_path / "logs"))
    )

    old_config = os.environ.get("CONFIG_PATH")
    os.environ["CONFIG_PATH"] = str(config_path)

    clear_settings_cache()
    reset_app_state()

    test_app = create_app()
    async with lifespan(test_app):
        state = get_app_state()

        # Identity mock: the bearer token is the user id
        mock_identity = AsyncMock()
        mock_identity.close = AsyncMock()
        mock_identity.get_principal = AsyncMock(side_effect=_principal_for)
        state.identity_client = mock_identity

        # Payment mock: default is a successful payout
        mock_payments = AsyncMock()
        mock_payments.close = AsyncMock()
        mock_payments.release_payment = AsyncMock(return_value={"status": "succeeded"})
        state.payment_client = mock_payments

        yield test_app

    reset_app_state()
    clear_settings_cache()
    if old_config is None:
        os.environ.pop("CONFIG_PATH", None)
    else:
        os.environ["CONFIG_PATH"] = old_config


@pytest.fixture
async def client(app: Any) -> AsyncIterator[AsyncClient]:
    """Create an async HTTP client for the test app."""
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as c:
        yield c


# ---------------------------------------------------------------------------
# Mock override fixtures
# ---------------------------------------------------------------------------
@pytest.fixture
def mock_payment_failure(_app: Any) -> AsyncMock:
    """Make the payment gateway reject the next payout, then succeed."""
    state = get_app_state()
    state.payment_client.release_payment = AsyncMock(
        side_effect=[
            ServiceError(
                "PAYMENT_FAILED",
                "Payment gateway returned status 500",
                502,
                {"gateway_status": 500},
            ),
            {"status": "succeeded"},
        ]
    )
    return state.payment_client.release_payment


@pytest.fixture
def mock_identity_unavailable(_app: Any) -> None:
    """Make the identity provider unreachable."""
    state = get_app_state()
    state.identity_client.get_principal = AsyncMock(
        side_effect=ServiceError(
            "IDENTITY_UNAVAILABLE", "Cannot connect to identity provider", 502, {}
        )
    )


# ---------------------------------------------------------------------------
# Lifecycle helper functions
# ---------------------------------------------------------------------------
async def create_task(client: AsyncClient, owner_id: str = ALICE_ID, **overrides: Any) -> Any:
    """Create a task via POST /tasks and return the response."""
    return await client.post("/tasks", json=task_fields(**overrides), headers=auth(owner_id))


async def submit_bid(
    client: AsyncClient,
    bidder_id: str,
    task_id: str,
    *,
    amount: int | float = 90,
    message: str | None = None,
) -> Any:
    """Submit a bid via POST /tasks/{task_id}/bids and return the response."""
    payload: dict[str, Any] = {"amount": amount}
    if message is not None:
        payload["message"] = message
    return await client.post(f"/tasks/{task_id}/bids", json=payload, headers=auth(bidder_id))


async def select_bid(client: AsyncClient, owner_id: str, task_id: str, bid_id: str) -> Any:
    """Select a bid via POST /tasks/{task_id}/bids/{bid_id}/select."""
    return await client.post(f"/tasks/{task_id}/bids/{bid_id}/select", headers=auth(owner_id))


async def complete_task(client: AsyncClient, user_id: str, task_id: str) -> Any:
    """Mark complete via POST /tasks/{task_id}/complete."""
    return await client.post(f"/tasks/{task_id}/complete", headers=auth(user_id))


async def release_payment(client: AsyncClient, user_id: str, task_id: str) -> Any:
    """Release payment via POST /tasks/{task_id}/payment."""
    return await client.post(f"/tasks/{task_id}/payment", headers=auth(user_id))


async def setup_task_assigned(client: AsyncClient) -> tuple[str, str]:
    """Alice posts a task, Bob bids 100 and is selected.

    Returns (task_id, bid_id).
    """
    task_resp = await create_task(client)
    task_id = task_resp.json()["id"]
    bid_resp = await submit_bid(client, BOB_ID, task_id, amount=100)
    bid_id = bid_resp.json()["id"]
    await select_bid(client, ALICE_ID, task_id, bid_id)
    return task_id, bid_id


async def setup_task_completed(client: AsyncClient) -> tuple[str, str]:
    """Advance a task to completed. Returns (task_id, bid_id)."""
    task_id, bid_id = await setup_task_assigned(client)
    await complete_task(client, BOB_ID, task_id)
    return task_id, bid_id
