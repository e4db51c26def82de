"""Request validation middleware tests."""

from __future__ import annotations

import pytest

from tests.unit.routers.conftest import ALICE_ID, BOB_ID, auth, create_task, setup_task_assigned


@pytest.mark.unit
async def test_wrong_content_type_rejected(client):
    response = await client.post(
        "/tasks",
        content=b"title=x",
        headers={**auth(ALICE_ID), "Content-Type": "application/x-www-form-urlencoded"},
    )
    assert response.status_code == 415
    assert response.json()["error"] == "UNSUPPORTED_MEDIA_TYPE"


@pytest.mark.unit
async def test_oversized_body_rejected(client):
    response = await client.post(
        "/tasks",
        json={"description": "x" * 1_100_000},
        headers=auth(ALICE_ID),
    )
    assert response.status_code == 413
    assert response.json()["error"] == "PAYLOAD_TOO_LARGE"


@pytest.mark.unit
async def test_bodyless_actions_pass_through(client):
    """Action endpoints work without any Content-Type."""
    task_id, _bid_id = await setup_task_assigned(client)

    response = await client.post(f"/tasks/{task_id}/complete", headers=auth(BOB_ID))
    assert response.status_code == 200


@pytest.mark.unit
async def test_json_body_is_replayed_to_route(client):
    response = await create_task(client, title="Replayed")
    assert response.status_code == 201
    assert response.json()["title"] == "Replayed"
