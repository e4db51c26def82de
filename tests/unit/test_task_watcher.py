"""Unit tests for TaskWatcher snapshot streaming."""

from __future__ import annotations

import asyncio
import json
from unittest.mock import AsyncMock

import pytest

from task_market_service.core.exceptions import ServiceError
from task_market_service.services.document_store import DocumentStore
from task_market_service.services.notification_emitter import NotificationEmitter
from task_market_service.services.task_manager import TASKS, TaskManager
from task_market_service.services.task_watcher import TaskWatcher
from tests.helpers import make_lifecycle, make_principal, task_fields

OWNER = make_principal("u1")
BIDDER = make_principal("u2")


@pytest.fixture
def store(tmp_path):
    document_store = DocumentStore(db_path=str(tmp_path / "store.db"))
    yield document_store
    document_store.close()


@pytest.fixture
def manager(store):
    return TaskManager(
        store=store,
        lifecycle=make_lifecycle(),
        notification_emitter=NotificationEmitter(store),
        payment_client=AsyncMock(),
        currency="usd",
        max_retries=3,
        backoff_seconds=0,
        page_size=5,
    )


@pytest.mark.unit
async def test_first_snapshot_is_current_state(manager) -> None:
    task = await manager.create_task(OWNER, task_fields())
    watcher = TaskWatcher(manager, task["id"])
    snapshots = watcher.snapshots()

    first = await asyncio.wait_for(anext(snapshots), timeout=1)

    assert first == task
    await snapshots.aclose()


@pytest.mark.unit
async def test_burst_of_changes_delivers_latest(manager) -> None:
    """Changes made between two reads collapse into the final state."""
    task = await manager.create_task(OWNER, task_fields())
    watcher = TaskWatcher(manager, task["id"])
    snapshots = watcher.snapshots()
    await anext(snapshots)

    await manager.edit_task(task["id"], OWNER, {"price": 150})
    await manager.edit_task(task["id"], OWNER, {"price": 175})
    await manager.submit_bid(task["id"], BIDDER, 120)

    latest = await asyncio.wait_for(anext(snapshots), timeout=1)
    assert latest is not None
    assert latest["price"] == 175
    assert latest["bidsCount"] == 1
    await snapshots.aclose()


@pytest.mark.unit
async def test_deletion_ends_stream(manager, store) -> None:
    task = await manager.create_task(OWNER, task_fields())
    watcher = TaskWatcher(manager, task["id"])
    events = watcher.events()
    first = await anext(events)
    assert first["event"] == "task"
    assert json.loads(first["data"])["id"] == task["id"]

    await manager.delete_task(task["id"], OWNER)

    deleted = await asyncio.wait_for(anext(events), timeout=1)
    assert deleted == {"event": "deleted", "data": json.dumps({"id": task["id"]})}
    with pytest.raises(StopAsyncIteration):
        await anext(events)
    assert store.observer_count(TASKS, task["id"]) == 0


@pytest.mark.unit
async def test_close_unsubscribes(manager, store) -> None:
    task = await manager.create_task(OWNER, task_fields())
    watcher = TaskWatcher(manager, task["id"])
    assert store.observer_count(TASKS, task["id"]) == 1

    watcher.close()
    watcher.close()

    assert store.observer_count(TASKS, task["id"]) == 0
    with pytest.raises(StopAsyncIteration):
        await anext(watcher.snapshots())


@pytest.mark.unit
async def test_watch_missing_task(manager) -> None:
    with pytest.raises(ServiceError) as exc_info:
        TaskWatcher(manager, "t-missing")
    assert exc_info.value.error == "TASK_NOT_FOUND"
