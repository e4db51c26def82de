"""Live task snapshots for streaming clients."""

from __future__ import annotations

import asyncio
import json
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from collections.abc import AsyncIterator

    from task_market_service.services.document_store import Subscription
    from task_market_service.services.task_manager import TaskManager

_DELETED = object()


class TaskWatcher:
    """
    Turns a task subscription into an async stream of snapshots.

    Only the latest snapshot is kept: a burst of changes between two
    reads is delivered once, as its final state. The stream ends after
    the task is deleted or close() is called.
    """

    def __init__(self, task_manager: TaskManager, task_id: str) -> None:
        self._task_id = task_id
        self._latest: Any = None
        self._changed = asyncio.Event()
        self._closed = False
        self._subscription: Subscription = task_manager.subscribe_task(task_id, self._on_change)

    def _on_change(self, task: dict[str, Any] | None) -> None:
        self._latest = _DELETED if task is None else task
        self._changed.set()

    async def snapshots(self) -> AsyncIterator[dict[str, Any] | None]:
        """Yield each latest task state; a final None signals deletion."""
        try:
            while not self._closed:
                await self._changed.wait()
                self._changed.clear()
                if self._closed:
                    break
                latest = self._latest
                if latest is _DELETED:
                    yield None
                    break
                yield latest
        finally:
            self.close()

    async def events(self) -> AsyncIterator[dict[str, str]]:
        """Server-sent event payloads for the snapshot stream."""
        try:
            async for task in self.snapshots():
                if task is None:
                    yield {"event": "deleted", "data": json.dumps({"id": self._task_id})}
                else:
                    yield {"event": "task", "data": json.dumps(task)}
        finally:
            self.close()

    def close(self) -> None:
        """Stop watching. Safe to call more than once."""
        self._closed = True
        self._subscription.unsubscribe()
        self._changed.set()
