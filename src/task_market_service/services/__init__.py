"""Service layer components."""

from task_market_service.services.document_store import DocumentStore
from task_market_service.services.lifecycle import TaskLifecycle
from task_market_service.services.notification_emitter import NotificationEmitter
from task_market_service.services.task_manager import TaskManager
from task_market_service.services.task_watcher import TaskWatcher

__all__ = [
    "DocumentStore",
    "NotificationEmitter",
    "TaskLifecycle",
    "TaskManager",
    "TaskWatcher",
]
