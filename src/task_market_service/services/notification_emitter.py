"""Best-effort notification records produced by lifecycle transitions."""

from __future__ import annotations

import uuid
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any

from task_market_service.core.exceptions import ServiceError
from task_market_service.logging import get_logger
from task_market_service.services.document_store import (
    DocumentNotFoundError,
    DocumentStore,
    Ordering,
    Predicate,
    StoreUnavailableError,
)

if TYPE_CHECKING:
    from collections.abc import Iterable

    from task_market_service.services.lifecycle import NotificationDraft, Principal

NOTIFICATIONS = "notifications"


def _now_iso() -> str:
    """Return current UTC time as ISO 8601 string with Z suffix."""
    return datetime.now(UTC).isoformat(timespec="microseconds").replace("+00:00", "Z")


def _notification_to_response(doc_id: str, data: dict[str, Any]) -> dict[str, Any]:
    return {
        "id": doc_id,
        "userId": data["userId"],
        "taskId": data.get("taskId"),
        "message": data["message"],
        "read": bool(data.get("read", False)),
        "timestamp": data["timestamp"],
    }


class NotificationEmitter:
    """
    Appends notification records for users.

    Writes are not transactional with the task update that caused them.
    A failed write is logged and dropped; it never fails the transition.
    """

    def __init__(self, store: DocumentStore) -> None:
        self._store = store
        self._logger = get_logger(__name__)

    def emit(self, user_id: str, message: str, task_id: str | None = None) -> str | None:
        """Write one unread notification. Returns its id, or None if the write failed."""
        notification_id = f"n-{uuid.uuid4()}"
        try:
            self._store.create(
                NOTIFICATIONS,
                {
                    "userId": user_id,
                    "taskId": task_id,
                    "message": message,
                    "read": False,
                    "timestamp": _now_iso(),
                },
                doc_id=notification_id,
            )
        except Exception:
            self._logger.warning(
                "Notification write failed",
                exc_info=True,
                extra={"user_id": user_id, "task_id": task_id},
            )
            return None
        self._logger.info(
            "Notification emitted",
            extra={"notification_id": notification_id, "user_id": user_id, "task_id": task_id},
        )
        return notification_id

    def emit_all(self, drafts: Iterable[NotificationDraft]) -> list[str]:
        """Emit every draft in order; returns the ids of those written."""
        written: list[str] = []
        for draft in drafts:
            notification_id = self.emit(draft.user_id, draft.message, draft.task_id)
            if notification_id is not None:
                written.append(notification_id)
        return written

    def list_notifications(
        self,
        principal: Principal | None,
        *,
        unread_only: bool,
    ) -> list[dict[str, Any]]:
        """List the caller's notifications, newest first."""
        if principal is None:
            raise ServiceError(
                "UNAUTHENTICATED", "You must be logged in to view notifications", 401, {}
            )
        predicates = [Predicate("userId", "==", principal.id)]
        if unread_only:
            predicates.append(Predicate("read", "==", False))
        try:
            snapshots = self._store.query(
                NOTIFICATIONS,
                predicates,
                [Ordering("timestamp", descending=True)],
            )
        except StoreUnavailableError as exc:
            raise ServiceError(
                "STORE_UNAVAILABLE", "Notification store is unavailable", 503, {}
            ) from exc
        return [_notification_to_response(s.doc_id, s.data) for s in snapshots]

    def mark_read(self, principal: Principal | None, notification_id: str) -> dict[str, Any]:
        """Flag a notification as read; only its recipient may do so."""
        if principal is None:
            raise ServiceError(
                "UNAUTHENTICATED", "You must be logged in to update notifications", 401, {}
            )
        try:
            snapshot = self._store.get(NOTIFICATIONS, notification_id)
            if snapshot is None:
                raise ServiceError("NOTIFICATION_NOT_FOUND", "Notification not found", 404, {})
            if snapshot.data["userId"] != principal.id:
                raise ServiceError(
                    "PERMISSION_DENIED",
                    "You can only update your own notifications",
                    403,
                    {},
                )
            if not snapshot.data.get("read", False):
                self._store.update(NOTIFICATIONS, notification_id, {"read": True})
        except DocumentNotFoundError as exc:
            raise ServiceError("NOTIFICATION_NOT_FOUND", "Notification not found", 404, {}) from exc
        except StoreUnavailableError as exc:
            raise ServiceError(
                "STORE_UNAVAILABLE", "Notification store is unavailable", 503, {}
            ) from exc
        return _notification_to_response(notification_id, {**snapshot.data, "read": True})
