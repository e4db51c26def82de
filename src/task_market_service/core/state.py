"""Application state management."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from task_market_service.clients.identity_client import IdentityClient
    from task_market_service.clients.payment_client import PaymentClient
    from task_market_service.services.document_store import DocumentStore
    from task_market_service.services.notification_emitter import NotificationEmitter
    from task_market_service.services.task_manager import TaskManager


@dataclass
class AppState:
    """Runtime application state."""

    start_time: datetime = field(default_factory=lambda: datetime.now(UTC))
    store: DocumentStore | None = None
    task_manager: TaskManager | None = None
    notification_emitter: NotificationEmitter | None = None
    identity_client: IdentityClient | None = None
    payment_client: PaymentClient | None = None

    def __setattr__(self, name: str, value: Any) -> None:
        """Keep the TaskManager's payment client in sync with AppState."""
        super().__setattr__(name, value)

        task_manager = self.__dict__.get("task_manager")
        if task_manager is None:
            return

        if name == "payment_client" and value is not None:
            task_manager.set_payment_client(value)
        elif name == "task_manager" and value is not None:
            payment_client = self.__dict__.get("payment_client")
            if payment_client is not None:
                value.set_payment_client(payment_client)

    @property
    def uptime_seconds(self) -> float:
        """Calculate uptime in seconds."""
        return (datetime.now(UTC) - self.start_time).total_seconds()

    @property
    def started_at(self) -> str:
        """ISO format start time."""
        return self.start_time.isoformat(timespec="seconds").replace("+00:00", "Z")


# Global application state container
_state_container: dict[str, AppState | None] = {"app_state": None}


def get_app_state() -> AppState:
    """Get the current application state."""
    app_state = _state_container["app_state"]
    if app_state is None:
        msg = "Application state not initialized"
        raise RuntimeError(msg)
    return app_state


def init_app_state() -> AppState:
    """Initialize application state. Called during startup."""
    app_state = AppState()
    _state_container["app_state"] = app_state
    return app_state


def reset_app_state() -> None:
    """Reset application state. Used in testing."""
    _state_container["app_state"] = None
