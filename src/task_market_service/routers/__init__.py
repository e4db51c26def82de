"""API routers."""

from task_market_service.routers import bids, health, notifications, tasks

__all__ = ["bids", "health", "notifications", "tasks"]
