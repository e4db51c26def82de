"""Application lifecycle management."""

from __future__ import annotations

from contextlib import asynccontextmanager
from typing import TYPE_CHECKING

from task_market_service.clients.identity_client import IdentityClient
from task_market_service.clients.payment_client import PaymentClient
from task_market_service.config import get_settings
from task_market_service.core.state import init_app_state
from task_market_service.logging import get_logger, setup_logging
from task_market_service.services.document_store import DocumentStore
from task_market_service.services.lifecycle import TaskLifecycle, TaskRules
from task_market_service.services.notification_emitter import NotificationEmitter
from task_market_service.services.task_manager import TaskManager

if TYPE_CHECKING:
    from collections.abc import AsyncIterator

    from fastapi import FastAPI


@asynccontextmanager
async def lifespan(_app: FastAPI) -> AsyncIterator[None]:
    """Manage application lifecycle."""
    # === STARTUP ===
    settings = get_settings()

    setup_logging(settings.logging.level, settings.service.name, settings.logging.directory)
    logger = get_logger(__name__)

    state = init_app_state()

    store = DocumentStore(db_path=settings.database.path)
    state.store = store

    identity_client = IdentityClient(
        base_url=settings.identity.base_url,
        principal_path=settings.identity.principal_path,
        timeout_seconds=settings.identity.timeout_seconds,
    )
    state.identity_client = identity_client

    payment_client = PaymentClient(
        base_url=settings.payments.base_url,
        payments_path=settings.payments.payments_path,
        api_token=settings.payments.api_token,
        timeout_seconds=settings.payments.timeout_seconds,
    )
    state.payment_client = payment_client

    notification_emitter = NotificationEmitter(store=store)
    state.notification_emitter = notification_emitter

    lifecycle = TaskLifecycle(
        TaskRules(
            max_title_length=settings.limits.max_title_length,
            max_description_length=settings.limits.max_description_length,
            max_requirements=settings.limits.max_requirements,
            max_bid_message_length=settings.limits.max_bid_message_length,
        )
    )
    state.task_manager = TaskManager(
        store=store,
        lifecycle=lifecycle,
        notification_emitter=notification_emitter,
        payment_client=payment_client,
        currency=settings.payments.currency,
        max_retries=settings.concurrency.max_retries,
        backoff_seconds=settings.concurrency.backoff_seconds,
        page_size=settings.listing.page_size,
    )

    logger.info(
        "Service starting",
        extra={
            "service": settings.service.name,
            "version": settings.service.version,
            "port": settings.server.port,
            "db_path": settings.database.path,
            "identity_base_url": settings.identity.base_url,
            "payments_base_url": settings.payments.base_url,
        },
    )

    yield  # Application runs here

    # === SHUTDOWN ===
    logger.info("Service shutting down", extra={"uptime_seconds": state.uptime_seconds})

    store.close()
    await identity_client.close()
    await payment_client.close()
