"""Task orchestration: storage, retries, payment and notifications around the lifecycle."""

from __future__ import annotations

import asyncio
import contextlib
import math
import uuid
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any

from task_market_service.core.exceptions import ServiceError
from task_market_service.logging import get_logger
from task_market_service.services.document_store import (
    DocumentNotFoundError,
    DocumentStore,
    DuplicateDocumentError,
    Ordering,
    Predicate,
    StoreUnavailableError,
    VersionConflictError,
)
from task_market_service.services.lifecycle import STATUS_ORDER, Task

if TYPE_CHECKING:
    from collections.abc import Callable, Iterator

    from task_market_service.clients.payment_client import PaymentClient
    from task_market_service.services.document_store import Subscription
    from task_market_service.services.lifecycle import Principal, TaskLifecycle, Transition
    from task_market_service.services.notification_emitter import NotificationEmitter

TASKS = "tasks"

SORT_ORDERS: dict[str, tuple[Ordering, ...]] = {
    "newest": (Ordering("postedAt", descending=True),),
    "price-asc": (Ordering("price"),),
    "price-desc": (Ordering("price", descending=True),),
    "rating": (Ordering("rating", descending=True),),
}


def _now_iso() -> str:
    """Return current UTC time as ISO 8601 string with Z suffix."""
    return datetime.now(UTC).isoformat(timespec="microseconds").replace("+00:00", "Z")


@contextlib.contextmanager
def _store_errors() -> Iterator[None]:
    """Translate transient store failures into a retryable service error."""
    try:
        yield
    except StoreUnavailableError as exc:
        raise ServiceError(
            "STORE_UNAVAILABLE",
            "Task store is temporarily unavailable; please retry",
            503,
            {},
        ) from exc


class TaskManager:
    """
    Drives task lifecycle events against the document store.

    Each mutating call reads the task with its version, applies a pure
    TaskLifecycle transition and writes the result conditioned on that
    version. A version conflict re-reads and re-applies with exponential
    backoff; when retries run out the caller gets CONFLICT. Notifications
    are written after the task commit and never undo it.
    """

    def __init__(
        self,
        store: DocumentStore,
        lifecycle: TaskLifecycle,
        notification_emitter: NotificationEmitter,
        payment_client: PaymentClient,
        currency: str,
        max_retries: int,
        backoff_seconds: float,
        page_size: int,
    ) -> None:
        self._store = store
        self._lifecycle = lifecycle
        self._notification_emitter = notification_emitter
        self._payment_client = payment_client
        self._currency = currency
        self._max_retries = max_retries
        self._backoff_seconds = backoff_seconds
        self._page_size = page_size
        self._logger = get_logger(__name__)

    def set_payment_client(self, payment_client: PaymentClient) -> None:
        """Swap the payment gateway client."""
        self._payment_client = payment_client

    # ------------------------------------------------------------------
    # Private helper methods
    # ------------------------------------------------------------------

    @staticmethod
    def _task_to_response(task: Task) -> dict[str, Any]:
        """Full task detail including bids."""
        return {"id": task.id, **task.to_document()}

    @staticmethod
    def _task_to_summary(task: Task) -> dict[str, Any]:
        """Task card data for list views; bids are reduced to their count."""
        return {
            "id": task.id,
            "ownerId": task.owner_id,
            "title": task.title,
            "category": task.category,
            "description": task.description,
            "price": task.price,
            "deadline": task.deadline,
            "postedAt": task.posted_at,
            "status": task.status,
            "bidsCount": task.bids_count,
            "rating": task.rating,
        }

    def _load(self, task_id: str) -> tuple[Task, int]:
        with _store_errors():
            snapshot = self._store.get(TASKS, task_id)
        if snapshot is None:
            raise ServiceError("TASK_NOT_FOUND", "Task not found", 404, {})
        return Task.from_document(snapshot.doc_id, snapshot.data), snapshot.version

    async def _mutate(
        self,
        task_id: str,
        event: str,
        apply: Callable[[Task], Transition],
    ) -> Transition:
        """Read-apply-write with optimistic concurrency on the task version."""
        for attempt in range(self._max_retries + 1):
            task, version = self._load(task_id)
            transition = apply(task)
            try:
                with _store_errors():
                    if transition.task is None:
                        self._store.delete(TASKS, task_id, expected_version=version)
                    else:
                        self._store.replace(
                            TASKS,
                            task_id,
                            transition.task.to_document(),
                            expected_version=version,
                        )
            except VersionConflictError:
                self._logger.info(
                    "Task changed concurrently, retrying",
                    extra={"task_id": task_id, "event": event, "attempt": attempt + 1},
                )
                if attempt < self._max_retries:
                    await asyncio.sleep(self._backoff_seconds * (2**attempt))
                continue
            except DocumentNotFoundError as exc:
                raise ServiceError("TASK_NOT_FOUND", "Task not found", 404, {}) from exc

            self._logger.info(
                "Task transition committed",
                extra={
                    "task_id": task_id,
                    "event": event,
                    "status": transition.task.status if transition.task else None,
                },
            )
            self._notification_emitter.emit_all(transition.notifications)
            return transition

        self._logger.warning(
            "Task update retries exhausted",
            extra={"task_id": task_id, "event": event, "retries": self._max_retries},
        )
        raise ServiceError(
            "CONFLICT",
            "The task was changed by someone else at the same time; please retry",
            409,
            {},
        )

    @staticmethod
    def _committed(transition: Transition) -> Task:
        if transition.task is None:
            msg = "Transition unexpectedly removed the task"
            raise RuntimeError(msg)
        return transition.task

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def get_task(self, task_id: str) -> dict[str, Any]:
        """
        Get a single task by ID.

        Raises:
            ServiceError: TASK_NOT_FOUND
        """
        task, _version = self._load(task_id)
        return self._task_to_response(task)

    async def list_tasks(
        self,
        q: str | None,
        category: str | None,
        min_price: float | None,
        max_price: float | None,
        status: str | None,
        owner_id: str | None,
        sort_by: str | None,
        page: int,
    ) -> dict[str, Any]:
        """
        Search and filter tasks. All filters use AND logic.

        q matches the title case-insensitively; the price range is
        inclusive. Results are paginated with the configured page size.
        """
        sort_key = sort_by or "newest"
        if sort_key not in SORT_ORDERS:
            raise ServiceError(
                "VALIDATION_ERROR",
                f"sortBy must be one of: {', '.join(SORT_ORDERS)}",
                400,
                {},
            )
        if status is not None and status not in STATUS_ORDER:
            raise ServiceError(
                "VALIDATION_ERROR",
                f"status must be one of: {', '.join(STATUS_ORDER)}",
                400,
                {},
            )
        if page < 1:
            raise ServiceError("VALIDATION_ERROR", "page must be >= 1", 400, {})

        predicates: list[Predicate] = []
        if q:
            predicates.append(Predicate("title", "contains", q))
        if category:
            predicates.append(Predicate("category", "==", category))
        if min_price is not None:
            predicates.append(Predicate("price", ">=", min_price))
        if max_price is not None:
            predicates.append(Predicate("price", "<=", max_price))
        if status is not None:
            predicates.append(Predicate("status", "==", status))
        if owner_id is not None:
            predicates.append(Predicate("ownerId", "==", owner_id))

        with _store_errors():
            total = self._store.count(TASKS, predicates)
            snapshots = self._store.query(
                TASKS,
                predicates,
                SORT_ORDERS[sort_key],
                limit=self._page_size,
                offset=(page - 1) * self._page_size,
            )

        return {
            "tasks": [
                self._task_to_summary(Task.from_document(s.doc_id, s.data)) for s in snapshots
            ],
            "total": total,
            "page": page,
            "total_pages": math.ceil(total / self._page_size),
        }

    def subscribe_task(
        self,
        task_id: str,
        on_change: Callable[[dict[str, Any] | None], None],
    ) -> Subscription:
        """
        Watch one task. on_change receives the current task response
        immediately, then after every committed change; None means the
        task was deleted.

        Raises:
            ServiceError: TASK_NOT_FOUND
        """
        self._load(task_id)

        def forward(snapshot: Any) -> None:
            if snapshot is None:
                on_change(None)
                return
            on_change(self._task_to_response(Task.from_document(snapshot.doc_id, snapshot.data)))

        with _store_errors():
            return self._store.subscribe(TASKS, task_id, forward)

    def get_stats(self) -> dict[str, Any]:
        """Task counts for the health endpoint."""
        with _store_errors():
            total = self._store.count(TASKS)
            by_status = self._store.count_by(TASKS, "status")
        return {
            "total_tasks": total,
            "tasks_by_status": {status: by_status.get(status, 0) for status in STATUS_ORDER},
        }

    # ------------------------------------------------------------------
    # Task events
    # ------------------------------------------------------------------

    async def create_task(
        self,
        principal: Principal | None,
        fields: dict[str, Any],
    ) -> dict[str, Any]:
        """Post a new open task owned by the caller."""
        task = self._lifecycle.create_task(
            principal,
            fields,
            task_id=f"t-{uuid.uuid4()}",
            now=_now_iso(),
            today=datetime.now(UTC).date(),
        )
        try:
            with _store_errors():
                self._store.create(TASKS, task.to_document(), doc_id=task.id)
        except DuplicateDocumentError as exc:
            raise ServiceError(
                "CONFLICT", f"A task with id '{task.id}' already exists", 409, {}
            ) from exc
        self._logger.info(
            "Task created",
            extra={"task_id": task.id, "owner_id": task.owner_id, "price": task.price},
        )
        return self._task_to_response(task)

    async def edit_task(
        self,
        task_id: str,
        principal: Principal | None,
        fields: dict[str, Any],
    ) -> dict[str, Any]:
        """Owner edits content fields while the task is open or assigned."""
        today = datetime.now(UTC).date()
        transition = await self._mutate(
            task_id,
            "edit_task",
            lambda task: self._lifecycle.edit_task(task, principal, fields, today=today),
        )
        return self._task_to_response(self._committed(transition))

    async def delete_task(self, task_id: str, principal: Principal | None) -> None:
        """Owner removes an open task and its bids."""
        await self._mutate(
            task_id,
            "delete_task",
            lambda task: self._lifecycle.delete_task(task, principal),
        )

    async def complete_task(self, task_id: str, principal: Principal | None) -> dict[str, Any]:
        """Assignee marks the task completed."""
        transition = await self._mutate(
            task_id,
            "complete_task",
            lambda task: self._lifecycle.complete_task(task, principal),
        )
        return self._task_to_response(self._committed(transition))

    # ------------------------------------------------------------------
    # Bid events
    # ------------------------------------------------------------------

    async def submit_bid(
        self,
        task_id: str,
        principal: Principal | None,
        amount: object,
        message: object = None,
    ) -> dict[str, Any]:
        """Place the caller's bid on an open task. Returns the new bid."""
        bid_id = f"bid-{uuid.uuid4()}"
        now = _now_iso()
        transition = await self._mutate(
            task_id,
            "submit_bid",
            lambda task: self._lifecycle.submit_bid(
                task, principal, amount, bid_id=bid_id, now=now, message=message
            ),
        )
        return self._committed(transition).bids[bid_id].to_document()

    async def edit_bid(
        self,
        task_id: str,
        principal: Principal | None,
        bid_id: str,
        amount: object,
        message: object = None,
    ) -> dict[str, Any]:
        """Change the amount of the caller's own bid. Returns the updated bid."""
        now = _now_iso()
        transition = await self._mutate(
            task_id,
            "edit_bid",
            lambda task: self._lifecycle.edit_bid(
                task, principal, bid_id, amount, now=now, message=message
            ),
        )
        return self._committed(transition).bids[bid_id].to_document()

    async def delete_bid(self, task_id: str, principal: Principal | None, bid_id: str) -> None:
        """Withdraw the caller's own bid."""
        await self._mutate(
            task_id,
            "delete_bid",
            lambda task: self._lifecycle.delete_bid(task, principal, bid_id),
        )

    async def select_bid(
        self,
        task_id: str,
        principal: Principal | None,
        bid_id: str,
    ) -> dict[str, Any]:
        """Owner selects the winning bid; the task becomes assigned."""
        transition = await self._mutate(
            task_id,
            "select_bid",
            lambda task: self._lifecycle.select_bid(task, principal, bid_id),
        )
        return self._task_to_response(self._committed(transition))

    # ------------------------------------------------------------------
    # Payment
    # ------------------------------------------------------------------

    async def release_payment(self, task_id: str, principal: Principal | None) -> dict[str, Any]:
        """
        Pay the winning bidder and close the task.

        A pending marker carrying a fresh attempt id is committed before the
        gateway is called and the attempt id is sent as the idempotency key.
        While the marker is set every other release is rejected. A gateway
        failure clears the marker again and surfaces PAYMENT_FAILED, so the
        call can be retried. If the payout succeeded but the task cannot be
        closed, the marker stays and the payout is never repeated.
        """
        attempt_id = f"pay-{uuid.uuid4()}"
        started = await self._mutate(
            task_id,
            "begin_payment",
            lambda task: self._lifecycle.begin_payment(task, principal, attempt_id),
        )
        request = self._lifecycle.payment_request(self._committed(started))

        try:
            await self._payment_client.release_payment(
                task_id=request.task_id,
                amount=request.amount,
                recipient_id=request.recipient_id,
                currency=self._currency,
                idempotency_key=request.attempt_id,
            )
        except ServiceError:
            await self._abort_payment(task_id, attempt_id)
            raise
        except Exception as exc:
            self._logger.warning(
                "Payment gateway call failed",
                extra={"task_id": task_id, "error": str(exc)},
            )
            await self._abort_payment(task_id, attempt_id)
            raise ServiceError(
                "PAYMENT_FAILED",
                "Payment could not be processed; the payment can be retried",
                502,
                {},
            ) from exc

        self._logger.info(
            "Payment released",
            extra={
                "task_id": task_id,
                "amount": request.amount,
                "recipient_id": request.recipient_id,
                "currency": self._currency,
                "payment_attempt_id": attempt_id,
            },
        )

        try:
            transition = await self._mutate(
                task_id,
                "release_payment",
                lambda current: self._lifecycle.record_payment(
                    current, attempt_id, self._currency
                ),
            )
        except ServiceError:
            self._logger.error(
                "Payment was released but the task could not be closed; it stays pending",
                extra={
                    "task_id": task_id,
                    "recipient_id": request.recipient_id,
                    "payment_attempt_id": attempt_id,
                },
            )
            raise
        return self._task_to_response(self._committed(transition))

    async def _abort_payment(self, task_id: str, attempt_id: str) -> None:
        """Clear the pending marker; a failure here is logged, the gateway error still wins."""
        try:
            await self._mutate(
                task_id,
                "abort_payment",
                lambda task: self._lifecycle.abort_payment(task, attempt_id),
            )
        except ServiceError as exc:
            self._logger.error(
                "Could not clear pending payment after gateway failure",
                extra={"task_id": task_id, "payment_attempt_id": attempt_id, "error": exc.error},
            )
