"""
Task lifecycle state machine.

Every transition is a pure function of (task, principal, payload) that
returns the new task state plus the notifications it should produce.
Nothing in this module touches storage, the clock or the network:
identifiers, timestamps and "today" are supplied by the caller.

Guards run in a fixed order: authentication, payload validation,
status, role, referenced bid. A rejected event raises ServiceError and
leaves the input task untouched.
"""

from __future__ import annotations

import math
from dataclasses import dataclass, field, replace
from datetime import date
from typing import Any

from task_market_service.core.exceptions import ServiceError

OPEN = "open"
ASSIGNED = "assigned"
COMPLETED = "completed"
CLOSED = "closed"

STATUS_ORDER: tuple[str, ...] = (OPEN, ASSIGNED, COMPLETED, CLOSED)

PAYMENT_PENDING = "pending"
PAYMENT_COMPLETED = "completed"

CATEGORIES: tuple[str, ...] = (
    "Web Development",
    "Graphic Design",
    "Content Writing",
    "Tech Support",
)

EDITABLE_FIELDS: tuple[str, ...] = (
    "title",
    "category",
    "description",
    "price",
    "deadline",
    "requirements",
)

BID_SELECTED_MESSAGE = "Your bid has been selected!"
TASK_COMPLETED_MESSAGE = "Your task has been completed!"


@dataclass(frozen=True)
class Principal:
    """The authenticated identity issuing a request."""

    id: str
    display_name: str
    photo_url: str | None = None


@dataclass(frozen=True)
class Bid:
    """An offer to perform a task for a stated amount."""

    id: str
    bidder_id: str
    bidder_name: str
    bidder_photo_url: str | None
    amount: int | float
    timestamp: str
    message: str | None = None

    def to_document(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "bidderId": self.bidder_id,
            "bidderName": self.bidder_name,
            "bidderPhotoURL": self.bidder_photo_url,
            "amount": self.amount,
            "timestamp": self.timestamp,
            "message": self.message,
        }

    @classmethod
    def from_document(cls, data: dict[str, Any]) -> Bid:
        return cls(
            id=str(data["id"]),
            bidder_id=str(data["bidderId"]),
            bidder_name=str(data.get("bidderName") or ""),
            bidder_photo_url=data.get("bidderPhotoURL"),
            amount=data["amount"],
            timestamp=str(data["timestamp"]),
            message=data.get("message"),
        )


@dataclass(frozen=True)
class Task:
    """A unit of paid work and its bids."""

    id: str
    owner_id: str
    title: str
    category: str
    description: str
    price: int | float
    deadline: str
    requirements: tuple[str, ...]
    status: str
    posted_at: str
    bids: dict[str, Bid] = field(default_factory=dict)
    bids_count: int = 0
    winning_bid: Bid | None = None
    assigned_to: str | None = None
    payment_status: str | None = None
    payment_attempt_id: str | None = None
    rating: int | float = 0

    def bid_by(self, bidder_id: str) -> Bid | None:
        """Return the bid placed by bidder_id, if any."""
        for bid in self.bids.values():
            if bid.bidder_id == bidder_id:
                return bid
        return None

    def to_document(self) -> dict[str, Any]:
        """Serialize to the stored document shape (the id is the document key)."""
        return {
            "ownerId": self.owner_id,
            "title": self.title,
            "category": self.category,
            "description": self.description,
            "price": self.price,
            "deadline": self.deadline,
            "requirements": list(self.requirements),
            "status": self.status,
            "bids": {bid_id: bid.to_document() for bid_id, bid in self.bids.items()},
            "bidsCount": self.bids_count,
            "winningBid": self.winning_bid.to_document() if self.winning_bid else None,
            "assignedTo": self.assigned_to,
            "paymentStatus": self.payment_status,
            "paymentAttemptId": self.payment_attempt_id,
            "postedAt": self.posted_at,
            "rating": self.rating,
        }

    @classmethod
    def from_document(cls, task_id: str, data: dict[str, Any]) -> Task:
        bids = {
            str(bid_id): Bid.from_document(bid_data)
            for bid_id, bid_data in (data.get("bids") or {}).items()
        }
        winning_bid_data = data.get("winningBid")
        return cls(
            id=task_id,
            owner_id=str(data["ownerId"]),
            title=str(data["title"]),
            category=str(data["category"]),
            description=str(data["description"]),
            price=data["price"],
            deadline=str(data["deadline"]),
            requirements=tuple(data.get("requirements") or ()),
            status=str(data["status"]),
            posted_at=str(data["postedAt"]),
            bids=bids,
            bids_count=len(bids),
            winning_bid=Bid.from_document(winning_bid_data) if winning_bid_data else None,
            assigned_to=data.get("assignedTo"),
            payment_status=data.get("paymentStatus"),
            payment_attempt_id=data.get("paymentAttemptId"),
            rating=data.get("rating", 0),
        )


@dataclass(frozen=True)
class NotificationDraft:
    """A notification a transition wants delivered."""

    user_id: str
    message: str
    task_id: str | None = None


@dataclass(frozen=True)
class Transition:
    """Result of a lifecycle event: the new task (None once deleted) and its side effects."""

    task: Task | None
    notifications: tuple[NotificationDraft, ...] = ()


@dataclass(frozen=True)
class PaymentRequest:
    """What the payment gateway is asked to pay out for a task."""

    task_id: str
    amount: int | float
    recipient_id: str
    attempt_id: str


@dataclass(frozen=True)
class TaskRules:
    """Input limits applied when validating task and bid payloads."""

    max_title_length: int
    max_description_length: int
    max_requirements: int
    max_bid_message_length: int


def _is_number(value: object) -> bool:
    """Check if value is a finite int or float (bool excluded)."""
    if isinstance(value, bool) or not isinstance(value, int | float):
        return False
    return math.isfinite(value)


def _validation_error(message: str, field_name: str | None = None) -> ServiceError:
    details = {"field": field_name} if field_name is not None else {}
    return ServiceError("VALIDATION_ERROR", message, 400, details)


def _require_principal(principal: Principal | None, action: str) -> Principal:
    if principal is None:
        raise ServiceError("UNAUTHENTICATED", f"You must be logged in to {action}", 401, {})
    return principal


def _advance(task: Task, status: str, **changes: Any) -> Task:
    """Move a task forward along STATUS_ORDER; backward moves are refused."""
    if STATUS_ORDER.index(status) <= STATUS_ORDER.index(task.status):
        raise ServiceError(
            "INVALID_STATE",
            f"Cannot move task from '{task.status}' to '{status}'",
            409,
            {},
        )
    return replace(task, status=status, **changes)


def _with_bids(task: Task, bids: dict[str, Bid]) -> Task:
    # bids and bids_count only ever change together
    return replace(task, bids=bids, bids_count=len(bids))


class TaskLifecycle:
    """Guarded transitions for a single task record."""

    def __init__(self, rules: TaskRules) -> None:
        self._rules = rules

    # ------------------------------------------------------------------
    # Validation
    # ------------------------------------------------------------------

    def validate_fields(
        self,
        fields: dict[str, Any],
        *,
        partial: bool,
        today: date,
    ) -> dict[str, Any]:
        """
        Validate and normalize task content fields.

        With partial=False all editable fields are required. Requirements
        may be given as a list of strings or as newline-separated text;
        blank entries are dropped.
        """
        unknown = sorted(set(fields) - set(EDITABLE_FIELDS))
        if unknown:
            raise _validation_error(f"Unknown task field(s): {', '.join(unknown)}")

        if not partial:
            for field_name in EDITABLE_FIELDS:
                if field_name not in fields:
                    raise _validation_error(f"Missing required field: {field_name}", field_name)
        elif not fields:
            raise _validation_error("No fields to update")

        normalized: dict[str, Any] = {}

        if "title" in fields:
            title = fields["title"]
            if not isinstance(title, str) or not title.strip():
                raise _validation_error("Title is required", "title")
            if len(title) > self._rules.max_title_length:
                raise _validation_error(
                    f"Title must not exceed {self._rules.max_title_length} characters", "title"
                )
            normalized["title"] = title.strip()

        if "category" in fields:
            category = fields["category"]
            if category not in CATEGORIES:
                raise _validation_error(
                    f"Category must be one of: {', '.join(CATEGORIES)}", "category"
                )
            normalized["category"] = category

        if "description" in fields:
            description = fields["description"]
            if not isinstance(description, str) or not description.strip():
                raise _validation_error("Description is required", "description")
            if len(description) > self._rules.max_description_length:
                raise _validation_error(
                    f"Description must not exceed {self._rules.max_description_length} characters",
                    "description",
                )
            normalized["description"] = description

        if "price" in fields:
            price = fields["price"]
            if not _is_number(price) or price < 1:
                raise _validation_error("Minimum price is $1", "price")
            normalized["price"] = price

        if "deadline" in fields:
            normalized["deadline"] = self._validate_deadline(fields["deadline"], today)

        if "requirements" in fields:
            normalized["requirements"] = self._validate_requirements(fields["requirements"])

        return normalized

    @staticmethod
    def _validate_deadline(value: object, today: date) -> str:
        if not isinstance(value, str):
            raise _validation_error("Deadline must be a date in YYYY-MM-DD format", "deadline")
        try:
            deadline = date.fromisoformat(value)
        except ValueError as exc:
            raise _validation_error(
                "Deadline must be a date in YYYY-MM-DD format", "deadline"
            ) from exc
        if deadline < today:
            raise _validation_error("Deadline must be in the future", "deadline")
        return deadline.isoformat()

    def _validate_requirements(self, value: object) -> tuple[str, ...]:
        if isinstance(value, str):
            items: list[object] = list(value.splitlines())
        elif isinstance(value, list):
            items = value
        else:
            raise _validation_error(
                "Requirements must be a list of strings or newline-separated text",
                "requirements",
            )
        requirements: list[str] = []
        for item in items:
            if not isinstance(item, str):
                raise _validation_error("Each requirement must be a string", "requirements")
            if item.strip():
                requirements.append(item.strip())
        if not requirements:
            raise _validation_error("At least one requirement is needed", "requirements")
        if len(requirements) > self._rules.max_requirements:
            raise _validation_error(
                f"A task can list at most {self._rules.max_requirements} requirements",
                "requirements",
            )
        return tuple(requirements)

    def _validate_bid(self, amount: object, message: object) -> tuple[int | float, str | None]:
        if not _is_number(amount) or amount <= 0:  # type: ignore[operator]
            raise _validation_error("Bid amount must be a positive number", "amount")
        if message is not None:
            if not isinstance(message, str):
                raise _validation_error("Bid message must be a string", "message")
            if len(message) > self._rules.max_bid_message_length:
                raise _validation_error(
                    f"Bid message must not exceed {self._rules.max_bid_message_length} characters",
                    "message",
                )
        return amount, message  # type: ignore[return-value]

    # ------------------------------------------------------------------
    # Task events
    # ------------------------------------------------------------------

    def create_task(
        self,
        principal: Principal | None,
        fields: dict[str, Any],
        *,
        task_id: str,
        now: str,
        today: date,
    ) -> Task:
        """Build a new open task owned by the caller."""
        owner = _require_principal(principal, "create a task")
        normalized = self.validate_fields(fields, partial=False, today=today)
        return Task(
            id=task_id,
            owner_id=owner.id,
            title=normalized["title"],
            category=normalized["category"],
            description=normalized["description"],
            price=normalized["price"],
            deadline=normalized["deadline"],
            requirements=normalized["requirements"],
            status=OPEN,
            posted_at=now,
        )

    def edit_task(
        self,
        task: Task,
        principal: Principal | None,
        fields: dict[str, Any],
        *,
        today: date,
    ) -> Transition:
        """Change content fields; only the owner, only before completion."""
        caller = _require_principal(principal, "edit a task")
        normalized = self.validate_fields(fields, partial=True, today=today)
        if task.status not in (OPEN, ASSIGNED):
            raise ServiceError(
                "INVALID_STATE",
                f"Cannot edit a task in '{task.status}' status",
                409,
                {},
            )
        if caller.id != task.owner_id:
            raise ServiceError("PERMISSION_DENIED", "You can only edit your own tasks", 403, {})
        return Transition(task=replace(task, **normalized))

    def delete_task(self, task: Task, principal: Principal | None) -> Transition:
        """Remove an open task together with its bids."""
        caller = _require_principal(principal, "delete a task")
        if task.status != OPEN:
            raise ServiceError(
                "INVALID_STATE",
                f"Cannot delete a task in '{task.status}' status, must be 'open'",
                409,
                {},
            )
        if caller.id != task.owner_id:
            raise ServiceError("PERMISSION_DENIED", "You can only delete your own tasks", 403, {})
        return Transition(task=None)

    def complete_task(self, task: Task, principal: Principal | None) -> Transition:
        """Assigned bidder marks the work as done; the owner is notified."""
        caller = _require_principal(principal, "complete a task")
        if task.status != ASSIGNED:
            raise ServiceError(
                "INVALID_STATE",
                f"Cannot complete a task in '{task.status}' status, must be 'assigned'",
                409,
                {},
            )
        if caller.id != task.assigned_to:
            raise ServiceError(
                "PERMISSION_DENIED",
                "Only the assigned bidder can mark this task as completed",
                403,
                {},
            )
        return Transition(
            task=_advance(task, COMPLETED),
            notifications=(NotificationDraft(task.owner_id, TASK_COMPLETED_MESSAGE, task.id),),
        )

    # ------------------------------------------------------------------
    # Bid events
    # ------------------------------------------------------------------

    def submit_bid(
        self,
        task: Task,
        principal: Principal | None,
        amount: object,
        *,
        bid_id: str,
        now: str,
        message: object = None,
    ) -> Transition:
        """Add the caller's bid; one bid per bidder, never by the owner."""
        bidder = _require_principal(principal, "place a bid")
        amount_value, message_value = self._validate_bid(amount, message)
        if task.status != OPEN:
            raise ServiceError(
                "INVALID_STATE",
                f"Cannot bid on a task in '{task.status}' status, must be 'open'",
                409,
                {},
            )
        if bidder.id == task.owner_id:
            raise ServiceError("PERMISSION_DENIED", "You cannot bid on your own task", 403, {})
        existing = task.bid_by(bidder.id)
        if existing is not None:
            raise ServiceError(
                "BID_ALREADY_EXISTS",
                "You have already placed a bid on this task; edit your existing bid instead",
                409,
                {"bid_id": existing.id},
            )
        bid = Bid(
            id=bid_id,
            bidder_id=bidder.id,
            bidder_name=bidder.display_name,
            bidder_photo_url=bidder.photo_url,
            amount=amount_value,
            timestamp=now,
            message=message_value,
        )
        return Transition(task=_with_bids(task, {**task.bids, bid_id: bid}))

    def _own_open_bid(self, task: Task, caller: Principal, bid_id: str, verb: str) -> Bid:
        if task.status != OPEN:
            raise ServiceError(
                "INVALID_STATE",
                f"Cannot {verb} a bid on a task in '{task.status}' status, must be 'open'",
                409,
                {},
            )
        bid = task.bids.get(bid_id)
        if bid is None:
            raise ServiceError("BID_NOT_FOUND", "Bid not found", 404, {})
        if bid.bidder_id != caller.id:
            raise ServiceError("PERMISSION_DENIED", f"You can only {verb} your own bid", 403, {})
        return bid

    def edit_bid(
        self,
        task: Task,
        principal: Principal | None,
        bid_id: str,
        amount: object,
        *,
        now: str,
        message: object = None,
    ) -> Transition:
        """Change the amount of the caller's bid; the id is kept, the timestamp renewed."""
        caller = _require_principal(principal, "edit a bid")
        amount_value, message_value = self._validate_bid(amount, message)
        bid = self._own_open_bid(task, caller, bid_id, "edit")
        updated = replace(
            bid,
            amount=amount_value,
            timestamp=now,
            message=message_value if message_value is not None else bid.message,
        )
        return Transition(task=_with_bids(task, {**task.bids, bid_id: updated}))

    def delete_bid(self, task: Task, principal: Principal | None, bid_id: str) -> Transition:
        """Withdraw the caller's bid."""
        caller = _require_principal(principal, "delete a bid")
        self._own_open_bid(task, caller, bid_id, "delete")
        remaining = {key: bid for key, bid in task.bids.items() if key != bid_id}
        return Transition(task=_with_bids(task, remaining))

    def select_bid(self, task: Task, principal: Principal | None, bid_id: str) -> Transition:
        """Owner picks the winning bid; the task becomes assigned to its bidder."""
        caller = _require_principal(principal, "select a bid")
        if task.status != OPEN:
            raise ServiceError(
                "INVALID_STATE",
                f"Cannot select a bid on a task in '{task.status}' status, must be 'open'",
                409,
                {},
            )
        if caller.id != task.owner_id:
            raise ServiceError("PERMISSION_DENIED", "Only the task owner can select a bid", 403, {})
        bid = task.bids.get(bid_id)
        if bid is None:
            raise ServiceError("BID_NOT_FOUND", "Bid not found", 404, {})
        return Transition(
            task=_advance(task, ASSIGNED, winning_bid=bid, assigned_to=bid.bidder_id),
            notifications=(NotificationDraft(bid.bidder_id, BID_SELECTED_MESSAGE, task.id),),
        )

    # ------------------------------------------------------------------
    # Payment
    # ------------------------------------------------------------------

    def begin_payment(
        self,
        task: Task,
        principal: Principal | None,
        attempt_id: str,
    ) -> Transition:
        """
        Mark a payout as in flight before the gateway is called.

        While the marker is set no other release can start, so a payout
        that reached the gateway is never sent a second time.
        """
        caller = _require_principal(principal, "release payment")
        if task.payment_status == PAYMENT_PENDING:
            raise ServiceError(
                "INVALID_STATE",
                "A payment for this task is already in progress",
                409,
                {"payment_attempt_id": task.payment_attempt_id},
            )
        if task.payment_status is not None or task.status == CLOSED:
            raise ServiceError(
                "INVALID_STATE",
                "Payment has already been released for this task",
                409,
                {},
            )
        if task.status != COMPLETED:
            raise ServiceError(
                "INVALID_STATE",
                f"Cannot release payment for a task in '{task.status}' status, must be 'completed'",
                409,
                {},
            )
        if caller.id != task.owner_id:
            raise ServiceError(
                "PERMISSION_DENIED", "Only the task owner can release payment", 403, {}
            )
        if task.winning_bid is None:
            raise ServiceError("INVALID_STATE", "Task has no winning bid to pay", 409, {})
        return Transition(
            task=replace(task, payment_status=PAYMENT_PENDING, payment_attempt_id=attempt_id)
        )

    @staticmethod
    def payment_request(task: Task) -> PaymentRequest:
        """Describe the payout for a task whose payment is in flight."""
        if task.payment_status != PAYMENT_PENDING or task.winning_bid is None:
            raise ServiceError("INVALID_STATE", "No payment is in progress for this task", 409, {})
        return PaymentRequest(
            task_id=task.id,
            amount=task.winning_bid.amount,
            recipient_id=task.winning_bid.bidder_id,
            attempt_id=str(task.payment_attempt_id),
        )

    @staticmethod
    def abort_payment(task: Task, attempt_id: str) -> Transition:
        """Clear the in-flight marker after the gateway refused the payout."""
        if task.payment_status != PAYMENT_PENDING or task.payment_attempt_id != attempt_id:
            return Transition(task=task)
        return Transition(task=replace(task, payment_status=None, payment_attempt_id=None))

    def record_payment(self, task: Task, attempt_id: str, currency: str) -> Transition:
        """Close the task after the gateway confirmed the payout."""
        if task.payment_attempt_id != attempt_id:
            raise ServiceError(
                "INVALID_STATE", "Payment attempt no longer matches the task", 409, {}
            )
        request = self.payment_request(task)
        amount = f"{request.amount} {currency.upper()}"
        return Transition(
            task=_advance(task, CLOSED, payment_status=PAYMENT_COMPLETED),
            notifications=(
                NotificationDraft(
                    task.owner_id,
                    f'Payment of {amount} released for "{task.title}".',
                    task.id,
                ),
                NotificationDraft(
                    request.recipient_id,
                    f'You have received a payment of {amount} for "{task.title}".',
                    task.id,
                ),
            ),
        )
