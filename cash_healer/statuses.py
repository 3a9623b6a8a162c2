"""
Order and payment statuses with explicit transition rules.

Every status write goes through ``validate_order_transition`` or
``validate_payment_transition`` in the storage layer, so illegal moves such as
``completed -> payment_pending`` never reach the database.
"""

from enum import Enum
from typing import Dict, FrozenSet, Union


class ServiceType(str, Enum):
    FINANCIAL_DETOX = "financial_detox"
    FINANCIAL_MODELING = "financial_modeling"


class OrderStatus(str, Enum):
    CREATED = "created"
    PAYMENT_PENDING = "payment_pending"
    PAYMENT_CONFIRMED = "payment_confirmed"
    FORM_SENT = "form_sent"
    FORM_FILLED = "form_filled"
    PROCESSING = "processing"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


class PaymentStatus(str, Enum):
    PENDING = "pending"
    WAITING_FOR_CAPTURE = "waiting_for_capture"
    SUCCEEDED = "succeeded"
    CANCELED = "canceled"


class InvalidTransitionError(ValueError):
    """Raised when a status change is not allowed by the lifecycle."""

    def __init__(self, entity: str, current: str, new: str):
        self.entity = entity
        self.current = current
        self.new = new
        super().__init__(f"Invalid {entity} status transition: {current} -> {new}")


ORDER_TRANSITIONS: Dict[OrderStatus, FrozenSet[OrderStatus]] = {
    OrderStatus.CREATED: frozenset({OrderStatus.PAYMENT_PENDING, OrderStatus.CANCELLED}),
    OrderStatus.PAYMENT_PENDING: frozenset({OrderStatus.PAYMENT_CONFIRMED, OrderStatus.CANCELLED}),
    # payment_pending here is the compensating rollback when the payment write fails
    OrderStatus.PAYMENT_CONFIRMED: frozenset({
        OrderStatus.PAYMENT_PENDING,
        OrderStatus.FORM_SENT,
        OrderStatus.COMPLETED,
        OrderStatus.CANCELLED,
    }),
    OrderStatus.FORM_SENT: frozenset({
        OrderStatus.FORM_FILLED,
        OrderStatus.PROCESSING,
        OrderStatus.COMPLETED,
        OrderStatus.CANCELLED,
    }),
    OrderStatus.FORM_FILLED: frozenset({OrderStatus.PROCESSING, OrderStatus.COMPLETED, OrderStatus.CANCELLED}),
    OrderStatus.PROCESSING: frozenset({OrderStatus.COMPLETED, OrderStatus.CANCELLED}),
    OrderStatus.COMPLETED: frozenset(),
    OrderStatus.CANCELLED: frozenset(),
}

PAYMENT_TRANSITIONS: Dict[PaymentStatus, FrozenSet[PaymentStatus]] = {
    PaymentStatus.PENDING: frozenset({
        PaymentStatus.WAITING_FOR_CAPTURE,
        PaymentStatus.SUCCEEDED,
        PaymentStatus.CANCELED,
    }),
    PaymentStatus.WAITING_FOR_CAPTURE: frozenset({PaymentStatus.SUCCEEDED, PaymentStatus.CANCELED}),
    PaymentStatus.SUCCEEDED: frozenset(),
    PaymentStatus.CANCELED: frozenset(),
}

# Orders an admin still has to work on
ADMIN_PENDING_STATUSES = (
    OrderStatus.PAYMENT_CONFIRMED,
    OrderStatus.FORM_SENT,
    OrderStatus.FORM_FILLED,
    OrderStatus.PROCESSING,
)


def can_transition_order(current: Union[OrderStatus, str], new: Union[OrderStatus, str]) -> bool:
    return OrderStatus(new) in ORDER_TRANSITIONS[OrderStatus(current)]


def can_transition_payment(current: Union[PaymentStatus, str], new: Union[PaymentStatus, str]) -> bool:
    return PaymentStatus(new) in PAYMENT_TRANSITIONS[PaymentStatus(current)]


def validate_order_transition(current: Union[OrderStatus, str], new: Union[OrderStatus, str]) -> OrderStatus:
    if not can_transition_order(current, new):
        raise InvalidTransitionError("order", OrderStatus(current).value, OrderStatus(new).value)
    return OrderStatus(new)


def validate_payment_transition(current: Union[PaymentStatus, str], new: Union[PaymentStatus, str]) -> PaymentStatus:
    if not can_transition_payment(current, new):
        raise InvalidTransitionError("payment", PaymentStatus(current).value, PaymentStatus(new).value)
    return PaymentStatus(new)
