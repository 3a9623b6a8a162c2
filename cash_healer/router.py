import logging
import re
from dataclasses import dataclass
from enum import Enum
from typing import Optional

from cash_healer import config

logger = logging.getLogger(__name__)

# payment_<orderId>_<paymentId>; ASCII digits only, the gateway id may itself contain "_"
PAYMENT_CALLBACK_RE = re.compile(r"^payment_([0-9]+)_(.+)$", re.DOTALL)


class EventKind(str, Enum):
    MESSAGE = "message"
    CALLBACK = "callback"
    DOCUMENT = "document"


class Action(str, Enum):
    CREATE_ORDER_DETOX = "create_order_detox"
    CREATE_ORDER_MODELING = "create_order_modeling"
    CONFIRM_PAYMENT = "confirm_payment"
    SHOW_ADMIN_PANEL = "show_admin_panel"
    PROCESS_ADMIN_DOCUMENT = "process_admin_document"
    REJECT_NON_ADMIN_DOCUMENT = "reject_non_admin_document"
    USE_AGENT = "use_agent"


@dataclass
class InboundEvent:
    """Telegram update reduced to what the order workflow needs."""
    kind: EventKind
    chat_id: int
    user_id: int
    username: Optional[str] = None
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    text: Optional[str] = None
    message_id: Optional[int] = None
    callback_query_id: Optional[str] = None
    callback_data: Optional[str] = None
    file_id: Optional[str] = None
    file_name: Optional[str] = None
    file_size: Optional[int] = None
    caption: Optional[str] = None
    is_admin: bool = False


@dataclass
class Route:
    action: Action
    order_id: Optional[int] = None
    payment_id: Optional[str] = None


def parse_payment_callback(data: str) -> Optional[Route]:
    match = PAYMENT_CALLBACK_RE.match(data)
    if not match:
        return None
    return Route(Action.CONFIRM_PAYMENT, order_id=int(match.group(1)), payment_id=match.group(2))


def route_action(event: InboundEvent) -> Route:
    """Classifies an event into exactly one action. Admin flag is trusted as given."""
    route = Route(Action.USE_AGENT)

    if event.kind == EventKind.DOCUMENT and event.file_id:
        if event.is_admin:
            route = Route(Action.PROCESS_ADMIN_DOCUMENT)
        else:
            logger.warning("Non-admin %s attempted document upload", event.user_id)
            route = Route(Action.REJECT_NON_ADMIN_DOCUMENT)
    elif event.is_admin and event.kind == EventKind.MESSAGE and event.text == config.ADMIN_COMMAND:
        route = Route(Action.SHOW_ADMIN_PANEL)
    elif event.kind == EventKind.CALLBACK and event.callback_data:
        data = event.callback_data
        if data == "order_detox":
            route = Route(Action.CREATE_ORDER_DETOX)
        elif data == "order_modeling":
            route = Route(Action.CREATE_ORDER_MODELING)
        elif data.startswith("payment_"):
            route = parse_payment_callback(data) or route

    logger.debug(
        "Routed %s from %s to %s (order_id=%s, payment_id=%s)",
        event.kind.value,
        event.user_id,
        route.action.value,
        route.order_id,
        route.payment_id,
    )
    return route
