import logging
import time
from collections import OrderedDict
from dataclasses import dataclass
from typing import Callable, Optional

from cash_healer import config

logger = logging.getLogger(__name__)


@dataclass
class CachedOrder:
    order_id: int
    stored_at: float


class AdminOrderCache:
    """
    Last ``/send`` order id per admin, so files of one media group without a
    caption go to the same client.

    Entries expire after ``ttl_seconds``; past ``max_size`` the least recently
    used admin is evicted. The cache lives in this process only, so several bot
    instances behind one token would each keep their own.
    """

    def __init__(self, ttl_seconds: int, max_size: int, clock: Callable[[], float] = time.monotonic):
        self.ttl_seconds = ttl_seconds
        self.max_size = max_size
        self._clock = clock
        self._items: "OrderedDict[int, CachedOrder]" = OrderedDict()

    def __len__(self) -> int:
        return len(self._items)

    def set(self, admin_id: int, order_id: int):
        previous = self.get(admin_id)
        if previous is not None and previous != order_id:
            logger.warning(
                "Admin %s switched batch from order %s to order %s before the previous batch expired",
                admin_id,
                previous,
                order_id,
            )
        self._items[admin_id] = CachedOrder(order_id=order_id, stored_at=self._clock())
        self._items.move_to_end(admin_id)
        while len(self._items) > self.max_size:
            evicted_id, evicted = self._items.popitem(last=False)
            logger.info("Evicted cached order %s of admin %s", evicted.order_id, evicted_id)

    def get(self, admin_id: int) -> Optional[int]:
        item = self._items.get(admin_id)
        if item is None:
            return None
        if self._clock() - item.stored_at > self.ttl_seconds:
            del self._items[admin_id]
            return None
        self._items.move_to_end(admin_id)
        return item.order_id


ADMIN_ORDER_CACHE = AdminOrderCache(
    ttl_seconds=config.ADMIN_CACHE_TTL_SECONDS,
    max_size=config.ADMIN_CACHE_MAX_SIZE,
)
