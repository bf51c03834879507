"""
Order registry.

Holds every order the resolver has accepted. Orders live in the active set
until they complete, then move to the completed set. Failed and cancelling
orders stay active (and visible) until the periodic sweep purges them; purged hashes
are remembered so an order hash is never processed twice.

All mutations of an order happen while holding its lock:

    async with registry.lock(order_hash):
        order.status = OrderStatus.CANCELLING
"""

import asyncio
import logging
from abc import ABC, abstractmethod
from contextlib import asynccontextmanager
from typing import Optional, Dict, Any, List, Tuple, AsyncIterator

from .core import Order, OrderStatus
from .errors import DuplicateOrderError, OrderNotFoundError

log = logging.getLogger(__name__)

MAX_PAGE_SIZE = 100
LAST_24H = 86400

# Orders no task will move again
SWEPT_STATUSES = (OrderStatus.FAILED, OrderStatus.CANCELLING)


class OrderRegistry(ABC):
    """Storage interface for orders. A durable store implements the same calls."""

    @abstractmethod
    def add(self, order: Order):
        """Register a new order. Raises DuplicateOrderError if the hash was ever seen."""

    @abstractmethod
    def discard(self, order_hash: str):
        """Forget an order that was never acted on, so it can be resubmitted."""

    @abstractmethod
    def get(self, order_hash: str) -> Optional[Order]:
        pass

    @abstractmethod
    def lock(self, order_hash: str):
        """Async context manager serializing mutations of one order."""

    @abstractmethod
    def mark_completed(self, order_hash: str):
        """Move an order from the active to the completed set."""

    @abstractmethod
    def list(self, status: Optional[str] = None, page: int = 1,
             limit: int = 50) -> Tuple[List[Order], int]:
        """Orders newest first, with the total matching count."""

    @abstractmethod
    def stats(self, now: float) -> Dict[str, Any]:
        pass

    @abstractmethod
    def sweep_stale(self, now: float, retention: float) -> int:
        """Purge failed and cancelling orders settled more than `retention` seconds ago. Returns count."""

    def require(self, order_hash: str) -> Order:
        order = self.get(order_hash)
        if order is None:
            raise OrderNotFoundError(order_hash)
        return order


class InMemoryOrderRegistry(OrderRegistry):
    """
    Process-local registry.

    Not persistent: a restart loses in-flight orders. Escrows already
    funded on chain remain recoverable through their cancellation timelock.
    """

    def __init__(self):
        self.active: Dict[str, Order] = {}
        self.completed: Dict[str, Order] = {}
        self._retired: set = set()
        self._locks: Dict[str, asyncio.Lock] = {}

    @staticmethod
    def _key(order_hash: str) -> str:
        return order_hash.lower()

    def add(self, order: Order):
        key = self._key(order.order_hash)
        if key in self.active or key in self.completed or key in self._retired:
            raise DuplicateOrderError(order.order_hash)
        self.active[key] = order
        log.info(f"Order registered: {order.order_hash[:10]}...")

    def discard(self, order_hash: str):
        key = self._key(order_hash)
        self.active.pop(key, None)
        self._locks.pop(key, None)

    def get(self, order_hash: str) -> Optional[Order]:
        key = self._key(order_hash)
        return self.active.get(key) or self.completed.get(key)

    @asynccontextmanager
    async def lock(self, order_hash: str) -> AsyncIterator[None]:
        key = self._key(order_hash)
        lock = self._locks.get(key)
        if lock is None:
            lock = self._locks[key] = asyncio.Lock()
        async with lock:
            yield

    def mark_completed(self, order_hash: str):
        key = self._key(order_hash)
        order = self.active.pop(key, None)
        if order is None:
            raise OrderNotFoundError(order_hash)
        self.completed[key] = order
        self._locks.pop(key, None)

    def list(self, status: Optional[str] = None, page: int = 1,
             limit: int = 50) -> Tuple[List[Order], int]:
        page = max(1, page)
        limit = max(1, min(limit, MAX_PAGE_SIZE))

        if status == "active":
            orders = list(self.active.values())
        elif status == "completed":
            orders = list(self.completed.values())
        else:
            orders = list(self.active.values()) + list(self.completed.values())
            if status:
                orders = [o for o in orders if o.status.value == status]

        orders.sort(key=lambda o: o.created_at, reverse=True)
        start = (page - 1) * limit
        return orders[start:start + limit], len(orders)

    def stats(self, now: float) -> Dict[str, Any]:
        orders = list(self.active.values()) + list(self.completed.values())
        recent = [o for o in orders if o.created_at > now - LAST_24H]
        by_status: Dict[str, int] = {}
        for order in orders:
            by_status[order.status.value] = by_status.get(order.status.value, 0) + 1
        return {
            "totalOrders": len(orders),
            "activeOrders": len(self.active),
            "completedOrders": len(self.completed),
            "byStatus": by_status,
            "last24h": {
                "total": len(recent),
                "completed": sum(1 for o in recent if o.status is OrderStatus.COMPLETED),
                "failed": sum(1 for o in recent if o.status is OrderStatus.FAILED),
            },
        }

    def sweep_stale(self, now: float, retention: float) -> int:
        stale = [
            key for key, order in self.active.items()
            if order.status in SWEPT_STATUSES and _settled_at(order) < now - retention
        ]
        for key in stale:
            del self.active[key]
            self._locks.pop(key, None)
            self._retired.add(key)
        if stale:
            log.info(f"Swept {len(stale)} failed/cancelled orders older than {retention}s")
        return len(stale)


def _settled_at(order: Order) -> float:
    if order.status is OrderStatus.CANCELLING:
        return order.cancelled_at or order.created_at
    return order.failed_at or order.created_at
