"""
Order endpoints.

  POST /orders                 - Submit an order
  GET  /orders                 - List orders (paginated)
  GET  /orders/{hash}          - Order status and steps
  POST /orders/{hash}/cancel   - Operator cancel
"""

import logging
from typing import Any, Dict, Optional

from fastapi import APIRouter, Body, Query

from resolver.registry import MAX_PAGE_SIZE
from resolver.swap.coordinator import SwapCoordinator

log = logging.getLogger(__name__)

router = APIRouter()

# ---------------------------------------------------------------------------
# Set by server.py at startup
# ---------------------------------------------------------------------------

_coordinator: Optional[SwapCoordinator] = None


def configure(coordinator: SwapCoordinator):
    """Configure order routes. Called once at startup by server.py."""
    global _coordinator
    _coordinator = coordinator


def _get_coordinator() -> SwapCoordinator:
    if _coordinator is None:
        raise RuntimeError("order routes used before configure()")
    return _coordinator


# ---------------------------------------------------------------------------
# Endpoints
# ---------------------------------------------------------------------------

@router.post("/orders", status_code=201)
async def submit_order(payload: Dict[str, Any] = Body(...)):
    """Submit an order. Escrow creation and withdrawal continue in the background."""
    receipt = await _get_coordinator().submit(payload)
    return receipt.to_dict()


@router.get("/orders")
async def list_orders(
    page: int = Query(1, ge=1),
    limit: int = Query(50, ge=1, le=MAX_PAGE_SIZE),
    status: Optional[str] = Query(None),
):
    orders, total = _get_coordinator().registry.list(status=status, page=page, limit=limit)
    return {
        "success": True,
        "orders": [o.summary() for o in orders],
        "pagination": {
            "page": page,
            "limit": limit,
            "total": total,
            "pages": (total + limit - 1) // limit,
        },
    }


@router.get("/orders/{order_hash}")
async def get_order(order_hash: str):
    order = _get_coordinator().get(order_hash)
    return {"success": True, "order": order.to_dict()}


@router.post("/orders/{order_hash}/cancel")
async def cancel_order(order_hash: str):
    order = await _get_coordinator().cancel(order_hash)
    return {
        "success": True,
        "orderHash": order.order_hash,
        "status": order.status.value,
        "message": "Order marked for cancellation",
    }
