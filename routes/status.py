"""
Resolver status endpoints.

  GET /health     - Liveness
  GET /info       - Resolver identity, chains, limits
  GET /liquidity  - Balances and reservations per chain
  GET /stats      - Order counters
"""

import logging
from datetime import datetime, timezone
from typing import Optional

from fastapi import APIRouter

from resolver import __version__
from resolver.core import HOME_CHAIN
from resolver.swap.coordinator import SwapCoordinator

log = logging.getLogger(__name__)

router = APIRouter()

RESOLVER_NAME = "ICP Fusion+ Resolver"

_coordinator: Optional[SwapCoordinator] = None


def configure(coordinator: SwapCoordinator):
    """Configure status routes. Called once at startup by server.py."""
    global _coordinator
    _coordinator = coordinator


def _get_coordinator() -> SwapCoordinator:
    if _coordinator is None:
        raise RuntimeError("status routes used before configure()")
    return _coordinator


@router.get("/health")
async def health():
    coordinator = _get_coordinator()
    return {
        "status": "healthy",
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "uptime": round(coordinator.uptime(), 1),
    }


@router.get("/info")
async def info():
    coordinator = _get_coordinator()
    config = coordinator.config
    return {
        "name": RESOLVER_NAME,
        "version": __version__,
        "mode": config.mode,
        "supportedChains": [HOME_CHAIN] + list(config.supported_evm_chains),
        "supportedTokens": list(config.supported_tokens),
        "feePercent": config.fee_percent,
        "maxOrderSize": str(config.max_order_size) if config.max_order_size is not None else None,
        "withdrawalOrder": config.scheduler.withdrawal_order,
        "chains": [adapter.describe() for adapter in coordinator.adapters],
    }


@router.get("/liquidity")
async def liquidity():
    coordinator = _get_coordinator()
    return {
        "success": True,
        "chains": await coordinator.liquidity.snapshot(),
    }


@router.get("/stats")
async def stats():
    coordinator = _get_coordinator()
    data = coordinator.registry.stats(coordinator.clock())
    data["scheduledWithdrawals"] = coordinator.scheduler.pending()
    data["uptime"] = round(coordinator.uptime(), 1)
    return {"success": True, "stats": data}
