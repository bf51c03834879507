#!/usr/bin/env python3
"""
ICP Fusion+ Resolver Server
Cross-chain HTLC swap coordination between ICP and EVM chains.

Endpoints:
  GET  /health                - Health check
  GET  /info                  - Resolver info (chains, tokens, limits)
  GET  /liquidity             - Balances and reservations
  GET  /stats                 - Order statistics
  POST /orders                - Submit order
  GET  /orders                - List orders
  GET  /orders/{hash}         - Order status
  POST /orders/{hash}/cancel  - Cancel order
"""

import asyncio
import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from resolver import __version__
from resolver.config import ResolverConfig
from resolver.errors import (
    ResolverError, ValidationError, DuplicateOrderError, OrderNotFoundError,
    InvalidOrderStateError, LiquidityError, ChainCallError,
)
from resolver.htlc import build_adapters
from resolver.swap.coordinator import SwapCoordinator
from routes import orders, status

log = logging.getLogger(__name__)

# HTTP status per error type, most specific first
ERROR_STATUS = (
    (ValidationError, 400),
    (DuplicateOrderError, 409),
    (OrderNotFoundError, 404),
    (InvalidOrderStateError, 400),
    (LiquidityError, 503),
    (ChainCallError, 502),
    (ResolverError, 500),
)


def setup_logging(level: str = "INFO"):
    logging.basicConfig(
        level=getattr(logging, level, logging.INFO),
        format='%(asctime)s [%(levelname)s] %(name)s: %(message)s'
    )


def error_status(error: ResolverError) -> int:
    for error_type, code in ERROR_STATUS:
        if isinstance(error, error_type):
            return code
    return 500


async def _sweep_loop(coordinator: SwapCoordinator):
    """Purge stale failed orders every sweep interval."""
    while True:
        await asyncio.sleep(coordinator.config.sweep_interval)
        try:
            coordinator.sweep()
        except Exception as e:
            log.error(f"Failed-order sweep error: {e}")


def create_app(coordinator: Optional[SwapCoordinator] = None) -> FastAPI:
    """
    Build the FastAPI app.

    Without a coordinator, one is built from the environment at startup.
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        nonlocal coordinator
        if coordinator is None:
            config = ResolverConfig.from_env()
            setup_logging(config.log_level)
            coordinator = SwapCoordinator(config, build_adapters(config))
        orders.configure(coordinator)
        status.configure(coordinator)

        sweep_task = asyncio.create_task(_sweep_loop(coordinator))
        log.info(f"Resolver started ({coordinator.config.mode} mode)")
        try:
            yield
        finally:
            sweep_task.cancel()
            await asyncio.gather(sweep_task, return_exceptions=True)
            await coordinator.shutdown()
            log.info("Resolver stopped")

    app = FastAPI(
        title="ICP Fusion+ Resolver",
        description="Cross-chain HTLC swaps between ICP and EVM chains",
        version=__version__,
        lifespan=lifespan,
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.exception_handler(ResolverError)
    async def resolver_error_handler(request: Request, exc: ResolverError):
        code = error_status(exc)
        if code >= 500:
            log.error(f"{request.method} {request.url.path} -> {code}: {exc}")
        body = {"success": False}
        body.update(exc.to_dict())
        return JSONResponse(status_code=code, content=body)

    app.include_router(status.router)
    app.include_router(orders.router)
    return app


app = create_app()


# =============================================================================
# MAIN
# =============================================================================

if __name__ == "__main__":
    import uvicorn
    config = ResolverConfig.from_env()
    setup_logging(config.log_level)
    log.info(f"Starting ICP Fusion+ Resolver on port {config.port}")
    log.info(f"Docs: http://{config.host}:{config.port}/docs")
    uvicorn.run(app, host=config.host, port=config.port)
