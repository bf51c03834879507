"""
Fusion resolver - cross-chain HTLC swaps between ICP and EVM chains.

One secret, published only as its SHA256 hashlock, gates both escrows of
an order. The resolver funds both escrows, waits for the withdrawal
window, then withdraws both sides.

Usage:
    from resolver import ResolverConfig, SwapCoordinator, build_adapters

    config = ResolverConfig.from_env()
    coordinator = SwapCoordinator(config, build_adapters(config))

    receipt = await coordinator.submit(order_payload)
    order = coordinator.get(receipt.order_hash)
"""

from .core import (
    OrderStatus,
    StepStatus,
    SwapDirection,
    EscrowSide,
    Timelocks,
    AddressAssignment,
    EscrowImmutables,
    EscrowRef,
    Step,
    Order,
    generate_secret,
    verify_preimage,
    calculate_safety_deposit,
)
from .config import ResolverConfig, EVMChainConfig, ICPConfig, SchedulerConfig
from .errors import (
    ResolverError,
    ValidationError,
    DuplicateOrderError,
    OrderNotFoundError,
    InvalidOrderStateError,
    LiquidityError,
    ChainCallError,
    TimingError,
    InternalError,
)
from .validation import validate_order, ValidatedOrder
from .liquidity import LiquidityChecker, LiquidityLedger, LiquidityReport
from .registry import OrderRegistry, InMemoryOrderRegistry
from .htlc import AdapterSet, ChainAdapter, SimulatedEscrowAdapter, build_adapters
from .swap import SwapCoordinator, WithdrawalScheduler, RetryPolicy, WithdrawalOrder

__version__ = "0.1.0"
__all__ = [
    # Core types
    "OrderStatus",
    "StepStatus",
    "SwapDirection",
    "EscrowSide",
    "Timelocks",
    "AddressAssignment",
    "EscrowImmutables",
    "EscrowRef",
    "Step",
    "Order",
    # Utilities
    "generate_secret",
    "verify_preimage",
    "calculate_safety_deposit",
    "validate_order",
    "ValidatedOrder",
    # Config
    "ResolverConfig",
    "EVMChainConfig",
    "ICPConfig",
    "SchedulerConfig",
    # Errors
    "ResolverError",
    "ValidationError",
    "DuplicateOrderError",
    "OrderNotFoundError",
    "InvalidOrderStateError",
    "LiquidityError",
    "ChainCallError",
    "TimingError",
    "InternalError",
    # Components
    "LiquidityChecker",
    "LiquidityLedger",
    "LiquidityReport",
    "OrderRegistry",
    "InMemoryOrderRegistry",
    "AdapterSet",
    "ChainAdapter",
    "SimulatedEscrowAdapter",
    "build_adapters",
    "SwapCoordinator",
    "WithdrawalScheduler",
    "RetryPolicy",
    "WithdrawalOrder",
]
