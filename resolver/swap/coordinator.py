"""
Swap coordinator.

Entry point for order submission and operator actions:

1. validate the payload and resolve escrow parties
2. register the order (rejects duplicates)
3. generate the secret / hashlock
4. reserve liquidity on both chains
5. in the background: create both escrows, then arm the withdrawal
"""

import time
import asyncio
import logging
from dataclasses import dataclass
from typing import Optional, Dict, Any, Callable, Awaitable

from ..config import ResolverConfig
from ..core import (
    Order, OrderStatus, generate_secret, calculate_safety_deposit, utc_iso,
    COMPLETION_ESTIMATE_MARGIN,
)
from ..errors import (
    ChainCallError, LiquidityError, InvalidOrderStateError, InternalError,
)
from ..htlc.base import AdapterSet
from ..liquidity import LiquidityChecker
from ..registry import OrderRegistry, InMemoryOrderRegistry
from ..validation import validate_order
from .orchestrator import EscrowOrchestrator
from .scheduler import WithdrawalScheduler, RetryPolicy, WithdrawalOrder

log = logging.getLogger(__name__)


@dataclass(frozen=True)
class SubmissionReceipt:
    """What the submitter gets back for an accepted order."""
    order_hash: str
    hashlock: str
    status: OrderStatus
    estimated_completion_time: float

    def to_dict(self) -> Dict[str, Any]:
        return {
            "success": True,
            "orderHash": self.order_hash,
            "hashlock": self.hashlock,
            "status": self.status.value,
            "estimatedCompletionTime": utc_iso(self.estimated_completion_time),
        }


class SwapCoordinator:
    """
    Ties validation, registry, liquidity, escrow creation and withdrawal
    scheduling together.
    """

    def __init__(self, config: ResolverConfig, adapters: AdapterSet,
                 registry: OrderRegistry = None,
                 clock: Callable[[], float] = time.time,
                 sleep: Callable[[float], Awaitable[None]] = asyncio.sleep):
        self.config = config
        self.adapters = adapters
        self.registry = registry or InMemoryOrderRegistry()
        self.clock = clock
        self.started_at = clock()

        timeout = config.chain_call_timeout
        self.liquidity = LiquidityChecker(adapters, call_timeout=timeout)
        self.orchestrator = EscrowOrchestrator(
            adapters, self.registry, self.liquidity, clock=clock, call_timeout=timeout,
        )
        self.scheduler = WithdrawalScheduler(
            adapters,
            self.registry,
            policy=_retry_policy(config),
            order_policy=WithdrawalOrder(config.scheduler.withdrawal_order),
            settle_delay=config.scheduler.settle_delay,
            clock=clock,
            sleep=sleep,
            call_timeout=timeout,
        )
        self._tasks: Dict[str, asyncio.Task] = {}

    # =========================================================================
    # Submission
    # =========================================================================

    async def submit(self, payload: Dict[str, Any]) -> SubmissionReceipt:
        """
        Accept an order.

        Raises:
            ValidationError: payload rejected
            DuplicateOrderError: order hash already seen
            LiquidityError: not enough free balance on some side
            ChainCallError: balance query failed
            InternalError: unexpected failure while reserving; order not kept
        """
        now = self.clock()
        validated = validate_order(payload, self.config, now=now)

        secret, hashlock = generate_secret()
        order = Order(
            order_hash=validated.order_hash,
            src_chain=validated.src_chain,
            dst_chain=validated.dst_chain,
            src_token=validated.src_token,
            dst_token=validated.dst_token,
            src_amount=validated.src_amount,
            dst_amount=validated.dst_amount,
            deadline=validated.deadline,
            timelocks=validated.timelocks,
            addresses=validated.addresses,
            secret="0x" + secret,
            hashlock="0x" + hashlock,
            safety_deposit=calculate_safety_deposit(validated.src_amount),
            dst_safety_deposit=calculate_safety_deposit(validated.dst_amount),
            created_at=now,
        )

        self.registry.add(order)
        try:
            await self.liquidity.reserve(order)
        except (LiquidityError, ChainCallError):
            self.registry.discard(order.order_hash)
            raise
        except Exception as e:
            self.registry.discard(order.order_hash)
            self.liquidity.release(order.order_hash)
            log.exception(f"Liquidity reservation crashed for {order.order_hash[:10]}...")
            raise InternalError(f"Unexpected error: {e}") from e
        except BaseException:
            self.registry.discard(order.order_hash)
            self.liquidity.release(order.order_hash)
            raise

        log.info(f"Order accepted: {order.order_hash[:10]}... {order.src_chain} -> "
                 f"{order.dst_chain} amount={order.src_amount} hashlock={order.hashlock[:10]}...")

        task = asyncio.create_task(self._process(order))
        self._tasks[order.order_hash] = task
        task.add_done_callback(lambda t: self._tasks.pop(order.order_hash, None))

        return SubmissionReceipt(
            order_hash=order.order_hash,
            hashlock=order.hashlock,
            status=order.status,
            estimated_completion_time=now + order.timelocks.withdrawal + COMPLETION_ESTIMATE_MARGIN,
        )

    async def _process(self, order: Order):
        try:
            await self.orchestrator.run(order)
        except InvalidOrderStateError as e:
            log.warning(str(e))
            self.liquidity.release(order.order_hash)
            return
        except ChainCallError as e:
            await self._fail(order, e)
            return
        except Exception as e:
            log.exception(f"Escrow creation crashed for {order.order_hash[:10]}...")
            await self._fail(order, InternalError(f"Unexpected error: {e}"))
            return

        self.scheduler.schedule(order)

    async def _fail(self, order: Order, error: Exception):
        async with self.registry.lock(order.order_hash):
            order.status = OrderStatus.FAILED
            order.error = str(error)
            order.failed_at = self.clock()
        self.liquidity.release(order.order_hash)
        log.error(f"Order {order.order_hash[:10]}... failed: {error}")

    # =========================================================================
    # Operator actions
    # =========================================================================

    def get(self, order_hash: str) -> Order:
        return self.registry.require(order_hash)

    async def cancel(self, order_hash: str) -> Order:
        """
        Stop an order from starting further steps.

        In-flight chain calls finish; funded escrows are recovered through
        their cancellation timelock.
        """
        order = self.registry.require(order_hash)
        async with self.registry.lock(order.order_hash):
            if order.status.is_terminal:
                raise InvalidOrderStateError(
                    f"Cannot cancel order in status {order.status.value}"
                )
            if order.status is not OrderStatus.CANCELLING:
                order.status = OrderStatus.CANCELLING
                order.cancelled_at = self.clock()
        self.liquidity.release(order.order_hash)
        log.warning(f"Order {order.order_hash[:10]}... marked cancelling")
        return order

    def sweep(self, now: Optional[float] = None) -> int:
        now = self.clock() if now is None else now
        return self.registry.sweep_stale(now, self.config.failed_order_retention)

    def uptime(self) -> float:
        return self.clock() - self.started_at

    async def shutdown(self):
        tasks = list(self._tasks.values())
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        await self.scheduler.shutdown()


def _retry_policy(config: ResolverConfig) -> RetryPolicy:
    """Fixed delays, or growing by RETRY_BACKOFF per retry when it is above 1."""
    scheduler = config.scheduler
    if scheduler.retry_backoff > 1:
        return RetryPolicy.exponential(scheduler.max_retries, scheduler.retry_delay,
                                       factor=scheduler.retry_backoff)
    return RetryPolicy.fixed(scheduler.max_retries, scheduler.retry_delay)
