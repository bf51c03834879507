"""
Withdrawal scheduling.

Once both escrows exist, one task per order sleeps until the later of the
two withdrawal windows opens, then withdraws both escrows with the secret.
Every attempt is recorded as an execute_withdrawal step. Legs already
withdrawn are not repeated on retry.
"""

import time
import asyncio
import logging
from enum import Enum
from dataclasses import dataclass
from typing import Optional, Dict, List, Tuple, Callable, Awaitable

from ..core import Order, OrderStatus, EscrowSide, EscrowRef, HOME_CHAIN, STEP_WITHDRAW
from ..errors import ChainCallError, TimingError, InvalidOrderStateError, InternalError
from ..htlc.base import AdapterSet, WithdrawalReceipt, call_adapter
from ..registry import OrderRegistry

log = logging.getLogger(__name__)


class WithdrawalOrder(Enum):
    """Which escrow is withdrawn first."""
    SOURCE_FIRST = "source_first"
    DESTINATION_FIRST = "destination_first"
    EVM_FIRST = "evm_first"
    ICP_FIRST = "icp_first"

    def legs(self, order: Order) -> List[EscrowSide]:
        src, dst = EscrowSide.SOURCE, EscrowSide.DESTINATION
        if self is WithdrawalOrder.SOURCE_FIRST:
            return [src, dst]
        if self is WithdrawalOrder.DESTINATION_FIRST:
            return [dst, src]
        icp_side = src if order.src_chain == HOME_CHAIN else dst
        evm_side = dst if icp_side is src else src
        if self is WithdrawalOrder.ICP_FIRST:
            return [icp_side, evm_side]
        return [evm_side, icp_side]


@dataclass(frozen=True)
class RetryPolicy:
    """
    Delays (seconds) before each retry. The number of delays is the number
    of retries after the initial attempt.
    """
    delays: Tuple[float, ...] = (30.0, 30.0)

    @classmethod
    def fixed(cls, retries: int, delay: float) -> "RetryPolicy":
        return cls(delays=tuple([delay] * retries))

    @classmethod
    def exponential(cls, retries: int, base: float, factor: float = 2.0) -> "RetryPolicy":
        return cls(delays=tuple(base * factor ** i for i in range(retries)))

    @property
    def max_retries(self) -> int:
        return len(self.delays)

    def delay_for(self, retry: int) -> Optional[float]:
        """Delay before retry number `retry` (1-based), None when exhausted."""
        if 1 <= retry <= len(self.delays):
            return self.delays[retry - 1]
        return None


class WithdrawalScheduler:
    """
    Arms and runs one withdrawal task per order.

    Args:
        adapters: Chain adapters
        registry: Order registry (locks, completed set)
        policy: Retry policy
        order_policy: Which leg is withdrawn first
        settle_delay: Pause between the two legs
        clock / sleep: Injectable time source and sleep for tests
    """

    def __init__(self, adapters: AdapterSet, registry: OrderRegistry,
                 policy: RetryPolicy = None,
                 order_policy: WithdrawalOrder = WithdrawalOrder.SOURCE_FIRST,
                 settle_delay: float = 5.0,
                 clock: Callable[[], float] = time.time,
                 sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
                 call_timeout: Optional[float] = None):
        self.adapters = adapters
        self.registry = registry
        self.policy = policy or RetryPolicy()
        self.order_policy = order_policy
        self.settle_delay = settle_delay
        self.clock = clock
        self.sleep = sleep
        self.call_timeout = call_timeout
        self._tasks: Dict[str, asyncio.Task] = {}

    @staticmethod
    def fire_time(order: Order) -> float:
        """When the later of the two withdrawal windows opens."""
        return max(ref.withdrawal_opens_at() for ref in order.escrows.values())

    def schedule(self, order: Order) -> asyncio.Task:
        """Arm the withdrawal task for an order whose escrows both exist."""
        if order.source_escrow is None or order.destination_escrow is None:
            raise InvalidOrderStateError(
                f"Order {order.order_hash[:10]}... has no escrow pair to withdraw"
            )
        existing = self._tasks.get(order.order_hash)
        if existing is not None and not existing.done():
            return existing

        fire_at = self.fire_time(order)
        log.info(f"Withdrawal for {order.order_hash[:10]}... scheduled in "
                 f"{max(0.0, fire_at - self.clock()):.0f}s")
        task = asyncio.create_task(self._run(order, fire_at))
        self._tasks[order.order_hash] = task
        task.add_done_callback(lambda t: self._tasks.pop(order.order_hash, None))
        return task

    def pending(self) -> int:
        return len(self._tasks)

    async def shutdown(self):
        """Cancel armed tasks. Orders keep their current state."""
        tasks = list(self._tasks.values())
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)

    async def _run(self, order: Order, fire_at: float) -> bool:
        delay = fire_at - self.clock()
        if delay > 0:
            await self.sleep(delay)
        try:
            return await self.execute(order)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            log.exception(f"Withdrawal task for {order.order_hash[:10]}... crashed")
            await self._mark_failed(order, InternalError(f"Unexpected error: {e}"))
            return False

    async def execute(self, order: Order) -> bool:
        """
        Withdraw both legs with bounded retry.

        Returns:
            True when the order completed
        """
        withdrawn: Dict[EscrowSide, WithdrawalReceipt] = {}
        attempt = 0

        while True:
            attempt += 1
            async with self.registry.lock(order.order_hash):
                if order.status is not OrderStatus.PROCESSING:
                    log.warning(f"Skipping withdrawal for {order.order_hash[:10]}...: "
                                f"status is {order.status.value}")
                    return False
                step = order.start_step(STEP_WITHDRAW, self.clock(), attempt=attempt)

            try:
                await self._withdraw_legs(order, withdrawn)
            except InvalidOrderStateError as e:
                async with self.registry.lock(order.order_hash):
                    step.fail(self.clock(), str(e))
                log.warning(str(e))
                return False
            except ChainCallError as e:
                async with self.registry.lock(order.order_hash):
                    step.fail(self.clock(), str(e))

                delay = self.policy.delay_for(attempt) if e.retryable else None
                if delay is None:
                    log.error(f"Withdrawal failed for {order.order_hash[:10]}... "
                              f"after {attempt} attempt(s): {e}")
                    await self._mark_failed(order, e)
                    return False

                log.warning(f"Withdrawal attempt {attempt} failed for "
                            f"{order.order_hash[:10]}...: {e}; retrying in {delay:.0f}s")
                await self.sleep(delay)
                continue

            now = self.clock()
            async with self.registry.lock(order.order_hash):
                step.complete(now, {
                    "withdrawals": [withdrawn[side].to_dict() for side in self.order_policy.legs(order)],
                })
                order.status = OrderStatus.COMPLETED
                order.completed_at = now
                order.error = None
                self.registry.mark_completed(order.order_hash)
            log.info(f"Order {order.order_hash[:10]}... completed")
            return True

    async def _withdraw_legs(self, order: Order, withdrawn: Dict[EscrowSide, WithdrawalReceipt]):
        for side in self.order_policy.legs(order):
            if side in withdrawn:
                continue
            if withdrawn and self.settle_delay > 0:
                await self.sleep(self.settle_delay)

            if order.status is not OrderStatus.PROCESSING:
                raise InvalidOrderStateError(
                    f"Order {order.order_hash[:10]}... is {order.status.value}, "
                    f"not withdrawing {side.value} escrow"
                )

            escrow = order.escrows[side]
            await self._wait_for_window(escrow)
            adapter = self.adapters.for_chain(escrow.chain)
            withdrawn[side] = await call_adapter(adapter.withdraw, escrow, order.secret,
                                                 timeout=self.call_timeout, chain=escrow.chain)
            log.info(f"Withdrew {side.value} escrow {escrow.escrow_id} on {escrow.chain}")

    async def _wait_for_window(self, escrow: EscrowRef):
        """Sleep until the escrow's window opens; fail if it already closed."""
        now = self.clock()
        if now >= escrow.cancellation_starts_at():
            raise TimingError(
                f"{escrow.chain} {escrow.side.value} escrow entered cancellation at "
                f"{escrow.cancellation_starts_at()}",
                chain=escrow.chain,
            )
        opens_at = escrow.withdrawal_opens_at()
        if now < opens_at:
            await self.sleep(opens_at - now)

    async def _mark_failed(self, order: Order, error: Exception):
        async with self.registry.lock(order.order_hash):
            if order.status.is_terminal:
                return
            order.status = OrderStatus.FAILED
            order.error = str(error)
            order.failed_at = self.clock()
