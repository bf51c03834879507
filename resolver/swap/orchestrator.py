"""
Escrow creation for accepted orders.

Creates the source escrow, then the destination escrow. The destination
escrow is never created unless the source escrow is confirmed. A failed
destination creation leaves the source escrow funded; its cancellation
timelock returns the funds.
"""

import time
import logging
from dataclasses import dataclass
from typing import Optional, Callable

from ..core import (
    Order, OrderStatus, EscrowImmutables, EscrowRef, EscrowSide,
    STEP_CREATE_SOURCE, STEP_CREATE_DESTINATION,
)
from ..errors import ChainCallError, InvalidOrderStateError
from ..htlc.base import AdapterSet, call_adapter
from ..liquidity import LiquidityChecker
from ..registry import OrderRegistry

log = logging.getLogger(__name__)


@dataclass(frozen=True)
class EscrowPair:
    source: EscrowRef
    destination: EscrowRef


class EscrowOrchestrator:
    """
    Creates both escrows of an order, recording one step per escrow.
    """

    def __init__(self, adapters: AdapterSet, registry: OrderRegistry,
                 liquidity: LiquidityChecker, clock: Callable[[], float] = time.time,
                 call_timeout: Optional[float] = None):
        self.adapters = adapters
        self.registry = registry
        self.liquidity = liquidity
        self.clock = clock
        self.call_timeout = call_timeout

    async def run(self, order: Order) -> EscrowPair:
        """
        Create source then destination escrow.

        Raises:
            ChainCallError: creation failed (recorded on the step)
            InvalidOrderStateError: order left processing before a step started
        """
        source = await self._create(order, EscrowSide.SOURCE)
        destination = await self._create(order, EscrowSide.DESTINATION)
        log.info(f"Escrows created for {order.order_hash[:10]}...: "
                 f"src={source.escrow_id} dst={destination.escrow_id}")
        return EscrowPair(source=source, destination=destination)

    async def build_immutables(self, order: Order, side: EscrowSide) -> EscrowImmutables:
        """Escrow parameters for one side. deployed_at is left for the chain."""
        addresses = order.addresses
        if side is EscrowSide.SOURCE:
            taker = addresses.src_taker
            if taker is None:
                adapter = self.adapters.for_chain(order.src_chain)
                taker = await call_adapter(lambda: adapter.account,
                                           timeout=self.call_timeout, chain=order.src_chain)
            return EscrowImmutables(
                order_hash=order.order_hash,
                hashlock=order.hashlock,
                maker=addresses.src_maker,
                taker=taker,
                token=order.src_token,
                amount=order.src_amount,
                safety_deposit=order.safety_deposit,
                timelocks=order.timelocks,
            )
        return EscrowImmutables(
            order_hash=order.order_hash,
            hashlock=order.hashlock,
            maker=addresses.dst_maker,
            taker=addresses.dst_taker,
            token=order.dst_token,
            amount=order.dst_amount,
            safety_deposit=order.dst_safety_deposit,
            timelocks=order.timelocks,
        )

    async def _create(self, order: Order, side: EscrowSide) -> EscrowRef:
        if side is EscrowSide.SOURCE:
            chain, step_name = order.src_chain, STEP_CREATE_SOURCE
        else:
            chain, step_name = order.dst_chain, STEP_CREATE_DESTINATION
        adapter = self.adapters.for_chain(chain)

        async with self.registry.lock(order.order_hash):
            if order.status is not OrderStatus.PROCESSING:
                raise InvalidOrderStateError(
                    f"Order {order.order_hash[:10]}... is {order.status.value}, "
                    f"not starting {step_name}"
                )
            step = order.start_step(step_name, self.clock())

        try:
            immutables = await self.build_immutables(order, side)
            create = (adapter.create_source_escrow if side is EscrowSide.SOURCE
                      else adapter.create_destination_escrow)
            ref = await call_adapter(create, immutables, timeout=self.call_timeout, chain=chain)
        except ChainCallError as e:
            async with self.registry.lock(order.order_hash):
                step.fail(self.clock(), str(e))
            log.error(f"{step_name} failed for {order.order_hash[:10]}... on {chain}: {e}")
            raise

        async with self.registry.lock(order.order_hash):
            order.escrows[side] = ref
            step.complete(self.clock(), {
                "chain": chain,
                "escrowId": ref.escrow_id,
                "txRef": ref.tx_ref,
                "deployedAt": ref.deployed_at,
            })
        self.liquidity.commit(order.order_hash, chain)
        log.info(f"{step_name} completed for {order.order_hash[:10]}... on {chain}: {ref.tx_ref}")
        return ref
