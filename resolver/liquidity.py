"""
Liquidity checking and reservation.

The resolver funds both escrows of an order. Before an order is accepted
its requirements are reserved against the resolver's balances, so two
orders cannot both be accepted against the same funds. A chain's
reservation is committed (dropped) once its escrow is funded on chain, and
released when the order is aborted.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Optional, Dict, Any, List

from .core import Order
from .errors import LiquidityError, ChainCallError
from .htlc.base import AdapterSet, call_adapter

log = logging.getLogger(__name__)

# chain -> asset -> amount
Requirements = Dict[str, Dict[str, int]]


@dataclass
class LiquidityReport:
    """Outcome of a liquidity check."""
    sufficient: bool
    required: Requirements
    available: Requirements
    shortfalls: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "sufficient": self.sufficient,
            "required": _stringify(self.required),
            "available": _stringify(self.available),
            "shortfalls": self.shortfalls,
        }


def _stringify(amounts: Requirements) -> Dict[str, Dict[str, str]]:
    return {chain: {asset: str(v) for asset, v in assets.items()}
            for chain, assets in amounts.items()}


def required_liquidity(order: Order, adapters: AdapterSet) -> Requirements:
    """
    Balance each chain needs to fund its escrow.

    Native token escrows lock amount + safety deposit in the native asset.
    Token escrows lock the amount in the token and the deposit in the
    native asset.
    """
    required: Requirements = {}
    legs = (
        (order.src_chain, order.src_token, order.src_amount, order.safety_deposit),
        (order.dst_chain, order.dst_token, order.dst_amount, order.dst_safety_deposit),
    )
    for chain, token, amount, deposit in legs:
        adapter = adapters.for_chain(chain)
        assets = required.setdefault(chain, {})
        native = adapter.native_asset
        if adapter.is_native(token):
            assets[native] = assets.get(native, 0) + amount + deposit
        else:
            assets[token] = assets.get(token, 0) + amount
            if deposit:
                assets[native] = assets.get(native, 0) + deposit
    return required


class LiquidityLedger:
    """Outstanding reservations per order, chain and asset."""

    def __init__(self):
        self._reservations: Dict[str, Requirements] = {}

    def reserved(self, chain: str, asset: str) -> int:
        return sum(r.get(chain, {}).get(asset, 0) for r in self._reservations.values())

    def reserve(self, order_hash: str, requirements: Requirements):
        self._reservations[order_hash] = {c: dict(a) for c, a in requirements.items()}

    def commit(self, order_hash: str, chain: str):
        """Escrow on `chain` is funded; its funds have left the balance."""
        reservation = self._reservations.get(order_hash)
        if reservation is None:
            return
        reservation.pop(chain, None)
        if not reservation:
            del self._reservations[order_hash]

    def release(self, order_hash: str) -> bool:
        return self._reservations.pop(order_hash, None) is not None

    def totals(self) -> Requirements:
        totals: Requirements = {}
        for reservation in self._reservations.values():
            for chain, assets in reservation.items():
                chain_totals = totals.setdefault(chain, {})
                for asset, amount in assets.items():
                    chain_totals[asset] = chain_totals.get(asset, 0) + amount
        return totals

    def __contains__(self, order_hash: str) -> bool:
        return order_hash in self._reservations


class LiquidityChecker:
    """
    Checks and reserves resolver balances for orders.
    """

    def __init__(self, adapters: AdapterSet, ledger: LiquidityLedger = None,
                 call_timeout: Optional[float] = None):
        self.adapters = adapters
        self.ledger = ledger or LiquidityLedger()
        self.call_timeout = call_timeout
        self._lock = asyncio.Lock()

    async def _balance(self, chain: str, asset: str) -> int:
        adapter = self.adapters.for_chain(chain)

        def query():
            return adapter.get_balance(adapter.account, asset)

        return await call_adapter(query, timeout=self.call_timeout, chain=chain)

    async def check(self, order: Order) -> LiquidityReport:
        """Compare requirements with balance minus outstanding reservations."""
        required = required_liquidity(order, self.adapters)
        available: Requirements = {}
        shortfalls = []
        for chain, assets in required.items():
            for asset, amount in assets.items():
                balance = await self._balance(chain, asset)
                free = balance - self.ledger.reserved(chain, asset)
                available.setdefault(chain, {})[asset] = free
                if free < amount:
                    shortfalls.append(f"{chain}:{asset} needs {amount}, available {free}")
        return LiquidityReport(
            sufficient=not shortfalls,
            required=required,
            available=available,
            shortfalls=shortfalls,
        )

    async def reserve(self, order: Order) -> LiquidityReport:
        """
        Check and reserve in one step.

        Raises:
            LiquidityError: some side is short; nothing is reserved
        """
        async with self._lock:
            report = await self.check(order)
            if not report.sufficient:
                log.warning(f"Insufficient liquidity for {order.order_hash[:10]}...: "
                            f"{'; '.join(report.shortfalls)}")
                raise LiquidityError("Insufficient liquidity", report=report)
            self.ledger.reserve(order.order_hash, report.required)
        log.info(f"Reserved liquidity for {order.order_hash[:10]}...: {report.required}")
        return report

    def commit(self, order_hash: str, chain: str):
        self.ledger.commit(order_hash, chain)

    def release(self, order_hash: str):
        if self.ledger.release(order_hash):
            log.info(f"Released liquidity reservation for {order_hash[:10]}...")

    async def snapshot(self) -> Dict[str, Any]:
        """Balance, reserved and available per chain for the native asset."""
        totals = self.ledger.totals()
        chains = {}
        for adapter in self.adapters:
            entry: Dict[str, Any] = {"configured": adapter.configured}
            if adapter.configured:
                assets = set(totals.get(adapter.chain, {})) | {adapter.native_asset}
                entry["assets"] = {}
                for asset in sorted(assets):
                    reserved = totals.get(adapter.chain, {}).get(asset, 0)
                    try:
                        balance = await self._balance(adapter.chain, asset)
                    except ChainCallError as e:
                        log.error(f"Balance query failed for {adapter.chain}:{asset}: {e}")
                        entry["assets"][asset] = {"error": str(e), "reserved": str(reserved)}
                        continue
                    entry["assets"][asset] = {
                        "balance": str(balance),
                        "reserved": str(reserved),
                        "available": str(balance - reserved),
                    }
            chains[adapter.chain] = entry
        return chains
