"""
Simulated escrow adapter.

Keeps escrows in memory and enforces the same rules as the on-chain
escrows: one escrow per hashlock and side, SHA256 preimage check, and the
private withdrawal window [deployed + withdrawal, deployed + cancellation).
Used for RESOLVER_MODE=simulate (dry runs) and tests.
"""

import time
import logging
import threading
from dataclasses import dataclass
from typing import Optional, Dict, Any, List, Callable, Tuple

from ..core import EscrowImmutables, EscrowRef, EscrowSide, verify_preimage
from ..errors import ChainCallError, TimingError
from .base import ChainAdapter, WithdrawalReceipt

log = logging.getLogger(__name__)


@dataclass
class SimulatedEscrow:
    ref: EscrowRef
    state: str = "active"   # active, withdrawn


class SimulatedEscrowAdapter(ChainAdapter):
    """
    In-memory escrows for one chain.

    Args:
        chain: Chain name
        account: Resolver address on this chain
        native_asset: Native asset identifier
        default_balance: Balance of the resolver account in any asset not
            set explicitly with set_balance()
        clock: Returns the chain's current time in seconds
    """

    def __init__(self, chain: str, account: str, native_asset: str,
                 default_balance: int = 0, clock: Callable[[], float] = time.time):
        self.chain = chain
        self.native_asset = native_asset
        self._account = account
        self.default_balance = default_balance
        self.clock = clock

        self.escrows: Dict[Tuple[EscrowSide, str], SimulatedEscrow] = {}
        self.balances: Dict[Tuple[str, str], int] = {}
        self.calls: List[Tuple[str, str]] = []     # (operation, escrow id / hashlock)
        self._failures: Dict[str, List[Exception]] = {}
        self._lock = threading.Lock()
        self._tx_counter = 0

    @property
    def account(self) -> str:
        return self._account

    def is_native(self, token: str) -> bool:
        return token.lower() == self.native_asset.lower()

    # =========================================================================
    # Test hooks
    # =========================================================================

    def set_balance(self, account: str, asset: str, amount: int):
        with self._lock:
            self.balances[(account, asset.lower())] = amount

    def fail_next(self, operation: str, error: Exception, times: int = 1):
        """Make the next `times` calls of `operation` raise `error`."""
        with self._lock:
            self._failures.setdefault(operation, []).extend([error] * times)

    def _maybe_fail(self, operation: str):
        pending = self._failures.get(operation)
        if pending:
            raise pending.pop(0)

    # =========================================================================
    # Escrows
    # =========================================================================

    def create_source_escrow(self, immutables: EscrowImmutables) -> EscrowRef:
        return self._create(EscrowSide.SOURCE, immutables)

    def create_destination_escrow(self, immutables: EscrowImmutables) -> EscrowRef:
        return self._create(EscrowSide.DESTINATION, immutables)

    def _create(self, side: EscrowSide, immutables: EscrowImmutables) -> EscrowRef:
        operation = f"create_{side.value}"
        with self._lock:
            self.calls.append((operation, immutables.hashlock))
            self._maybe_fail(operation)

            key = (side, immutables.hashlock)
            if key in self.escrows:
                raise ChainCallError(f"{self.chain}: duplicate escrow for hashlock",
                                     chain=self.chain, retryable=False)

            if self.is_native(immutables.token):
                self._debit(self.native_asset, immutables.amount + immutables.safety_deposit)
            else:
                self._debit(immutables.token, immutables.amount)
                self._debit(self.native_asset, immutables.safety_deposit)

            self._tx_counter += 1
            ref = EscrowRef(
                chain=self.chain,
                side=side,
                escrow_id=f"{self.chain}-{side.value}-{immutables.hashlock[2:18]}",
                tx_ref=f"sim-{self.chain}-{self._tx_counter}",
                immutables=immutables.deployed(int(self.clock())),
            )
            self.escrows[key] = SimulatedEscrow(ref=ref)

        log.info(f"[SIM] {self.chain}: {side.value} escrow {ref.escrow_id} "
                 f"deployed_at={ref.deployed_at}")
        return ref

    def _balance_of(self, account: str, asset: str) -> int:
        default = self.default_balance if account == self._account else 0
        return self.balances.get((account, asset.lower()), default)

    def _debit(self, asset: str, amount: int):
        balance = self._balance_of(self._account, asset)
        if balance < amount:
            raise ChainCallError(f"{self.chain}: insufficient {asset} balance",
                                 chain=self.chain, retryable=False)
        self.balances[(self._account, asset.lower())] = balance - amount

    def withdraw(self, escrow: EscrowRef, secret: str) -> WithdrawalReceipt:
        with self._lock:
            self.calls.append(("withdraw", escrow.escrow_id))
            self._maybe_fail("withdraw")

            record = self.escrows.get((escrow.side, escrow.immutables.hashlock))
            if record is None:
                raise ChainCallError(f"{self.chain}: escrow not found",
                                     chain=self.chain, retryable=False)
            if not verify_preimage(secret, record.ref.immutables.hashlock):
                raise ChainCallError(f"{self.chain}: invalid secret",
                                     chain=self.chain, retryable=False)
            if record.state != "active":
                raise ChainCallError(f"{self.chain}: escrow already {record.state}",
                                     chain=self.chain, retryable=False)

            now = self.clock()
            if now < record.ref.withdrawal_opens_at():
                raise TimingError(f"{self.chain}: withdrawal window not open",
                                  chain=self.chain, retryable=True)
            if now >= record.ref.cancellation_starts_at():
                raise TimingError(f"{self.chain}: withdrawal window closed",
                                  chain=self.chain)

            record.state = "withdrawn"
            imm = record.ref.immutables
            self.balances[(imm.taker, imm.token.lower())] = self._balance_of(imm.taker, imm.token) + imm.amount
            self._tx_counter += 1
            tx_ref = f"sim-{self.chain}-{self._tx_counter}"

        log.info(f"[SIM] {self.chain}: withdrew {escrow.escrow_id}")
        return WithdrawalReceipt(chain=self.chain, escrow_id=escrow.escrow_id, tx_ref=tx_ref)

    def get_balance(self, account: str, asset: str) -> int:
        with self._lock:
            self._maybe_fail("get_balance")
            return self._balance_of(account, asset)

    def escrow_state(self, side: EscrowSide, hashlock: str) -> Optional[str]:
        record = self.escrows.get((side, hashlock))
        return record.state if record else None

    def describe(self) -> Dict[str, Any]:
        data = super().describe()
        data["simulated"] = True
        return data
