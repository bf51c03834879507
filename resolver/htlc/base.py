"""
Chain adapter interface.

Each chain the resolver escrows on is reached through one ChainAdapter.
Adapter methods block; the swap layer runs them in worker threads.
"""

import asyncio
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Dict, Any, Iterator

from ..core import EscrowImmutables, EscrowRef, HOME_CHAIN
from ..errors import ChainCallError

log = logging.getLogger(__name__)


@dataclass(frozen=True)
class WithdrawalReceipt:
    """Result of a successful escrow withdrawal."""
    chain: str
    escrow_id: str
    tx_ref: str

    def to_dict(self) -> Dict[str, Any]:
        return {"chain": self.chain, "escrowId": self.escrow_id, "txRef": self.tx_ref}


class ChainAdapter(ABC):
    """
    Escrow operations on one chain.

    Implementations raise ChainCallError (or TimingError for window
    violations reported by the chain) and never return partial results.
    """

    chain: str = ""
    native_asset: str = ""
    configured: bool = True

    @property
    @abstractmethod
    def account(self) -> str:
        """The resolver's own address on this chain."""

    @abstractmethod
    def is_native(self, token: str) -> bool:
        """True if `token` is the chain's native asset."""

    @abstractmethod
    def create_source_escrow(self, immutables: EscrowImmutables) -> EscrowRef:
        """Create and fund the source escrow. deployed_at comes from the chain."""

    @abstractmethod
    def create_destination_escrow(self, immutables: EscrowImmutables) -> EscrowRef:
        """Create and fund the destination escrow. deployed_at comes from the chain."""

    @abstractmethod
    def withdraw(self, escrow: EscrowRef, secret: str) -> WithdrawalReceipt:
        """Withdraw from an escrow by revealing the secret."""

    @abstractmethod
    def get_balance(self, account: str, asset: str) -> int:
        """Balance of `account` in `asset` base units."""

    def describe(self) -> Dict[str, Any]:
        return {
            "chain": self.chain,
            "configured": self.configured,
            "nativeAsset": self.native_asset,
        }


class UnconfiguredAdapter(ChainAdapter):
    """Stand-in for a chain whose credentials or endpoints are missing."""

    configured = False

    def __init__(self, chain: str, reason: str, native_asset: str = ""):
        self.chain = chain
        self.reason = reason
        self.native_asset = native_asset

    def _fail(self):
        raise ChainCallError(f"{self.chain} not configured: {self.reason}",
                             chain=self.chain, retryable=False)

    @property
    def account(self) -> str:
        self._fail()

    def is_native(self, token: str) -> bool:
        return token == self.native_asset

    def create_source_escrow(self, immutables: EscrowImmutables) -> EscrowRef:
        self._fail()

    def create_destination_escrow(self, immutables: EscrowImmutables) -> EscrowRef:
        self._fail()

    def withdraw(self, escrow: EscrowRef, secret: str) -> WithdrawalReceipt:
        self._fail()

    def get_balance(self, account: str, asset: str) -> int:
        self._fail()

    def describe(self) -> Dict[str, Any]:
        data = super().describe()
        data["reason"] = self.reason
        return data


class AdapterSet:
    """Adapters keyed by chain name."""

    def __init__(self, adapters: Dict[str, ChainAdapter] = None):
        self._adapters: Dict[str, ChainAdapter] = dict(adapters or {})

    def add(self, adapter: ChainAdapter):
        self._adapters[adapter.chain] = adapter

    def for_chain(self, chain: str) -> ChainAdapter:
        adapter = self._adapters.get(chain)
        if adapter is None:
            return UnconfiguredAdapter(chain, "no adapter registered")
        return adapter

    @property
    def home(self) -> ChainAdapter:
        return self.for_chain(HOME_CHAIN)

    def __iter__(self) -> Iterator[ChainAdapter]:
        return iter(self._adapters.values())

    def __contains__(self, chain: str) -> bool:
        return chain in self._adapters


async def call_adapter(fn, *args, timeout: float = None, chain: str = ""):
    """
    Run a blocking adapter call in a worker thread.

    A call that does not finish within `timeout` seconds raises a retryable
    ChainCallError. The worker thread itself cannot be interrupted and is
    left to finish on its own.
    """
    try:
        return await asyncio.wait_for(asyncio.to_thread(fn, *args), timeout=timeout)
    except asyncio.TimeoutError:
        raise ChainCallError(f"{chain or 'chain'} call {getattr(fn, '__name__', fn)} "
                             f"timed out after {timeout}s", chain=chain or None)
