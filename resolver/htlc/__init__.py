"""
Escrow adapters for each chain the resolver works with.

- icp: ICP escrow canister via dfx
- evm: escrow factory contract via web3
- simulated: in-memory escrows for dry runs and tests
- base: adapter interface, unconfigured stand-in, per-chain lookup
"""

import time
import logging
from typing import Callable

from ..config import ResolverConfig
from ..core import HOME_CHAIN, NATIVE_TOKEN, ICP_NATIVE_TOKEN
from .base import ChainAdapter, AdapterSet, UnconfiguredAdapter, WithdrawalReceipt, call_adapter
from .simulated import SimulatedEscrowAdapter

log = logging.getLogger(__name__)

# Resolver accounts used when simulating without keys
SIMULATED_EVM_ACCOUNT = "0x00000000000000000000000000000000000f05e1"
SIMULATED_ICP_ACCOUNT = "aaaaa-aa"


def build_adapters(config: ResolverConfig, clock: Callable[[], float] = time.time) -> AdapterSet:
    """Create one adapter per supported chain from configuration."""
    adapters = AdapterSet()

    if config.simulate:
        log.warning("[SIM] Simulation mode: escrows are kept in memory, no chain calls")
        adapters.add(SimulatedEscrowAdapter(
            HOME_CHAIN, SIMULATED_ICP_ACCOUNT, ICP_NATIVE_TOKEN,
            default_balance=config.simulated_balance, clock=clock,
        ))
        for name in config.evm_chains:
            adapters.add(SimulatedEscrowAdapter(
                name, SIMULATED_EVM_ACCOUNT, NATIVE_TOKEN,
                default_balance=config.simulated_balance, clock=clock,
            ))
        return adapters

    from ..chains.evm import EVMClient
    from ..chains.icp import DFXClient
    from .evm import EVMEscrowAdapter
    from .icp import ICPEscrowAdapter

    missing = config.icp.missing()
    if missing:
        adapters.add(UnconfiguredAdapter(HOME_CHAIN, f"missing {', '.join(missing)}", ICP_NATIVE_TOKEN))
        log.warning(f"ICP adapter unconfigured: missing {', '.join(missing)}")
    else:
        adapters.add(ICPEscrowAdapter(DFXClient(config.icp)))

    for name, chain_config in config.evm_chains.items():
        missing = chain_config.missing()
        if missing:
            adapters.add(UnconfiguredAdapter(name, f"missing {', '.join(missing)}", NATIVE_TOKEN))
            log.warning(f"{name} adapter unconfigured: missing {', '.join(missing)}")
        else:
            adapters.add(EVMEscrowAdapter(EVMClient(chain_config)))

    return adapters


__all__ = [
    "ChainAdapter",
    "AdapterSet",
    "UnconfiguredAdapter",
    "WithdrawalReceipt",
    "SimulatedEscrowAdapter",
    "build_adapters",
    "call_adapter",
]
