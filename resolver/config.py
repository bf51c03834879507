"""
Resolver configuration.

All settings come from the environment; see ResolverConfig.from_env().
"""

import os
import logging
from dataclasses import dataclass, field
from typing import Optional, Dict, List, Tuple

from .core import DEFAULT_EVM_CHAINS, MIN_DEADLINE_BUFFER

log = logging.getLogger(__name__)

# Known chain ids for the default EVM chains
EVM_CHAIN_IDS = {
    "ethereum": 1,
    "polygon": 137,
    "arbitrum": 42161,
    "base": 8453,
    "sepolia": 11155111,
    "base_sepolia": 84532,
}

# ICP ledger canister on mainnet
ICP_LEDGER_CANISTER_ID = "ryjl3-tyaaa-aaaaa-aaaba-cai"


@dataclass
class EVMChainConfig:
    """One EVM chain the resolver can escrow on."""
    name: str
    rpc_url: Optional[str] = None
    chain_id: Optional[int] = None
    factory_address: Optional[str] = None
    private_key: Optional[str] = None
    gas_limit: int = 500000
    receipt_timeout: int = 120

    def missing(self) -> List[str]:
        """Names of settings required for live calls that are not set."""
        missing = []
        if not self.rpc_url:
            missing.append("rpc_url")
        if not self.factory_address:
            missing.append("factory_address")
        if not self.private_key:
            missing.append("private_key")
        if self.chain_id is None:
            missing.append("chain_id")
        return missing


@dataclass
class ICPConfig:
    """ICP escrow canister access through dfx."""
    canister_id: Optional[str] = None
    network: str = "local"              # local, ic
    identity: Optional[str] = None      # None = dfx default identity
    ledger_canister_id: str = ICP_LEDGER_CANISTER_ID
    dfx_path: Optional[str] = None      # None = search PATH
    call_timeout: int = 60
    transfer_fee: int = 10000           # e8s, charged per ledger operation

    def missing(self) -> List[str]:
        return [] if self.canister_id else ["canister_id"]


@dataclass
class SchedulerConfig:
    """Withdrawal timing and retry settings."""
    settle_delay: float = 5.0           # Pause between the two withdrawal legs
    retry_delay: float = 30.0
    retry_backoff: float = 1.0         # Delay multiplier per retry; 1 = fixed
    max_retries: int = 2
    withdrawal_order: str = "source_first"


@dataclass
class ResolverConfig:
    """Top-level resolver configuration."""
    host: str = "0.0.0.0"
    port: int = 3001
    log_level: str = "INFO"

    # "live" talks to chains, "simulate" uses in-process escrows
    mode: str = "live"

    evm_chains: Dict[str, EVMChainConfig] = field(default_factory=dict)
    icp: ICPConfig = field(default_factory=ICPConfig)
    scheduler: SchedulerConfig = field(default_factory=SchedulerConfig)

    fee_percent: float = 0.1
    max_order_size: Optional[int] = None    # None = no limit
    supported_tokens: Tuple[str, ...] = ()  # Empty = any token
    min_deadline_buffer: int = MIN_DEADLINE_BUFFER
    max_cancellation_timelock: Optional[int] = None

    chain_call_timeout: float = 180.0
    failed_order_retention: int = 86400
    sweep_interval: int = 3600

    simulated_balance: int = 10**30

    @property
    def supported_evm_chains(self) -> Tuple[str, ...]:
        return tuple(self.evm_chains)

    @property
    def simulate(self) -> bool:
        return self.mode == "simulate"

    @classmethod
    def from_env(cls, env: Dict[str, str] = None) -> "ResolverConfig":
        """Build configuration from environment variables."""
        env = os.environ if env is None else env

        names = _split(env.get("EVM_CHAINS")) or list(DEFAULT_EVM_CHAINS)
        private_key = env.get("EVM_PRIVATE_KEY")
        gas_limit = int(env.get("EVM_GAS_LIMIT", "500000"))
        evm_chains = {}
        for name in names:
            prefix = name.upper()
            chain_id = env.get(f"{prefix}_CHAIN_ID")
            evm_chains[name] = EVMChainConfig(
                name=name,
                rpc_url=env.get(f"{prefix}_RPC_URL") or env.get("EVM_RPC_URL"),
                chain_id=int(chain_id) if chain_id else EVM_CHAIN_IDS.get(name),
                factory_address=(env.get(f"{prefix}_ESCROW_FACTORY")
                                 or env.get("EVM_ESCROW_FACTORY_ADDRESS")),
                private_key=private_key,
                gas_limit=gas_limit,
            )

        icp = ICPConfig(
            canister_id=env.get("ICP_CANISTER_ID"),
            network=env.get("ICP_NETWORK", "local"),
            identity=env.get("ICP_IDENTITY"),
            ledger_canister_id=env.get("ICP_LEDGER_CANISTER_ID", ICP_LEDGER_CANISTER_ID),
            dfx_path=env.get("DFX_PATH"),
        )

        scheduler = SchedulerConfig(
            settle_delay=float(env.get("SETTLE_DELAY_SECONDS", "5")),
            retry_delay=float(env.get("RETRY_DELAY_SECONDS", "30")),
            retry_backoff=float(env.get("RETRY_BACKOFF", "1")),
            max_retries=int(env.get("MAX_WITHDRAWAL_RETRIES", "2")),
            withdrawal_order=env.get("WITHDRAWAL_ORDER", "source_first"),
        )

        max_order_size = env.get("MAX_ORDER_SIZE")
        max_cancellation = env.get("MAX_CANCELLATION_TIMELOCK")

        config = cls(
            host=env.get("HOST", "0.0.0.0"),
            port=int(env.get("PORT", "3001")),
            log_level=env.get("LOG_LEVEL", "INFO").upper(),
            mode=env.get("RESOLVER_MODE", "live").lower(),
            evm_chains=evm_chains,
            icp=icp,
            scheduler=scheduler,
            fee_percent=float(env.get("RESOLVER_FEE_PERCENT", "0.1")),
            max_order_size=int(max_order_size) if max_order_size else None,
            supported_tokens=tuple(_split(env.get("SUPPORTED_TOKENS"))),
            min_deadline_buffer=int(env.get("MIN_DEADLINE_BUFFER", str(MIN_DEADLINE_BUFFER))),
            max_cancellation_timelock=int(max_cancellation) if max_cancellation else None,
            chain_call_timeout=float(env.get("CHAIN_CALL_TIMEOUT", "180")),
            failed_order_retention=int(env.get("FAILED_ORDER_RETENTION", "86400")),
            sweep_interval=int(env.get("SWEEP_INTERVAL", "3600")),
            simulated_balance=int(env.get("SIMULATED_BALANCE", str(10**30))),
        )
        if config.mode not in ("live", "simulate"):
            raise ValueError(f"RESOLVER_MODE must be 'live' or 'simulate', got {config.mode!r}")
        return config


def _split(value: Optional[str]) -> List[str]:
    if not value:
        return []
    return [v.strip() for v in value.split(",") if v.strip()]
