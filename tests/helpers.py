"""
Shared test fixtures: fake clock, simulated chains, order payloads.
"""

import asyncio
import os
import sys

sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..'))

from resolver.config import ResolverConfig, EVMChainConfig, SchedulerConfig
from resolver.core import (
    Order, NATIVE_TOKEN, ICP_NATIVE_TOKEN, generate_secret, calculate_safety_deposit,
)
from resolver.htlc.base import AdapterSet
from resolver.htlc.simulated import SimulatedEscrowAdapter
from resolver.swap.coordinator import SwapCoordinator
from resolver.validation import validate_order

START_TIME = 1_700_000_000.0

MAKER_ICP = "rdmx6-jaaaa-aaaaa-aaadq-cai"
TAKER_ICP = "rrkah-fqaaa-aaaaa-aaaaq-cai"
MAKER_EVM = "0x742d35cc6634c0532925a3b844bc454e4438f44e"
TAKER_EVM = "0x8ba1f109551bd432803012645ac136ddd64dba72"

RESOLVER_ICP = "aaaaa-aa"
RESOLVER_EVM = "0x00000000000000000000000000000000000f05e1"

ORDER_HASH = "0x" + "ab" * 32


class FakeClock:
    """Manual clock; sleep() advances it instead of waiting."""

    def __init__(self, now: float = START_TIME):
        self.now = now
        self.sleeps = []

    def __call__(self) -> float:
        return self.now

    async def sleep(self, seconds: float):
        self.sleeps.append(seconds)
        self.now += max(0.0, seconds)
        await asyncio.sleep(0)


def make_config(**overrides) -> ResolverConfig:
    config = ResolverConfig(
        mode="simulate",
        evm_chains={
            "base": EVMChainConfig(name="base"),
            "ethereum": EVMChainConfig(name="ethereum"),
        },
        scheduler=SchedulerConfig(settle_delay=5.0, retry_delay=30.0, max_retries=2),
    )
    for key, value in overrides.items():
        setattr(config, key, value)
    return config


def make_adapters(clock, balance: int = 10**30) -> AdapterSet:
    return AdapterSet({
        "icp": SimulatedEscrowAdapter("icp", RESOLVER_ICP, ICP_NATIVE_TOKEN,
                                      default_balance=balance, clock=clock),
        "base": SimulatedEscrowAdapter("base", RESOLVER_EVM, NATIVE_TOKEN,
                                       default_balance=balance, clock=clock),
        "ethereum": SimulatedEscrowAdapter("ethereum", RESOLVER_EVM, NATIVE_TOKEN,
                                           default_balance=balance, clock=clock),
    })


def make_coordinator(clock: FakeClock = None, config: ResolverConfig = None,
                     adapters: AdapterSet = None) -> SwapCoordinator:
    clock = clock or FakeClock()
    config = config or make_config()
    adapters = adapters or make_adapters(clock)
    return SwapCoordinator(config, adapters, clock=clock, sleep=clock.sleep)


def icp_to_evm_payload(now: float = START_TIME, **overrides) -> dict:
    payload = {
        "orderHash": ORDER_HASH,
        "srcChain": "icp",
        "dstChain": "base",
        "srcToken": ICP_NATIVE_TOKEN,
        "dstToken": NATIVE_TOKEN,
        "srcAmount": str(10**18),
        "dstAmount": str(5 * 10**17),
        "deadline": int(now) + 3600,
        "timelocks": {"withdrawal": 30, "publicWithdrawal": 60, "cancellation": 43200},
        "makerICPAddress": MAKER_ICP,
        "makerEVMAddress": MAKER_EVM,
        "takerEVMAddress": TAKER_EVM,
    }
    payload.update(overrides)
    return payload


def evm_to_icp_payload(now: float = START_TIME, **overrides) -> dict:
    payload = {
        "orderHash": "0x" + "cd" * 32,
        "srcChain": "base",
        "dstChain": "icp",
        "srcToken": NATIVE_TOKEN,
        "dstToken": ICP_NATIVE_TOKEN,
        "srcAmount": "2000000",
        "dstAmount": "1000000",
        "deadline": int(now) + 3600,
        "timelocks": {"withdrawal": 30, "publicWithdrawal": 60, "cancellation": 43200},
        "makerEVMAddress": MAKER_EVM,
        "makerICPAddress": MAKER_ICP,
        "takerICPAddress": TAKER_ICP,
    }
    payload.update(overrides)
    return payload


async def drain(coordinator: SwapCoordinator):
    """Run background order tasks (creation, then withdrawal) to completion."""
    while True:
        tasks = list(coordinator._tasks.values()) + list(coordinator.scheduler._tasks.values())
        if not tasks:
            return
        await asyncio.gather(*tasks, return_exceptions=True)


def make_order(clock, **overrides) -> Order:
    """An accepted (registered, not yet escrowed) ICP -> base order."""
    validated = validate_order(icp_to_evm_payload(now=clock(), **overrides), make_config(), now=clock())
    secret, hashlock = generate_secret()
    return Order(
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
        created_at=clock(),
    )
