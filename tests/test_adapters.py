#!/usr/bin/env python3
"""
Chain adapter tests: ICP canister result mapping, EVM factory calls, nonce
and allowance serialization, simulated escrow rules, adapter construction
and environment configuration.
"""

import os
import sys
import time
import asyncio
import threading
import unittest
from unittest.mock import MagicMock

sys.path.insert(0, os.path.dirname(__file__))

from web3.exceptions import ContractLogicError

from helpers import FakeClock, START_TIME, MAKER_EVM, TAKER_EVM, RESOLVER_EVM, make_order
from resolver.chains.evm import EVMClient
from resolver.config import ResolverConfig, ICPConfig, EVMChainConfig
from resolver.core import (
    EscrowImmutables, EscrowRef, EscrowSide, Timelocks, NATIVE_TOKEN, ICP_NATIVE_TOKEN,
    generate_secret,
)
from resolver.errors import ChainCallError, TimingError
from resolver.htlc import build_adapters, SIMULATED_ICP_ACCOUNT
from resolver.htlc.base import AdapterSet, UnconfiguredAdapter, call_adapter
from resolver.htlc.evm import ESCROW_ABI, EVMEscrowAdapter, encode_immutables as encode_evm_immutables
from resolver.htlc.icp import ICPEscrowAdapter
from resolver.htlc.simulated import SimulatedEscrowAdapter

CANISTER = "uxrrr-q7777-77774-qaaaq-cai"
TIMELOCKS = Timelocks(withdrawal=30, public_withdrawal=60, cancellation=43200)
FACTORY = "0x" + "11" * 20
ESCROW_ADDRESS = "0x" + "22" * 20
USDC = "0xa0b86991c6218b36c1d19d4a2e9eb0ce3606eb48"


def make_immutables(hashlock: str, maker: str = "maker", taker: str = "taker",
                    token: str = ICP_NATIVE_TOKEN, amount: int = 1000) -> EscrowImmutables:
    return EscrowImmutables(
        order_hash="0x" + "ab" * 32,
        hashlock=hashlock,
        maker=maker,
        taker=taker,
        token=token,
        amount=amount,
        safety_deposit=amount * 15 // 100,
        timelocks=TIMELOCKS,
    )


class TestICPAdapter(unittest.TestCase):

    def setUp(self):
        self.secret, hashlock = generate_secret()
        self.hashlock = "0x" + hashlock
        self.client = MagicMock()
        self.client.config = ICPConfig(canister_id=CANISTER)
        self.adapter = ICPEscrowAdapter(self.client)
        self.escrow_record = [{
            "immutables": {"timelocks": {"deployed_at": "1_700_000_000_123_456_789"}},
        }]

    def canister(self, create_result=None, withdraw_result=None):
        def call(canister, method, argument="()", query=False, timeout=None):
            if method.startswith("create_"):
                return create_result
            if method == "get_escrow":
                return self.escrow_record
            return withdraw_result
        self.client.call.side_effect = call

    def test_create_source(self):
        self.canister(create_result={"Ok": list(bytes.fromhex(self.hashlock[2:]))})
        ref = self.adapter.create_source_escrow(make_immutables(self.hashlock))

        self.assertEqual(ref.escrow_id, self.hashlock)
        self.assertEqual(ref.side, EscrowSide.SOURCE)
        self.assertEqual(ref.deployed_at, 1_700_000_000)
        self.assertEqual(ref.withdrawal_opens_at(), 1_700_000_030)
        # ICRC-2 allowance covers amount, deposit and ledger fee
        self.client.approve.assert_called_once_with(
            self.client.config.ledger_canister_id, CANISTER, 1000 + 150 + 10000,
        )
        methods = [c.args[1] for c in self.client.call.call_args_list]
        self.assertEqual(methods, ["create_src_escrow", "get_escrow"])

    def test_create_token_escrow_approves_both_ledgers(self):
        token_ledger = "mxzaz-hqaaa-aaaar-qaada-cai"
        self.canister(create_result={"Ok": list(bytes.fromhex(self.hashlock[2:]))})
        self.adapter.create_destination_escrow(make_immutables(self.hashlock, token=token_ledger))

        approvals = [c.args for c in self.client.approve.call_args_list]
        self.assertEqual(approvals, [
            (token_ledger, CANISTER, 1000 + 10000),
            (self.client.config.ledger_canister_id, CANISTER, 150 + 10000),
        ])
        self.assertEqual(self.client.call.call_args_list[0].args[1], "create_dst_escrow")

    def test_create_rejected(self):
        self.canister(create_result={"Err": {"DuplicateEscrow": None}})
        with self.assertRaises(ChainCallError) as ctx:
            self.adapter.create_source_escrow(make_immutables(self.hashlock))
        self.assertFalse(ctx.exception.retryable)
        self.assertIn("DuplicateEscrow", str(ctx.exception))

    def test_dfx_failure_is_retryable(self):
        self.client.approve.side_effect = RuntimeError("replica unreachable")
        with self.assertRaises(ChainCallError) as ctx:
            self.adapter.create_source_escrow(make_immutables(self.hashlock))
        self.assertTrue(ctx.exception.retryable)

    def test_withdraw(self):
        self.canister(withdraw_result={"Ok": None})
        ref = self._source_ref()
        receipt = self.adapter.withdraw(ref, "0x" + self.secret)

        self.assertEqual(receipt.chain, "icp")
        self.assertEqual(receipt.escrow_id, self.hashlock)
        self.assertEqual(self.client.call.call_args.args[1], "withdraw_src")

    def test_withdraw_too_early(self):
        self.canister(withdraw_result={"Err": {"InvalidTime": None}})
        with self.assertRaises(TimingError) as ctx:
            self.adapter.withdraw(self._source_ref(), "0x" + self.secret)
        self.assertTrue(ctx.exception.retryable)

    def test_withdraw_bad_secret(self):
        self.canister(withdraw_result={"Err": {"InvalidSecret": None}})
        with self.assertRaises(ChainCallError) as ctx:
            self.adapter.withdraw(self._source_ref(), "0x" + self.secret)
        self.assertFalse(ctx.exception.retryable)

    def test_balance(self):
        self.client.balance_of.return_value = 42
        self.assertEqual(self.adapter.get_balance("aaaaa-aa", ICP_NATIVE_TOKEN), 42)
        self.client.balance_of.assert_called_once_with(
            self.client.config.ledger_canister_id, "aaaaa-aa")

    def _source_ref(self):
        return EscrowRef(
            chain="icp",
            side=EscrowSide.SOURCE,
            escrow_id=self.hashlock,
            tx_ref=f"{CANISTER}:create_src_escrow",
            immutables=make_immutables(self.hashlock).deployed(1_700_000_000),
        )


class TestSimulatedAdapter(unittest.TestCase):

    def setUp(self):
        self.clock = FakeClock()
        self.adapter = SimulatedEscrowAdapter("base", "0xresolver", NATIVE_TOKEN,
                                              default_balance=10**6, clock=self.clock)
        secret, hashlock = generate_secret()
        self.secret = "0x" + secret
        self.immutables = make_immutables("0x" + hashlock, maker=TAKER_EVM, taker=MAKER_EVM,
                                          token=NATIVE_TOKEN)
        self.ref = self.adapter.create_destination_escrow(self.immutables)

    def test_funds_debited(self):
        self.assertEqual(self.adapter.get_balance("0xresolver", NATIVE_TOKEN), 10**6 - 1150)
        self.assertEqual(self.ref.deployed_at, int(START_TIME))

    def test_duplicate_hashlock(self):
        with self.assertRaises(ChainCallError):
            self.adapter.create_destination_escrow(self.immutables)

    def test_window(self):
        with self.assertRaises(TimingError) as ctx:
            self.adapter.withdraw(self.ref, self.secret)
        self.assertTrue(ctx.exception.retryable)

        self.clock.now += 30
        self.adapter.withdraw(self.ref, self.secret)
        self.assertEqual(self.adapter.escrow_state(EscrowSide.DESTINATION, self.immutables.hashlock),
                         "withdrawn")
        self.assertEqual(self.adapter.get_balance(MAKER_EVM, NATIVE_TOKEN), 1000)

    def test_cancellation_window(self):
        self.clock.now += 43200
        with self.assertRaises(TimingError) as ctx:
            self.adapter.withdraw(self.ref, self.secret)
        self.assertFalse(ctx.exception.retryable)

    def test_wrong_secret(self):
        self.clock.now += 30
        with self.assertRaises(ChainCallError):
            self.adapter.withdraw(self.ref, "0x" + "00" * 32)

    def test_insufficient_balance(self):
        _, hashlock = generate_secret()
        with self.assertRaises(ChainCallError):
            self.adapter.create_source_escrow(make_immutables("0x" + hashlock, token=NATIVE_TOKEN,
                                                              amount=10**7))


class TestAdapterSet(unittest.IsolatedAsyncioTestCase):

    def test_unknown_chain_is_unconfigured(self):
        adapters = AdapterSet()
        adapter = adapters.for_chain("polygon")
        self.assertFalse(adapter.configured)
        with self.assertRaises(ChainCallError) as ctx:
            adapter.get_balance("0x0", NATIVE_TOKEN)
        self.assertFalse(ctx.exception.retryable)

    async def test_call_adapter(self):
        self.assertEqual(await call_adapter(lambda a, b: a + b, 1, 2, timeout=5), 3)


class TestBuildAdapters(unittest.TestCase):

    def test_simulate(self):
        config = ResolverConfig(mode="simulate", evm_chains={"base": EVMChainConfig(name="base")})
        adapters = build_adapters(config)
        self.assertIn("icp", adapters)
        self.assertIn("base", adapters)
        self.assertEqual(adapters.home.account, SIMULATED_ICP_ACCOUNT)
        self.assertTrue(all(a.describe()["simulated"] for a in adapters))

    def test_live_without_settings(self):
        config = ResolverConfig(mode="live", evm_chains={"base": EVMChainConfig(name="base")})
        adapters = build_adapters(config)
        self.assertIsInstance(adapters.home, UnconfiguredAdapter)
        base = adapters.for_chain("base")
        self.assertIsInstance(base, UnconfiguredAdapter)
        self.assertIn("rpc_url", base.describe()["reason"])


class TestConfig(unittest.TestCase):

    def test_defaults(self):
        config = ResolverConfig.from_env({})
        self.assertEqual(config.port, 3001)
        self.assertEqual(config.mode, "live")
        self.assertIsNone(config.max_order_size)
        self.assertEqual(config.scheduler.max_retries, 2)
        self.assertEqual(config.scheduler.retry_delay, 30.0)
        self.assertEqual(config.scheduler.retry_backoff, 1.0)
        self.assertEqual(config.scheduler.withdrawal_order, "source_first")
        self.assertIn("base", config.supported_evm_chains)

    def test_chain_settings(self):
        config = ResolverConfig.from_env({
            "EVM_CHAINS": "base, arbitrum",
            "EVM_RPC_URL": "http://localhost:8545",
            "ARBITRUM_RPC_URL": "http://arb:8545",
            "BASE_ESCROW_FACTORY": "0x" + "11" * 20,
            "EVM_PRIVATE_KEY": "0x" + "22" * 32,
            "RESOLVER_MODE": "Simulate",
            "MAX_ORDER_SIZE": "1000",
            "SUPPORTED_TOKENS": "0xabc,0xdef",
            "RETRY_BACKOFF": "2",
        })
        self.assertEqual(config.supported_evm_chains, ("base", "arbitrum"))
        self.assertEqual(config.evm_chains["base"].rpc_url, "http://localhost:8545")
        self.assertEqual(config.evm_chains["arbitrum"].rpc_url, "http://arb:8545")
        self.assertEqual(config.evm_chains["base"].missing(), [])
        self.assertIn("factory_address", config.evm_chains["arbitrum"].missing())
        self.assertTrue(config.simulate)
        self.assertEqual(config.max_order_size, 1000)
        self.assertEqual(config.supported_tokens, ("0xabc", "0xdef"))
        self.assertEqual(config.scheduler.retry_backoff, 2.0)

    def test_bad_mode(self):
        with self.assertRaises(ValueError):
            ResolverConfig.from_env({"RESOLVER_MODE": "dry"})


class TestEVMEncoding(unittest.TestCase):

    def test_immutables_tuple(self):
        order = make_order(FakeClock())
        immutables = make_immutables(order.hashlock, maker=TAKER_EVM, taker=MAKER_EVM,
                                     token=NATIVE_TOKEN)
        encoded = encode_evm_immutables(immutables)

        self.assertEqual(encoded[1], bytes.fromhex(order.hashlock[2:]))
        self.assertEqual(encoded[2].lower(), TAKER_EVM)
        self.assertEqual(encoded[5], 1000)
        self.assertEqual(encoded[6], 150)
        self.assertEqual(encoded[7], (30, 60, 43200, 0))


class TestEVMAdapter(unittest.TestCase):

    def setUp(self):
        _, hashlock = generate_secret()
        self.hashlock = "0x" + hashlock
        self.tx_hash = b"\x12" * 32

        self.factory = MagicMock()
        self.factory.functions.creationFee.return_value.call.return_value = 7
        self.factory.events.SrcEscrowCreated.return_value.process_receipt.return_value = [
            {"args": {"escrow": ESCROW_ADDRESS}},
        ]
        self.factory.events.DstEscrowCreated.return_value.process_receipt.return_value = [
            {"args": {"escrow": ESCROW_ADDRESS}},
        ]

        self.client = MagicMock()
        self.client.config = EVMChainConfig(name="base", chain_id=8453, factory_address=FACTORY)
        self.client.lock = threading.RLock()
        self.client.contract.return_value = self.factory
        self.client.send.return_value = {"transactionHash": self.tx_hash, "blockNumber": 7, "status": 1}
        self.client.block_timestamp.return_value = 1_700_000_100
        self.adapter = EVMEscrowAdapter(self.client)

    def immutables(self, token=NATIVE_TOKEN):
        return make_immutables(self.hashlock, maker=TAKER_EVM, taker=MAKER_EVM, token=token)

    def test_native_value_covers_amount_deposit_and_fee(self):
        ref = self.adapter.create_destination_escrow(self.immutables())

        self.assertEqual(self.client.send.call_args.kwargs["value"], 1000 + 150 + 7)
        self.client.ensure_allowance.assert_not_called()
        self.factory.functions.createDstEscrow.assert_called_once()
        self.assertEqual(ref.side, EscrowSide.DESTINATION)

    def test_token_escrow_approves_then_creates(self):
        calls = []
        self.client.ensure_allowance.side_effect = lambda *a: calls.append(("approve", a))
        self.client.send.side_effect = lambda fn, value=0: calls.append(("send", value)) or {
            "transactionHash": self.tx_hash, "blockNumber": 7, "status": 1,
        }

        self.adapter.create_source_escrow(self.immutables(token=USDC))

        self.assertEqual(calls, [
            ("approve", (USDC, FACTORY, 1000)),
            ("send", 150 + 7),
        ])
        self.factory.functions.createSrcEscrow.assert_called_once()

    def test_escrow_id_and_deployment_time(self):
        ref = self.adapter.create_source_escrow(self.immutables())

        self.assertEqual(ref.escrow_id, ESCROW_ADDRESS)
        self.assertEqual(ref.tx_ref, "12" * 32)
        self.assertEqual(ref.deployed_at, 1_700_000_100)
        self.assertEqual(ref.withdrawal_opens_at(), 1_700_000_130)
        self.client.block_timestamp.assert_called_once_with(7)

    def test_missing_creation_event(self):
        self.factory.events.SrcEscrowCreated.return_value.process_receipt.return_value = []
        with self.assertRaises(ChainCallError) as ctx:
            self.adapter.create_source_escrow(self.immutables())
        self.assertFalse(ctx.exception.retryable)

    def test_withdraw(self):
        ref = EscrowRef(
            chain="base",
            side=EscrowSide.DESTINATION,
            escrow_id=ESCROW_ADDRESS,
            tx_ref="12" * 32,
            immutables=self.immutables().deployed(1_700_000_100),
        )
        receipt = self.adapter.withdraw(ref, "0x" + "34" * 32)

        self.assertEqual(receipt.chain, "base")
        self.assertEqual(receipt.escrow_id, ESCROW_ADDRESS)
        self.assertEqual(receipt.tx_ref, "12" * 32)
        self.client.contract.assert_called_with(ESCROW_ADDRESS, ESCROW_ABI)
        secret_arg = self.factory.functions.withdraw.call_args.args[0]
        self.assertEqual(secret_arg, b"\x34" * 32)

    def test_invalid_time_revert_is_retryable_timing_error(self):
        self.client.send.side_effect = ContractLogicError("execution reverted: InvalidTime")
        with self.assertRaises(TimingError) as ctx:
            self.adapter.create_source_escrow(self.immutables())
        self.assertTrue(ctx.exception.retryable)

    def test_reverted_transaction_is_retryable(self):
        self.client.send.side_effect = RuntimeError("base transaction reverted: 0x12")
        with self.assertRaises(ChainCallError) as ctx:
            self.adapter.create_source_escrow(self.immutables())
        self.assertNotIsInstance(ctx.exception, TimingError)
        self.assertTrue(ctx.exception.retryable)


class TestEVMClientNonces(unittest.IsolatedAsyncioTestCase):

    def setUp(self):
        self.sent = []
        self.client = EVMClient(EVMChainConfig(name="base", chain_id=8453))

        w3 = MagicMock()
        w3.eth.gas_price = 100
        w3.eth.get_transaction_count.side_effect = lambda address, block: len(self.sent)
        w3.eth.send_raw_transaction.side_effect = self.broadcast
        w3.eth.wait_for_transaction_receipt.return_value = {"status": 1}
        self.client._web3 = w3

        account = MagicMock()
        account.address = RESOLVER_EVM
        account.sign_transaction.side_effect = lambda tx: MagicMock(raw_transaction=tx)
        self.client._account = account

    def broadcast(self, raw):
        # Slow node: the next nonce read would race without the client lock
        time.sleep(0.05)
        self.sent.append(raw["nonce"])
        return bytes([len(self.sent)]) * 32

    async def test_concurrent_sends_use_distinct_nonces(self):
        fn = MagicMock()
        fn.build_transaction.side_effect = lambda tx: dict(tx)

        await asyncio.gather(
            call_adapter(self.client.send, fn, timeout=5),
            call_adapter(self.client.send, fn, timeout=5),
        )

        self.assertEqual(sorted(self.sent), [0, 1])
        tx = fn.build_transaction.call_args.args[0]
        self.assertEqual(tx["gasPrice"], 110)
        self.assertEqual(tx["chainId"], 8453)


class TestICPApprovalLock(unittest.IsolatedAsyncioTestCase):

    async def test_approve_and_create_not_interleaved(self):
        events = []
        client = MagicMock()
        client.config = ICPConfig(canister_id=CANISTER)
        client.lock = threading.RLock()

        def approve(ledger, spender, amount):
            events.append("approve")
            time.sleep(0.05)

        def call(canister, method, argument="()", query=False, timeout=None):
            if method == "get_escrow":
                return [{"immutables": {"timelocks": {"deployed_at": "0"}}}]
            events.append("create")
            return {"Ok": list(b"\x01" * 32)}

        client.approve.side_effect = approve
        client.call.side_effect = call
        adapter = ICPEscrowAdapter(client)

        await asyncio.gather(*[
            call_adapter(adapter.create_source_escrow, make_immutables("0x" + generate_secret()[1]),
                         timeout=5)
            for _ in range(2)
        ])

        self.assertEqual(events, ["approve", "create", "approve", "create"])


if __name__ == "__main__":
    unittest.main()
