"""
EVM escrow adapter.

Creates escrows through the ICP escrow factory contract and withdraws from
the per-order escrow contracts it deploys.

Funding:
- Native token: value = amount + safety deposit + creation fee
- ERC20: approve the factory for amount, value = safety deposit + creation fee
"""

import logging
from typing import Dict, Any, Tuple

from web3 import Web3
from web3.exceptions import ContractLogicError, Web3Exception

from ..chains.evm import EVMClient, is_native_token
from ..core import (
    EscrowImmutables, EscrowRef, EscrowSide, NATIVE_TOKEN, to_bytes32,
)
from ..errors import ChainCallError, TimingError
from .base import ChainAdapter, WithdrawalReceipt

log = logging.getLogger(__name__)

_TIMELOCKS_COMPONENTS = [
    {"name": "withdrawal", "type": "uint32"},
    {"name": "publicWithdrawal", "type": "uint32"},
    {"name": "cancellation", "type": "uint32"},
    {"name": "deployedAt", "type": "uint32"},
]

_IMMUTABLES = {
    "name": "immutables",
    "type": "tuple",
    "components": [
        {"name": "orderHash", "type": "bytes32"},
        {"name": "hashlock", "type": "bytes32"},
        {"name": "maker", "type": "address"},
        {"name": "taker", "type": "address"},
        {"name": "token", "type": "address"},
        {"name": "amount", "type": "uint256"},
        {"name": "safetyDeposit", "type": "uint256"},
        {"name": "timelocks", "type": "tuple", "components": _TIMELOCKS_COMPONENTS},
    ],
}

# Escrow factory ABI (minimal)
FACTORY_ABI = [
    {
        "name": "createSrcEscrow",
        "type": "function",
        "stateMutability": "payable",
        "inputs": [_IMMUTABLES],
        "outputs": []
    },
    {
        "name": "createDstEscrow",
        "type": "function",
        "stateMutability": "payable",
        "inputs": [_IMMUTABLES],
        "outputs": []
    },
    {
        "name": "creationFee",
        "type": "function",
        "stateMutability": "view",
        "inputs": [],
        "outputs": [{"name": "", "type": "uint256"}]
    },
    {
        "name": "SrcEscrowCreated",
        "type": "event",
        "anonymous": False,
        "inputs": [
            {"name": "escrow", "type": "address", "indexed": False},
            {"name": "hashlock", "type": "bytes32", "indexed": False},
            {"name": "maker", "type": "address", "indexed": False},
            {"name": "creator", "type": "address", "indexed": True}
        ]
    },
    {
        "name": "DstEscrowCreated",
        "type": "event",
        "anonymous": False,
        "inputs": [
            {"name": "escrow", "type": "address", "indexed": False},
            {"name": "hashlock", "type": "bytes32", "indexed": False},
            {"name": "taker", "type": "address", "indexed": False},
            {"name": "creator", "type": "address", "indexed": True}
        ]
    }
]

# Per-order escrow ABI (minimal)
ESCROW_ABI = [
    {
        "name": "withdraw",
        "type": "function",
        "inputs": [{"name": "secret", "type": "bytes32"}, _IMMUTABLES],
        "outputs": []
    }
]


def encode_immutables(immutables: EscrowImmutables) -> Tuple:
    """ABI tuple for the factory/escrow calls. deployedAt 0 = set by the factory."""
    timelocks = immutables.timelocks
    return (
        to_bytes32(immutables.order_hash),
        to_bytes32(immutables.hashlock),
        Web3.to_checksum_address(immutables.maker),
        Web3.to_checksum_address(immutables.taker),
        Web3.to_checksum_address(immutables.token),
        immutables.amount,
        immutables.safety_deposit,
        (
            timelocks.withdrawal,
            timelocks.public_withdrawal,
            timelocks.cancellation,
            immutables.deployed_at or 0,
        ),
    )


class EVMEscrowAdapter(ChainAdapter):
    """
    Escrow adapter for one EVM chain.
    """

    native_asset = NATIVE_TOKEN

    def __init__(self, client: EVMClient):
        self.client = client
        self.chain = client.config.name
        self.factory_address = client.config.factory_address
        self._factory = None

    @property
    def factory(self):
        if self._factory is None:
            self._factory = self.client.contract(self.factory_address, FACTORY_ABI)
        return self._factory

    @property
    def account(self) -> str:
        return self.client.address

    def is_native(self, token: str) -> bool:
        return is_native_token(token)

    # =========================================================================
    # Escrow creation
    # =========================================================================

    def create_source_escrow(self, immutables: EscrowImmutables) -> EscrowRef:
        return self._create(EscrowSide.SOURCE, immutables)

    def create_destination_escrow(self, immutables: EscrowImmutables) -> EscrowRef:
        return self._create(EscrowSide.DESTINATION, immutables)

    def _create(self, side: EscrowSide, immutables: EscrowImmutables) -> EscrowRef:
        if side is EscrowSide.SOURCE:
            create_fn, event_name = self.factory.functions.createSrcEscrow, "SrcEscrowCreated"
        else:
            create_fn, event_name = self.factory.functions.createDstEscrow, "DstEscrowCreated"

        try:
            creation_fee = int(self.factory.functions.creationFee().call())
            value = immutables.safety_deposit + creation_fee
            # The create must be mined before another order resets the allowance
            with self.client.lock:
                if self.is_native(immutables.token):
                    value += immutables.amount
                else:
                    self.client.ensure_allowance(immutables.token, self.factory_address,
                                                 immutables.amount)

                log.info(f"{self.chain}: creating {side.value} escrow for order "
                         f"{immutables.order_hash[:10]}... value={value}")
                receipt = self.client.send(create_fn(encode_immutables(immutables)), value=value)

            events = getattr(self.factory.events, event_name)().process_receipt(receipt)
            if not events:
                raise ChainCallError(f"{self.chain}: {event_name} not found in receipt",
                                     chain=self.chain, retryable=False)
            escrow_address = events[0]['args']['escrow']
            deployed_at = self.client.block_timestamp(receipt['blockNumber'])
        except ChainCallError:
            raise
        except (Web3Exception, RuntimeError, ValueError, OSError) as e:
            raise self._map_error(f"create {side.value} escrow", e)

        tx_hash = receipt['transactionHash']
        return EscrowRef(
            chain=self.chain,
            side=side,
            escrow_id=escrow_address,
            tx_ref=tx_hash.hex() if hasattr(tx_hash, 'hex') else str(tx_hash),
            immutables=immutables.deployed(deployed_at),
        )

    # =========================================================================
    # Withdrawal
    # =========================================================================

    def withdraw(self, escrow: EscrowRef, secret: str) -> WithdrawalReceipt:
        contract = self.client.contract(escrow.escrow_id, ESCROW_ABI)
        try:
            receipt = self.client.send(
                contract.functions.withdraw(to_bytes32(secret), encode_immutables(escrow.immutables))
            )
        except (Web3Exception, RuntimeError, ValueError, OSError) as e:
            raise self._map_error("withdraw", e)

        tx_hash = receipt['transactionHash']
        return WithdrawalReceipt(
            chain=self.chain,
            escrow_id=escrow.escrow_id,
            tx_ref=tx_hash.hex() if hasattr(tx_hash, 'hex') else str(tx_hash),
        )

    # =========================================================================
    # Balances
    # =========================================================================

    def get_balance(self, account: str, asset: str) -> int:
        try:
            return self.client.get_balance(account, asset)
        except (Web3Exception, RuntimeError, ValueError, OSError) as e:
            raise self._map_error("get balance", e)

    def describe(self) -> Dict[str, Any]:
        data = super().describe()
        data.update({
            "chainId": self.client.config.chain_id,
            "factory": self.factory_address,
        })
        return data

    def _map_error(self, action: str, error: Exception) -> ChainCallError:
        message = f"{self.chain}: {action} failed: {error}"
        if isinstance(error, ContractLogicError) and "InvalidTime" in str(error):
            return TimingError(message, chain=self.chain, retryable=True)
        return ChainCallError(message, chain=self.chain)
