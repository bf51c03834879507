"""
EVM client for the Fusion resolver.

Thin web3.py wrapper: signing account, contract handles, transaction
submission and balances. Escrow-specific calls live in htlc/evm.py.
"""

import re
import logging
import threading
from typing import Optional, Dict, Any

from web3 import Web3
from eth_account import Account

from ..config import EVMChainConfig
from ..core import NATIVE_TOKEN

log = logging.getLogger(__name__)

EVM_ADDRESS_RE = re.compile(r"^0x[0-9a-fA-F]{40}$")

# ERC20 ABI (balance, allowance, approve)
ERC20_ABI = [
    {
        "name": "balanceOf",
        "type": "function",
        "stateMutability": "view",
        "inputs": [{"name": "account", "type": "address"}],
        "outputs": [{"name": "", "type": "uint256"}]
    },
    {
        "name": "approve",
        "type": "function",
        "inputs": [
            {"name": "spender", "type": "address"},
            {"name": "amount", "type": "uint256"}
        ],
        "outputs": [{"name": "", "type": "bool"}]
    },
    {
        "name": "allowance",
        "type": "function",
        "stateMutability": "view",
        "inputs": [
            {"name": "owner", "type": "address"},
            {"name": "spender", "type": "address"}
        ],
        "outputs": [{"name": "", "type": "uint256"}]
    }
]

# Gas multiplier applied to the node's gas price
GAS_PRICE_BUMP = 1.1
APPROVE_GAS = 100000


def is_evm_address(address: str) -> bool:
    """0x + 40 hex chars. Mixed case must carry a valid checksum."""
    if not isinstance(address, str) or not EVM_ADDRESS_RE.match(address):
        return False
    body = address[2:]
    if body.islower() or body.isupper():
        return True
    return Web3.to_checksum_address(address) == address


def is_native_token(token: str) -> bool:
    return token.lower() == NATIVE_TOKEN


class EVMClient:
    """
    web3 client for one EVM chain, signing with the resolver's key.
    """

    def __init__(self, config: EVMChainConfig):
        self.config = config
        self._web3 = None
        self._account = None
        # Held from nonce read to broadcast; callers may hold it across approve + use
        self.lock = threading.RLock()

    @property
    def web3(self) -> Web3:
        """Lazy-load web3 instance."""
        if self._web3 is None:
            self._web3 = Web3(Web3.HTTPProvider(self.config.rpc_url))
        return self._web3

    @property
    def account(self):
        if self._account is None:
            key = self.config.private_key
            if not key:
                raise RuntimeError(f"{self.config.name}: no private key configured")
            if not key.startswith("0x"):
                key = "0x" + key
            self._account = Account.from_key(key)
        return self._account

    @property
    def address(self) -> str:
        return self.account.address

    def contract(self, address: str, abi: list):
        return self.web3.eth.contract(address=Web3.to_checksum_address(address), abi=abi)

    # =========================================================================
    # Transactions
    # =========================================================================

    def send(self, fn, value: int = 0, gas: int = None) -> Dict[str, Any]:
        """
        Sign and send a contract call, wait for its receipt.

        Returns:
            The transaction receipt

        Raises:
            RuntimeError: the transaction reverted
        """
        w3 = self.web3
        sender = self.address
        with self.lock:
            nonce = w3.eth.get_transaction_count(sender, 'pending')
            gas_price = int(w3.eth.gas_price * GAS_PRICE_BUMP)

            tx = fn.build_transaction({
                'from': sender,
                'nonce': nonce,
                'gas': gas or self.config.gas_limit,
                'gasPrice': gas_price,
                'chainId': self.config.chain_id,
                'value': value,
            })

            signed = self.account.sign_transaction(tx)
            tx_hash = w3.eth.send_raw_transaction(signed.raw_transaction)
        log.info(f"{self.config.name} TX sent: {tx_hash.hex()}")

        receipt = w3.eth.wait_for_transaction_receipt(tx_hash, timeout=self.config.receipt_timeout)
        if receipt['status'] != 1:
            raise RuntimeError(f"{self.config.name} transaction reverted: {tx_hash.hex()}")
        return receipt

    def block_timestamp(self, block_number: int) -> int:
        return int(self.web3.eth.get_block(block_number)['timestamp'])

    # =========================================================================
    # Balances
    # =========================================================================

    def get_balance(self, account: str, token: str = NATIVE_TOKEN) -> int:
        """Native or ERC20 balance in base units."""
        owner = Web3.to_checksum_address(account)
        if is_native_token(token):
            return int(self.web3.eth.get_balance(owner))
        erc20 = self.contract(token, ERC20_ABI)
        return int(erc20.functions.balanceOf(owner).call())

    def ensure_allowance(self, token: str, spender: str, amount: int) -> Optional[str]:
        """Approve `spender` for `token` if the current allowance is short."""
        erc20 = self.contract(token, ERC20_ABI)
        spender = Web3.to_checksum_address(spender)
        allowance = erc20.functions.allowance(self.address, spender).call()
        if allowance >= amount:
            return None

        log.info(f"{self.config.name}: approving {amount} of {token} for {spender}")
        receipt = self.send(erc20.functions.approve(spender, amount), gas=APPROVE_GAS)
        return receipt['transactionHash'].hex()
