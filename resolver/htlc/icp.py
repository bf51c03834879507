"""
ICP escrow adapter.

Drives the escrow canister through dfx:
- create_src_escrow / create_dst_escrow (record immutables) -> Result<blob>
- withdraw_src / withdraw_dst (secret, hashlock) -> Result<()>
- get_escrow (hashlock) -> opt escrow, used to read the deployment time

The canister pulls funds from the resolver, so the ledger allowance is
raised with ICRC-2 approve before each creation.
"""

import logging
from typing import Dict, Any

from ..chains.icp import (
    DFXClient, candid_blob, candid_text, candid_nat64, decode_bytes, decode_nat,
)
from ..core import (
    EscrowImmutables, EscrowRef, EscrowSide, ICP_NATIVE_TOKEN, to_bytes32,
)
from ..errors import ChainCallError, TimingError
from .base import ChainAdapter, WithdrawalReceipt

log = logging.getLogger(__name__)

NANOS_PER_SECOND = 1_000_000_000

# Canister errors that mean the call was well-formed but outside the window
_TIMING_ERRORS = {"InvalidTime"}
# Canister errors a retry will not fix
_FATAL_ERRORS = {"InvalidSecret", "InvalidState", "EscrowNotFound", "DuplicateEscrow",
                 "InvalidCaller", "Unauthorized", "InvalidAddress", "InvalidAmount",
                 "InvalidHashlock"}


def encode_immutables(immutables: EscrowImmutables) -> str:
    """Candid record for create_*_escrow. deployed_at 0 = set by the canister."""
    tl = immutables.timelocks
    return (
        "(record { "
        f"order_hash = {candid_blob(to_bytes32(immutables.order_hash))}; "
        f"hashlock = {candid_blob(to_bytes32(immutables.hashlock))}; "
        f"maker = {candid_text(immutables.maker)}; "
        f"taker = {candid_text(immutables.taker)}; "
        f"token = {candid_text(immutables.token)}; "
        f"amount = {candid_nat64(immutables.amount)}; "
        f"safety_deposit = {candid_nat64(immutables.safety_deposit)}; "
        "timelocks = record { "
        f"withdrawal = {candid_nat64(tl.withdrawal)}; "
        f"public_withdrawal = {candid_nat64(tl.public_withdrawal)}; "
        f"cancellation = {candid_nat64(tl.cancellation)}; "
        f"deployed_at = {candid_nat64(0)} "
        "} })"
    )


def _error_name(err: Any) -> str:
    if isinstance(err, dict) and err:
        return next(iter(err))
    return str(err)


class ICPEscrowAdapter(ChainAdapter):
    """
    Escrow adapter for the ICP escrow canister.
    """

    chain = "icp"
    native_asset = ICP_NATIVE_TOKEN

    def __init__(self, client: DFXClient):
        self.client = client
        self.config = client.config
        self.canister_id = client.config.canister_id

    @property
    def account(self) -> str:
        try:
            return self.client.get_principal()
        except RuntimeError as e:
            raise ChainCallError(f"icp: cannot read resolver principal: {e}", chain=self.chain)

    def is_native(self, token: str) -> bool:
        return token in (ICP_NATIVE_TOKEN, self.config.ledger_canister_id)

    # =========================================================================
    # Escrow creation
    # =========================================================================

    def create_source_escrow(self, immutables: EscrowImmutables) -> EscrowRef:
        return self._create(EscrowSide.SOURCE, immutables)

    def create_destination_escrow(self, immutables: EscrowImmutables) -> EscrowRef:
        return self._create(EscrowSide.DESTINATION, immutables)

    def _create(self, side: EscrowSide, immutables: EscrowImmutables) -> EscrowRef:
        method = "create_src_escrow" if side is EscrowSide.SOURCE else "create_dst_escrow"
        fee = self.config.transfer_fee
        ledger = self.config.ledger_canister_id

        # ICRC-2 approve replaces the allowance; another order must not approve in between
        try:
            with self.client.lock:
                if self.is_native(immutables.token):
                    self.client.approve(ledger, self.canister_id,
                                        immutables.amount + immutables.safety_deposit + fee)
                else:
                    # Token principal from its own ledger, deposit in ICP
                    self.client.approve(immutables.token, self.canister_id, immutables.amount + fee)
                    self.client.approve(ledger, self.canister_id, immutables.safety_deposit + fee)

                log.info(f"icp: {method} for order {immutables.order_hash[:10]}...")
                result = self.client.call(self.canister_id, method, encode_immutables(immutables))
        except RuntimeError as e:
            raise ChainCallError(f"icp: {method} failed: {e}", chain=self.chain)

        self._check_result(method, result)
        hashlock = "0x" + decode_bytes(result["Ok"]).hex()
        deployed_at = self._deployed_at(immutables.hashlock)

        return EscrowRef(
            chain=self.chain,
            side=side,
            escrow_id=hashlock,
            tx_ref=f"{self.canister_id}:{method}:{hashlock[:18]}",
            immutables=immutables.deployed(deployed_at),
        )

    def _deployed_at(self, hashlock: str) -> int:
        """Deployment time recorded by the canister, in seconds."""
        arg = f"({candid_blob(to_bytes32(hashlock))})"
        try:
            result = self.client.call(self.canister_id, "get_escrow", arg, query=True)
        except RuntimeError as e:
            raise ChainCallError(f"icp: get_escrow failed: {e}", chain=self.chain)

        escrow = result[0] if isinstance(result, list) and result else None
        if not escrow:
            raise ChainCallError(f"icp: escrow {hashlock[:18]} not found after creation",
                                 chain=self.chain, retryable=False)
        nanos = decode_nat(escrow["immutables"]["timelocks"]["deployed_at"])
        return nanos // NANOS_PER_SECOND

    # =========================================================================
    # Withdrawal
    # =========================================================================

    def withdraw(self, escrow: EscrowRef, secret: str) -> WithdrawalReceipt:
        method = "withdraw_src" if escrow.side is EscrowSide.SOURCE else "withdraw_dst"
        arg = f"({candid_blob(to_bytes32(secret))}, {candid_blob(to_bytes32(escrow.escrow_id))})"
        try:
            result = self.client.call(self.canister_id, method, arg)
        except RuntimeError as e:
            raise ChainCallError(f"icp: {method} failed: {e}", chain=self.chain)

        self._check_result(method, result)
        return WithdrawalReceipt(
            chain=self.chain,
            escrow_id=escrow.escrow_id,
            tx_ref=f"{self.canister_id}:{method}:{escrow.escrow_id[:18]}",
        )

    def _check_result(self, method: str, result: Any):
        if isinstance(result, dict) and "Ok" in result:
            return
        err = result.get("Err") if isinstance(result, dict) else result
        name = _error_name(err)
        message = f"icp: {method} rejected: {name}"
        if name in _TIMING_ERRORS:
            raise TimingError(message, chain=self.chain, retryable=True)
        raise ChainCallError(message, chain=self.chain, retryable=name not in _FATAL_ERRORS)

    # =========================================================================
    # Balances
    # =========================================================================

    def get_balance(self, account: str, asset: str) -> int:
        ledger = self.config.ledger_canister_id if self.is_native(asset) else asset
        try:
            return self.client.balance_of(ledger, account)
        except (RuntimeError, ValueError) as e:
            raise ChainCallError(f"icp: balance query failed: {e}", chain=self.chain)

    def describe(self) -> Dict[str, Any]:
        data = super().describe()
        data.update({
            "canisterId": self.canister_id,
            "network": self.config.network,
            "ledger": self.config.ledger_canister_id,
        })
        return data
