"""
Order validation and cross-chain address resolution.

validate_order() is pure: it checks a submitted payload against the
resolver's configuration and returns a ValidatedOrder, or raises a
ValidationError subtype describing the first offending field.
"""

import time
import logging
from dataclasses import dataclass
from typing import Optional, Dict, Any

from pydantic import BaseModel, ConfigDict, Field, StrictInt
from pydantic import ValidationError as PydanticValidationError

from .chains.evm import is_evm_address
from .chains.icp import is_principal
from .config import ResolverConfig
from .core import (
    Timelocks, AddressAssignment, SwapDirection, HOME_CHAIN, NATIVE_TOKEN, ICP_NATIVE_TOKEN,
)
from .errors import (
    FormatError, UnsupportedChainPairError, DeadlineTooSoonError, TimelockOrderingError,
    OrderLimitError, UnsupportedTokenError, MissingAddressError, MalformedAddressError,
)

log = logging.getLogger(__name__)

ORDER_HASH_PATTERN = r"^0x[0-9a-fA-F]{64}$"
AMOUNT_PATTERN = r"^[0-9]+$"


class TimelocksPayload(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    withdrawal: StrictInt = Field(ge=0)
    public_withdrawal: StrictInt = Field(alias="publicWithdrawal", ge=0)
    cancellation: StrictInt = Field(ge=0)


class OrderPayload(BaseModel):
    """Wire shape of a submitted order."""
    model_config = ConfigDict(populate_by_name=True)

    order_hash: str = Field(alias="orderHash", pattern=ORDER_HASH_PATTERN)
    src_chain: str = Field(alias="srcChain", min_length=1)
    dst_chain: str = Field(alias="dstChain", min_length=1)
    src_token: str = Field(alias="srcToken", min_length=1)
    dst_token: str = Field(alias="dstToken", min_length=1)
    src_amount: str = Field(alias="srcAmount", pattern=AMOUNT_PATTERN)
    dst_amount: str = Field(alias="dstAmount", pattern=AMOUNT_PATTERN)
    deadline: StrictInt
    timelocks: TimelocksPayload

    maker_icp_address: Optional[str] = Field(None, alias="makerICPAddress")
    maker_evm_address: Optional[str] = Field(None, alias="makerEVMAddress")
    taker_icp_address: Optional[str] = Field(None, alias="takerICPAddress")
    taker_evm_address: Optional[str] = Field(None, alias="takerEVMAddress")


@dataclass(frozen=True)
class ValidatedOrder:
    """A normalized order with its escrow parties resolved."""
    order_hash: str
    src_chain: str
    dst_chain: str
    src_token: str
    dst_token: str
    src_amount: int
    dst_amount: int
    deadline: int
    timelocks: Timelocks
    addresses: AddressAssignment


# Address fields per (party, chain kind)
_ADDRESS_FIELDS = {
    ("maker", HOME_CHAIN): "makerICPAddress",
    ("maker", "evm"): "makerEVMAddress",
    ("taker", HOME_CHAIN): "takerICPAddress",
    ("taker", "evm"): "takerEVMAddress",
}


def chain_kind(chain: str) -> str:
    return HOME_CHAIN if chain == HOME_CHAIN else "evm"


def is_valid_address(chain: str, address: str) -> bool:
    if chain_kind(chain) == HOME_CHAIN:
        return is_principal(address)
    return is_evm_address(address)


def is_valid_token(chain: str, token: str) -> bool:
    """Native asset, or a ledger principal / ERC20 address on that chain."""
    if chain_kind(chain) == HOME_CHAIN:
        return token.upper() == ICP_NATIVE_TOKEN or is_principal(token)
    return is_evm_address(token)


def validate_order(payload: Dict[str, Any], config: ResolverConfig,
                   now: Optional[float] = None) -> ValidatedOrder:
    """
    Validate a submitted order and resolve its escrow parties.

    Args:
        payload: Decoded JSON body (camelCase keys)
        config: Resolver configuration (chains, limits, tokens)
        now: Current time in seconds (default: time.time())

    Returns:
        ValidatedOrder

    Raises:
        ValidationError subtype; never retryable
    """
    now = time.time() if now is None else now
    parsed = _parse(payload)

    src_chain = parsed.src_chain.lower()
    dst_chain = parsed.dst_chain.lower()
    _check_chain_pair(src_chain, dst_chain, config)

    if parsed.deadline < now + config.min_deadline_buffer:
        raise DeadlineTooSoonError(
            f"Deadline must be at least {config.min_deadline_buffer}s in the future",
            field="deadline",
        )

    timelocks = Timelocks(
        withdrawal=parsed.timelocks.withdrawal,
        public_withdrawal=parsed.timelocks.public_withdrawal,
        cancellation=parsed.timelocks.cancellation,
    )
    if timelocks.withdrawal >= timelocks.public_withdrawal:
        raise TimelockOrderingError("withdrawal must be before publicWithdrawal",
                                    field="timelocks.publicWithdrawal")
    if timelocks.public_withdrawal >= timelocks.cancellation:
        raise TimelockOrderingError("publicWithdrawal must be before cancellation",
                                    field="timelocks.cancellation")
    if (config.max_cancellation_timelock is not None
            and timelocks.cancellation > config.max_cancellation_timelock):
        raise TimelockOrderingError(
            f"cancellation exceeds {config.max_cancellation_timelock}s",
            field="timelocks.cancellation",
        )

    src_amount = int(parsed.src_amount)
    dst_amount = int(parsed.dst_amount)
    if config.max_order_size is not None and src_amount > config.max_order_size:
        raise OrderLimitError(f"Order size exceeds maximum of {config.max_order_size}",
                              field="srcAmount")

    _check_token(parsed.src_token, src_chain, "srcToken", config)
    _check_token(parsed.dst_token, dst_chain, "dstToken", config)

    addresses = resolve_addresses(parsed, src_chain, dst_chain)

    return ValidatedOrder(
        order_hash=parsed.order_hash.lower(),
        src_chain=src_chain,
        dst_chain=dst_chain,
        src_token=_normalize_token(src_chain, parsed.src_token),
        dst_token=_normalize_token(dst_chain, parsed.dst_token),
        src_amount=src_amount,
        dst_amount=dst_amount,
        deadline=parsed.deadline,
        timelocks=timelocks,
        addresses=addresses,
    )


def _parse(payload: Dict[str, Any]) -> OrderPayload:
    if not isinstance(payload, dict):
        raise FormatError("Order must be a JSON object", field="body")
    try:
        return OrderPayload.model_validate(payload)
    except PydanticValidationError as e:
        details = [
            {
                "field": ".".join(str(p) for p in err["loc"]),
                "code": FormatError.code,
                "message": err["msg"],
            }
            for err in e.errors()
        ]
        first = details[0]
        raise FormatError(f"Invalid {first['field']}: {first['message']}",
                          field=first["field"], details=details)


def _check_chain_pair(src_chain: str, dst_chain: str, config: ResolverConfig):
    supported = (HOME_CHAIN,) + config.supported_evm_chains
    for field_name, chain in (("srcChain", src_chain), ("dstChain", dst_chain)):
        if chain not in supported:
            raise UnsupportedChainPairError(
                f"Unsupported chain {chain!r}; supported: {', '.join(supported)}",
                field=field_name,
            )
    if src_chain == dst_chain:
        raise UnsupportedChainPairError("srcChain and dstChain must differ", field="dstChain")
    if HOME_CHAIN not in (src_chain, dst_chain):
        raise UnsupportedChainPairError(
            f"One side of the swap must be {HOME_CHAIN}", field="srcChain",
        )


def _check_token(token: str, chain: str, field_name: str, config: ResolverConfig):
    if not is_valid_token(chain, token):
        raise MalformedAddressError(f"{field_name} {token!r} is not a valid {chain} token",
                                    field=field_name)
    if not config.supported_tokens:
        return
    if token.lower() in (NATIVE_TOKEN, ICP_NATIVE_TOKEN.lower()):
        return
    supported = {t.lower() for t in config.supported_tokens}
    if token.lower() not in supported:
        raise UnsupportedTokenError(f"Token {token} is not supported", field=field_name)


def _normalize_token(chain: str, token: str) -> str:
    if chain_kind(chain) == HOME_CHAIN and token.upper() == ICP_NATIVE_TOKEN:
        return ICP_NATIVE_TOKEN
    return token


def resolve_addresses(parsed: OrderPayload, src_chain: str, dst_chain: str) -> AddressAssignment:
    """
    Pick each escrow's maker and taker from the order's four addresses.

    Required: the maker on both chains and the taker on the destination
    chain. The source escrow's taker falls back to the resolver's own
    account when the order carries none.
    """
    supplied = {
        ("maker", HOME_CHAIN): parsed.maker_icp_address,
        ("maker", "evm"): parsed.maker_evm_address,
        ("taker", HOME_CHAIN): parsed.taker_icp_address,
        ("taker", "evm"): parsed.taker_evm_address,
    }

    # Anything supplied must be well-formed for its chain
    for key, address in supplied.items():
        if address is None:
            continue
        field_name = _ADDRESS_FIELDS[key]
        if not is_valid_address(key[1], address):
            raise MalformedAddressError(f"{field_name} is not a valid {key[1]} address",
                                        field=field_name)

    def require(party: str, chain: str) -> str:
        key = (party, chain_kind(chain))
        address = supplied[key]
        if not address:
            raise MissingAddressError(
                f"{_ADDRESS_FIELDS[key]} is required for {src_chain} -> {dst_chain} orders",
                field=_ADDRESS_FIELDS[key],
            )
        return address

    src_maker = require("maker", src_chain)
    dst_beneficiary = require("maker", dst_chain)
    dst_depositor = require("taker", dst_chain)
    src_taker = supplied[("taker", chain_kind(src_chain))] or None

    direction = (SwapDirection.ICP_TO_EVM if src_chain == HOME_CHAIN
                 else SwapDirection.EVM_TO_ICP)

    return AddressAssignment(
        direction=direction,
        src_maker=src_maker,
        src_taker=src_taker,
        dst_maker=dst_depositor,
        dst_taker=dst_beneficiary,
    )

