"""
Core types and helpers for the Fusion resolver.

An order moves value between the ICP ledger (home chain) and one EVM chain.
Both escrows are locked with the same SHA256 hashlock; the resolver keeps
the secret until both escrows are funded and the withdrawal window opens.
"""

import hashlib
import secrets
from enum import Enum
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from typing import Optional, Dict, Any, List


class OrderStatus(Enum):
    """Order lifecycle states."""
    PROCESSING = "processing"   # Escrows being created or waiting to withdraw
    COMPLETED = "completed"     # Both legs withdrawn
    FAILED = "failed"           # Creation failed or withdrawal retries exhausted
    CANCELLING = "cancelling"   # Operator asked to stop, no new steps start

    @property
    def is_terminal(self) -> bool:
        return self in (OrderStatus.COMPLETED, OrderStatus.FAILED)


class StepStatus(Enum):
    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"


class SwapDirection(Enum):
    """Swap direction relative to the ICP ledger."""
    ICP_TO_EVM = "icp_to_evm"
    EVM_TO_ICP = "evm_to_icp"


class EscrowSide(Enum):
    SOURCE = "source"
    DESTINATION = "destination"


# Step names recorded on orders
STEP_CREATE_SOURCE = "create_source_escrow"
STEP_CREATE_DESTINATION = "create_destination_escrow"
STEP_WITHDRAW = "execute_withdrawal"


def utc_iso(ts: Optional[float]) -> Optional[str]:
    """Format an epoch timestamp for API output."""
    if ts is None:
        return None
    return datetime.fromtimestamp(ts, tz=timezone.utc).isoformat()


@dataclass(frozen=True)
class Timelocks:
    """Relative timelocks in seconds, measured from an escrow's deployment."""
    withdrawal: int
    public_withdrawal: int
    cancellation: int

    def is_ordered(self) -> bool:
        return self.withdrawal < self.public_withdrawal < self.cancellation

    def to_dict(self) -> Dict[str, int]:
        return {
            "withdrawal": self.withdrawal,
            "publicWithdrawal": self.public_withdrawal,
            "cancellation": self.cancellation,
        }


@dataclass(frozen=True)
class AddressAssignment:
    """Parties of both escrows, resolved from the order's four addresses."""
    direction: SwapDirection
    src_maker: str
    src_taker: Optional[str]    # None = resolver's own account on the source chain
    dst_maker: str
    dst_taker: str

    def to_dict(self) -> Dict[str, Any]:
        return {
            "direction": self.direction.value,
            "source": {"maker": self.src_maker, "taker": self.src_taker},
            "destination": {"maker": self.dst_maker, "taker": self.dst_taker},
        }


@dataclass(frozen=True)
class EscrowImmutables:
    """Parameters an escrow is created with and later withdrawn against."""
    order_hash: str
    hashlock: str
    maker: str
    taker: str
    token: str
    amount: int
    safety_deposit: int
    timelocks: Timelocks
    deployed_at: Optional[int] = None   # Set from the chain after creation

    def deployed(self, deployed_at: int) -> "EscrowImmutables":
        return replace(self, deployed_at=deployed_at)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "orderHash": self.order_hash,
            "hashlock": self.hashlock,
            "maker": self.maker,
            "taker": self.taker,
            "token": self.token,
            "amount": str(self.amount),
            "safetyDeposit": str(self.safety_deposit),
            "timelocks": self.timelocks.to_dict(),
            "deployedAt": self.deployed_at,
        }


@dataclass(frozen=True)
class EscrowRef:
    """An escrow as it exists on chain after creation was confirmed."""
    chain: str
    side: EscrowSide
    escrow_id: str          # EVM escrow address or ICP hashlock key
    tx_ref: str
    immutables: EscrowImmutables

    @property
    def deployed_at(self) -> int:
        return self.immutables.deployed_at

    def withdrawal_opens_at(self) -> int:
        return self.deployed_at + self.immutables.timelocks.withdrawal

    def cancellation_starts_at(self) -> int:
        return self.deployed_at + self.immutables.timelocks.cancellation

    def to_dict(self) -> Dict[str, Any]:
        return {
            "chain": self.chain,
            "side": self.side.value,
            "escrowId": self.escrow_id,
            "txRef": self.tx_ref,
            "deployedAt": self.deployed_at,
        }


@dataclass
class Step:
    """One processing step of an order."""
    name: str
    status: StepStatus = StepStatus.PENDING
    started_at: float = 0.0
    completed_at: Optional[float] = None
    failed_at: Optional[float] = None
    error: Optional[str] = None
    result: Optional[Dict[str, Any]] = None
    attempt: Optional[int] = None

    def complete(self, now: float, result: Dict[str, Any] = None):
        if self.status is not StepStatus.PENDING:
            raise ValueError(f"step {self.name} already {self.status.value}")
        self.status = StepStatus.COMPLETED
        self.completed_at = now
        self.result = result

    def fail(self, now: float, error: str):
        if self.status is not StepStatus.PENDING:
            raise ValueError(f"step {self.name} already {self.status.value}")
        self.status = StepStatus.FAILED
        self.failed_at = now
        self.error = error

    def to_dict(self) -> Dict[str, Any]:
        data = {
            "name": self.name,
            "status": self.status.value,
            "startedAt": utc_iso(self.started_at),
        }
        if self.attempt is not None:
            data["attempt"] = self.attempt
        if self.completed_at is not None:
            data["completedAt"] = utc_iso(self.completed_at)
        if self.failed_at is not None:
            data["failedAt"] = utc_iso(self.failed_at)
        if self.result is not None:
            data["result"] = self.result
        if self.error is not None:
            data["error"] = self.error
        return data


@dataclass
class Order:
    """A swap order and everything the resolver knows about it."""
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

    # Commitment (secret never leaves the resolver until withdrawal)
    secret: str = ""
    hashlock: str = ""

    safety_deposit: int = 0
    dst_safety_deposit: int = 0

    status: OrderStatus = OrderStatus.PROCESSING
    steps: List[Step] = field(default_factory=list)
    escrows: Dict[EscrowSide, EscrowRef] = field(default_factory=dict)

    # Timing
    created_at: float = 0.0
    completed_at: Optional[float] = None
    cancelled_at: Optional[float] = None
    failed_at: Optional[float] = None

    error: Optional[str] = None

    @property
    def direction(self) -> SwapDirection:
        return self.addresses.direction

    @property
    def source_escrow(self) -> Optional[EscrowRef]:
        return self.escrows.get(EscrowSide.SOURCE)

    @property
    def destination_escrow(self) -> Optional[EscrowRef]:
        return self.escrows.get(EscrowSide.DESTINATION)

    def start_step(self, name: str, now: float, attempt: int = None) -> Step:
        step = Step(name=name, started_at=now, attempt=attempt)
        self.steps.append(step)
        return step

    def summary(self) -> Dict[str, Any]:
        return {
            "orderHash": self.order_hash,
            "srcChain": self.src_chain,
            "dstChain": self.dst_chain,
            "srcAmount": str(self.src_amount),
            "dstAmount": str(self.dst_amount),
            "status": self.status.value,
            "createdAt": utc_iso(self.created_at),
            "completedAt": utc_iso(self.completed_at),
        }

    def to_dict(self) -> Dict[str, Any]:
        """Full order view for the API. The secret is never included."""
        data = self.summary()
        data.update({
            "srcToken": self.src_token,
            "dstToken": self.dst_token,
            "deadline": self.deadline,
            "timelocks": self.timelocks.to_dict(),
            "hashlock": self.hashlock,
            "safetyDeposit": str(self.safety_deposit),
            "dstSafetyDeposit": str(self.dst_safety_deposit),
            "direction": self.direction.value,
            "addresses": self.addresses.to_dict(),
            "escrows": {side.value: ref.to_dict() for side, ref in self.escrows.items()},
            "steps": [s.to_dict() for s in self.steps],
            "cancelledAt": utc_iso(self.cancelled_at),
            "failedAt": utc_iso(self.failed_at),
            "error": self.error,
        })
        return data


# =============================================================================
# HTLC Utilities
# =============================================================================

def generate_secret() -> tuple[str, str]:
    """
    Generate a random secret and its SHA256 hashlock.

    Returns:
        (secret_hex, hashlock_hex)
    """
    secret = secrets.token_bytes(SECRET_BYTES)
    hashlock = hashlib.sha256(secret).digest()
    return secret.hex(), hashlock.hex()


def verify_preimage(preimage_hex: str, hashlock_hex: str) -> bool:
    """
    Verify that SHA256(preimage) == hashlock.

    Args:
        preimage_hex: 32-byte preimage as hex string (0x prefix allowed)
        hashlock_hex: Expected SHA256 hash as hex string (0x prefix allowed)

    Returns:
        True if valid
    """
    try:
        preimage = bytes.fromhex(strip_0x(preimage_hex))
        expected = bytes.fromhex(strip_0x(hashlock_hex))
        actual = hashlib.sha256(preimage).digest()
        return actual == expected
    except (ValueError, TypeError):
        return False


def calculate_safety_deposit(amount: int) -> int:
    """Safety deposit locked alongside an escrow: floor(15% of amount)."""
    return amount * SAFETY_DEPOSIT_PERCENT // 100


def strip_0x(value: str) -> str:
    return value[2:] if value.startswith(("0x", "0X")) else value


def to_bytes32(value: str) -> bytes:
    raw = bytes.fromhex(strip_0x(value))
    if len(raw) != 32:
        raise ValueError(f"expected 32 bytes, got {len(raw)}")
    return raw


# =============================================================================
# Constants
# =============================================================================

SECRET_BYTES = 32
SAFETY_DEPOSIT_PERCENT = 15

HOME_CHAIN = "icp"
DEFAULT_EVM_CHAINS = ("ethereum", "polygon", "arbitrum", "base")

# EVM native token is addressed as the zero address
NATIVE_TOKEN = "0x0000000000000000000000000000000000000000"
# ICP native token may be given as "ICP" or the ledger canister id
ICP_NATIVE_TOKEN = "ICP"

# Deadlines must leave room for both escrows and the withdrawal window
MIN_DEADLINE_BUFFER = 300

# Seconds added to the withdrawal timelock in completion estimates
COMPLETION_ESTIMATE_MARGIN = 60
