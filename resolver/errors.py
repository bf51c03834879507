"""
Error types raised by the resolver.

Validation and limit errors reach the HTTP caller synchronously. Chain call
errors are recorded on the order's steps; withdrawal failures are retried.
"""

from typing import Optional, Dict, Any, List


class ResolverError(Exception):
    """Base class for resolver errors."""
    code = "resolver_error"
    retryable = False

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message

    def to_dict(self) -> Dict[str, Any]:
        return {"error": self.message, "code": self.code}


# =============================================================================
# Validation
# =============================================================================

class ValidationError(ResolverError):
    """Order payload rejected. Carries field-level details."""
    code = "validation_error"

    def __init__(self, message: str, field: str = None, details: List[Dict[str, str]] = None):
        super().__init__(message)
        self.field = field
        if details is None:
            details = [{"field": field, "code": self.code, "message": message}] if field else []
        self.details = details

    def to_dict(self) -> Dict[str, Any]:
        data = super().to_dict()
        data["details"] = self.details
        return data


class FormatError(ValidationError):
    code = "invalid_format"


class UnsupportedChainPairError(ValidationError):
    code = "unsupported_chain_pair"


class DeadlineTooSoonError(ValidationError):
    code = "deadline_too_soon"


class TimelockOrderingError(ValidationError):
    code = "timelock_ordering"


class OrderLimitError(ValidationError):
    code = "order_limit_exceeded"


class UnsupportedTokenError(ValidationError):
    code = "unsupported_token"


class MissingAddressError(ValidationError):
    code = "missing_required_address"


class MalformedAddressError(ValidationError):
    code = "malformed_address"


# =============================================================================
# Registry
# =============================================================================

class DuplicateOrderError(ResolverError):
    code = "duplicate_order"

    def __init__(self, order_hash: str):
        super().__init__(f"Order {order_hash} already exists")
        self.order_hash = order_hash


class OrderNotFoundError(ResolverError):
    code = "order_not_found"

    def __init__(self, order_hash: str):
        super().__init__(f"Order {order_hash} not found")
        self.order_hash = order_hash


class InvalidOrderStateError(ResolverError):
    code = "invalid_order_state"


# =============================================================================
# Liquidity / chains
# =============================================================================

class LiquidityError(ResolverError):
    """Resolver cannot fund both escrows. Caller may resubmit later."""
    code = "insufficient_liquidity"

    def __init__(self, message: str, report=None):
        super().__init__(message)
        self.report = report

    def to_dict(self) -> Dict[str, Any]:
        data = super().to_dict()
        if self.report is not None:
            data["liquidity"] = self.report.to_dict()
        return data


class ChainCallError(ResolverError):
    """A chain adapter call failed or timed out."""
    code = "chain_call_failed"
    retryable = True

    def __init__(self, message: str, chain: Optional[str] = None, retryable: Optional[bool] = None):
        super().__init__(message)
        self.chain = chain
        if retryable is not None:
            self.retryable = retryable


class TimingError(ChainCallError):
    """Withdrawal attempted outside the escrow's withdrawal window."""
    code = "timelock_window"
    retryable = False


class InternalError(ResolverError):
    code = "internal_error"
