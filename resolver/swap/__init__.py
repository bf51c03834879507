"""
Swap coordination for the Fusion resolver.

- orchestrator: source then destination escrow creation
- scheduler: timelock-gated withdrawal with bounded retry
- coordinator: submission, cancellation, sweep
"""

from .orchestrator import EscrowOrchestrator, EscrowPair
from .scheduler import WithdrawalScheduler, RetryPolicy, WithdrawalOrder
from .coordinator import SwapCoordinator, SubmissionReceipt

__all__ = [
    "EscrowOrchestrator",
    "EscrowPair",
    "WithdrawalScheduler",
    "RetryPolicy",
    "WithdrawalOrder",
    "SwapCoordinator",
    "SubmissionReceipt",
]
