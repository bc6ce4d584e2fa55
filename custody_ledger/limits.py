"""
limits.py - Deposit ceilings in the common accounting unit

Both ceilings are fixed when the policy is built. Withdrawals are never
checked against them.
"""

from __future__ import annotations
from dataclasses import dataclass

from .core import (
    AggregateLimitExceeded, TransactionLimitExceeded,
    checked_add, validate_amount,
)


@dataclass(frozen=True, slots=True)
class LimitPolicy:
    """
    Per-transaction and per-asset aggregate ceilings.

    Attributes:
        per_transaction_limit: Largest normalized amount one deposit may add.
        aggregate_limit: Largest normalized total an asset may hold across
                         all holders.
    """
    per_transaction_limit: int
    aggregate_limit: int

    def __post_init__(self):
        validate_amount(self.per_transaction_limit, "per_transaction_limit")
        validate_amount(self.aggregate_limit, "aggregate_limit")

    def check_deposit(self, asset_id: str, proposed: int, current_aggregate: int) -> None:
        """
        Validate a prospective deposit.

        Raises:
            TransactionLimitExceeded: proposed > per_transaction_limit
            AggregateLimitExceeded: current_aggregate + proposed > aggregate_limit
        """
        if proposed > self.per_transaction_limit:
            raise TransactionLimitExceeded(
                f"{asset_id}: deposit of {proposed} exceeds per-transaction limit "
                f"{self.per_transaction_limit}"
            )
        total = checked_add(current_aggregate, proposed)
        if total > self.aggregate_limit:
            raise AggregateLimitExceeded(
                f"{asset_id}: aggregate {total} would exceed limit {self.aggregate_limit}"
            )

    def headroom(self, current_aggregate: int) -> int:
        """Largest deposit currently admissible for an asset at current_aggregate."""
        remaining = max(self.aggregate_limit - current_aggregate, 0)
        return min(remaining, self.per_transaction_limit)
