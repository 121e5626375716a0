"""
Spending-Limit Enforcer
"""

from typing import Iterable, List, Tuple
import logging

from copytrade.core.exceptions import SpendingLimitExceeded
from copytrade.services.sizing import SizedTrade

logger = logging.getLogger(__name__)


def check_spend(spent: int, amount: int, limit: int) -> None:
    if spent + amount > limit:
        raise SpendingLimitExceeded(
            f"Spend {spent} + {amount} exceeds limit {limit}"
        )


class SpendingLimitEnforcer:
    """Admits a copy only while it fits in the delegation's remaining budget."""

    def admit(
        self, sized: Iterable[SizedTrade]
    ) -> Tuple[List[SizedTrade], List[SizedTrade]]:
        admitted, rejected = [], []
        for trade in sized:
            delegation = trade.delegation
            try:
                check_spend(delegation.spent, trade.copy_amount, delegation.limit)
            except SpendingLimitExceeded as e:
                logger.warning(
                    f"Delegation {delegation.delegation_hash} would exceed spending limit, skipping: {e}"
                )
                rejected.append(trade)
                continue
            admitted.append(trade)
        return admitted, rejected
