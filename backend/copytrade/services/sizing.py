"""
Proportional Sizing Calculator

Turns one leader trade into per-follower copy amounts. A follower mirrors the
same *fraction* of their own authorized capital that the leader committed of
theirs, never a share of the leader's absolute size.
"""

from dataclasses import dataclass
from typing import Any, Iterable, List, Optional
import logging

from copytrade.core.exceptions import SizingConfigError
from copytrade.models.delegation import Delegation

logger = logging.getLogger(__name__)

BPS_DENOMINATOR = 10_000


@dataclass(frozen=True)
class SizedTrade:
    delegation: Delegation
    copy_amount: int


def parse_fraction_bps(raw: Optional[Any]) -> int:
    """Parse the leader's size-to-portfolio fraction. There is no default."""
    if raw is None or (isinstance(raw, str) and not raw.strip()):
        raise SizingConfigError("sizeToPortfolioBps missing from trade metadata")
    if isinstance(raw, bool):
        raise SizingConfigError(f"Invalid sizeToPortfolioBps: {raw!r}")

    try:
        bps = int(str(raw).strip())
    except ValueError:
        raise SizingConfigError(f"Invalid sizeToPortfolioBps: {raw!r}")

    if bps < 0 or bps > BPS_DENOMINATOR:
        raise SizingConfigError(
            f"sizeToPortfolioBps out of range (0-{BPS_DENOMINATOR}): {bps}"
        )
    return bps


def copy_amount_for(delegation_amount: int, fraction_bps: int) -> int:
    return delegation_amount * fraction_bps // BPS_DENOMINATOR


class ProportionalSizer:
    def size(
        self, delegations: Iterable[Delegation], fraction_bps: int
    ) -> List[SizedTrade]:
        sized = []
        for delegation in delegations:
            authorized = delegation.authorized
            if authorized <= 0:
                logger.debug(f"Skipping zero-amount delegation {delegation.delegation_hash}")
                continue

            amount = copy_amount_for(authorized, fraction_bps)
            if amount <= 0:
                logger.debug(
                    f"Copy amount rounds to zero for {delegation.delegation_hash} "
                    f"({authorized} @ {fraction_bps} bps)"
                )
                continue

            sized.append(SizedTrade(delegation=delegation, copy_amount=amount))
        return sized
