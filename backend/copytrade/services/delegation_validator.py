"""
Delegation Validator

Decides whether a delegation may still be redeemed. Expiry is applied lazily:
there is no sweep, a delegation is flipped inactive the first time it is
checked after its deadline.
"""

import asyncio
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Iterable, List, Optional
import logging

from sqlalchemy import update
from sqlalchemy.ext.asyncio import async_sessionmaker

from copytrade.core.clock import utcnow
from copytrade.core.exceptions import DelegationInvalid
from copytrade.models.delegation import Delegation
from copytrade.services.chain_client import ChainClient

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ValidationResult:
    delegation: Delegation
    valid: bool
    reason: Optional[str] = None
    deactivate: bool = False


class DelegationValidator:
    def __init__(
        self,
        session_factory: async_sessionmaker,
        chain: Optional[ChainClient] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.session_factory = session_factory
        self.chain = chain
        self.clock = clock

    async def check(self, delegation: Delegation) -> ValidationResult:
        """Pure verdict for one delegation; persists nothing."""
        if not delegation.is_active:
            return ValidationResult(delegation, False, "inactive")

        if delegation.is_expired(self.clock()):
            return ValidationResult(delegation, False, "expired", deactivate=True)

        if self.chain is None or not delegation.has_bytes32_hash:
            return ValidationResult(delegation, True)

        try:
            enabled = await self.chain.is_delegation_enabled(
                delegation.delegation_hash, delegation.supporter
            )
        except Exception as e:
            # Unknown on-chain state: the off-chain checks above already
            # agree, so the off-chain verdict stands.
            logger.warning(
                f"On-chain check failed for {delegation.delegation_hash}, "
                f"relying on off-chain state: {e}"
            )
            return ValidationResult(delegation, True, "chain-unknown")

        if not enabled:
            return ValidationResult(delegation, False, "disabled on-chain", deactivate=True)
        return ValidationResult(delegation, True)

    async def validate_all(self, delegations: Iterable[Delegation]) -> List[Delegation]:
        """
        Check every delegation concurrently, persist any deactivations, and
        return the ones that may be redeemed.
        """
        delegations = list(delegations)
        if not delegations:
            return []

        results = await asyncio.gather(*(self.check(d) for d in delegations))

        for result in results:
            if not result.valid:
                logger.warning(
                    f"{DelegationInvalid.__name__}: delegation "
                    f"{result.delegation.delegation_hash} skipped ({result.reason})"
                )

        await self._deactivate([r.delegation for r in results if r.deactivate])
        return [r.delegation for r in results if r.valid]

    async def validate_one(self, delegation: Delegation) -> ValidationResult:
        result = await self.check(delegation)
        if result.deactivate:
            await self._deactivate([delegation])
        return result

    async def ensure_valid(self, delegation: Delegation) -> Delegation:
        result = await self.validate_one(delegation)
        if not result.valid:
            raise DelegationInvalid(
                f"Delegation {delegation.delegation_hash} is not redeemable ({result.reason})"
            )
        return delegation

    async def _deactivate(self, stale: List[Delegation]) -> None:
        if not stale:
            return

        now = self.clock()
        async with self.session_factory() as session:
            async with session.begin():
                await session.execute(
                    update(Delegation)
                    .where(Delegation.id.in_([d.id for d in stale]))
                    .values(is_active=False, updated_at=now)
                )

        for delegation in stale:
            delegation.is_active = False
        logger.info(f"Deactivated {len(stale)} delegation(s)")
