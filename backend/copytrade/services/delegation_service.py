"""
Delegation Store operations: registration, revocation and lookups
"""

from datetime import timedelta, timezone
from typing import Any, Dict, List, Optional
import logging

from sqlalchemy import func, or_, select
from sqlalchemy.ext.asyncio import async_sessionmaker

from copytrade.core.clock import utcnow
from copytrade.core.exceptions import DelegationInvalid, NotFoundError
from copytrade.models.delegation import Delegation, DelegationCreate
from copytrade.models.match import Match, MatchStatus, Participant, ParticipantRole
from copytrade.services.delegation_validator import DelegationValidator

logger = logging.getLogger(__name__)


class DelegationService:
    def __init__(self, session_factory: async_sessionmaker, validator: DelegationValidator):
        self.session_factory = session_factory
        self.validator = validator

    async def register(self, data: DelegationCreate) -> Delegation:
        """
        Store a follower's signed delegation for a leader in a match.

        Re-registering the same hash returns the stored record. A new
        delegation for the same follower/leader/match replaces the active one.
        """
        now = utcnow()
        async with self.session_factory() as session:
            async with session.begin():
                result = await session.execute(
                    select(Delegation).where(Delegation.delegation_hash == data.delegation_hash)
                )
                existing = result.scalar_one_or_none()
                if existing:
                    logger.info(f"Delegation {data.delegation_hash} already registered")
                    return existing

                result = await session.execute(
                    select(Match).where(Match.match_id == data.match_id).with_for_update()
                )
                match = result.scalar_one_or_none()
                if match is None:
                    raise NotFoundError(f"Match {data.match_id} not found")
                if match.status not in (MatchStatus.CREATED.value, MatchStatus.ACTIVE.value):
                    raise DelegationInvalid(
                        f"Match {data.match_id} is not accepting supporters (status: {match.status})"
                    )

                result = await session.execute(
                    select(Participant).where(
                        Participant.match_id == data.match_id,
                        Participant.address == data.monachad,
                        Participant.role == ParticipantRole.LEADER.value,
                    )
                )
                if result.scalar_one_or_none() is None:
                    raise NotFoundError(f"Leader {data.monachad} not found in match {data.match_id}")

                expires_at = data.expires_at or now + timedelta(seconds=match.duration)
                if expires_at.tzinfo is not None:
                    expires_at = expires_at.astimezone(timezone.utc).replace(tzinfo=None)
                if expires_at <= now:
                    raise DelegationInvalid(f"Delegation {data.delegation_hash} is already expired")

                result = await session.execute(
                    select(Delegation).where(
                        Delegation.match_id == data.match_id,
                        Delegation.monachad == data.monachad,
                        Delegation.supporter == data.supporter,
                        Delegation.is_active.is_(True),
                    )
                )
                superseded = list(result.scalars().all())

                if not superseded and match.max_supporters:
                    result = await session.execute(
                        select(func.count(func.distinct(Delegation.supporter))).where(
                            Delegation.match_id == data.match_id,
                            Delegation.monachad == data.monachad,
                            Delegation.is_active.is_(True),
                        )
                    )
                    if result.scalar_one() >= match.max_supporters:
                        raise DelegationInvalid(f"Leader {data.monachad} already has max supporters")

                for old in superseded:
                    old.is_active = False
                    old.updated_at = now
                    logger.info(f"Delegation {old.delegation_hash} superseded by {data.delegation_hash}")

                spending_limit = data.spending_limit if data.spending_limit is not None else data.amount
                delegation = Delegation(
                    delegation_hash=data.delegation_hash,
                    supporter=data.supporter,
                    monachad=data.monachad,
                    match_id=data.match_id,
                    amount=str(data.amount),
                    spending_limit=str(spending_limit),
                    spent_amount="0",
                    expires_at=expires_at,
                    is_active=True,
                    signed_delegation=data.signed_delegation,
                )
                session.add(delegation)

        logger.info(
            f"Delegation {delegation.delegation_hash} registered: {delegation.supporter} -> "
            f"{delegation.monachad} in match {delegation.match_id}"
        )
        return delegation

    async def revoke(self, delegation_hash: str, tx_hash: Optional[str] = None) -> Optional[Dict[str, Any]]:
        async with self.session_factory() as session:
            async with session.begin():
                result = await session.execute(
                    select(Delegation).where(Delegation.delegation_hash == delegation_hash)
                )
                delegation = result.scalar_one_or_none()
                if delegation is None:
                    logger.warning(f"Revocation for unknown delegation {delegation_hash}")
                    return None

                delegation.is_active = False
                delegation.revoked_at = delegation.revoked_at or utcnow()
                delegation.revoked_tx_hash = tx_hash or delegation.revoked_tx_hash
                delegation.updated_at = utcnow()
                match_id = delegation.match_id

        logger.info(f"Delegation {delegation_hash} revoked")
        return {"delegationHash": delegation_hash, "matchId": match_id}

    async def get(self, delegation_hash: str) -> Delegation:
        async with self.session_factory() as session:
            result = await session.execute(
                select(Delegation).where(Delegation.delegation_hash == delegation_hash)
            )
            delegation = result.scalar_one_or_none()
        if delegation is None:
            raise NotFoundError(f"Delegation {delegation_hash} not found")

        # Lazy expiry: reading an expired delegation flips it inactive
        await self.validator.validate_one(delegation)
        return delegation

    async def active_for_leader(self, leader: str, match_id: str) -> List[Delegation]:
        async with self.session_factory() as session:
            result = await session.execute(
                select(Delegation)
                .where(
                    Delegation.monachad == leader.lower(),
                    Delegation.match_id == str(match_id),
                    Delegation.is_active.is_(True),
                )
                .order_by(Delegation.created_at)
            )
            return list(result.scalars().all())

    async def for_user(self, address: str) -> List[Delegation]:
        address = address.lower()
        async with self.session_factory() as session:
            result = await session.execute(
                select(Delegation)
                .where(or_(Delegation.supporter == address, Delegation.monachad == address))
                .order_by(Delegation.created_at.desc())
            )
            return list(result.scalars().all())
