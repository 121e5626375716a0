"""
Match lifecycle and participant bookkeeping driven by indexer events.

Transitions are idempotent: replaying an event, or receiving one for a match
that does not exist, logs a warning and returns None instead of raising.
"""

from datetime import timedelta
from typing import Any, Dict, List, Optional
import logging

from sqlalchemy import select
from sqlalchemy.ext.asyncio import async_sessionmaker

from copytrade.core.clock import from_unix, utcnow
from copytrade.core.exceptions import NotFoundError
from copytrade.models.delegation import DelegationCreate
from copytrade.models.events import (
    MatchCompletedEvent,
    MatchCreatedEvent,
    MatchStartedEvent,
    MonachadJoinedEvent,
    PnlUpdatedEvent,
    SupporterJoinedEvent,
)
from copytrade.models.match import Match, MatchStatus, Participant, ParticipantRole
from copytrade.models.trade import Trade
from copytrade.services.delegation_service import DelegationService

logger = logging.getLogger(__name__)

JOINABLE = (MatchStatus.CREATED.value, MatchStatus.ACTIVE.value)


class MatchService:
    def __init__(self, session_factory: async_sessionmaker, delegations: DelegationService):
        self.session_factory = session_factory
        self.delegations = delegations

    # ------------------------------------------------------------------ reads

    async def get_match(self, match_id: str) -> Match:
        async with self.session_factory() as session:
            match = await self._find_match(session, match_id)
        if match is None:
            raise NotFoundError(f"Match {match_id} not found")
        return match

    async def get_active_matches_for_leader(
        self, address: str, match_id: Optional[str] = None
    ) -> List[Match]:
        stmt = (
            select(Match)
            .join(Participant, Participant.match_id == Match.match_id)
            .where(
                Match.status == MatchStatus.ACTIVE.value,
                Participant.address == address.lower(),
                Participant.role == ParticipantRole.LEADER.value,
            )
            .order_by(Match.start_time)
        )
        if match_id is not None:
            stmt = stmt.where(Match.match_id == str(match_id))

        async with self.session_factory() as session:
            result = await session.execute(stmt)
            return list(result.scalars().all())

    async def get_trades(self, match_id: str, limit: int = 100) -> List[Trade]:
        async with self.session_factory() as session:
            result = await session.execute(
                select(Trade)
                .where(Trade.match_id == match_id)
                .order_by(Trade.executed_at.desc())
                .limit(limit)
            )
            return list(result.scalars().all())

    async def get_trades_by_trader(
        self, address: str, match_id: Optional[str] = None, limit: int = 100
    ) -> List[Trade]:
        """Every trade recorded for an address, as leader or follower, newest first."""
        stmt = (
            select(Trade)
            .join(Participant, Trade.participant_id == Participant.id)
            .where(Participant.address == address.lower())
            .order_by(Trade.executed_at.desc())
            .limit(limit)
        )
        if match_id:
            stmt = stmt.where(Trade.match_id == str(match_id))

        async with self.session_factory() as session:
            result = await session.execute(stmt)
            return list(result.scalars().all())

    async def get_trading_stats(self, address: str, match_id: Optional[str] = None) -> Dict[str, Any]:
        address = address.lower()
        stmt = (
            select(Trade, Participant)
            .join(Participant, Trade.participant_id == Participant.id)
            .where(Participant.address == address)
        )
        if match_id:
            stmt = stmt.where(Trade.match_id == str(match_id))

        async with self.session_factory() as session:
            rows = (await session.execute(stmt)).all()

        total_volume = sum(int(trade.amount_in) for trade, _ in rows)
        pnl_by_participant = {participant.id: int(participant.pnl) for _, participant in rows}

        return {
            "trader": address,
            "matchId": match_id or "all",
            "totalTrades": len(rows),
            "totalVolume": str(total_volume),
            "totalPnL": str(sum(pnl_by_participant.values())),
            "avgTradeSize": str(total_volume // len(rows)) if rows else "0",
        }

    # ---------------------------------------------------------------- lifecycle

    async def create_match(self, event: MatchCreatedEvent) -> Optional[Dict[str, Any]]:
        async with self.session_factory() as session:
            async with session.begin():
                if await self._find_match(session, event.match_id):
                    logger.warning(f"Match {event.match_id} already exists, ignoring match_created")
                    return None

                match = Match(
                    match_id=event.match_id,
                    creator=event.creator,
                    entry_margin=event.entry_margin,
                    duration=event.duration,
                    prize_pool="0",
                    max_participants=event.max_participants or None,
                    max_supporters=event.max_supporters_per_monachad or None,
                    allowed_dexes=",".join(event.allowed_dexes) or None,
                    status=MatchStatus.CREATED.value,
                    created_tx_hash=event.transaction_hash,
                )
                session.add(match)

        logger.info(f"Match {event.match_id} saved")
        return {
            "matchId": event.match_id,
            "creator": event.creator,
            "entryMargin": event.entry_margin,
            "duration": event.duration,
        }

    async def start_match(self, event: MatchStartedEvent) -> Optional[Dict[str, Any]]:
        async with self.session_factory() as session:
            async with session.begin():
                match = await self._find_match(session, event.match_id, lock=True)
                if match is None:
                    logger.warning(f"match_started for unknown match {event.match_id}")
                    return None
                if match.status != MatchStatus.CREATED.value:
                    logger.warning(
                        f"Match {event.match_id} is {match.status}, ignoring match_started"
                    )
                    return None

                match.status = MatchStatus.ACTIVE.value
                match.start_time = from_unix(event.start_time) if event.start_time else utcnow()
                match.end_time = match.start_time + timedelta(seconds=match.duration)
                match.updated_at = utcnow()
                start_time = match.start_time

        logger.info(f"Match {event.match_id} started")
        return {"matchId": event.match_id, "startTime": start_time.isoformat()}

    async def complete_match(self, event: MatchCompletedEvent) -> Optional[Dict[str, Any]]:
        async with self.session_factory() as session:
            async with session.begin():
                match = await self._find_match(session, event.match_id, lock=True)
                if match is None:
                    logger.warning(f"match_completed for unknown match {event.match_id}")
                    return None
                if match.status != MatchStatus.ACTIVE.value:
                    logger.warning(
                        f"Match {event.match_id} is {match.status}, ignoring match_completed"
                    )
                    return None

                match.status = MatchStatus.COMPLETED.value
                match.winner = event.winner
                if event.prize_pool is not None and int(event.prize_pool) > int(match.prize_pool):
                    match.prize_pool = event.prize_pool
                match.end_time = utcnow()
                match.updated_at = match.end_time
                prize_pool = match.prize_pool

        logger.info(f"Match {event.match_id} completed. Winner: {event.winner}")
        return {"matchId": event.match_id, "winner": event.winner, "prizePool": prize_pool}

    # ------------------------------------------------------------- participants

    async def join_as_leader(self, event: MonachadJoinedEvent) -> Optional[Dict[str, Any]]:
        async with self.session_factory() as session:
            async with session.begin():
                match = await self._joinable_match(session, event.match_id)
                if match is None:
                    return None

                existing = await self._find_participant(session, event.match_id, event.monachad)
                if existing:
                    logger.warning(
                        f"{event.monachad} already in match {event.match_id} as {existing.role}"
                    )
                    return None

                session.add(Participant(
                    match_id=event.match_id,
                    address=event.monachad,
                    role=ParticipantRole.LEADER.value,
                    margin_amount=event.margin_amount,
                    entry_fee=event.entry_fee,
                    joined_tx_hash=event.transaction_hash,
                ))
                match.add_to_prize_pool(int(event.entry_fee))
                match.updated_at = utcnow()

        logger.info(f"Leader {event.monachad} joined match {event.match_id}")
        return {
            "matchId": event.match_id,
            "participant": event.monachad,
            "role": ParticipantRole.LEADER.value,
        }

    async def join_as_follower(self, event: SupporterJoinedEvent) -> Optional[Dict[str, Any]]:
        """
        Record a follower joining a match, then register the delegation it
        carried. The delegation is checked first so a malformed one raises
        before the participant row or the prize pool change.
        """
        delegation = None
        if event.delegation_hash and event.signed_delegation:
            delegation = DelegationCreate(
                delegation_hash=event.delegation_hash,
                supporter=event.supporter,
                monachad=event.monachad,
                match_id=event.match_id,
                amount=int(event.funded_amount),
                spending_limit=int(event.spending_limit) if event.spending_limit else None,
                expires_at=from_unix(event.expires_at) if event.expires_at else None,
                signed_delegation=event.signed_delegation,
            )

        async with self.session_factory() as session:
            async with session.begin():
                match = await self._joinable_match(session, event.match_id)
                if match is None:
                    return None

                existing = await self._find_participant(session, event.match_id, event.supporter)
                if existing:
                    if existing.role != ParticipantRole.FOLLOWER.value:
                        logger.warning(
                            f"{event.supporter} is a {existing.role} in match {event.match_id}; "
                            "roles never change"
                        )
                        return None
                    if existing.joined_tx_hash is not None:
                        logger.warning(
                            f"{event.supporter} already joined match {event.match_id}, "
                            "ignoring duplicate supporter_joined"
                        )
                        return None
                    # Placeholder row written by the ledger before the join arrived
                    existing.funded_amount = event.funded_amount
                    existing.entry_fee = event.entry_fee
                    existing.smart_account = event.smart_account
                    existing.following_address = event.monachad
                    existing.joined_tx_hash = event.transaction_hash
                    existing.updated_at = utcnow()
                else:
                    session.add(Participant(
                        match_id=event.match_id,
                        address=event.supporter,
                        role=ParticipantRole.FOLLOWER.value,
                        following_address=event.monachad,
                        funded_amount=event.funded_amount,
                        entry_fee=event.entry_fee,
                        smart_account=event.smart_account,
                        joined_tx_hash=event.transaction_hash,
                    ))
                match.add_to_prize_pool(int(event.entry_fee))
                match.updated_at = utcnow()

        logger.info(
            f"Follower {event.supporter} joined match {event.match_id}, following {event.monachad}"
        )

        if delegation is not None:
            # Defaults to expiring with the match
            await self.delegations.register(delegation)

        return {
            "matchId": event.match_id,
            "participant": event.supporter,
            "role": ParticipantRole.FOLLOWER.value,
            "followingAddress": event.monachad,
        }

    async def update_pnl(self, event: PnlUpdatedEvent) -> Optional[Dict[str, Any]]:
        async with self.session_factory() as session:
            async with session.begin():
                participant = await self._find_participant(session, event.match_id, event.participant)
                if participant is None:
                    logger.warning(
                        f"pnl_updated for unknown participant {event.participant} "
                        f"in match {event.match_id}"
                    )
                    return None
                participant.pnl = event.pnl
                participant.updated_at = utcnow()

        logger.info(f"PnL updated for {event.participant} in match {event.match_id}: {event.pnl}")
        return {"matchId": event.match_id, "participant": event.participant, "pnl": event.pnl}

    # ---------------------------------------------------------------- helpers

    async def _find_match(self, session, match_id: str, lock: bool = False) -> Optional[Match]:
        stmt = select(Match).where(Match.match_id == str(match_id))
        if lock:
            stmt = stmt.with_for_update()
        result = await session.execute(stmt)
        return result.scalar_one_or_none()

    async def _joinable_match(self, session, match_id: str) -> Optional[Match]:
        match = await self._find_match(session, match_id, lock=True)
        if match is None:
            logger.warning(f"Join event for unknown match {match_id}")
            return None
        if match.status not in JOINABLE:
            logger.warning(f"Match {match_id} is {match.status}, not accepting participants")
            return None
        return match

    async def _find_participant(self, session, match_id: str, address: str) -> Optional[Participant]:
        result = await session.execute(
            select(Participant).where(
                Participant.match_id == str(match_id),
                Participant.address == address.lower(),
            )
        )
        return result.scalar_one_or_none()
