"""
Copy Trading Engine

Runs one copy wave: a single leader trade mirrored into every eligible
follower of that leader within one match.

CRITICAL OPERATIONS:
1. Validate the leader's active delegations (concurrently)
2. Size every copy as a fraction of the follower's own authorized capital
3. Drop copies that would overshoot a spending limit
4. Submit all admitted copies as one atomic redemption batch
5. Reconcile the ledger from the batch receipt
"""

from dataclasses import asdict, dataclass
from typing import Any, Dict, Optional
import logging

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import async_sessionmaker

from copytrade.core.redis import publish_match_event
from copytrade.models.delegation import Delegation
from copytrade.models.match import Participant
from copytrade.models.events import TradeMetadata, TradePayload
from copytrade.models.trade import Trade, TradeType
from copytrade.services.batch_executor import BatchRedemptionExecutor, RedemptionBatch
from copytrade.services.delegation_service import DelegationService
from copytrade.services.delegation_validator import DelegationValidator
from copytrade.services.ledger import LedgerReconciler
from copytrade.services.sizing import ProportionalSizer, parse_fraction_bps
from copytrade.services.spending import SpendingLimitEnforcer

logger = logging.getLogger(__name__)


@dataclass
class CopyWaveResult:
    match_id: str
    fraction_bps: int = 0
    considered: int = 0
    valid: int = 0
    admitted: int = 0
    over_limit: int = 0
    recorded: int = 0
    duplicate: bool = False
    user_op_hash: Optional[str] = None
    transaction_hash: Optional[str] = None
    block_number: Optional[int] = None


def trade_identity(metadata: TradeMetadata, event_type: Optional[str] = None) -> Optional[str]:
    """
    Identity of a leader trade for deduplication, or None when it has none.

    A position id is shared by the open and the close of that position, so
    it only identifies a trade together with the event kind.
    """
    if metadata.transaction_hash:
        return metadata.transaction_hash.lower()
    if metadata.position_id and event_type:
        return f"{event_type}:{metadata.position_id}"
    return None


class CopyEngine:
    def __init__(
        self,
        session_factory: async_sessionmaker,
        delegations: DelegationService,
        validator: DelegationValidator,
        executor: BatchRedemptionExecutor,
        ledger: LedgerReconciler,
        sizer: Optional[ProportionalSizer] = None,
        enforcer: Optional[SpendingLimitEnforcer] = None,
    ):
        self.session_factory = session_factory
        self.delegations = delegations
        self.validator = validator
        self.executor = executor
        self.ledger = ledger
        self.sizer = sizer or ProportionalSizer()
        self.enforcer = enforcer or SpendingLimitEnforcer()

    async def execute_copy_trades(
        self,
        match_id: str,
        leader: str,
        trade: TradePayload,
        metadata: TradeMetadata,
        event_type: Optional[str] = None,
    ) -> CopyWaveResult:
        """
        Mirror one leader trade for every eligible follower in ``match_id``.

        Raises SizingConfigError before touching any delegation when the
        fraction is unusable, and BatchExecutionFailure when the batch does
        not land; in both cases nothing is written to the ledger.
        """
        fraction_bps = parse_fraction_bps(metadata.size_to_portfolio_bps)
        result = CopyWaveResult(match_id=match_id, fraction_bps=fraction_bps)

        # One wave at a time per relayer: admission, submission and
        # reconciliation all see the same spend snapshot
        async with self.executor.lock:
            delegations = await self.delegations.active_for_leader(leader, match_id)
            result.considered = len(delegations)
            if not delegations:
                logger.info(f"No active delegations for leader {leader} in match {match_id}")
                return result

            valid = await self.validator.validate_all(delegations)
            result.valid = len(valid)

            sized = self.sizer.size(valid, fraction_bps)
            admitted, rejected = self.enforcer.admit(sized)
            result.admitted = len(admitted)
            result.over_limit = len(rejected)
            if not admitted:
                logger.info(f"No copy trades admitted for leader {leader} in match {match_id}")
                return result

            logger.info(
                f"Executing {len(admitted)} copy trade(s) for leader {leader} in match "
                f"{match_id} at {fraction_bps} bps"
            )
            batch = RedemptionBatch(
                match_id=match_id,
                leader=leader,
                items=tuple(admitted),
                target=trade.target,
                call_data=trade.data,
                source_ref=trade_identity(metadata, event_type),
            )
            receipt = await self.executor.execute(batch)

            recorded = await self.ledger.reconcile(
                match_id,
                admitted,
                receipt,
                target=trade.target,
                dex=metadata.dex,
                token_in=metadata.token_in or "",
                token_out=metadata.token_out or "",
            )

        result.recorded = len(recorded)
        result.user_op_hash = receipt.user_op_hash
        result.transaction_hash = receipt.transaction_hash
        result.block_number = receipt.block_number

        if receipt.duplicate and not recorded:
            # Replayed leader trade: the earlier wave already landed and was recorded
            result.duplicate = True
            logger.warning(
                f"Leader trade {batch.source_ref} for match {match_id} was already copied "
                f"by userOp {receipt.user_op_hash}"
            )
            return result

        await publish_match_event("copy.executed", {"leader": leader, **asdict(result)})
        return result

    async def get_copy_trading_stats(self, leader: str, match_id: Optional[str] = None) -> Dict[str, Any]:
        leader = leader.lower()
        delegation_filter = [Delegation.monachad == leader, Delegation.is_active.is_(True)]
        if match_id:
            delegation_filter.append(Delegation.match_id == str(match_id))

        async with self.session_factory() as session:
            result = await session.execute(select(Delegation).where(*delegation_filter))
            delegations = list(result.scalars().all())

            trade_query = (
                select(func.count())
                .select_from(Trade)
                .join(Delegation, Trade.delegation_id == Delegation.id)
                .where(
                    Delegation.monachad == leader,
                    Trade.trade_type == TradeType.FOLLOWER_COPY.value,
                )
            )
            if match_id:
                trade_query = trade_query.where(Trade.match_id == str(match_id))
            copy_trades = (await session.execute(trade_query)).scalar_one()

        total_delegated = sum(d.authorized for d in delegations)
        total_spent = sum(d.spent for d in delegations)

        return {
            "monachad": leader,
            "matchId": match_id or "all",
            "totalSupporters": len({d.supporter for d in delegations}),
            "totalDelegatedAmount": str(total_delegated),
            "totalSpentAmount": str(total_spent),
            "remainingAmount": str(total_delegated - total_spent),
            "copyTradesExecuted": copy_trades,
            "utilizationRate": (
                (total_spent * 10000 // total_delegated) / 100 if total_delegated > 0 else 0
            ),
        }

    async def get_supporter_copy_stats(self, supporter: str, match_id: Optional[str] = None) -> Dict[str, Any]:
        """Copy-trade totals from one follower's side, across its delegations."""
        supporter = supporter.lower()
        delegation_filter = [Delegation.supporter == supporter, Delegation.is_active.is_(True)]
        trade_query = (
            select(Trade, Participant)
            .join(Participant, Trade.participant_id == Participant.id)
            .where(
                Participant.address == supporter,
                Trade.trade_type == TradeType.FOLLOWER_COPY.value,
            )
        )
        if match_id:
            delegation_filter.append(Delegation.match_id == str(match_id))
            trade_query = trade_query.where(Trade.match_id == str(match_id))

        async with self.session_factory() as session:
            result = await session.execute(select(Delegation).where(*delegation_filter))
            delegations = list(result.scalars().all())
            rows = (await session.execute(trade_query)).all()

        total_delegated = sum(d.authorized for d in delegations)
        total_spent = sum(d.spent for d in delegations)
        total_volume = sum(int(trade.amount_in) for trade, _ in rows)
        # PnL is tracked per participant, count each match once
        pnl_by_participant = {participant.id: int(participant.pnl) for _, participant in rows}
        total_pnl = sum(pnl_by_participant.values())

        return {
            "supporter": supporter,
            "matchId": match_id or "all",
            "activeDelegations": len(delegations),
            "leaders": sorted({d.monachad for d in delegations}),
            "totalDelegatedAmount": str(total_delegated),
            "totalSpentAmount": str(total_spent),
            "remainingAmount": str(total_delegated - total_spent),
            "totalCopyTrades": len(rows),
            "totalVolume": str(total_volume),
            "totalPnL": str(total_pnl),
            "avgPnLPerTrade": str(_div_toward_zero(total_pnl, len(rows))),
        }


def _div_toward_zero(numerator: int, denominator: int) -> int:
    if denominator == 0:
        return 0
    quotient = abs(numerator) // denominator
    return quotient if numerator >= 0 else -quotient
