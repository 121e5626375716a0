"""
Ledger Reconciler

Runs only after a successful batch receipt. Each included copy is recorded in
its own transaction: participant upsert, spend increment and trade row land
together or not at all. Copies in the same batch do not depend on each other.
"""

from typing import List, Optional, Sequence
import logging

from sqlalchemy import select
from sqlalchemy.ext.asyncio import async_sessionmaker

from copytrade.core.clock import utcnow
from copytrade.core.exceptions import CopyTradeError
from copytrade.models.delegation import Delegation
from copytrade.models.match import Participant, ParticipantRole
from copytrade.models.trade import Trade, TradeType
from copytrade.services.batch_executor import BatchReceipt
from copytrade.services.sizing import SizedTrade
from copytrade.services.spending import check_spend

logger = logging.getLogger(__name__)


class LedgerReconciler:
    def __init__(self, session_factory: async_sessionmaker):
        self.session_factory = session_factory

    async def reconcile(
        self,
        match_id: str,
        admitted: Sequence[SizedTrade],
        receipt: BatchReceipt,
        target: str,
        dex: Optional[str] = None,
        token_in: str = "",
        token_out: str = "",
    ) -> List[Trade]:
        recorded = []
        for item in admitted:
            try:
                trade = await self._record_copy(
                    match_id, item, receipt, target, dex, token_in, token_out
                )
            except Exception as e:
                logger.error(
                    f"Ledger update failed for delegation {item.delegation.delegation_hash} "
                    f"(tx {receipt.transaction_hash}): {e}",
                    exc_info=not isinstance(e, CopyTradeError),
                )
                continue
            if trade is not None:
                recorded.append(trade)

        logger.info(
            f"Reconciled {len(recorded)}/{len(admitted)} copy trade(s) for match "
            f"{match_id} at block {receipt.block_number}"
        )
        return recorded

    async def _record_copy(
        self,
        match_id: str,
        item: SizedTrade,
        receipt: BatchReceipt,
        target: str,
        dex: Optional[str],
        token_in: str,
        token_out: str,
    ) -> Optional[Trade]:
        async with self.session_factory() as session:
            async with session.begin():
                # Fresh row, locked for the duration of this copy's writes
                result = await session.execute(
                    select(Delegation)
                    .where(Delegation.id == item.delegation.id)
                    .with_for_update()
                )
                delegation = result.scalar_one()

                result = await session.execute(
                    select(Trade).where(
                        Trade.delegation_id == delegation.id,
                        Trade.user_op_hash == receipt.user_op_hash,
                    )
                )
                if result.scalar_one_or_none() is not None:
                    logger.info(
                        f"Copy for {delegation.delegation_hash} in userOp "
                        f"{receipt.user_op_hash} already recorded"
                    )
                    return None

                check_spend(delegation.spent, item.copy_amount, delegation.limit)

                participant = await self._upsert_follower(session, match_id, delegation)

                delegation.spent_amount = str(delegation.spent + item.copy_amount)
                delegation.updated_at = utcnow()

                trade = Trade(
                    match_id=match_id,
                    participant_id=participant.id,
                    delegation_id=delegation.id,
                    trade_type=TradeType.FOLLOWER_COPY.value,
                    dex=dex,
                    token_in=token_in or "",
                    token_out=token_out or "",
                    amount_in=str(item.copy_amount),
                    amount_out="0",
                    target_contract=target,
                    block_number=receipt.block_number,
                    transaction_hash=receipt.transaction_hash,
                    user_op_hash=receipt.user_op_hash,
                )
                session.add(trade)

        item.delegation.spent_amount = delegation.spent_amount
        return trade

    async def _upsert_follower(self, session, match_id: str, delegation: Delegation) -> Participant:
        result = await session.execute(
            select(Participant).where(
                Participant.match_id == match_id,
                Participant.address == delegation.supporter,
            )
        )
        participant = result.scalar_one_or_none()
        if participant:
            return participant

        # Followers can be mirrored before their join event reaches us
        participant = Participant(
            match_id=match_id,
            address=delegation.supporter,
            role=ParticipantRole.FOLLOWER.value,
            following_address=delegation.monachad,
            funded_amount=delegation.amount,
        )
        session.add(participant)
        await session.flush()
        logger.info(f"Created participant record for follower {delegation.supporter}")
        return participant
