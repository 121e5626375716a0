"""
Event Router

Receives indexer notifications, resolves each into its typed kind once, and
hands it to the service that owns it. Leader trades fan out to every ACTIVE
match the leader is in, one match at a time; a failure in one match is logged
and never stops the others.
"""

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional
import logging

from pydantic import BaseModel

from copytrade.core.exceptions import BatchExecutionFailure, CopyTradeError, SizingConfigError
from copytrade.core.redis import publish_match_event
from copytrade.models.events import (
    DelegationRevokedEvent,
    MatchCompletedEvent,
    MatchCreatedEvent,
    MatchStartedEvent,
    MonachadJoinedEvent,
    PnlUpdatedEvent,
    SupporterJoinedEvent,
    TradeEvent,
    parse_event,
)
from copytrade.services.copy_engine import CopyEngine, CopyWaveResult
from copytrade.services.delegation_service import DelegationService
from copytrade.services.match_service import MatchService

logger = logging.getLogger(__name__)


@dataclass
class MatchFailure:
    match_id: str
    error: str
    kind: str


@dataclass
class DispatchResult:
    event_type: Optional[str]
    handled: bool = False
    detail: Optional[Dict[str, Any]] = None
    waves: List[CopyWaveResult] = field(default_factory=list)
    failures: List[MatchFailure] = field(default_factory=list)

    def summary(self) -> Dict[str, Any]:
        return {
            "eventType": self.event_type,
            "handled": self.handled,
            "detail": self.detail,
            "matches": [
                {
                    "matchId": w.match_id,
                    "admitted": w.admitted,
                    "recorded": w.recorded,
                    "duplicate": w.duplicate,
                    "transactionHash": w.transaction_hash,
                }
                for w in self.waves
            ],
            "failures": [
                {"matchId": f.match_id, "kind": f.kind, "error": f.error}
                for f in self.failures
            ],
        }


class EventRouter:
    def __init__(
        self,
        matches: MatchService,
        delegations: DelegationService,
        copy_engine: Optional[CopyEngine] = None,
    ):
        self.matches = matches
        self.delegations = delegations
        self.copy_engine = copy_engine

    async def dispatch(self, payload: Dict[str, Any]) -> DispatchResult:
        """
        Route one raw notification.

        Unknown kinds are dropped. A malformed known kind raises
        pydantic.ValidationError so the transport can reject it.
        """
        event = parse_event(payload)
        if event is None:
            event_type = payload.get("eventType")
            logger.info(f"Ignoring unknown event type: {event_type}")
            return DispatchResult(event_type=event_type)
        return await self.handle(event)

    async def handle(self, event: BaseModel) -> DispatchResult:
        result = DispatchResult(event_type=event.event_type)

        if isinstance(event, TradeEvent):
            await self._handle_trade(event, result)
            return result

        if isinstance(event, MatchCreatedEvent):
            result.detail = await self.matches.create_match(event)
            await self._publish("match.created", result)
        elif isinstance(event, MonachadJoinedEvent):
            result.detail = await self.matches.join_as_leader(event)
            await self._publish("match.participant-joined", result)
        elif isinstance(event, SupporterJoinedEvent):
            result.detail = await self._join_as_follower(event)
            await self._publish("match.participant-joined", result)
        elif isinstance(event, MatchStartedEvent):
            result.detail = await self.matches.start_match(event)
            await self._publish("match.started", result)
        elif isinstance(event, MatchCompletedEvent):
            result.detail = await self.matches.complete_match(event)
            await self._publish("match.completed", result)
        elif isinstance(event, PnlUpdatedEvent):
            result.detail = await self.matches.update_pnl(event)
            await self._publish("match.pnl-updated", result)
        elif isinstance(event, DelegationRevokedEvent):
            result.detail = await self.delegations.revoke(
                event.delegation_hash, event.transaction_hash
            )
            result.handled = result.detail is not None

        return result

    # ------------------------------------------------------------------ trades

    async def _handle_trade(self, event: TradeEvent, result: DispatchResult) -> None:
        leader = event.monachad_address
        if not leader:
            logger.warning(f"{event.event_type} without monachadAddress, dropping")
            return

        matches = await self.matches.get_active_matches_for_leader(
            leader, event.metadata.match_id
        )
        if not matches:
            logger.info(f"No active matches for leader {leader}")
            return

        result.handled = True
        await publish_match_event("monachad.trade", {
            "monachad": leader,
            "eventType": event.event_type,
            "matchIds": [m.match_id for m in matches],
            "transactionHash": event.metadata.transaction_hash,
        })

        if self.copy_engine is None:
            logger.error(f"Copy trading disabled (no relayer); {event.event_type} from {leader} not mirrored")
            return
        if event.trade is None:
            logger.warning(f"{event.event_type} from {leader} carries no trade payload, nothing to copy")
            return

        for match in matches:
            try:
                wave = await self.copy_engine.execute_copy_trades(
                    match.match_id, leader, event.trade, event.metadata,
                    event_type=event.event_type,
                )
            except SizingConfigError as e:
                logger.error(f"Sizing error for match {match.match_id}: {e}")
                result.failures.append(MatchFailure(match.match_id, str(e), "sizing"))
            except BatchExecutionFailure as e:
                logger.error(f"Batch failed for match {match.match_id}: {e}")
                result.failures.append(MatchFailure(match.match_id, str(e), "batch"))
            except Exception as e:
                logger.error(
                    f"Copy wave failed for match {match.match_id}: {e}",
                    exc_info=not isinstance(e, CopyTradeError),
                )
                result.failures.append(MatchFailure(match.match_id, str(e), type(e).__name__))
            else:
                result.waves.append(wave)

    # --------------------------------------------------------------- lifecycle

    async def _join_as_follower(self, event: SupporterJoinedEvent) -> Optional[Dict[str, Any]]:
        try:
            return await self.matches.join_as_follower(event)
        except CopyTradeError as e:
            # Participant row is committed before the delegation is registered
            logger.error(
                f"Delegation from supporter_joined for {event.supporter} not registered: {e}"
            )
            return {
                "matchId": event.match_id,
                "participant": event.supporter,
                "delegationError": str(e),
            }

    async def _publish(self, name: str, result: DispatchResult) -> None:
        if result.detail is None:
            return
        result.handled = True
        await publish_match_event(name, result.detail)
