"""
Inbound event notifications

The indexer posts loosely shaped JSON keyed by ``eventType``. Each kind is
parsed once, at the router boundary, into its own model carrying only the
fields that kind needs.
"""

from typing import Annotated, Any, Literal, Optional, Union

from pydantic import BaseModel, BeforeValidator, ConfigDict, Field, StringConstraints, TypeAdapter
from pydantic.alias_generators import to_camel


def _as_str(value: Any) -> Any:
    # Indexer serializes bigints as strings but plain ints also show up
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return str(int(value))
    return value


def _lower(value: Any) -> Any:
    return value.lower() if isinstance(value, str) else value


# Amounts are non-negative integers in wei; PnL may go below zero
WeiStr = Annotated[str, StringConstraints(pattern=r"^[0-9]+$"), BeforeValidator(_as_str)]
SignedWeiStr = Annotated[str, StringConstraints(pattern=r"^-?[0-9]+$"), BeforeValidator(_as_str)]
UnixSeconds = Annotated[str, StringConstraints(pattern=r"^[0-9]{1,11}$"), BeforeValidator(_as_str)]
IdStr = Annotated[str, BeforeValidator(_as_str)]
Address = Annotated[str, StringConstraints(pattern=r"^0x[0-9a-f]{40}$"), BeforeValidator(_lower)]
HexStr = Annotated[str, StringConstraints(pattern=r"^0x([0-9a-fA-F]{2})*$")]
TokenRef = Annotated[str, BeforeValidator(_lower)]


class EventModel(BaseModel):
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        extra="ignore",
    )


# ============================================================================
# TRADE EVENTS
# ============================================================================

class TradePayload(EventModel):
    """Pre-encoded venue call, passed through to the followers untouched"""
    target: Address
    value: WeiStr = "0"
    data: str = "0x"


class TradeMetadata(EventModel):
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        extra="allow",
    )

    dex: Optional[str] = None
    size_to_portfolio_bps: Optional[IdStr] = None  # checked by the sizer
    match_id: Optional[IdStr] = None
    transaction_hash: Optional[str] = None
    position_id: Optional[IdStr] = None
    token_in: Optional[TokenRef] = None
    token_out: Optional[TokenRef] = None


class TradeEvent(EventModel):
    event_type: Literal["trade_opened", "trade_closed"]
    monachad_address: Optional[Address] = None
    trade: Optional[TradePayload] = None
    metadata: TradeMetadata = Field(default_factory=TradeMetadata)


# ============================================================================
# MATCH LIFECYCLE EVENTS
# ============================================================================

class MatchCreatedEvent(EventModel):
    event_type: Literal["match_created"]
    match_id: IdStr
    creator: Address
    entry_margin: WeiStr = "0"
    duration: int = 0
    max_participants: Optional[int] = None
    max_supporters_per_monachad: Optional[int] = None
    allowed_dexes: list[Address] = Field(default_factory=list)
    transaction_hash: Optional[str] = None


class MonachadJoinedEvent(EventModel):
    event_type: Literal["monachad_joined"]
    match_id: IdStr
    monachad: Address
    margin_amount: WeiStr = "0"
    entry_fee: WeiStr = "0"
    transaction_hash: Optional[str] = None


class SupporterJoinedEvent(EventModel):
    event_type: Literal["supporter_joined"]
    match_id: IdStr
    supporter: Address
    monachad: Address
    smart_account: Optional[Address] = None
    entry_fee: WeiStr = "0"
    funded_amount: WeiStr = "0"
    transaction_hash: Optional[str] = None

    # Present when the follower's signed delegation travels with the join
    delegation_hash: Optional[str] = None
    signed_delegation: Optional[HexStr] = None
    spending_limit: Optional[WeiStr] = None
    expires_at: Optional[UnixSeconds] = None


class MatchStartedEvent(EventModel):
    event_type: Literal["match_started"]
    match_id: IdStr
    start_time: Optional[UnixSeconds] = None
    transaction_hash: Optional[str] = None


class MatchCompletedEvent(EventModel):
    event_type: Literal["match_completed"]
    match_id: IdStr
    winner: Optional[Address] = None
    prize_pool: Optional[WeiStr] = None
    transaction_hash: Optional[str] = None


class PnlUpdatedEvent(EventModel):
    event_type: Literal["pnl_updated"]
    match_id: IdStr
    participant: Address
    pnl: SignedWeiStr


class DelegationRevokedEvent(EventModel):
    event_type: Literal["delegation_revoked"]
    delegation_hash: str
    transaction_hash: Optional[str] = None


InboundEvent = Annotated[
    Union[
        TradeEvent,
        MatchCreatedEvent,
        MonachadJoinedEvent,
        SupporterJoinedEvent,
        MatchStartedEvent,
        MatchCompletedEvent,
        PnlUpdatedEvent,
        DelegationRevokedEvent,
    ],
    Field(discriminator="event_type"),
]

KNOWN_EVENT_TYPES = frozenset({
    "trade_opened",
    "trade_closed",
    "match_created",
    "monachad_joined",
    "supporter_joined",
    "match_started",
    "match_completed",
    "pnl_updated",
    "delegation_revoked",
})

_event_adapter: TypeAdapter = TypeAdapter(InboundEvent)


def parse_event(payload: dict[str, Any]) -> Optional[BaseModel]:
    """
    Resolve a raw notification into its typed variant.

    Returns None for kinds this engine does not know about; raises
    pydantic.ValidationError when a known kind is malformed.
    """
    if payload.get("eventType") not in KNOWN_EVENT_TYPES:
        return None
    return _event_adapter.validate_python(payload)
