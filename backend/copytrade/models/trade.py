"""
Trade model: immutable execution records
Maps to: trades table
"""

from enum import Enum
from typing import Optional
from uuid import UUID, uuid4

from pydantic import NaiveDatetime
from sqlalchemy import DateTime
from sqlmodel import Field, SQLModel

from copytrade.core.clock import utcnow


class TradeType(str, Enum):
    LEADER_TRADE = "LEADER_TRADE"
    FOLLOWER_COPY = "FOLLOWER_COPY"


# ============================================================================
# TRADE MODEL (append-only)
# ============================================================================

class Trade(SQLModel, table=True):
    """Executed trade records"""
    __tablename__ = "trades"

    id: UUID = Field(default_factory=uuid4, primary_key=True)
    match_id: str = Field(foreign_key="matches.match_id", index=True, max_length=78)
    participant_id: UUID = Field(foreign_key="participants.id", index=True)
    delegation_id: Optional[UUID] = Field(default=None, foreign_key="delegations.id")

    trade_type: str = Field(max_length=20)
    dex: Optional[str] = Field(default=None, max_length=100)
    token_in: str = Field(default="", max_length=42)
    token_out: str = Field(default="", max_length=42)
    amount_in: str = Field(default="0", max_length=78)  # wei
    amount_out: str = Field(default="0", max_length=78)
    target_contract: str = Field(default="", max_length=42)

    block_number: int
    transaction_hash: str = Field(index=True, max_length=66)
    user_op_hash: Optional[str] = Field(default=None, max_length=66)

    executed_at: NaiveDatetime = Field(default_factory=utcnow, sa_type=DateTime)


# ============================================================================
# REQUEST/RESPONSE MODELS (Pydantic, not DB tables)
# ============================================================================

class TradeHistoryItem(SQLModel):
    """Single trade in history response"""
    id: UUID
    trade_type: str
    participant_id: UUID
    delegation_id: Optional[UUID] = None
    dex: Optional[str] = None
    amount_in: str
    target_contract: str
    block_number: int
    transaction_hash: str
    executed_at: NaiveDatetime
