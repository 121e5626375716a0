"""
Match models: Match, Participant
Maps to: matches, participants tables
"""

from enum import Enum
from typing import Optional
from uuid import UUID, uuid4

from pydantic import NaiveDatetime
from sqlalchemy import DateTime, UniqueConstraint
from sqlmodel import Field, SQLModel

from copytrade.core.clock import utcnow


# ============================================================================
# ENUMS
# ============================================================================

class MatchStatus(str, Enum):
    CREATED = "CREATED"
    ACTIVE = "ACTIVE"
    COMPLETED = "COMPLETED"
    SETTLED = "SETTLED"


class ParticipantRole(str, Enum):
    LEADER = "LEADER"
    FOLLOWER = "FOLLOWER"


# ============================================================================
# MATCH MODEL
# ============================================================================

class Match(SQLModel, table=True):
    """Timed trading competition between leaders, backed by their followers"""
    __tablename__ = "matches"

    id: UUID = Field(default_factory=uuid4, primary_key=True)
    match_id: str = Field(unique=True, index=True, max_length=78)  # on-chain id
    status: str = Field(default=MatchStatus.CREATED.value, max_length=20)

    creator: str = Field(max_length=42)
    entry_margin: str = Field(default="0", max_length=78)  # wei
    duration: int = Field(default=0, ge=0)  # seconds
    prize_pool: str = Field(default="0", max_length=78)  # wei, only ever grows
    max_participants: Optional[int] = Field(default=None, ge=1)
    max_supporters: Optional[int] = Field(default=None, ge=1)  # per leader
    allowed_dexes: Optional[str] = None  # comma-separated addresses

    start_time: Optional[NaiveDatetime] = Field(default=None, sa_type=DateTime)
    end_time: Optional[NaiveDatetime] = Field(default=None, sa_type=DateTime)
    winner: Optional[str] = Field(default=None, max_length=42)

    created_tx_hash: Optional[str] = Field(default=None, max_length=66)
    created_at: NaiveDatetime = Field(default_factory=utcnow, sa_type=DateTime)
    updated_at: NaiveDatetime = Field(default_factory=utcnow, sa_type=DateTime)

    def add_to_prize_pool(self, amount: int) -> None:
        if amount < 0:
            raise ValueError("Prize pool cannot decrease")
        self.prize_pool = str(int(self.prize_pool) + amount)


# ============================================================================
# PARTICIPANT MODEL
# ============================================================================

class Participant(SQLModel, table=True):
    """One address inside one match; the role is fixed at join time"""
    __tablename__ = "participants"
    __table_args__ = (UniqueConstraint("match_id", "address"),)

    id: UUID = Field(default_factory=uuid4, primary_key=True)
    match_id: str = Field(foreign_key="matches.match_id", index=True, max_length=78)
    address: str = Field(index=True, max_length=42)
    role: str = Field(max_length=20)
    following_address: Optional[str] = Field(default=None, max_length=42)  # followers only

    margin_amount: str = Field(default="0", max_length=78)  # leaders, wei
    funded_amount: str = Field(default="0", max_length=78)  # followers, wei
    entry_fee: str = Field(default="0", max_length=78)
    smart_account: Optional[str] = Field(default=None, max_length=42)
    pnl: str = Field(default="0", max_length=79)  # signed wei

    joined_tx_hash: Optional[str] = Field(default=None, max_length=66)
    joined_at: NaiveDatetime = Field(default_factory=utcnow, sa_type=DateTime)
    updated_at: NaiveDatetime = Field(default_factory=utcnow, sa_type=DateTime)

