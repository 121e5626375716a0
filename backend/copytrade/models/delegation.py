"""
Delegation model: a follower's non-custodial, capped, time-bound authorization
Maps to: delegations table
"""

import re
from datetime import datetime
from typing import Optional
from uuid import UUID, uuid4

from pydantic import NaiveDatetime, field_validator
from sqlalchemy import DateTime
from sqlmodel import Field, SQLModel

from copytrade.core.clock import utcnow

BYTES32_PATTERN = re.compile(r"^0x[a-fA-F0-9]{64}$")
ADDRESS_PATTERN = re.compile(r"^0x[a-fA-F0-9]{40}$")


class Delegation(SQLModel, table=True):
    """
    Signed authorization letting the relayer redeem trades for a follower.

    The signed payload is an opaque permission context; only the
    DelegationManager contract interprets it.
    """
    __tablename__ = "delegations"

    id: UUID = Field(default_factory=uuid4, primary_key=True)
    delegation_hash: str = Field(unique=True, index=True, max_length=256)

    supporter: str = Field(index=True, max_length=42)  # follower
    monachad: str = Field(index=True, max_length=42)  # leader
    match_id: str = Field(foreign_key="matches.match_id", index=True, max_length=78)

    amount: str = Field(default="0", max_length=78)  # authorized capital, wei
    spending_limit: str = Field(default="0", max_length=78)
    spent_amount: str = Field(default="0", max_length=78)

    expires_at: NaiveDatetime = Field(sa_type=DateTime)
    is_active: bool = Field(default=True)
    signed_delegation: str  # hex-encoded permission context

    revoked_at: Optional[NaiveDatetime] = Field(default=None, sa_type=DateTime)
    revoked_tx_hash: Optional[str] = Field(default=None, max_length=66)
    created_at: NaiveDatetime = Field(default_factory=utcnow, sa_type=DateTime)
    updated_at: NaiveDatetime = Field(default_factory=utcnow, sa_type=DateTime)

    @property
    def authorized(self) -> int:
        return int(self.amount)

    @property
    def limit(self) -> int:
        return int(self.spending_limit)

    @property
    def spent(self) -> int:
        return int(self.spent_amount)

    @property
    def has_bytes32_hash(self) -> bool:
        return bool(BYTES32_PATTERN.match(self.delegation_hash))

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        return (now or utcnow()) >= self.expires_at


# ============================================================================
# REQUEST/RESPONSE MODELS (Pydantic, not DB tables)
# ============================================================================

class DelegationCreate(SQLModel):
    """Register a follower's signed delegation for a leader in a match"""
    delegation_hash: str = Field(min_length=3, max_length=256)
    supporter: str
    monachad: str
    match_id: str = Field(min_length=1, max_length=78)
    amount: int = Field(ge=0)
    spending_limit: Optional[int] = Field(default=None, ge=0)
    expires_at: Optional[datetime] = None
    signed_delegation: str = Field(min_length=2)

    @field_validator("supporter", "monachad")
    @classmethod
    def check_address(cls, value: str) -> str:
        if not ADDRESS_PATTERN.match(value):
            raise ValueError(f"Invalid address: {value}")
        return value.lower()

    @field_validator("signed_delegation")
    @classmethod
    def check_hex(cls, value: str) -> str:
        if not re.match(r"^0x([a-fA-F0-9]{2})*$", value):
            raise ValueError("signed_delegation must be 0x-prefixed hex")
        return value


class DelegationResponse(SQLModel):
    delegation_hash: str
    supporter: str
    monachad: str
    match_id: str
    amount: str
    spending_limit: str
    spent_amount: str
    expires_at: NaiveDatetime
    is_active: bool
    created_at: NaiveDatetime
