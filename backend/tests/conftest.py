"""
Shared fixtures for the copy-trade engine tests.

Every test gets its own SQLite file database. The bundler relay and the chain
are replaced with in-process fakes that record what they were asked to do.
"""
import os

os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///./copytrade-test.db")
os.environ.setdefault("REDIS_URL", "redis://localhost:6379/15")
os.environ.setdefault("ENVIRONMENT", "development")

import asyncio
import itertools
from datetime import timedelta
from typing import Any, AsyncGenerator, Dict, List, Optional

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine
from sqlmodel import SQLModel
from sqlmodel.ext.asyncio.session import AsyncSession

from copytrade.core.clock import utcnow
from copytrade.core.exceptions import RelayError
from copytrade.models.delegation import Delegation
from copytrade.models.match import Match, MatchStatus, Participant, ParticipantRole
from copytrade.models.trade import Trade  # noqa: F401
from copytrade.services.batch_executor import BatchKeyStore, BatchRedemptionExecutor
from copytrade.services.bundler_client import UserOpReceipt
from copytrade.services.chain_client import FeeData
from copytrade.services.copy_engine import CopyEngine
from copytrade.services.delegation_service import DelegationService
from copytrade.services.delegation_validator import DelegationValidator
from copytrade.services.event_router import EventRouter
from copytrade.services.ledger import LedgerReconciler
from copytrade.services.match_service import MatchService
from copytrade.services.user_operation import RelayerAccount

LEADER = "0x" + "1a" * 20
OTHER_LEADER = "0x" + "1b" * 20
FOLLOWER_A = "0x" + "2a" * 20
FOLLOWER_B = "0x" + "2b" * 20
VENUE = "0x" + "3c" * 20
DELEGATION_MANAGER = "0xdb9b1e94b5b69df7e401ddbede43491141047db3"
ENTRYPOINT = "0x0000000071727de22e5e9d8baf0edac6f37da032"
RELAYER_KEY = "0x" + "11" * 32
RELAYER_ACCOUNT = "0x" + "22" * 20
CHAIN_ID = 10143

ONE_ETHER = 10**18


# ============================================================================
# FAKES
# ============================================================================

class FakeChain:
    """Stands in for ChainClient."""

    def __init__(self, enabled: bool = True, error: Optional[Exception] = None):
        self.enabled = enabled
        self.error = error
        self.checked: List[str] = []
        self.nonce = 7

    async def is_delegation_enabled(self, delegation_hash: str, delegator: str) -> bool:
        self.checked.append(delegation_hash)
        if self.error:
            raise self.error
        return self.enabled

    async def get_nonce(self, sender: str, key: int = 0) -> int:
        return self.nonce

    async def get_fee_data(self) -> FeeData:
        return FeeData(max_fee_per_gas=2_000_000_000, max_priority_fee_per_gas=1_000_000_000)


class FakeBundler:
    """
    Stands in for BundlerClient.

    ``send_failures`` makes the first N sends raise RelayError;
    ``receipt_success`` decides whether the mined op reverted;
    ``never_mine`` makes receipt polling time out.
    """

    def __init__(self, send_failures: int = 0, receipt_success: bool = True, never_mine: bool = False):
        self.send_failures = send_failures
        self.receipt_success = receipt_success
        self.never_mine = never_mine
        self.sent: List[Dict[str, Any]] = []
        self.send_attempts = 0
        self.known: Dict[str, Dict[str, Any]] = {}
        self.closed = False
        self._hashes = itertools.count(1)
        self._blocks = itertools.count(1000)

    async def estimate_user_operation_gas(self, user_op: Dict[str, Any]) -> Dict[str, Any]:
        return {
            "callGasLimit": "0x30d40",
            "verificationGasLimit": "0x186a0",
            "preVerificationGas": "0xc350",
        }

    async def send_user_operation(self, user_op: Dict[str, Any]) -> str:
        self.send_attempts += 1
        if self.send_failures > 0:
            self.send_failures -= 1
            raise RelayError("relay unavailable", code=-32000)
        user_op_hash = "0x" + f"{next(self._hashes):064x}"
        self.sent.append(user_op)
        self.known[user_op_hash] = user_op
        return user_op_hash

    async def get_user_operation_by_hash(self, user_op_hash: str) -> Optional[Dict[str, Any]]:
        return self.known.get(user_op_hash)

    async def wait_for_receipt(self, user_op_hash: str, timeout: float, poll_interval: float = 1.0) -> UserOpReceipt:
        if self.never_mine:
            raise asyncio.TimeoutError()
        return UserOpReceipt(
            user_op_hash=user_op_hash,
            success=self.receipt_success,
            block_number=next(self._blocks),
            transaction_hash="0x" + "ee" * 32,
            reason=None if self.receipt_success else "AA execution reverted",
        )

    async def aclose(self) -> None:
        self.closed = True


# ============================================================================
# DATABASE
# ============================================================================

@pytest_asyncio.fixture
async def session_factory(tmp_path) -> AsyncGenerator[async_sessionmaker, None]:
    """Fresh schema in a throwaway SQLite file."""
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'engine.db'}", echo=False)
    async with engine.begin() as conn:
        await conn.run_sync(SQLModel.metadata.create_all)

    yield async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)

    await engine.dispose()


# ============================================================================
# WIRING
# ============================================================================

@pytest.fixture
def chain() -> FakeChain:
    return FakeChain()


@pytest.fixture
def bundler() -> FakeBundler:
    return FakeBundler()


@pytest.fixture
def relayer() -> RelayerAccount:
    return RelayerAccount(RELAYER_ACCOUNT, RELAYER_KEY)


@pytest.fixture
def executor(bundler, chain, relayer) -> BatchRedemptionExecutor:
    return BatchRedemptionExecutor(
        bundler=bundler,
        chain=chain,
        relayer=relayer,
        delegation_manager=DELEGATION_MANAGER,
        entrypoint=ENTRYPOINT,
        chain_id=CHAIN_ID,
        key_store=BatchKeyStore(),
        receipt_timeout=1.0,
        poll_interval=0.01,
        submit_retries=1,
    )


@pytest.fixture
def validator(session_factory, chain) -> DelegationValidator:
    return DelegationValidator(session_factory, chain)


@pytest.fixture
def delegation_service(session_factory, validator) -> DelegationService:
    return DelegationService(session_factory, validator)


@pytest.fixture
def match_service(session_factory, delegation_service) -> MatchService:
    return MatchService(session_factory, delegation_service)


@pytest.fixture
def ledger(session_factory) -> LedgerReconciler:
    return LedgerReconciler(session_factory)


@pytest.fixture
def copy_engine(session_factory, delegation_service, validator, executor, ledger) -> CopyEngine:
    return CopyEngine(session_factory, delegation_service, validator, executor, ledger)


@pytest.fixture
def event_router(match_service, delegation_service, copy_engine) -> EventRouter:
    return EventRouter(match_service, delegation_service, copy_engine)


# ============================================================================
# FACTORIES
# ============================================================================

@pytest.fixture
def make_match(session_factory):
    async def _make(
        match_id: str = "1",
        status: MatchStatus = MatchStatus.ACTIVE,
        leaders: tuple = (LEADER,),
        duration: int = 3600,
        max_supporters: Optional[int] = None,
    ) -> Match:
        match = Match(
            match_id=match_id,
            status=status.value,
            creator=leaders[0] if leaders else LEADER,
            entry_margin=str(ONE_ETHER),
            duration=duration,
            max_supporters=max_supporters,
            start_time=utcnow() if status == MatchStatus.ACTIVE else None,
        )
        async with session_factory() as session:
            async with session.begin():
                session.add(match)
                for leader in leaders:
                    session.add(Participant(
                        match_id=match_id,
                        address=leader,
                        role=ParticipantRole.LEADER.value,
                        margin_amount=str(ONE_ETHER),
                    ))
        return match

    return _make


@pytest.fixture
def make_delegation(session_factory):
    counter = itertools.count(1)

    async def _make(
        match_id: str = "1",
        supporter: str = FOLLOWER_A,
        monachad: str = LEADER,
        amount: int = ONE_ETHER,
        spending_limit: Optional[int] = None,
        spent: int = 0,
        expires_in: timedelta = timedelta(hours=1),
        is_active: bool = True,
        delegation_hash: Optional[str] = None,
    ) -> Delegation:
        delegation = Delegation(
            delegation_hash=delegation_hash or "0x" + f"{next(counter):064x}",
            supporter=supporter,
            monachad=monachad,
            match_id=match_id,
            amount=str(amount),
            spending_limit=str(amount if spending_limit is None else spending_limit),
            spent_amount=str(spent),
            expires_at=utcnow() + expires_in,
            is_active=is_active,
            signed_delegation="0x" + "ab" * 96,
        )
        async with session_factory() as session:
            async with session.begin():
                session.add(delegation)
        return delegation

    return _make
