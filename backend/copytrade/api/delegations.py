"""
Delegation API routes
Registration of signed follower delegations, lookups and copy-trading stats.
"""

from typing import Optional
import logging

from fastapi import APIRouter, HTTPException, Query, Request

from copytrade.core.config import settings
from copytrade.core.exceptions import DelegationInvalid, NotFoundError
from copytrade.core.security import limiter
from copytrade.models.delegation import DelegationCreate, DelegationResponse

logger = logging.getLogger(__name__)

router = APIRouter()


@router.post("", response_model=DelegationResponse, status_code=201)
@limiter.limit(settings.RATE_LIMIT_DELEGATIONS)
async def register_delegation(request: Request, data: DelegationCreate):
    """Store a follower's signed delegation for a leader in a match."""
    service = request.app.state.delegation_service
    try:
        delegation = await service.register(data)
    except NotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))
    except DelegationInvalid as e:
        raise HTTPException(status_code=400, detail=str(e))
    return delegation


@router.get("/user/{address}", response_model=list[DelegationResponse])
async def get_user_delegations(request: Request, address: str):
    """Delegations where the address is either the follower or the leader."""
    return await request.app.state.delegation_service.for_user(address)


@router.get("/stats/{leader}")
async def get_copy_trading_stats(
    request: Request,
    leader: str,
    match_id: Optional[str] = Query(default=None, alias="matchId"),
):
    copy_engine = request.app.state.copy_engine
    if copy_engine is None:
        raise HTTPException(status_code=503, detail="Copy trading is not configured")
    return await copy_engine.get_copy_trading_stats(leader, match_id)


@router.get("/supporter-stats/{address}")
async def get_supporter_copy_stats(
    request: Request,
    address: str,
    match_id: Optional[str] = Query(default=None, alias="matchId"),
):
    """Copy-trade totals seen from the follower's side."""
    copy_engine = request.app.state.copy_engine
    if copy_engine is None:
        raise HTTPException(status_code=503, detail="Copy trading is not configured")
    return await copy_engine.get_supporter_copy_stats(address, match_id)


@router.get("/{delegation_hash}", response_model=DelegationResponse)
async def get_delegation(request: Request, delegation_hash: str):
    try:
        return await request.app.state.delegation_service.get(delegation_hash)
    except NotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))
