"""
Match API routes
Copy-trade history per match and per trader, and the live match event stream.
"""

from typing import Optional

from fastapi import APIRouter, HTTPException, Query, Request, WebSocket, WebSocketDisconnect

from copytrade.core.exceptions import NotFoundError
from copytrade.core.redis import MATCH_EVENTS_CHANNEL, get_redis_client
from copytrade.models.trade import TradeHistoryItem

router = APIRouter()


@router.websocket("/ws/events")
async def match_event_stream(websocket: WebSocket):
    """
    WebSocket relay of match and copy-trade events.
    Usage: ws://localhost:8000/matches/ws/events
    """
    redis = get_redis_client()
    if not redis:
        await websocket.close(code=1011, reason="Event stream unavailable")
        return

    await websocket.accept()

    pubsub = redis.pubsub()
    await pubsub.subscribe(MATCH_EVENTS_CHANNEL)

    try:
        async for message in pubsub.listen():
            if message["type"] == "message":
                data = message["data"]
                await websocket.send_text(data.decode("utf-8") if isinstance(data, bytes) else data)
    except WebSocketDisconnect:
        pass
    finally:
        await pubsub.unsubscribe(MATCH_EVENTS_CHANNEL)
        await pubsub.close()


@router.get("/{match_id}/trades", response_model=list[TradeHistoryItem])
async def get_match_trades(
    request: Request,
    match_id: str,
    limit: int = Query(default=100, ge=1, le=500),
):
    """Leader and follower trades recorded for a match, newest first."""
    service = request.app.state.match_service
    try:
        await service.get_match(match_id)
    except NotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))
    return await service.get_trades(match_id, limit)


@router.get("/trader/{address}/trades", response_model=list[TradeHistoryItem])
async def get_trader_trades(
    request: Request,
    address: str,
    match_id: Optional[str] = Query(default=None, alias="matchId"),
    limit: int = Query(default=100, ge=1, le=500),
):
    """Trades recorded for one address across matches, newest first."""
    return await request.app.state.match_service.get_trades_by_trader(address, match_id, limit)


@router.get("/trader/{address}/stats")
async def get_trader_stats(
    request: Request,
    address: str,
    match_id: Optional[str] = Query(default=None, alias="matchId"),
):
    return await request.app.state.match_service.get_trading_stats(address, match_id)
