"""
Indexer webhook
Signed trade and match lifecycle notifications enter the engine here.
"""

import json
import logging

from fastapi import APIRouter, HTTPException, Request
from pydantic import ValidationError

from copytrade.core.config import settings
from copytrade.core.security import limiter, verify_webhook_signature

logger = logging.getLogger(__name__)

router = APIRouter()


@router.post("/envio")
@limiter.limit(settings.RATE_LIMIT_WEBHOOK)
async def receive_envio_event(request: Request):
    """
    Accept one indexer notification.

    The HMAC is checked over the raw body before anything is parsed.
    """
    body = await request.body()

    if settings.webhook_auth_required:
        if not settings.ENVIO_WEBHOOK_SECRET:
            logger.error("Webhook rejected: ENVIO_WEBHOOK_SECRET is not configured")
            raise HTTPException(status_code=401, detail="Webhook authentication not configured")

        signature = request.headers.get(settings.WEBHOOK_SIGNATURE_HEADER)
        if not verify_webhook_signature(settings.ENVIO_WEBHOOK_SECRET, body, signature):
            logger.warning(f"Webhook signature mismatch from {request.client.host if request.client else 'unknown'}")
            raise HTTPException(status_code=401, detail="Invalid webhook signature")

    try:
        payload = json.loads(body)
    except (UnicodeDecodeError, json.JSONDecodeError):
        raise HTTPException(status_code=400, detail="Body is not valid JSON")
    if not isinstance(payload, dict):
        raise HTTPException(status_code=400, detail="Body must be a JSON object")

    event_router = request.app.state.event_router
    try:
        result = await event_router.dispatch(payload)
    except ValidationError as e:
        logger.warning(f"Malformed {payload.get('eventType')} event: {e.error_count()} error(s)")
        raise HTTPException(status_code=400, detail=f"Malformed {payload.get('eventType')} event")

    return {"success": True, **result.summary()}
