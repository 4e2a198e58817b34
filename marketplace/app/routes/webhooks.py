"""Inbound payment processor webhooks."""
from __future__ import annotations

import logging
from typing import Optional

from fastapi import APIRouter, Depends, Header, Request
from starlette.concurrency import run_in_threadpool

from ..billing import EngineError, ProcessorUnavailable, WebhookSignatureInvalid
from ..schemas.billing import WebhookAcknowledgement
from ..services.billing import BillingEngine, get_engine

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/webhooks", tags=["webhooks"])


@router.post("/processor", response_model=WebhookAcknowledgement)
async def receive_processor_webhook(
    request: Request,
    stripe_signature: Optional[str] = Header(None, alias="Stripe-Signature"),
    *,
    engine: BillingEngine = Depends(get_engine),
) -> WebhookAcknowledgement:
    payload = await request.body()
    try:
        event = await run_in_threadpool(engine.adapter.parse_webhook, payload, stripe_signature)
    except WebhookSignatureInvalid as exc:
        logger.warning("Rejected webhook delivery: %s", exc.message)
        raise exc.to_http_exception() from exc

    try:
        disposition = await run_in_threadpool(engine.webhooks.dispatch, event)
    except ProcessorUnavailable as exc:
        logger.warning("Webhook %s deferred, processor unavailable: %s", event.event_id, exc.message)
        raise exc.to_http_exception() from exc
    except EngineError as exc:
        logger.error("Webhook %s (%s) failed: %s", event.event_id, event.event_type, exc.message)
        raise exc.to_http_exception() from exc
    return WebhookAcknowledgement(disposition=disposition.value)
