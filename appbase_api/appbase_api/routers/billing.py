"""Stripe webhook endpoint.

The request is authenticated by its signature alone; no session cookie
is involved.  Verification runs on the raw body before anything is
parsed.  Each event is processed in its own transaction, which commits
only after the ledgers and the entitlement snapshot are updated.
"""

from __future__ import annotations

import logging
from typing import Annotated

from fastapi import APIRouter, Depends, HTTPException, Request
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from appbase_api.dependencies import SettingsDep, get_session_factory
from appbase_api.middleware.prometheus import WEBHOOK_EVENTS_TOTAL
from appbase_api.schemas import WebhookAck
from appbase_api.services.event_dispatcher import EventDispatcher
from appbase_api.services.webhook_verifier import SignatureError, WebhookVerifier

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/stripe", tags=["billing"])

SessionFactoryDep = Annotated[async_sessionmaker[AsyncSession], Depends(get_session_factory)]


@router.post("/webhook", response_model=WebhookAck)
async def stripe_webhook(
    request: Request,
    settings: SettingsDep,
    session_factory: SessionFactoryDep,
) -> WebhookAck:
    """Verify, dispatch and acknowledge one Stripe event.

    Returns 400 when verification fails (the event is never processed)
    and 500 when storage fails, so Stripe redelivers.  Events that cannot
    be attributed to an app are acknowledged with ``status: "rejected"``.
    """
    body = await request.body()
    verifier = WebhookVerifier(
        settings.stripe_webhook_secret.get_secret_value(),
        tolerance=settings.webhook_tolerance_seconds,
    )
    try:
        event = verifier.verify(body, request.headers.get("stripe-signature"))
    except SignatureError as exc:
        logger.warning("Stripe webhook signature verification failed: %s", exc)
        WEBHOOK_EVENTS_TOTAL.labels(event_type="unverified", outcome="invalid_signature").inc()
        raise HTTPException(status_code=400, detail="Signature verification failed") from exc

    # Anything escaping the dispatcher is our failure, never the sender's:
    # answer 500 so the event is redelivered.
    try:
        async with session_factory() as session:
            result = await EventDispatcher(session, settings).dispatch(event)
            await session.commit()
    except Exception as exc:
        logger.error(
            "Stripe event %s (%s) failed: %s",
            event.get("id"),
            event.get("type"),
            exc,
            exc_info=True,
        )
        WEBHOOK_EVENTS_TOTAL.labels(event_type=str(event.get("type", "unknown")), outcome="error").inc()
        raise HTTPException(status_code=500, detail="Event processing failed") from exc

    return WebhookAck(status=result.status)
