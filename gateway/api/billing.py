"""
Billing API routes.

- POST /api/stripe/webhook: Verify and apply Stripe events
- GET  /api/billing/tier: Current user's tier (optionally refreshed from Stripe)
"""
import logging
from typing import Optional

from fastapi import APIRouter, Depends, Query, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel
from starlette.concurrency import run_in_threadpool

from gateway.api.deps import CurrentUser, get_current_user, get_processor, get_refresher, get_tier_store
from gateway.features.billing.provider import BillingWebhookError
from gateway.features.billing.service import BillingEventProcessor, TierRefresher
from gateway.features.billing.state import TierStateStore
from gateway.features.tiers.service import Tier


logger = logging.getLogger("gateway")

router = APIRouter(tags=["billing"])


class TierResponse(BaseModel):
    """User tier state."""
    user_id: str
    tier: str
    status: Optional[str] = None
    current_period_end: Optional[int] = None  # epoch seconds
    cancel_at_period_end: Optional[bool] = None
    source: str = "stripe"


@router.post("/stripe/webhook")
async def stripe_webhook(request: Request, processor: BillingEventProcessor = Depends(get_processor)):
    """
    Handle Stripe webhook events.

    Returns:
        {"received": true} for every verified event, including kinds the
        gateway ignores and events it cannot apply yet

    Errors:
        400: Missing secret, missing/invalid signature, malformed payload
        500: Storage or other internal fault (Stripe will redeliver)
    """
    # Raw body is required for signature verification
    body = await request.body()
    headers = dict(request.headers)

    try:
        await run_in_threadpool(processor.process, headers, body)
    except BillingWebhookError as e:
        logger.warning("billing.webhook.rejected", extra={"error_code": e.code, "status": 400})
        return JSONResponse(status_code=400, content={"error": e.message})
    except Exception:
        logger.exception("billing.webhook.handler_error", extra={"status": 500})
        return JSONResponse(status_code=500, content={"error": "Webhook handler error"})

    return {"received": True}


@router.get("/billing/tier", response_model=TierResponse)
async def get_tier(
    request: Request,
    refresh: int = Query(0, description="1 forces a lookup against Stripe"),
    user: CurrentUser = Depends(get_current_user),
    tier_store: TierStateStore = Depends(get_tier_store),
    refresher: TierRefresher = Depends(get_refresher),
):
    """
    Get the current user's tier.

    The stored state is returned as-is unless `refresh=1` is passed or the
    stored tier did not come from Stripe (and Stripe API access is configured).
    """
    state = await run_in_threadpool(tier_store.get, user.uid)

    stripe_api = bool(request.app.state.settings.STRIPE_SECRET_KEY)
    stale = state is None or state.source != "stripe"
    if refresh == 1 or (stale and stripe_api):
        state = await run_in_threadpool(refresher.refresh, user.uid)

    if state is None:
        return TierResponse(user_id=user.uid, tier=Tier.FREE.value)

    return TierResponse(
        user_id=state.user_id,
        tier=state.tier.value,
        status=state.status,
        current_period_end=state.current_period_end,
        cancel_at_period_end=state.cancel_at_period_end,
        source=state.source,
    )
