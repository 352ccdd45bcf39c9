"""
Quota-gated operations forwarded to the internal backend.

- GET  /api/quota: Today's usage and limits for the current user
- POST /api/screenshots/generate: One screenshot unit, then /generate-screenshots
- POST /api/preview/render: One preview unit, then /preview-render

Each forwarded call carries a signed user context and the caller's
Idempotency-Key, and returns 202 when the backend outlives the timeout.
"""
from typing import List, Optional
from urllib.parse import urlsplit, urlunsplit

from fastapi import APIRouter, Depends, Header
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict, Field, field_validator
from starlette.concurrency import run_in_threadpool

from gateway.api.deps import (
    CurrentUser,
    get_backend_client,
    get_current_user,
    get_quota_store,
    get_tier_store,
)
from gateway.core.errors import ValidationError
from gateway.features.backend_client.client import CallOptions, GatewayResponse, InternalGatewayClient, UserContext
from gateway.features.billing.state import TierStateStore
from gateway.features.quota.policy import OperationKind
from gateway.features.quota.store import QuotaDecision, QuotaStore
from gateway.features.tiers.service import Tier, tier_from_claims

router = APIRouter(tags=["jobs"])

SCREENSHOT_TIMEOUT_SECONDS = 180.0
PREVIEW_TIMEOUT_SECONDS = 240.0
MAX_PREVIEW_KEYS = 25
STORAGE_ROOT = "kloner-screenshots"


class ScreenshotRequest(BaseModel):
    url: str

    @field_validator("url")
    @classmethod
    def _http_url(cls, value: str) -> str:
        parts = urlsplit(value.strip())
        if parts.scheme not in ("http", "https") or not parts.netloc:
            raise ValueError("url must be an absolute http(s) URL")
        # Drop the fragment; it never reaches the server
        return urlunsplit((parts.scheme, parts.netloc, parts.path, parts.query, ""))


class PreviewRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    keys: List[str] = Field(default_factory=list)
    name_hint: Optional[str] = Field(default=None, alias="nameHint")
    controller_version: Optional[str] = Field(default=None, alias="controllerVersion")


class QuotaResponse(BaseModel):
    tier: str
    day: str
    usage: dict


def _tier_for(tier_store: TierStateStore, user: CurrentUser) -> Tier:
    # Persisted state wins; the session claim covers users billing never saw
    state = tier_store.get(user.uid)
    return state.tier if state else tier_from_claims(user.claims)


def _forwarded(resp: GatewayResponse, decision: QuotaDecision) -> JSONResponse:
    headers = {"x-request-id": resp.request_id, "cache-control": "no-store"}
    headers.update(decision.headers())
    return JSONResponse(status_code=resp.status, content=resp.json(), headers=headers)


@router.get("/quota", response_model=QuotaResponse)
async def get_quota(
    user: CurrentUser = Depends(get_current_user),
    tier_store: TierStateStore = Depends(get_tier_store),
    quota_store: QuotaStore = Depends(get_quota_store),
):
    tier = await run_in_threadpool(_tier_for, tier_store, user)
    usage = await run_in_threadpool(quota_store.usage_summary, user.uid, tier)
    return QuotaResponse(tier=tier.value, day=quota_store.today(), usage=usage)


@router.post("/screenshots/generate")
async def generate_screenshots(
    payload: ScreenshotRequest,
    idempotency_key: Optional[str] = Header(default=None),
    user: CurrentUser = Depends(get_current_user),
    tier_store: TierStateStore = Depends(get_tier_store),
    quota_store: QuotaStore = Depends(get_quota_store),
    client: InternalGatewayClient = Depends(get_backend_client),
):
    tier = await run_in_threadpool(_tier_for, tier_store, user)
    decision = await run_in_threadpool(quota_store.consume, user.uid, tier, OperationKind.SCREENSHOT)

    resp = await client.call(
        "/generate-screenshots",
        method="POST",
        body={"url": payload.url},
        user_ctx=UserContext(uid=user.uid, email=user.email, tier=tier.value),
        options=CallOptions(
            timeout_seconds=SCREENSHOT_TIMEOUT_SECONDS,
            accept_on_timeout=True,
            idempotency_key=idempotency_key,
            no_prefix=True,
        ),
    )
    return _forwarded(resp, decision)


@router.post("/preview/render")
async def render_preview(
    payload: PreviewRequest,
    idempotency_key: Optional[str] = Header(default=None),
    user: CurrentUser = Depends(get_current_user),
    tier_store: TierStateStore = Depends(get_tier_store),
    quota_store: QuotaStore = Depends(get_quota_store),
    client: InternalGatewayClient = Depends(get_backend_client),
):
    keys = [k.strip() for k in payload.keys if k and k.strip()][:MAX_PREVIEW_KEYS]
    if not keys:
        raise ValidationError("Missing storage key(s)")
    namespace = f"{STORAGE_ROOT}/{user.uid}/"
    if any(not k.startswith(namespace) for k in keys):
        raise ValidationError("Forbidden key namespace", status_code=403, code="forbidden")

    tier = await run_in_threadpool(_tier_for, tier_store, user)
    decision = await run_in_threadpool(quota_store.consume, user.uid, tier, OperationKind.PREVIEW)

    resp = await client.call(
        "/preview-render",
        method="POST",
        body={
            "keys": keys,
            "nameHint": payload.name_hint,
            "controllerVersion": payload.controller_version,
        },
        user_ctx=UserContext(uid=user.uid, email=user.email, tier=tier.value),
        options=CallOptions(
            timeout_seconds=PREVIEW_TIMEOUT_SECONDS,
            accept_on_timeout=True,
            idempotency_key=idempotency_key,
        ),
    )
    return _forwarded(resp, decision)
