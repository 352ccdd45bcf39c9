"""
FastAPI dependencies.

Everything is built once in gateway.main.create_app and hung off
`app.state`; routes pull it from there instead of module globals.
"""
from dataclasses import dataclass, field
from typing import Any, Dict

from fastapi import Request

from gateway.core.errors import UnauthorizedError
from gateway.features.backend_client.client import InternalGatewayClient
from gateway.features.billing.service import BillingEventProcessor, TierRefresher
from gateway.features.billing.state import TierStateStore
from gateway.features.quota.store import QuotaStore


@dataclass
class CurrentUser:
    """Identity established by the session layer in front of the gateway."""
    uid: str
    email: str = ""
    claims: Dict[str, Any] = field(default_factory=dict)


def get_current_user(request: Request) -> CurrentUser:
    user = getattr(request.state, "user", None)
    if isinstance(user, CurrentUser):
        return user
    if isinstance(user, dict) and user.get("uid"):
        return CurrentUser(uid=user["uid"], email=user.get("email") or "", claims=user.get("claims") or {})
    raise UnauthorizedError("Unauthorized")


def get_processor(request: Request) -> BillingEventProcessor:
    return request.app.state.processor


def get_refresher(request: Request) -> TierRefresher:
    return request.app.state.refresher


def get_tier_store(request: Request) -> TierStateStore:
    return request.app.state.tier_store


def get_quota_store(request: Request) -> QuotaStore:
    return request.app.state.quota_store


def get_backend_client(request: Request) -> InternalGatewayClient:
    return request.app.state.backend_client
