"""
Client for the internal compute backend.

Every call carries the caller's request id, the shared internal key and,
when given, a signed user context. Failures never escape as exceptions:
timeouts, transport errors and unserializable bodies come back as
synthesized 504/202/502 responses so route handlers can branch on status alone.
"""
from __future__ import annotations

import asyncio
import base64
import hashlib
import hmac
import json
import logging
import secrets
from dataclasses import dataclass, field
from typing import Any, Dict, Mapping, Optional, Tuple, Union
from urllib.parse import urlencode

import httpx

from gateway.core.errors import ConfigurationError, GatewayTimeoutError, UpstreamError
from gateway.core.logging import get_request_id


logger = logging.getLogger("gateway")

DEFAULT_TIMEOUT_SECONDS = 15.0
INTERNAL_NAMESPACE = "/internal/"
BODYLESS_METHODS = frozenset({"GET", "HEAD", "OPTIONS"})

TIMEOUT_ACCEPTED_BODY = {"started": True, "code": "TIMEOUT_ACCEPTED"}
TIMEOUT_BODY = {"error": "Backend timeout"}
FETCH_FAILED_BODY = {"error": "Backend fetch failed"}


@dataclass(frozen=True)
class Parsed:
    value: Any


@dataclass(frozen=True)
class Unparsed:
    raw: str


ResponseBody = Union[Parsed, Unparsed]


@dataclass(frozen=True)
class UserContext:
    uid: str
    email: str = ""
    tier: Optional[str] = None

    def serialize(self) -> str:
        """Base64 of compact JSON; this exact string is what gets signed."""
        data = json.dumps({"uid": self.uid, "email": self.email, "tier": self.tier}, separators=(",", ":"))
        return base64.b64encode(data.encode("utf-8")).decode("ascii")


def sign_user_context(user_ctx: UserContext, secret: str) -> Tuple[str, str]:
    """Return (payload, signature) for the x-user-ctx / x-user-ctx-sig pair."""
    payload = user_ctx.serialize()
    sig = hmac.new(secret.encode("utf-8"), payload.encode("utf-8"), hashlib.sha256).hexdigest()
    return payload, sig


def verify_user_context(payload: str, signature: str, secret: str) -> bool:
    """Counterpart of sign_user_context, as the backend checks it."""
    expected = hmac.new(secret.encode("utf-8"), payload.encode("utf-8"), hashlib.sha256).hexdigest()
    return hmac.compare_digest(expected, signature or "")


@dataclass
class CallOptions:
    timeout_seconds: Optional[float] = None
    accept_on_timeout: bool = False
    idempotency_key: Optional[str] = None
    inbound_request_id: Optional[str] = None
    query: Optional[Mapping[str, Any]] = None
    headers: Dict[str, str] = field(default_factory=dict)
    no_prefix: bool = False


@dataclass
class GatewayResponse:
    status: int
    body: ResponseBody
    raw: str
    request_id: str
    url: str

    @property
    def ok(self) -> bool:
        return 200 <= self.status < 300

    @property
    def parsed(self) -> bool:
        return isinstance(self.body, Parsed)

    def json(self) -> Any:
        """Structured body; unparsed text comes back wrapped as {ok, data}."""
        if isinstance(self.body, Parsed):
            return self.body.value
        return {"ok": self.ok, "data": self.body.raw}

    def raise_for_status(self) -> "GatewayResponse":
        """For callers that prefer exceptions over branching on status."""
        if self.status == 504:
            raise GatewayTimeoutError("Backend timeout", request_id=self.request_id)
        if self.status >= 400:
            raise UpstreamError(f"Backend returned {self.status}", status_code=502, request_id=self.request_id)
        return self


class InternalGatewayClient:
    def __init__(
        self,
        origin: str,
        internal_key: Optional[str],
        prefix: str = "/api/v1",
        default_timeout: float = DEFAULT_TIMEOUT_SECONDS,
        http_client: Optional[httpx.AsyncClient] = None,
    ):
        if not internal_key:
            raise ConfigurationError("INTERNAL_API_KEY not set")
        self.origin = origin.rstrip("/")
        self.prefix = prefix.strip("/")
        self.default_timeout = default_timeout
        self._internal_key = internal_key
        self._http = http_client or httpx.AsyncClient()

    @classmethod
    def from_settings(cls, settings, http_client: Optional[httpx.AsyncClient] = None) -> "InternalGatewayClient":
        return cls(
            origin=settings.BACKEND_ORIGIN,
            internal_key=settings.INTERNAL_API_KEY,
            prefix=settings.BACKEND_PREFIX,
            default_timeout=settings.BACKEND_TIMEOUT_SECONDS,
            http_client=http_client,
        )

    async def aclose(self) -> None:
        await self._http.aclose()

    def build_url(self, path: str, query: Optional[Mapping[str, Any]] = None, no_prefix: bool = False) -> str:
        if path.lower().startswith(("http://", "https://")):
            url = path
        else:
            p = path if path.startswith("/") else f"/{path}"
            skip_prefix = no_prefix or p.startswith(INTERNAL_NAMESPACE) or not self.prefix
            prefix = "" if skip_prefix else f"/{self.prefix}"
            url = f"{self.origin}{prefix}{p}"
        params = {k: _query_value(v) for k, v in (query or {}).items() if v is not None}
        if params:
            url = f"{url}{'&' if '?' in url else '?'}{urlencode(params)}"
        return url

    def _headers(self, request_id: str, user_ctx: Optional[UserContext], options: CallOptions) -> Dict[str, str]:
        headers = dict(options.headers)
        headers.update({
            "content-type": "application/json",
            "cache-control": "no-store",
            "x-request-id": request_id,
            "x-internal-key": self._internal_key,
        })
        if user_ctx is not None:
            payload, sig = sign_user_context(user_ctx, self._internal_key)
            headers["x-user-ctx"] = payload
            headers["x-user-ctx-sig"] = sig
        if options.idempotency_key:
            headers["idempotency-key"] = options.idempotency_key
        return headers

    async def call(
        self,
        path: str,
        method: str = "POST",
        body: Any = None,
        user_ctx: Optional[UserContext] = None,
        options: Optional[CallOptions] = None,
    ) -> GatewayResponse:
        """
        Send one request to the internal backend.

        Never raises; see the module docstring for the failure mapping.
        """
        options = options or CallOptions()
        method = method.upper()
        request_id = options.inbound_request_id or get_request_id() or secrets.token_hex(8)
        timeout = options.timeout_seconds if options.timeout_seconds is not None else self.default_timeout

        url = path
        try:
            url = self.build_url(path, options.query, options.no_prefix)
            content = None if method in BODYLESS_METHODS else json.dumps(body if body is not None else {})
            response = await asyncio.wait_for(
                self._http.request(
                    method,
                    url,
                    content=content,
                    headers=self._headers(request_id, user_ctx, options),
                    timeout=timeout,
                ),
                timeout=timeout,
            )
        except (asyncio.TimeoutError, httpx.TimeoutException):
            logger.warning(
                "backend.timeout",
                extra={"request_id": request_id, "path": path, "method": method},
            )
            if options.accept_on_timeout:
                return _synthesized(202, TIMEOUT_ACCEPTED_BODY, request_id, url)
            return _synthesized(504, TIMEOUT_BODY, request_id, url)
        except TypeError as exc:
            # Body not JSON-serializable; nothing was sent
            logger.warning(
                f"backend.body_not_serializable: {exc}",
                extra={"request_id": request_id, "path": path, "method": method},
            )
            return _synthesized(502, FETCH_FAILED_BODY, request_id, url)
        except (httpx.HTTPError, httpx.InvalidURL, OSError, ValueError) as exc:
            logger.warning(
                f"backend.fetch_failed: {type(exc).__name__}",
                extra={"request_id": request_id, "path": path, "method": method},
            )
            return _synthesized(502, FETCH_FAILED_BODY, request_id, url)

        raw = response.text
        try:
            parsed: ResponseBody = Parsed(json.loads(raw))
        except ValueError:
            parsed = Unparsed(raw)

        if response.status_code >= 400:
            logger.info(
                "backend.error_status",
                extra={"request_id": request_id, "path": path, "status": response.status_code},
            )
        return GatewayResponse(response.status_code, parsed, raw, request_id, url)


def _query_value(value: Any) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


def _synthesized(status: int, body: Dict[str, Any], request_id: str, url: str) -> GatewayResponse:
    return GatewayResponse(status, Parsed(dict(body)), json.dumps(body), request_id, url)
