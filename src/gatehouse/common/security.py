"""Request context, bearer extraction and tenant hints."""

import json
import time
from dataclasses import dataclass, field
from typing import Any, Optional

from fastapi import Request

from gatehouse.common.exceptions import InvalidTenantError, Unauthorized
from gatehouse.common.models import generate_uuid

TENANT_HEADER = "X-Tenant-ID"
TENANT_QUERY = "tenantId"
SENSITIVE_KEYS = ("password", "token", "secret", "key", "authorization", "signature")
REDACTED = "[REDACTED]"


@dataclass
class RequestContext:
    """Per-request state shared by the middleware, dependencies and handlers."""
    request_id: str
    method: str
    path: str
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    query: dict[str, Any] = field(default_factory=dict)
    body: Any = None
    tenant_hint: Optional[int] = None
    tenant_id: Optional[int] = None
    user_id: Optional[int] = None
    session_id: Optional[str] = None
    token: Optional[str] = None
    claims: Any = None
    rate_limit: Any = None
    started_at: float = field(default_factory=time.perf_counter)

    @property
    def audit_tenant_id(self) -> Optional[int]:
        return self.tenant_id if self.tenant_id is not None else self.tenant_hint


def build_context(request: Request) -> RequestContext:
    return RequestContext(
        request_id=request.headers.get("X-Request-ID") or generate_uuid(),
        method=request.method,
        path=request.url.path,
        ip_address=request.client.host if request.client else None,
        user_agent=request.headers.get("user-agent"),
        query=dict(request.query_params),
    )


def get_context(request: Request) -> RequestContext:
    ctx = getattr(request.state, "context", None)
    if ctx is None:
        ctx = request.state.context = build_context(request)
    return ctx


def sanitize(value: Any) -> Any:
    """Copy of a JSON value with credential-looking fields redacted."""
    if isinstance(value, dict):
        return {
            k: REDACTED if any(s in k.lower() for s in SENSITIVE_KEYS) else sanitize(v)
            for k, v in value.items()
        }
    if isinstance(value, list):
        return [sanitize(v) for v in value]
    return value


async def read_json_body(request: Request) -> Optional[dict[str, Any]]:
    """The request body as a dict, or None when absent or not a JSON object."""
    if request.method not in ("POST", "PUT", "PATCH", "DELETE"):
        return None
    raw = await request.body()
    if not raw:
        return None
    try:
        body = json.loads(raw)
    except ValueError:
        return None
    return body if isinstance(body, dict) else None


def parse_tenant_id(value: Any) -> Optional[int]:
    if value is None or value == "":
        return None
    if isinstance(value, bool):
        raise InvalidTenantError("Tenant id must be an integer")
    try:
        tenant_id = int(value)
    except (TypeError, ValueError) as exc:
        raise InvalidTenantError("Tenant id must be an integer") from exc
    if tenant_id < 1:
        raise InvalidTenantError("Tenant id must be positive")
    return tenant_id


def tenant_hint(request: Request, body: Optional[dict[str, Any]] = None) -> Optional[int]:
    """Explicit tenant: body, then X-Tenant-ID header, then tenantId query param."""
    if body and body.get("tenantId") is not None:
        return parse_tenant_id(body["tenantId"])
    header = request.headers.get(TENANT_HEADER)
    if header:
        return parse_tenant_id(header)
    return parse_tenant_id(request.query_params.get(TENANT_QUERY))


def extract_bearer(request: Request) -> str:
    """Token from ``Authorization: Bearer``. Raises Unauthorized otherwise."""
    header = request.headers.get("Authorization")
    if not header:
        raise Unauthorized("Access token required")
    scheme, _, token = header.partition(" ")
    token = token.strip()
    if scheme != "Bearer" or not token:
        raise Unauthorized("Invalid authorization format")
    return token
