"""Request auditing: one API record per request plus threat flags."""

import time

from starlette.middleware.base import BaseHTTPMiddleware

from gatehouse.audit.events import ApiEvent, SecurityEvent
from gatehouse.common.logging import get_logger
from gatehouse.common.security import RequestContext, get_context, read_json_body, sanitize
from gatehouse.threats.detector import detect_threats

logger = get_logger("audit.middleware")


class AuditMiddleware(BaseHTTPMiddleware):
    """Build the request context, then audit the finished request."""

    async def dispatch(self, request, call_next):
        ctx = get_context(request)
        body = await read_json_body(request)
        if body:
            ctx.body = sanitize(body)
        started = time.perf_counter()
        try:
            response = await call_next(request)
        except Exception:
            self._audit(request, ctx, 500, started, None)
            raise
        size = response.headers.get("content-length")
        self._audit(request, ctx, response.status_code, started, int(size) if size else None)
        response.headers["X-Request-ID"] = ctx.request_id
        if ctx.rate_limit is not None:
            for name, value in ctx.rate_limit.headers().items():
                response.headers.setdefault(name, value)
        return response

    def _audit(self, request, ctx: RequestContext, status_code: int, started: float, size) -> None:
        services = getattr(request.app.state, "services", None)
        if services is None:
            return
        audit = services.audit
        elapsed_ms = (time.perf_counter() - started) * 1000

        report = detect_threats(ctx.method, ctx.path, ctx.user_agent, ctx.query, ctx.body)
        if report.detected:
            audit.record(SecurityEvent(
                tenant_id=ctx.audit_tenant_id,
                event="threat",
                user_id=ctx.user_id,
                details={"method": ctx.method, "path": ctx.path},
                flags=report.flags,
                ip_address=ctx.ip_address,
                user_agent=ctx.user_agent,
                session_id=ctx.session_id,
            ))

        audit.record(ApiEvent(
            tenant_id=ctx.audit_tenant_id,
            method=ctx.method,
            path=ctx.path,
            status_code=status_code,
            response_time_ms=elapsed_ms,
            user_id=ctx.user_id,
            response_size=size,
            ip_address=ctx.ip_address,
            user_agent=ctx.user_agent,
            session_id=ctx.session_id,
        ))
