"""Service wiring for Gatehouse.

Everything is built once at startup into a ``Services`` bundle that lives on
``app.state``; handlers reach it through ``get_services``.
"""

from dataclasses import dataclass
from typing import Optional

from fastapi import Request

from gatehouse.audit.pipeline import AuditPipeline
from gatehouse.audit.stores import SqlAuditRowStore, SqlDocumentStore
from gatehouse.auth.credentials import CredentialVerifier
from gatehouse.auth.nonces import NonceRegistry, RedisNonceRegistry
from gatehouse.auth.service import AuthService
from gatehouse.auth.sessions import SessionManager
from gatehouse.auth.tokens import TokenService
from gatehouse.common.cache import create_redis
from gatehouse.common.config import GatehouseSettings
from gatehouse.common.database import DatabaseManager
from gatehouse.common.logging import get_logger
from gatehouse.common.stores import StoreGuard
from gatehouse.ratelimit.limiter import RateLimiter
from gatehouse.tenants.service import TenantService
from gatehouse.users.service import UserService

logger = get_logger("deps")


@dataclass
class Services:
    settings: GatehouseSettings
    db: DatabaseManager
    activity_db: DatabaseManager
    redis: object
    guard: StoreGuard
    tenants: TenantService
    users: UserService
    nonces: object
    credentials: CredentialVerifier
    tokens: TokenService
    sessions: SessionManager
    limiter: RateLimiter
    audit: AuditPipeline
    auth: AuthService

    async def startup(self) -> None:
        """Open both engines, create tables and bootstrap the default tenant."""
        await self.db.init()
        await self.db.create_all()
        await self.activity_db.init()
        await self.activity_db.create_all()
        async with self.db.get_session() as session:
            tenant = await self.tenants.ensure_default(session)
            self.audit.default_tenant_id = tenant.id
        logger.info("Gatehouse services started", extra={"context": {
            "environment": self.settings.environment,
            "nonceBackend": self.settings.nonce_backend,
        }})

    async def shutdown(self) -> None:
        await self.audit.flush_all()
        self.credentials.close()
        await self.db.close()
        await self.activity_db.close()
        await self.redis.aclose()


def build_services(settings: GatehouseSettings, redis=None) -> Services:
    """Construct every service. ``redis`` overrides the client built from settings."""
    redis = redis if redis is not None else create_redis(settings)
    db = DatabaseManager.relational(settings.db_url)
    activity_db = DatabaseManager.documents(settings.activity_db_url)

    audit = AuditPipeline(
        documents=SqlDocumentStore(activity_db),
        audit_rows=SqlAuditRowStore(db),
        redis=redis,
        batch_size=settings.audit_batch_size,
        batch_timeout_ms=settings.audit_batch_timeout_ms,
        flush_retries=settings.audit_flush_retries,
        retry_delay_ms=settings.audit_flush_retry_delay_ms,
        log_level=settings.log_level,
        slow_request_ms=settings.slow_request_ms,
        large_response_bytes=settings.large_response_bytes,
    )
    guard = StoreGuard(settings.store_timeout_seconds, on_failure=audit.store_failure)

    if settings.nonce_backend == "redis":
        nonces = RedisNonceRegistry(redis, ttl_ms=settings.wallet_nonce_ttl_ms)
    else:
        nonces = NonceRegistry(ttl_ms=settings.wallet_nonce_ttl_ms)

    tenants = TenantService(default_slug=settings.default_tenant_slug)
    users = UserService()
    credentials = CredentialVerifier(
        rounds=settings.bcrypt_rounds, workers=settings.crypto_workers
    )
    tokens = TokenService(
        settings.token_secret,
        redis=redis,
        lifetime_seconds=settings.token_lifetime_seconds,
        guard=guard,
    )
    sessions = SessionManager(redis, ttl_seconds=settings.session_ttl_seconds, guard=guard)
    limiter = RateLimiter(
        redis,
        window_ms=settings.rate_limit_window_ms,
        max_requests=settings.rate_limit_max,
        overrides=settings.rate_limit_overrides,
        guard=guard,
    )
    auth = AuthService(
        db=db,
        tenants=tenants,
        users=users,
        nonces=nonces,
        credentials=credentials,
        tokens=tokens,
        sessions=sessions,
        audit=audit,
        redis=redis,
        guard=guard,
        profile_cache_ttl=settings.profile_cache_ttl_seconds,
    )
    return Services(
        settings=settings,
        db=db,
        activity_db=activity_db,
        redis=redis,
        guard=guard,
        tenants=tenants,
        users=users,
        nonces=nonces,
        credentials=credentials,
        tokens=tokens,
        sessions=sessions,
        limiter=limiter,
        audit=audit,
        auth=auth,
    )


def get_services(request: Request) -> Services:
    services: Optional[Services] = getattr(request.app.state, "services", None)
    if services is None:
        raise RuntimeError("Services not initialized; the app lifespan has not run")
    return services
